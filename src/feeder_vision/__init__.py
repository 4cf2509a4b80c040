"""
Feeder Vision

Offline classification of bird-feeder camera-trap frames.
"""

__version__ = "0.1.0"

from .config import AppSettings, load_settings, save_settings
from .core.scan_engine import ScanEngine
from .core.results import ResultRow, ScanResult, ScanStatus
from .core.classifier import Classifier, ClassifierConfig
from .core.decision import DecisionEngine, Empty, Present, Uncertain
from .core.result_cache import ResultCache
from .core.export import export_csv

__all__ = [
    "AppSettings",
    "load_settings",
    "save_settings",
    "ScanEngine",
    "ResultRow",
    "ScanResult",
    "ScanStatus",
    "Classifier",
    "ClassifierConfig",
    "DecisionEngine",
    "Empty",
    "Present",
    "Uncertain",
    "ResultCache",
    "export_csv",
]
