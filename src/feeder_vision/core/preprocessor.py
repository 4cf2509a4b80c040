"""
preprocessor.py: Decode image frames and turn them into normalized model inputs.

Each frame is converted to RGB, resized to a fixed square, scaled to [0, 1] and
normalized per channel with the model's training statistics, giving a CHW
float32 array. The functions here are stateless so they can run on any worker
of the preprocessing pool.

Supports JPEG, PNG and HEIC (via pillow-heif).
"""

import io
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional, Tuple

import numpy as np
from PIL import Image
from pillow_heif import register_heif_opener

from .errors import DecodeFailed
from .folder_scanner import DecodeStatus, FrameRecord
from ..utils.log_utils import get_logger

register_heif_opener()

logger = get_logger(__name__)

IMAGENET_MEAN = (0.485, 0.456, 0.406)
IMAGENET_STD = (0.229, 0.224, 0.225)

# Errors PIL raises for unreadable, truncated or oversized images
_DECODE_ERRORS = (OSError, ValueError, SyntaxError, Image.DecompressionBombError)


@dataclass(frozen=True)
class InputGeometry:
    """Input shape and normalization the classifier was trained with."""
    size: int = 224
    mean: Tuple[float, float, float] = IMAGENET_MEAN
    std: Tuple[float, float, float] = IMAGENET_STD

    @property
    def shape(self) -> Tuple[int, int, int]:
        return (3, self.size, self.size)


@dataclass
class PreparedFrame:
    """Output of one preprocessing job; exactly one of tensor/error is set."""
    index: int
    frame: FrameRecord
    tensor: Optional[np.ndarray] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.tensor is not None


def image_to_tensor(img: Image.Image, geometry: InputGeometry) -> np.ndarray:
    """Resize a PIL image to the model's square input and return a normalized CHW array."""
    if img.mode != "RGB":
        img = img.convert("RGB")
    resized = img.resize((geometry.size, geometry.size), resample=Image.Resampling.BILINEAR)
    data = np.asarray(resized, dtype=np.float32) / 255.0
    mean = np.asarray(geometry.mean, dtype=np.float32)
    std = np.asarray(geometry.std, dtype=np.float32)
    data = (data - mean) / std
    return np.ascontiguousarray(data.transpose(2, 0, 1))


def tensor_from_bytes(data: bytes, geometry: InputGeometry, path: Optional[Path] = None) -> np.ndarray:
    """
    Decode raw image bytes into a model input tensor.

    Raises:
        DecodeFailed: If the bytes are not a readable image.
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            return image_to_tensor(img, geometry)
    except _DECODE_ERRORS as e:
        raise DecodeFailed(path, str(e) or type(e).__name__) from e


def load_image_tensor(path: Path, geometry: InputGeometry) -> np.ndarray:
    """
    Read an image file and return its normalized CHW tensor.

    Raises:
        DecodeFailed: If the file cannot be read or decoded.
    """
    try:
        data = Path(path).read_bytes()
    except OSError as e:
        raise DecodeFailed(path, e.strerror or str(e)) from e
    return tensor_from_bytes(data, geometry, path)


def prepare_frame(index: int, frame: FrameRecord, geometry: InputGeometry) -> PreparedFrame:
    """Worker entry point: preprocess one frame, recording decode failures instead of raising."""
    try:
        tensor = load_image_tensor(frame.path, geometry)
    except DecodeFailed as e:
        logger.warning("Failed to load image %s: %s", frame.path.name, e.reason)
        failed = replace(frame, decode_status=DecodeStatus.DECODE_FAILED, error=e.reason)
        return PreparedFrame(index=index, frame=failed, error=e.reason)
    return PreparedFrame(
        index=index,
        frame=replace(frame, decode_status=DecodeStatus.DECODED),
        tensor=tensor,
    )
