from .rich_ui import RichScanUI, summary_table

__all__ = ["RichScanUI", "summary_table"]
