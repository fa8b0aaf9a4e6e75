# link_audit/__init__.py
"""
LinkAudit package initializer.
Defines package version and exposes the high-level entry points.
"""
__version__ = "0.1.0"

from link_audit.config import ScanConfig, load_config
from link_audit.crawler.models import LinkRecord, LinkStatus
from link_audit.engine import Engine, recheck_url
from link_audit.scanner import start_scan

__all__ = [
    "Engine",
    "LinkRecord",
    "LinkStatus",
    "ScanConfig",
    "__version__",
    "load_config",
    "recheck_url",
    "start_scan",
]
