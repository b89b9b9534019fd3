"""Protection events and external report delivery."""

from .base import DeliveryResult, DeliveryStatus, HttpReportSink, ReportError, ReportSink
from .cipp import CippReporter
from .dispatcher import ReportDispatcher
from .events import ProtectionEventLog, build_protection_event, build_report, defang, enrich_event

__all__ = [
    "CippReporter",
    "DeliveryResult",
    "DeliveryStatus",
    "HttpReportSink",
    "ProtectionEventLog",
    "ReportDispatcher",
    "ReportError",
    "ReportSink",
    "build_protection_event",
    "build_report",
    "defang",
    "enrich_event",
]
