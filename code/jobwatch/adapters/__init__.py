from .report_progress import ProgressReadout, ReportExportTracker, ReportOptions, ReportStatus
from .summary_notifications import Notification, NotificationAction, SummaryNotifier

__all__ = [
    "Notification",
    "NotificationAction",
    "ProgressReadout",
    "ReportExportTracker",
    "ReportOptions",
    "ReportStatus",
    "SummaryNotifier",
]
