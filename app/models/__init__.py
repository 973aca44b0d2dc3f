from app.models.approval import ApprovalEvent, ApprovalItem, ApprovalToken
from app.models.notification import NotificationLog

__all__ = ["ApprovalEvent", "ApprovalItem", "ApprovalToken", "NotificationLog"]
