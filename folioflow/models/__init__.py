from folioflow.models.base import FFBaseModel
from folioflow.models.inbound import InboundEvent
from folioflow.models.reports import (
    AttachmentOut,
    FolioDetailOut,
    FolioListOut,
    FolioOut,
    HistoryEntryOut,
    NotificationListOut,
    NotificationOut,
    ProjectDetailOut,
    ProjectListOut,
    ProjectOut,
)

__all__ = [
    "AttachmentOut",
    "FFBaseModel",
    "FolioDetailOut",
    "FolioListOut",
    "FolioOut",
    "HistoryEntryOut",
    "InboundEvent",
    "NotificationListOut",
    "NotificationOut",
    "ProjectDetailOut",
    "ProjectListOut",
    "ProjectOut",
]
