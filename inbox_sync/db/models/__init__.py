"""SQLAlchemy ORM models."""

from inbox_sync.db.models.channels import ChannelConnection, Message, SyncLease, SyncRun
from inbox_sync.db.models.jobs import Job

__all__ = [
    "ChannelConnection",
    "Job",
    "Message",
    "SyncLease",
    "SyncRun",
]
