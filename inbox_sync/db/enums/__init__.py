"""Enum definitions for application constants."""

from inbox_sync.db.enums.channels import (
    ChannelProvider,
    ConnectionStatus,
    MessageCategory,
    MessagePriority,
    SyncErrorKind,
    SyncTrigger,
)
from inbox_sync.db.enums.defaults import DEFAULT_CONNECTION_STATUS, DEFAULT_JOB_STATUS
from inbox_sync.db.enums.jobs import JobStatus, JobType

__all__ = [
    "ChannelProvider",
    "ConnectionStatus",
    "DEFAULT_CONNECTION_STATUS",
    "DEFAULT_JOB_STATUS",
    "JobStatus",
    "JobType",
    "MessageCategory",
    "MessagePriority",
    "SyncErrorKind",
    "SyncTrigger",
]
