"""Job-related enums."""

from enum import Enum


class JobType(str, Enum):
    """Types of background jobs."""

    CONNECTION_SYNC = "connection_sync"  # Push-triggered sync through the lease
    MESSAGE_CLASSIFY = "message_classify"  # Best-effort classifier call
    WEBHOOK_REGISTER = "webhook_register"  # Initial push subscription


class JobStatus(str, Enum):
    """Status of background jobs."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
