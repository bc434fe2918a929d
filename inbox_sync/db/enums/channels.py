"""Channel connection and sync enums."""

from enum import Enum


class ChannelProvider(str, Enum):
    """External provider backing a channel connection."""

    GMAIL = "gmail"
    OUTLOOK = "outlook"
    SLACK = "slack"


class ConnectionStatus(str, Enum):
    """Lifecycle state of a channel connection."""

    PENDING = "pending"  # Created, never synced
    ACTIVE = "active"
    ERROR = "error"  # Retryable failures past threshold
    AUTH_EXPIRED = "auth_expired"  # Terminal until re-auth
    DISCONNECTED = "disconnected"  # Terminal, user-initiated


class SyncTrigger(str, Enum):
    """What caused a sync run."""

    CRON = "cron"
    WEBHOOK = "webhook"
    MANUAL = "manual"


class SyncErrorKind(str, Enum):
    """Structured error kinds reported on a sync outcome."""

    AUTH_EXPIRED = "auth_expired"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    LEASE_LOST = "lease_lost"
    INTERNAL = "internal"


class MessagePriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class MessageCategory(str, Enum):
    WORK = "work"
    PERSONAL = "personal"
    NEWSLETTER = "newsletter"
    NOTIFICATION = "notification"
    PROMOTION = "promotion"
    SUPPORT = "support"
    OTHER = "other"
