"""Centralized defaults for enums."""

from inbox_sync.db.enums.channels import ConnectionStatus
from inbox_sync.db.enums.jobs import JobStatus


DEFAULT_CONNECTION_STATUS: ConnectionStatus = ConnectionStatus.PENDING
DEFAULT_JOB_STATUS: JobStatus = JobStatus.PENDING
