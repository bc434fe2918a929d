"""Structured logging helpers (token- and content-safe)."""

from typing import Any


def build_log_context(
    *,
    workspace_id: str | None = None,
    connection_id: str | None = None,
    provider: str | None = None,
    trigger: str | None = None,
    job_id: str | None = None,
) -> dict[str, Any]:
    """Return a log context dict safe to attach via ``extra=``.

    Only identifiers are accepted; tokens and message content never belong here.
    """
    context: dict[str, Any] = {}
    if workspace_id:
        context["workspace_id"] = str(workspace_id)
    if connection_id:
        context["connection_id"] = str(connection_id)
    if provider:
        context["provider"] = provider
    if trigger:
        context["trigger"] = trigger
    if job_id:
        context["job_id"] = str(job_id)
    return context
