"""Classifier client - the model itself is an external black box."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx
from sqlalchemy.orm import Session

from inbox_sync.core.config import settings
from inbox_sync.db.enums import MessageCategory, MessagePriority
from inbox_sync.db.models import Message
from inbox_sync.services import message_service

logger = logging.getLogger(__name__)

_BODY_PREVIEW_CHARS = 4000


class ClassifierError(Exception):
    """Classifier unreachable or returned garbage."""


@dataclass(frozen=True)
class Classification:
    priority: str
    category: str


def normalize_classification(raw: dict) -> Classification:
    """Coerce free-form classifier output onto the allowed priority/category sets."""
    priority = str(raw.get("priority") or "").strip().lower()
    category = str(raw.get("category") or "").strip().lower()
    valid_priorities = {p.value for p in MessagePriority}
    valid_categories = {c.value for c in MessageCategory}
    return Classification(
        priority=priority if priority in valid_priorities else MessagePriority.MEDIUM.value,
        category=category if category in valid_categories else MessageCategory.OTHER.value,
    )


def classify_message(message: Message, *, transport: httpx.BaseTransport | None = None) -> Classification:
    if not settings.classifier_enabled:
        raise ClassifierError("CLASSIFIER_URL not configured")

    headers = {}
    if settings.CLASSIFIER_API_KEY:
        headers["Authorization"] = f"Bearer {settings.CLASSIFIER_API_KEY}"
    payload = {
        "message_id": str(message.id),
        "subject": message.subject,
        "sender": message.sender_email or message.sender_name,
        "snippet": message.snippet,
        "body": (message.body or "")[:_BODY_PREVIEW_CHARS],
        "labels": message.labels or [],
    }
    try:
        with httpx.Client(timeout=settings.CLASSIFIER_TIMEOUT_SECONDS, transport=transport) as client:
            response = client.post(settings.CLASSIFIER_URL, json=payload, headers=headers)
    except httpx.HTTPError as exc:
        raise ClassifierError(f"Classifier request failed: {exc}") from exc
    if response.status_code >= 400:
        raise ClassifierError(f"Classifier error {response.status_code}")
    try:
        data = response.json()
    except ValueError as exc:
        raise ClassifierError("Classifier returned non-JSON response") from exc
    if not isinstance(data, dict):
        raise ClassifierError("Classifier response was not an object")
    return normalize_classification(data)


def classify_and_store(db: Session, message_id) -> Message | None:
    """
    Classify one message and persist the result.

    Failures are logged and swallowed: classification is eventually
    consistent and a message may stay unclassified.
    """
    message = message_service.get_message(db, message_id)
    if message is None:
        return None
    try:
        result = classify_message(message)
    except ClassifierError as exc:
        logger.warning("Classification failed for message %s: %s", message_id, exc)
        return message
    return message_service.apply_classification(
        db, message, priority=result.priority, category=result.category
    )
