"""
Dispatch and settings collaborators.

The engine talks to the outside world through two small protocols: a
dispatcher that delivers a message now, and a settings provider that reads
the user's preferences. Concrete in-process versions live here too.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from ..config import NS_SETTINGS, storage_key
from ..data.kv_store import KeyValueStore
from ..data.models import NotificationPriority, NotificationRequest, NotificationSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationStyle:
    color: str
    vibration: Optional[List[int]]
    channel_id: str


PRIORITY_STYLES: Dict[NotificationPriority, NotificationStyle] = {
    NotificationPriority.CRITICAL: NotificationStyle("#EF4444", [0, 500, 200, 500, 200, 500], "critical"),
    NotificationPriority.HIGH: NotificationStyle("#F59E0B", [0, 300, 200, 300], "high"),
    NotificationPriority.MEDIUM: NotificationStyle("#3B82F6", [0, 200], "medium"),
    NotificationPriority.LOW: NotificationStyle("#10B981", None, "low"),
}


@dataclass
class DispatchMessage:
    """What the transport receives: content plus per-priority presentation."""
    notification_id: str
    user_id: str
    title: str
    body: str
    style: NotificationStyle
    sound: bool = True
    vibrate: bool = True
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_request(cls, request: NotificationRequest,
                     settings: NotificationSettings) -> "DispatchMessage":
        style = PRIORITY_STYLES[request.priority]
        return cls(
            notification_id=request.id,
            user_id=request.user_id,
            title=request.title,
            body=request.body,
            style=style,
            sound=settings.sound_enabled,
            vibrate=settings.vibration_enabled and style.vibration is not None,
            data={
                **request.data,
                "type": request.type.value,
                "priority": request.priority.value,
                "task_id": request.task_id,
            },
        )


class NotificationDispatcher(Protocol):
    def dispatch(self, message: DispatchMessage) -> str:
        """Deliver now and return a transport delivery id. May raise."""
        ...


class SettingsProvider(Protocol):
    def get_settings(self, user_id: str) -> NotificationSettings: ...


# ── Implementations ─────────────────────────────────────────────────────────

class LoggingDispatcher:
    """Delivers by writing to the log; used by the CLI harness."""

    def __init__(self) -> None:
        self.sent: List[DispatchMessage] = []

    def dispatch(self, message: DispatchMessage) -> str:
        delivery_id = uuid.uuid4().hex
        self.sent.append(message)
        logger.info("[%s] %s: %s (delivery %s)",
                    message.style.channel_id.upper(), message.title, message.body, delivery_id)
        return delivery_id


class StoredSettingsProvider:
    """Reads notification_settings_<user_id>; missing or unreadable -> defaults."""

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    def get_settings(self, user_id: str) -> NotificationSettings:
        raw = self.store.get_json(storage_key(NS_SETTINGS, user_id))
        if raw is None:
            return NotificationSettings(user_id=user_id)
        try:
            settings = NotificationSettings.from_dict(raw)
        except (AttributeError, TypeError):
            logger.warning("Settings for %s unreadable; using defaults.", user_id)
            return NotificationSettings(user_id=user_id)
        settings.user_id = user_id
        return settings

    def save_settings(self, settings: NotificationSettings) -> None:
        """Written by the user-facing surface, never by the engine."""
        self.store.set_json(storage_key(NS_SETTINGS, settings.user_id), settings.to_dict())


class StaticSettingsProvider:
    """Fixed settings for every user; handy in tests and the harness."""

    def __init__(self, settings: Optional[NotificationSettings] = None) -> None:
        self.settings = settings or NotificationSettings()

    def get_settings(self, user_id: str) -> NotificationSettings:
        return self.settings


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Defines the two seams between the engine and the outside world: how a
#   notification is delivered and where preferences come from.
#
# Key design decisions:
#   - typing.Protocol instead of base classes: any object with a matching
#     dispatch() or get_settings() works, including a two-line test fake.
#   - Presentation (colour, vibration pattern, channel) is chosen by
#     priority here, so the orchestrator never deals with styling.
#
# Interviewer-friendly talking points:
#   1. The dispatcher may raise. The orchestrator decides what a failed
#      delivery means (re-queue for retry), not the transport.
#   2. Settings are read fresh on every decision, so a user toggling a type
#      off takes effect on the next submit without a restart.
