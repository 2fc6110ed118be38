from .database import Database
from .kv_store import KeyValueStore
from .models import NotificationRequest, QueuedEntry, StudySession, StudyTask, ModelVersion
from .repository import Repository

__all__ = [
    "Database", "KeyValueStore", "NotificationRequest", "QueuedEntry",
    "StudySession", "StudyTask", "ModelVersion", "Repository",
]
