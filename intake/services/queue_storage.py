"""Durable storage for the client-side message queue.

Each session's queue lives under its own key, ``intake_message_queue_<session_id>``,
as a JSON document of pending and failed messages. Storage problems never
break delivery: a failed write is logged, and an unreadable entry is treated
as "nothing pending".
"""

import logging
import os
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from pydantic import ValidationError

from intake.models.queue import FailedMessage, PendingMessage, PersistedMessageQueue
from intake.models.session import utc_now

logger = logging.getLogger(__name__)

STORAGE_KEY_PREFIX = "intake_message_queue_"


def storage_key(session_id: str) -> str:
    return f"{STORAGE_KEY_PREFIX}{session_id}"


class QueueStorage(Protocol):
    """Minimal key/value interface the queue persists through."""

    def get_item(self, key: str) -> Optional[str]: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...


class InMemoryQueueStorage:
    """Process-local storage, used in tests and when no directory is configured."""

    def __init__(self):
        self._items: Dict[str, str] = {}

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._items)


class FileQueueStorage:
    """One JSON file per key inside ``directory``."""

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def get_item(self, key: str) -> Optional[str]:
        try:
            return self._path(key).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def set_item(self, key: str, value: str) -> None:
        path = self._path(key)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(value, encoding="utf-8")
        os.replace(tmp_path, path)

    def remove_item(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


def save_queue(
    storage: QueueStorage,
    session_id: str,
    pending: List[PendingMessage],
    failed: List[FailedMessage],
) -> None:
    """
    Persist a session's pending and failed messages.

    The key is removed once nothing is left to deliver.

    Args:
        storage: Storage backend
        session_id: Session the messages belong to
        pending: Messages waiting for delivery
        failed: Messages whose last attempt failed
    """
    key = storage_key(session_id)
    try:
        if not pending and not failed:
            storage.remove_item(key)
            return

        snapshot = PersistedMessageQueue(
            session_id=session_id,
            pending_messages=pending,
            failed_messages=failed,
            last_updated=utc_now(),
        )
        storage.set_item(key, snapshot.model_dump_json(by_alias=True))
    except OSError as e:
        logger.warning(f"Failed to persist message queue for session {session_id}: {e}")


def load_queue(storage: QueueStorage, session_id: str) -> Optional[PersistedMessageQueue]:
    """Load a session's persisted queue, or None when there is nothing usable."""
    key = storage_key(session_id)
    try:
        raw = storage.get_item(key)
    except (OSError, ValueError) as e:
        logger.warning(f"Failed to read message queue for session {session_id}: {e}")
        return None

    if not raw:
        return None

    try:
        snapshot = PersistedMessageQueue.model_validate_json(raw)
    except (ValidationError, ValueError) as e:
        logger.warning(f"Ignoring malformed message queue for session {session_id}: {e}")
        return None

    if snapshot.session_id != session_id:
        logger.warning(
            f"Ignoring message queue stored under {key} for another session ({snapshot.session_id})"
        )
        return None
    return snapshot


def clear_queue(storage: QueueStorage, session_id: str) -> None:
    try:
        storage.remove_item(storage_key(session_id))
    except OSError as e:
        logger.warning(f"Failed to clear message queue for session {session_id}: {e}")
