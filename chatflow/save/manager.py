"""
Conversation store - persistence for conversation states.

Provides:
- One JSON save file holding every conversation
- Save integrity validation (checksum)
- Schema versioning with migrations
- Throttled regular saves, forced saves at durability points
- Event publishing for save/load outcomes
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import time
from pathlib import Path
from typing import Any, Callable, Optional

import jsonschema
from pydantic import ValidationError

from chatcore.core.events import EventBus, SaveEvent
from chatflow.components.conversation import ConversationState
from chatflow.save.migrations import CURRENT_VERSION, SaveMigrationError, migrate_payload
from chatflow.save.profile import UnlockProfile

logger = logging.getLogger(__name__)

_MESSAGE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["kind", "id"],
    "properties": {
        "kind": {"enum": ["text", "image", "system"]},
        "speaker": {"type": "string"},
        "text": {"type": "string"},
        "media_key": {"type": ["string", "null"]},
        "unlocks": {"type": "boolean"},
        "id": {"type": "string"},
    },
}

STATE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["chapter_index", "node_name", "next_message_index"],
    "properties": {
        "conversation_id": {"type": "string"},
        "schema_version": {"type": "integer"},
        "chapter_index": {"type": "integer"},
        "node_name": {"type": "string"},
        "next_message_index": {"type": "integer"},
        "consumed_message_ids": {"type": "array", "items": {"type": "string"}},
        "history": {"type": "array", "items": _MESSAGE_SCHEMA},
        "is_paused": {"type": "boolean"},
        "unlocked_ids": {"type": "array", "items": {"type": "string"}},
    },
}

SAVE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["version", "conversations"],
    "properties": {
        "version": {"type": "integer", "const": CURRENT_VERSION},
        "conversations": {
            "type": "object",
            "additionalProperties": STATE_SCHEMA,
        },
        "checksum": {"type": "string"},
    },
}


class ConversationStore:
    """
    Owns every ConversationState on disk.

    Regular saves are throttled to at most one per min_save_interval;
    a throttled save leaves the store dirty so flush() can write it
    later. Creating and clearing a conversation always saves.

    Usage:
        store = ConversationStore("saves", event_bus=bus)
        store.load()
        state = store.get_or_create("emma")
        ...
        store.put(state)
        store.save()               # may be throttled
        store.flush()              # before suspend
    """

    VERSION = CURRENT_VERSION

    def __init__(
        self,
        save_path: Path | str,
        save_file: str = "conversations.json",
        min_save_interval: float = 2.0,
        event_bus: Optional[EventBus] = None,
        profile: Optional[UnlockProfile] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.save_path = Path(save_path)
        self.save_path.mkdir(parents=True, exist_ok=True)
        self.file_path = self.save_path / save_file
        self.min_save_interval = min_save_interval
        self.event_bus = event_bus
        self.profile = profile
        self._clock = clock

        self._states: dict[str, ConversationState] = {}
        self._loaded = False
        self._dirty = False
        self._last_save: Optional[float] = None

    @property
    def conversation_ids(self) -> list[str]:
        self._ensure_loaded()
        return sorted(self._states)

    @property
    def dirty(self) -> bool:
        return self._dirty

    # Loading

    def load(self) -> bool:
        """
        Load the save file, replacing in-memory states.

        A file that cannot be read, verified, migrated or validated
        leaves the store empty (the file itself is untouched until the
        next successful save).

        Returns:
            True if the file loaded (or there was none)
        """
        self._loaded = True
        self._states = {}
        self._dirty = False

        if not self.file_path.exists():
            logger.debug(f"No save file at {self.file_path}")
            self._publish(SaveEvent.LOAD_COMPLETED, path=str(self.file_path), count=0)
            return True

        try:
            with open(self.file_path, 'r', encoding='utf-8') as f:
                payload = json.load(f)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            return self._load_failed(f"unreadable save file: {e}")

        if isinstance(payload, dict):
            checksum = payload.get('checksum')
            if checksum and not self._verify_checksum(payload, checksum):
                return self._load_failed("checksum mismatch")

        try:
            payload = migrate_payload(payload, self.VERSION)
            jsonschema.validate(instance=payload, schema=SAVE_SCHEMA)
        except SaveMigrationError as e:
            return self._load_failed(f"migration failed: {e}")
        except jsonschema.ValidationError as e:
            return self._load_failed(f"schema validation failed: {e.message}")

        states: dict[str, ConversationState] = {}
        for conversation_id, data in payload["conversations"].items():
            data = dict(data)
            data["conversation_id"] = conversation_id
            try:
                states[conversation_id] = ConversationState.model_validate(data)
            except ValidationError as e:
                return self._load_failed(f"invalid state for '{conversation_id}': {e}")

        self._states = states
        logger.info(f"Loaded {len(states)} conversations from {self.file_path}")
        self._publish(SaveEvent.LOAD_COMPLETED, path=str(self.file_path), count=len(states))
        return True

    def _load_failed(self, reason: str) -> bool:
        logger.error(f"Load failed ({self.file_path}): {reason}")
        self._states = {}
        self._publish(SaveEvent.LOAD_FAILED, path=str(self.file_path), error=reason)
        return False

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    # Access

    def get(self, conversation_id: str) -> Optional[ConversationState]:
        self._ensure_loaded()
        return self._states.get(conversation_id)

    def has(self, conversation_id: str) -> bool:
        self._ensure_loaded()
        return conversation_id in self._states

    def get_or_create(self, conversation_id: str) -> ConversationState:
        """
        Get a conversation's state, creating it on first access.

        Creation is saved immediately, bypassing the throttle.
        """
        self._ensure_loaded()
        state = self._states.get(conversation_id)
        if state is not None:
            return state

        seeded = self.profile.unlocked(conversation_id) if self.profile is not None else set()
        state = ConversationState.create(conversation_id, unlocked_ids=seeded)
        self._states[conversation_id] = state
        logger.info(f"Created conversation state for '{conversation_id}'")
        self._publish(SaveEvent.STATE_CREATED, conversation_id=conversation_id)
        self.save(force=True)
        return state

    def put(self, state: ConversationState) -> None:
        """Store a state (replacing any other with the same id) and mark dirty."""
        self._ensure_loaded()
        self._states[state.conversation_id] = state
        self._dirty = True

    def clear(self, conversation_id: str) -> bool:
        """
        Discard a conversation's state and save immediately.

        Returns:
            True if there was a state to discard
        """
        self._ensure_loaded()
        existed = self._states.pop(conversation_id, None) is not None
        logger.info(f"Cleared conversation state for '{conversation_id}'")
        self._publish(SaveEvent.STATE_CLEARED, conversation_id=conversation_id, existed=existed)
        self.save(force=True)
        return existed

    # Saving

    def save(self, force: bool = False) -> bool:
        """
        Write every state to disk.

        Args:
            force: Ignore the minimum save interval

        Returns:
            True if the file was written
        """
        self._ensure_loaded()
        now = self._clock()
        if not force and self._last_save is not None and now - self._last_save < self.min_save_interval:
            self._dirty = True
            self._publish(SaveEvent.SAVE_THROTTLED, path=str(self.file_path))
            return False

        payload: dict[str, Any] = {
            'version': self.VERSION,
            'conversations': {
                conversation_id: state.to_payload()
                for conversation_id, state in sorted(self._states.items())
            },
        }
        payload['checksum'] = self._calculate_checksum(payload)

        try:
            with open(self.file_path, 'w', encoding='utf-8') as f:
                json.dump(payload, f, indent=2, ensure_ascii=False)
        except OSError as e:
            logger.error(f"Save failed ({self.file_path}): {e}")
            self._dirty = True
            self._publish(SaveEvent.SAVE_FAILED, path=str(self.file_path), error=str(e))
            return False

        self._last_save = now
        self._dirty = False
        logger.debug(f"Saved {len(self._states)} conversations to {self.file_path}")
        self._publish(SaveEvent.SAVE_COMPLETED, path=str(self.file_path), count=len(self._states))
        return True

    def flush(self) -> bool:
        """Force-save if a throttled or pending change is outstanding."""
        if not self._dirty:
            return False
        return self.save(force=True)

    # Integrity

    def _calculate_checksum(self, data: dict) -> str:
        """Calculate checksum for save data."""
        json_str = json.dumps(data, sort_keys=True, separators=(',', ':'))
        hash_bytes = hashlib.sha256(json_str.encode('utf-8')).digest()
        return base64.b64encode(hash_bytes).decode('ascii')

    def _verify_checksum(self, data: dict, expected_checksum: str) -> bool:
        """Verify save data checksum."""
        data_copy = data.copy()
        data_copy.pop('checksum', None)
        return self._calculate_checksum(data_copy) == expected_checksum

    def _publish(self, event_type: SaveEvent, **data: Any) -> None:
        if self.event_bus is not None:
            self.event_bus.publish(event_type, **data)
