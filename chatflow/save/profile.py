"""
Unlock profile - collectibles that outlive conversation resets.

Resetting a story throws its ConversationState away, but what the
player has unlocked along the way stays here and is seeded back into
every new state.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

import jsonschema

logger = logging.getLogger(__name__)

PROFILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["version", "unlocked"],
    "properties": {
        "version": {"type": "integer", "const": 1},
        "unlocked": {
            "type": "object",
            "additionalProperties": {
                "type": "array",
                "items": {"type": "string"},
            },
        },
    },
}


class UnlockProfile:
    """
    Per-conversation unlock sets, persisted as one small JSON file.

    Usage:
        profile = UnlockProfile("saves/profile.json")
        profile.load()
        if profile.unlock("emma", "cg/beach.png"):
            show_toast("New picture!")
    """

    VERSION = 1

    def __init__(self, path: Optional[Path | str] = None):
        self.path = Path(path) if path is not None else None
        self._unlocked: dict[str, set[str]] = {}

    def load(self) -> bool:
        """Load from disk. A missing file is an empty profile."""
        self._unlocked = {}
        if self.path is None or not self.path.exists():
            return True

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            jsonschema.validate(instance=data, schema=PROFILE_SCHEMA)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load profile {self.path}: {e}")
            return False
        except jsonschema.ValidationError as e:
            logger.error(f"Invalid profile {self.path}: {e.message}")
            return False

        self._unlocked = {
            conversation_id: set(ids)
            for conversation_id, ids in data["unlocked"].items()
        }
        logger.debug(f"Loaded profile with {len(self.unlocked())} unlocks")
        return True

    def save(self) -> bool:
        if self.path is None:
            return False

        data = {
            "version": self.VERSION,
            "unlocked": {
                conversation_id: sorted(ids)
                for conversation_id, ids in sorted(self._unlocked.items())
            },
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)
        except OSError as e:
            logger.error(f"Failed to save profile {self.path}: {e}")
            return False
        return True

    def unlock(self, conversation_id: str, item_id: str) -> bool:
        """
        Record an unlock, saving immediately if it is new.

        Returns:
            True if the item was not unlocked before
        """
        ids = self._unlocked.setdefault(conversation_id, set())
        if item_id in ids:
            return False
        ids.add(item_id)
        self.save()
        return True

    def unlocked(self, conversation_id: Optional[str] = None) -> set[str]:
        """Unlocks for one conversation, or across all of them."""
        if conversation_id is not None:
            return set(self._unlocked.get(conversation_id, ()))
        result: set[str] = set()
        for ids in self._unlocked.values():
            result |= ids
        return result

    def is_unlocked(self, item_id: str) -> bool:
        return any(item_id in ids for ids in self._unlocked.values())
