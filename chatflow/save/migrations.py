"""Save migration registry for conversation stores."""

from __future__ import annotations

import copy
from typing import Any, Callable, Dict, Tuple

CURRENT_VERSION = 2


class SaveMigrationError(Exception):
    """Raised when a save cannot be migrated to the latest schema."""


Migration = Callable[[Dict[str, Any]], Dict[str, Any]]

# Version 1 message "type" values
_LEGACY_KINDS = {
    "text": "text",
    "image": "image",
    "system": "system",
    "player_choice": "text",
}


def _migrate_message_v1(entry: Any) -> Dict[str, Any]:
    if not isinstance(entry, dict):
        raise SaveMigrationError("History entry was not an object.")

    kind = _LEGACY_KINDS.get(str(entry.get("type", "text")).lower())
    if kind is None:
        raise SaveMigrationError(f"Unknown message type {entry.get('type')!r}.")

    media_key = entry.get("image") or None
    return {
        "kind": kind,
        "speaker": entry.get("speaker", ""),
        "text": entry.get("content", ""),
        "media_key": media_key if kind == "image" else None,
        "unlocks": bool(entry.get("unlock", False)),
        "id": entry.get("id", ""),
    }


def _migrate_state_v1(conversation_id: str, state: Any) -> Dict[str, Any]:
    if not isinstance(state, dict):
        raise SaveMigrationError(f"State for {conversation_id!r} was not an object.")

    return {
        "conversation_id": conversation_id,
        "schema_version": 2,
        "chapter_index": state.get("chapter", 0),
        "node_name": state.get("node", ""),
        "next_message_index": state.get("message_index", 0),
        "consumed_message_ids": list(state.get("read_ids", [])),
        "history": [_migrate_message_v1(m) for m in state.get("messages", [])],
        "is_paused": bool(state.get("paused", False)),
        "unlocked_ids": list(state.get("unlocked", [])),
    }


def _migrate_v1_to_v2(payload: Dict[str, Any]) -> Dict[str, Any]:
    entries = payload.get("conversations")
    if entries is None:
        entries = []
    if not isinstance(entries, list):
        raise SaveMigrationError("Version 1 conversations were not a list.")

    conversations: Dict[str, Any] = {}
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("id"):
            raise SaveMigrationError("Version 1 entry without an id.")
        conversation_id = str(entry["id"])
        conversations[conversation_id] = _migrate_state_v1(conversation_id, entry.get("state"))

    return {
        "version": 2,
        "conversations": conversations,
    }


MIGRATIONS: Dict[Tuple[int, int], Migration] = {
    (1, 2): _migrate_v1_to_v2,
}


def migrate_payload(payload: Dict[str, Any], target_version: int = CURRENT_VERSION) -> Dict[str, Any]:
    """
    Upgrade a loaded save payload one version step at a time.

    A missing version is treated as 1. The input is never modified.

    Raises:
        SaveMigrationError: payload is malformed, newer than supported,
            or has no migration path
    """
    if not isinstance(payload, dict):
        raise SaveMigrationError("Save payload was not an object.")

    version = payload.get("version", 1)
    if version is None:
        version = 1
    if not isinstance(version, int) or isinstance(version, bool):
        raise SaveMigrationError("Save version missing or invalid.")
    if version > target_version:
        raise SaveMigrationError(
            f"Save schema {version} is newer than supported {target_version}."
        )

    current = copy.deepcopy(payload)
    while version < target_version:
        migrator = MIGRATIONS.get((version, version + 1))
        if migrator is None:
            raise SaveMigrationError(
                f"No migration available for save schema {version}."
            )
        current = migrator(current)
        version = current.get("version", version + 1)
        if not isinstance(version, int):
            raise SaveMigrationError("Migration produced an invalid schema version.")

    return current
