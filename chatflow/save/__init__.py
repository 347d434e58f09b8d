"""
Save module - conversation persistence.

Provides:
- Conversation store (one JSON file, checksum, throttled saves)
- Versioned save migrations
- Unlock profile that survives story resets
"""

from chatflow.save.manager import ConversationStore, SAVE_SCHEMA
from chatflow.save.migrations import (
    CURRENT_VERSION,
    MIGRATIONS,
    SaveMigrationError,
    migrate_payload,
)
from chatflow.save.profile import UnlockProfile

__all__ = [
    "ConversationStore",
    "SAVE_SCHEMA",
    "CURRENT_VERSION",
    "MIGRATIONS",
    "SaveMigrationError",
    "migrate_payload",
    "UnlockProfile",
]
