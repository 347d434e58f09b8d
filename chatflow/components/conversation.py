"""
Conversation components - the persisted cursor and history.
"""

from __future__ import annotations

from typing import ClassVar, Iterable, Optional

from pydantic import Field, field_serializer

from chatcore.core.record import Record
from chatflow.dialog.model import Message

STATE_SCHEMA_VERSION = 2


class ConversationState(Record):
    """
    Persisted progress through one conversation.

    Attributes:
        conversation_id: Save key, same as the story id
        schema_version: Version of this record's layout
        chapter_index: Chapter the cursor is in
        node_name: Node the cursor is in ("" = start of chapter)
        next_message_index: Next message to present; may equal the
            node's message count ("finished, awaiting decision")
        consumed_message_ids: Ids of every message already presented
        history: Presented messages, append-only, for replay on reopen
        is_paused: Waiting on an explicit resume at next_message_index
        unlocked_ids: Unlock keys awarded; survives story resets
    """
    _record_name: ClassVar[str] = "conversation"

    conversation_id: str = ""
    schema_version: int = STATE_SCHEMA_VERSION
    chapter_index: int = 0
    node_name: str = ""
    next_message_index: int = 0
    consumed_message_ids: set[str] = Field(default_factory=set)
    history: list[Message] = Field(default_factory=list)
    is_paused: bool = False
    unlocked_ids: set[str] = Field(default_factory=set)

    @field_serializer('consumed_message_ids', 'unlocked_ids')
    def _sorted_ids(self, ids: set[str]) -> list[str]:
        return sorted(ids)

    @classmethod
    def create(cls, conversation_id: str, unlocked_ids: Optional[Iterable[str]] = None) -> ConversationState:
        """Fresh state at chapter 0, first node."""
        return cls(conversation_id=conversation_id, unlocked_ids=set(unlocked_ids or ()))

    def has_consumed(self, message: Message) -> bool:
        return message.id in self.consumed_message_ids

    def record_presented(self, messages: Iterable[Message]) -> None:
        """Append presented messages to history and mark them consumed."""
        for message in messages:
            self.history.append(message)
            if message.id:
                self.consumed_message_ids.add(message.id)

    def reset_cursor(self) -> None:
        """Back to chapter 0, first node. History and unlocks are kept."""
        self.chapter_index = 0
        self.node_name = ""
        self.next_message_index = 0
        self.is_paused = False
