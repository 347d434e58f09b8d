"""
State validator - repairs a persisted cursor against freshly compiled content.

Content can change between sessions (nodes renamed, chapters removed,
messages cut), so a loaded ConversationState may point somewhere that
no longer exists. Every repair here is idempotent: validating an
already-valid state changes nothing.
"""

from __future__ import annotations

import logging
from enum import Enum, auto
from typing import Optional

from chatflow.components.conversation import ConversationState
from chatflow.dialog.model import ParsedScript

logger = logging.getLogger(__name__)


class Repair(Enum):
    """A correction applied to a conversation state."""
    CHAPTER_RESET = auto()
    NODE_RESET = auto()
    INDEX_RESET = auto()
    PAUSE_CLEARED = auto()


class StateValidator:
    """
    Repairs inconsistent conversation states.

    Repairs run in a fixed order (chapter, node, message index, pause),
    each one seeing the result of the ones before it.
    """

    def validate_chapter(self, state: ConversationState, chapter_count: int) -> list[Repair]:
        """Reset the whole cursor if the chapter index is out of bounds."""
        if chapter_count <= 0:
            logger.error(f"[{state.conversation_id}] Cannot validate chapter: story has no chapters")
            return []

        if 0 <= state.chapter_index < chapter_count:
            return []

        logger.warning(
            f"[{state.conversation_id}] Chapter index {state.chapter_index} out of range "
            f"(0-{chapter_count - 1}) - restarting from chapter 0"
        )
        state.reset_cursor()
        # The chapter set changed incompatibly
        state.consumed_message_ids.clear()
        return [Repair.CHAPTER_RESET]

    def validate(
        self,
        state: ConversationState,
        script: ParsedScript,
        chapter_count: Optional[int] = None,
    ) -> list[Repair]:
        """
        Run every repair against a compiled chapter.

        Args:
            state: State to repair in place
            script: Compiled chapter the state's chapter_index points at
            chapter_count: Chapters in the story; skips the chapter repair if None

        Returns:
            Repairs applied, in order
        """
        repairs: list[Repair] = []

        if chapter_count is not None:
            repairs.extend(self.validate_chapter(state, chapter_count))

        if not script.nodes:
            logger.error(
                f"[{state.conversation_id}] Cannot validate cursor: "
                f"{script.source_name or 'chapter'} has no nodes"
            )
            return repairs

        node = script.get(state.node_name)
        if node is None:
            start = script.start_node
            logger.warning(
                f"[{state.conversation_id}] Node '{state.node_name}' not found - "
                f"restarting at '{start}'"
            )
            state.node_name = start
            state.next_message_index = 0
            node = script.nodes[start]
            repairs.append(Repair.NODE_RESET)

        if not 0 <= state.next_message_index <= node.message_count:
            logger.warning(
                f"[{state.conversation_id}] Message index {state.next_message_index} invalid "
                f"for '{node.name}' ({node.message_count} messages) - resetting to 0"
            )
            state.next_message_index = 0
            repairs.append(Repair.INDEX_RESET)

        if state.is_paused and not node.pauses_at(state.next_message_index):
            logger.warning(
                f"[{state.conversation_id}] Stale pause at {node.name}:{state.next_message_index} - cleared"
            )
            state.is_paused = False
            repairs.append(Repair.PAUSE_CLEARED)

        return repairs
