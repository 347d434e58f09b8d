"""
Script model - messages, choices, nodes and compiled chapters.

Messages are persisted (they end up in conversation history), so they
are pydantic records. Choices, nodes and parsed scripts only live for
as long as a chapter is loaded and are plain dataclasses.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Optional

from chatcore.core.record import Record

PLAYER_SPEAKER = "player"
SYSTEM_SPEAKER = "system"


class MessageKind(str, Enum):
    """What a message renders as."""
    TEXT = "text"
    IMAGE = "image"
    SYSTEM = "system"


class Message(Record):
    """
    One utterance or media event.

    Attributes:
        kind: Text, image or system notice
        speaker: Free-form id, compared case-insensitively
        text: Content, or caption for images
        media_key: Opaque asset key (images only)
        unlocks: Presenting this message awards media_key as an unlock
        id: Stable across recompiles of unchanged content
    """
    kind: MessageKind = MessageKind.TEXT
    speaker: str = ""
    text: str = ""
    media_key: Optional[str] = None
    unlocks: bool = False
    id: str = ""

    @property
    def is_player(self) -> bool:
        return self.speaker.lower() == PLAYER_SPEAKER

    @property
    def is_system(self) -> bool:
        return self.kind == MessageKind.SYSTEM


def message_id(
    source_name: str,
    node_name: str,
    slot: str,
    position: int,
    kind: MessageKind,
    speaker: str,
    text: str,
    media_key: Optional[str] = None,
) -> str:
    """Derive a message id from where the message sits and what it says."""
    key = "\x1f".join([
        source_name,
        node_name,
        slot,
        str(position),
        kind.value,
        speaker,
        text,
        media_key or "",
    ])
    return hashlib.sha1(key.encode('utf-8')).hexdigest()[:16]


@dataclass
class Choice:
    """One option of a choice block."""
    label: str
    target_node: str = ""
    response_messages: list[Message] = field(default_factory=list)

    @property
    def has_target(self) -> bool:
        return bool(self.target_node)


@dataclass
class Node:
    """
    One addressable point in a chapter graph.

    A node with choices branches; otherwise a set auto_jump_target
    advances on its own; otherwise reaching the end of its messages
    ends the story.
    """
    name: str
    messages: list[Message] = field(default_factory=list)
    choices: list[Choice] = field(default_factory=list)
    pause_offsets: set[int] = field(default_factory=set)
    auto_jump_target: Optional[str] = None
    line: int = 0

    @property
    def message_count(self) -> int:
        return len(self.messages)

    @property
    def has_choices(self) -> bool:
        return len(self.choices) > 0

    @property
    def effective_jump(self) -> Optional[str]:
        """The auto-jump that will actually run (none when the node branches)."""
        if self.choices:
            return None
        return self.auto_jump_target or None

    def pauses_at(self, index: int) -> bool:
        return index in self.pause_offsets

    def next_pause_after(self, index: int) -> Optional[int]:
        later = [offset for offset in self.pause_offsets if offset > index]
        return min(later) if later else None


@dataclass
class ParsedScript:
    """A compiled chapter: node name -> Node, in declaration order."""
    source_name: str = ""
    contact: Optional[str] = None
    nodes: dict[str, Node] = field(default_factory=dict)

    @property
    def start_node(self) -> Optional[str]:
        """First node declared in the source."""
        return next(iter(self.nodes), None)

    @property
    def unlockables(self) -> list[str]:
        keys: list[str] = []
        for node in self.nodes.values():
            messages = list(node.messages)
            for choice in node.choices:
                messages.extend(choice.response_messages)
            for message in messages:
                if message.unlocks and message.media_key and message.media_key not in keys:
                    keys.append(message.media_key)
        return keys

    def get(self, name: str) -> Optional[Node]:
        return self.nodes.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self.nodes

    def __iter__(self) -> Iterator[Node]:
        return iter(self.nodes.values())

    def __len__(self) -> int:
        return len(self.nodes)
