"""
Record base class for persisted, data-only models.

Records hold state that crosses a process boundary (save files,
message history). They carry no traversal logic; the flow engine
and the store own every mutation. Pydantic gives them:
- Validation on construction and on assignment
- JSON round-tripping via model_dump / model_validate
- Deep copies for snapshots

Usage:
    class Bookmark(Record):
        node_name: str
        index: int = 0
"""

from __future__ import annotations

from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict


class Record(BaseModel):
    """
    Base class for persisted records.

    IMPORTANT: keep these data-only. Helpers may append to their own
    collections, but flow decisions belong to the engine.
    """

    model_config = ConfigDict(
        validate_assignment=True,
        extra='forbid',
        use_enum_values=False,
    )

    # Name used in save payloads and log lines
    _record_name: ClassVar[str] = ""

    @classmethod
    def record_name(cls) -> str:
        return cls._record_name or cls.__name__

    def clone(self) -> Record:
        """Deep copy, used for snapshots and property tests."""
        return self.model_copy(deep=True)

    def to_payload(self) -> dict[str, Any]:
        """JSON-ready dict."""
        return self.model_dump(mode='json')

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Record:
        return cls.model_validate(payload)
