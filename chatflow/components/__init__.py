"""
Chat components - data-only persisted records.

All components are Pydantic models containing only data.
Traversal logic lives in the flow engine, not in components.
"""

from chatflow.components.conversation import ConversationState, STATE_SCHEMA_VERSION

__all__ = [
    "ConversationState",
    "STATE_SCHEMA_VERSION",
]
