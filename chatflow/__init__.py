"""
chatflow - branching chat-story engine.

Quick Start:
    from chatflow import ChatSession, SessionConfig, configure_logging

    configure_logging("INFO")
    session = ChatSession(SessionConfig(stories_path="stories"), MyPresenter())
    session.start()
    session.engine.advance("emma")

Provides:
- Dialog (script model, compiler, state validator, flow engine)
- Components (persisted conversation state)
- Save (conversation store, migrations, unlock profile)
- Session (configuration and composition root)
"""

__version__ = "0.1.0"

# Dialog first: components depend on the script model
from chatflow.dialog import (
    Compiler,
    Diagnostic,
    DiagnosticCode,
    Severity,
    FlowEngine,
    FlowStatus,
    Presenter,
    PresentationTicket,
    StateValidator,
    Repair,
)
from chatflow.components import ConversationState
from chatflow.save import ConversationStore, UnlockProfile, SaveMigrationError
from chatflow.session import ChatSession, SessionConfig, configure_logging

__all__ = [
    # Dialog
    "Compiler",
    "Diagnostic",
    "DiagnosticCode",
    "Severity",
    "FlowEngine",
    "FlowStatus",
    "Presenter",
    "PresentationTicket",
    "StateValidator",
    "Repair",
    # State
    "ConversationState",
    # Save
    "ConversationStore",
    "UnlockProfile",
    "SaveMigrationError",
    # Session
    "ChatSession",
    "SessionConfig",
    "configure_logging",
]
