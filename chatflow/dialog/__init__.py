"""
Dialog module - chat scripts and their execution.

Provides:
- Script model (messages, choices, nodes)
- Script compiler with diagnostics
- State validator (cursor repair)
- Presentation boundary
- Flow engine (resumable traversal)
"""

from chatflow.dialog.model import (
    Message,
    MessageKind,
    Choice,
    Node,
    ParsedScript,
    message_id,
)
from chatflow.dialog.compiler import (
    Compiler,
    Diagnostic,
    DiagnosticCode,
    Severity,
    compile_script,
    compile_script_file,
)
from chatflow.dialog.validator import StateValidator, Repair
from chatflow.dialog.presenter import Presenter, PresentationTicket
from chatflow.dialog.flow import FlowEngine, FlowStatus

__all__ = [
    "Message",
    "MessageKind",
    "Choice",
    "Node",
    "ParsedScript",
    "message_id",
    "Compiler",
    "Diagnostic",
    "DiagnosticCode",
    "Severity",
    "compile_script",
    "compile_script_file",
    "StateValidator",
    "Repair",
    "Presenter",
    "PresentationTicket",
    "FlowEngine",
    "FlowStatus",
]
