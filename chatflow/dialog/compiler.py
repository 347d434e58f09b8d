"""
Chat script compiler - turns chapter text into a node graph.

Line-oriented format, one statement per line:

```
contact: Emma
title: start
---
emma: "Hey, are you awake?"
>> media emma type:image unlock:true path:cg/sunrise.png
-> ...
emma: Look at this.
>> choice
-> "Beautiful"
#player: "That's beautiful."
<<jump happy>>
-> "Go to sleep"
<<jump grumpy>>
>> endchoice
===
```

`//` starts a comment. Malformed lines never abort a compile: they are
skipped and reported as Diagnostics, so one typo costs one line rather
than the whole chapter.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import Any, Optional

from chatflow.dialog.model import (
    Choice,
    Message,
    MessageKind,
    Node,
    ParsedScript,
    SYSTEM_SPEAKER,
    message_id,
)

logger = logging.getLogger(__name__)


class Severity(Enum):
    """How bad a diagnostic is."""
    INFO = auto()
    WARNING = auto()
    ERROR = auto()


class DiagnosticCode(Enum):
    """What a diagnostic is about."""
    # Line level
    UNRECOGNIZED_LINE = auto()
    CONTENT_OUTSIDE_NODE = auto()
    EMPTY_NODE_NAME = auto()
    DUPLICATE_NODE = auto()
    EMPTY_JUMP_TARGET = auto()
    PAUSE_IN_CHOICE = auto()
    NESTED_CHOICE = auto()
    STRAY_ENDCHOICE = auto()
    UNCLOSED_CHOICE = auto()
    EMPTY_CHOICE_LABEL = auto()
    CHOICE_WITHOUT_TARGET = auto()
    MALFORMED_MEDIA = auto()
    EMPTY_SPEAKER = auto()
    RESPONSE_OUTSIDE_CHOICE = auto()

    # Node shape
    EMPTY_NODE = auto()
    CHOICE_AND_JUMP = auto()

    # Graph
    DANGLING_TARGET = auto()
    JUMP_CYCLE = auto()
    NO_NODES = auto()


_LOG_LEVELS = {
    Severity.INFO: logging.DEBUG,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}


@dataclass
class Diagnostic:
    """A problem found while compiling."""
    severity: Severity
    code: DiagnosticCode
    message: str
    line: Optional[int] = None
    node: Optional[str] = None
    target: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.severity == Severity.ERROR

    def __str__(self) -> str:
        where = f"line {self.line}: " if self.line else ""
        return f"{where}{self.message}"


@dataclass
class _CompileState:
    """Cursor while walking the source."""
    script: ParsedScript
    diagnostics: list[Diagnostic] = field(default_factory=list)
    node: Optional[Node] = None
    choice: Optional[Choice] = None
    choice_index: int = 0
    in_choice_block: bool = False
    line: int = 0


class Compiler:
    """
    Compiles chat scripts into ParsedScripts.

    Compiling is a pure function of the source text: no shared state is
    touched, so any thread may call compile() at any time.

    Args:
        allow_routing_nodes: Accept nodes that only hold an auto-jump
            (no messages) without a diagnostic
    """

    TITLE_PATTERN = re.compile(r'^title:\s*(.*)$')
    CONTACT_PATTERN = re.compile(r'^contact:\s*(.*)$')
    JUMP_PATTERN = re.compile(r'^<<jump\b\s*(.*?)\s*>>$')
    CHOICE_START_PATTERN = re.compile(r'^>>\s*choice$')
    CHOICE_END_PATTERN = re.compile(r'^>>\s*endchoice$')
    CHOICE_OPTION_PATTERN = re.compile(r'^->\s*"(.*)"$')
    MEDIA_PATTERN = re.compile(r'^>>\s*media\b(.*)$')
    DIALOGUE_PATTERN = re.compile(r'^([^:]*):(.*)$')

    PAUSE_LINE = "-> ..."
    SEPARATORS = frozenset({"---", "==="})
    COMMENT = "//"
    RESPONSE_MARKER = "#"

    def __init__(self, allow_routing_nodes: bool = True):
        self.allow_routing_nodes = allow_routing_nodes

    # Entry points

    def compile(self, source_text: str, source_name: str = "") -> tuple[ParsedScript, list[Diagnostic]]:
        """
        Compile one chapter.

        Args:
            source_text: Chapter script
            source_name: Chapter name, mixed into message ids and log lines

        Returns:
            (script, diagnostics); never raises for malformed input
        """
        state = _CompileState(script=ParsedScript(source_name=source_name))

        for number, raw in enumerate(source_text.splitlines(), start=1):
            state.line = number
            line = self._strip_comment(raw)
            if not line:
                continue
            self._compile_line(line, state)

        state.line = 0
        self._close_node(state)
        self._validate_graph(state)

        script = state.script
        logger.info(
            f"Compiled {len(script)} nodes from {source_name or '<source>'} "
            f"({len(state.diagnostics)} diagnostics)"
        )
        return script, state.diagnostics

    def compile_file(self, path: str | Path) -> tuple[ParsedScript, list[Diagnostic]]:
        """Compile a chapter file; the source name is the file stem."""
        path = Path(path)
        try:
            text = path.read_text(encoding='utf-8')
        except (OSError, UnicodeDecodeError) as e:
            diagnostic = Diagnostic(
                Severity.ERROR,
                DiagnosticCode.NO_NODES,
                f"Cannot read {path}: {e}",
            )
            logger.error(str(diagnostic))
            return ParsedScript(source_name=path.stem), [diagnostic]

        return self.compile(text, source_name=path.stem)

    # Line dispatch

    def _strip_comment(self, raw: str) -> str:
        index = raw.find(self.COMMENT)
        if index >= 0:
            raw = raw[:index]
        return raw.strip()

    def _compile_line(self, line: str, state: _CompileState) -> None:
        match = self.CONTACT_PATTERN.match(line)
        if match:
            # Header metadata; the catalog owns contact details
            if state.script.contact is None:
                state.script.contact = match.group(1).strip()
            return

        match = self.TITLE_PATTERN.match(line)
        if match:
            self._open_node(match.group(1).strip(), state)
            return

        if line in self.SEPARATORS:
            return

        if state.node is None:
            self._report(
                state, Severity.WARNING, DiagnosticCode.CONTENT_OUTSIDE_NODE,
                f"Content outside of a node: {line}",
            )
            return

        match = self.JUMP_PATTERN.match(line)
        if match:
            self._add_jump(match.group(1), state)
            return

        if line == self.PAUSE_LINE:
            self._add_pause(state)
            return

        if self.CHOICE_START_PATTERN.match(line):
            self._open_choice_block(state)
            return

        if self.CHOICE_END_PATTERN.match(line):
            self._close_choice_block(state)
            return

        match = self.CHOICE_OPTION_PATTERN.match(line)
        if match:
            if state.in_choice_block:
                self._open_choice(match.group(1), state)
            else:
                self._report(
                    state, Severity.WARNING, DiagnosticCode.UNRECOGNIZED_LINE,
                    f"Choice option outside a choice block: {line}",
                )
            return

        match = self.MEDIA_PATTERN.match(line)
        if match:
            self._add_media(match.group(1).strip(), line, state)
            return

        match = self.DIALOGUE_PATTERN.match(line)
        if match:
            self._add_dialogue(match.group(1).strip(), match.group(2).strip(), line, state)
            return

        self._report(
            state, Severity.WARNING, DiagnosticCode.UNRECOGNIZED_LINE,
            f"Unrecognized line: {line}",
        )

    # Nodes

    def _open_node(self, name: str, state: _CompileState) -> None:
        self._close_node(state)

        if not name:
            self._report(
                state, Severity.WARNING, DiagnosticCode.EMPTY_NODE_NAME,
                "Empty node name in title declaration",
            )
            return

        if name in state.script.nodes:
            self._report(
                state, Severity.WARNING, DiagnosticCode.DUPLICATE_NODE,
                f"Duplicate node name '{name}' - previous node will be overwritten",
                node=name,
            )

        node = Node(name=name, line=state.line)
        state.script.nodes[name] = node
        state.node = node

    def _close_node(self, state: _CompileState) -> None:
        node = state.node
        if node is None:
            return

        if state.in_choice_block:
            self._report(
                state, Severity.WARNING, DiagnosticCode.UNCLOSED_CHOICE,
                f"Choice block in node '{node.name}' was never closed with >> endchoice",
                node=node.name,
            )
        self._flush_choice(state)
        state.in_choice_block = False

        if not node.messages:
            if node.choices:
                self._report(
                    state, Severity.WARNING, DiagnosticCode.EMPTY_NODE,
                    f"Node '{node.name}' has choices but no messages",
                    node=node.name,
                )
            elif node.auto_jump_target and not self.allow_routing_nodes:
                self._report(
                    state, Severity.WARNING, DiagnosticCode.EMPTY_NODE,
                    f"Node '{node.name}' has a jump but no messages",
                    node=node.name, target=node.auto_jump_target,
                )

        if node.choices and node.auto_jump_target:
            self._report(
                state, Severity.WARNING, DiagnosticCode.CHOICE_AND_JUMP,
                f"Node '{node.name}' has both choices and an auto-jump to "
                f"'{node.auto_jump_target}' - the auto-jump will never run",
                node=node.name, target=node.auto_jump_target,
            )

        state.node = None

    # Flow control

    def _add_jump(self, target: str, state: _CompileState) -> None:
        if not target:
            self._report(
                state, Severity.WARNING, DiagnosticCode.EMPTY_JUMP_TARGET,
                "Empty jump target in <<jump>>",
                node=state.node.name,
            )
            return

        if state.choice is not None:
            state.choice.target_node = target
        else:
            state.node.auto_jump_target = target

    def _add_pause(self, state: _CompileState) -> None:
        if state.in_choice_block:
            self._report(
                state, Severity.WARNING, DiagnosticCode.PAUSE_IN_CHOICE,
                "Pause (-> ...) inside a choice block is ignored",
                node=state.node.name,
            )
            return
        state.node.pause_offsets.add(len(state.node.messages))

    # Choices

    def _open_choice_block(self, state: _CompileState) -> None:
        if state.in_choice_block:
            self._report(
                state, Severity.WARNING, DiagnosticCode.NESTED_CHOICE,
                "Nested choice blocks are not supported - ignoring >> choice",
                node=state.node.name,
            )
            return
        state.in_choice_block = True

    def _close_choice_block(self, state: _CompileState) -> None:
        if not state.in_choice_block:
            self._report(
                state, Severity.WARNING, DiagnosticCode.STRAY_ENDCHOICE,
                ">> endchoice outside a choice block",
                node=state.node.name,
            )
            return
        self._flush_choice(state)
        state.in_choice_block = False

    def _open_choice(self, label: str, state: _CompileState) -> None:
        self._flush_choice(state)

        label = label.strip()
        if not label:
            self._report(
                state, Severity.WARNING, DiagnosticCode.EMPTY_CHOICE_LABEL,
                "Empty choice label",
                node=state.node.name,
            )
            return

        state.choice = Choice(label=label)
        state.choice_index = len(state.node.choices)

    def _flush_choice(self, state: _CompileState) -> None:
        choice = state.choice
        if choice is None:
            return

        if not choice.has_target:
            self._report(
                state, Severity.WARNING, DiagnosticCode.CHOICE_WITHOUT_TARGET,
                f"Choice '{choice.label}' in node '{state.node.name}' has no <<jump>> target",
                node=state.node.name,
            )
        state.node.choices.append(choice)
        state.choice = None

    # Messages

    def _add_media(self, body: str, line: str, state: _CompileState) -> None:
        head, has_path, media_key = body.partition("path:")
        media_key = media_key.strip()
        tokens = head.split()

        if not tokens or ":" in tokens[0] or not has_path or not media_key:
            self._report(
                state, Severity.WARNING, DiagnosticCode.MALFORMED_MEDIA,
                f"Malformed media line (expected '>> media SPEAKER type:image path:PATH'): {line}",
                node=state.node.name,
            )
            return

        options = dict(
            token.split(":", 1) for token in tokens[1:] if ":" in token
        )
        media_type = options.get("type", "image").lower()
        if media_type != "image":
            self._report(
                state, Severity.WARNING, DiagnosticCode.MALFORMED_MEDIA,
                f"Unsupported media type '{media_type}': {line}",
                node=state.node.name,
            )
            return

        speaker = tokens[0].lstrip(self.RESPONSE_MARKER).strip()
        unlocks = options.get("unlock", "").lower() == "true"
        if unlocks:
            logger.debug(f"[line {state.line}] Unlockable media: {media_key}")

        self._append_message(
            state,
            kind=MessageKind.IMAGE,
            speaker=speaker,
            text="",
            media_key=media_key,
            unlocks=unlocks,
            to_choice=state.choice is not None,
        )

    def _add_dialogue(self, speaker: str, content: str, line: str, state: _CompileState) -> None:
        if not speaker:
            self._report(
                state, Severity.WARNING, DiagnosticCode.EMPTY_SPEAKER,
                f"Empty speaker name: {line}",
                node=state.node.name,
            )
            return

        if len(content) >= 2 and content.startswith('"') and content.endswith('"'):
            content = content[1:-1]

        is_response = speaker.startswith(self.RESPONSE_MARKER)
        if is_response:
            speaker = speaker[len(self.RESPONSE_MARKER):].strip()
            if state.choice is None:
                self._report(
                    state, Severity.WARNING, DiagnosticCode.RESPONSE_OUTSIDE_CHOICE,
                    f"Response line outside an open choice; added to node '{state.node.name}'",
                    node=state.node.name,
                )

        kind = MessageKind.SYSTEM if speaker.lower() == SYSTEM_SPEAKER else MessageKind.TEXT
        self._append_message(
            state,
            kind=kind,
            speaker=speaker,
            text=content,
            to_choice=is_response and state.choice is not None,
        )

    def _append_message(
        self,
        state: _CompileState,
        kind: MessageKind,
        speaker: str,
        text: str,
        media_key: Optional[str] = None,
        unlocks: bool = False,
        to_choice: bool = False,
    ) -> None:
        node = state.node
        if to_choice:
            target = state.choice.response_messages
            slot = f"choice:{state.choice_index}"
        else:
            target = node.messages
            slot = ""

        target.append(Message(
            kind=kind,
            speaker=speaker,
            text=text,
            media_key=media_key,
            unlocks=unlocks,
            id=message_id(
                state.script.source_name,
                node.name,
                slot,
                len(target),
                kind,
                speaker,
                text,
                media_key,
            ),
        ))

    # Graph validation

    def _validate_graph(self, state: _CompileState) -> None:
        script = state.script

        if not script.nodes:
            self._report(
                state, Severity.ERROR, DiagnosticCode.NO_NODES,
                f"No nodes found in {script.source_name or '<source>'}",
            )
            return

        for node in script:
            if node.auto_jump_target and node.auto_jump_target not in script:
                self._report(
                    state, Severity.WARNING, DiagnosticCode.DANGLING_TARGET,
                    f"Node '{node.name}' jumps to '{node.auto_jump_target}', "
                    f"which is not in this chapter",
                    line=node.line, node=node.name, target=node.auto_jump_target,
                )
            for choice in node.choices:
                if choice.target_node and choice.target_node not in script:
                    self._report(
                        state, Severity.WARNING, DiagnosticCode.DANGLING_TARGET,
                        f"Choice '{choice.label}' in node '{node.name}' targets "
                        f"'{choice.target_node}', which is not in this chapter",
                        line=node.line, node=node.name, target=choice.target_node,
                    )

        self._detect_cycles(state)

    def _detect_cycles(self, state: _CompileState) -> None:
        """Flag auto-jump chains that revisit a node without passing a choice."""
        script = state.script
        reported: set[frozenset[str]] = set()

        for start in script:
            if start.effective_jump is None:
                continue

            path: list[str] = []
            current: Optional[str] = start.name
            while current and current in script and current not in path:
                node = script.nodes[current]
                if node.has_choices:
                    current = None
                    break
                path.append(current)
                current = node.auto_jump_target

            if not current or current not in path:
                continue

            cycle = path[path.index(current):]
            key = frozenset(cycle)
            if key in reported:
                continue
            reported.add(key)

            chain = " -> ".join(cycle + [current])
            self._report(
                state, Severity.ERROR, DiagnosticCode.JUMP_CYCLE,
                f"Circular auto-jump chain: {chain}",
                line=script.nodes[cycle[0]].line, node=cycle[0], target=current,
            )

    # Reporting

    def _report(
        self,
        state: _CompileState,
        severity: Severity,
        code: DiagnosticCode,
        message: str,
        line: Optional[int] = None,
        node: Optional[str] = None,
        target: Optional[str] = None,
    ) -> None:
        diagnostic = Diagnostic(
            severity=severity,
            code=code,
            message=message,
            line=line if line is not None else (state.line or None),
            node=node,
            target=target,
        )
        state.diagnostics.append(diagnostic)

        source = state.script.source_name or "<source>"
        logger.log(_LOG_LEVELS[severity], f"[{source}] {diagnostic}")

    # Export

    def to_json(self, script: ParsedScript) -> dict[str, Any]:
        """Convert a compiled chapter to a JSON-ready dict."""
        return {
            'source': script.source_name,
            'contact': script.contact,
            'start': script.start_node,
            'nodes': [
                {
                    'name': node.name,
                    'messages': [m.to_payload() for m in node.messages],
                    'pauses': sorted(node.pause_offsets),
                    'jump': node.auto_jump_target,
                    'choices': [
                        {
                            'label': choice.label,
                            'target': choice.target_node or None,
                            'responses': [m.to_payload() for m in choice.response_messages],
                        }
                        for choice in node.choices
                    ],
                }
                for node in script
            ],
        }


def compile_script(source_text: str, source_name: str = "") -> tuple[ParsedScript, list[Diagnostic]]:
    """Compile with default settings."""
    return Compiler().compile(source_text, source_name)


def compile_script_file(
    input_path: str | Path,
    output_path: Optional[str | Path] = None,
) -> list[Diagnostic]:
    """
    Compile a chapter script to JSON.

    Args:
        input_path: Path to the chapter script
        output_path: Path to output .json file (default: same name with .json)

    Returns:
        The compile diagnostics
    """
    input_path = Path(input_path)
    output_path = Path(output_path) if output_path is not None else input_path.with_suffix('.json')

    compiler = Compiler()
    script, diagnostics = compiler.compile_file(input_path)
    with open(output_path, 'w', encoding='utf-8') as f:
        json.dump(compiler.to_json(script), f, indent=2, ensure_ascii=False)

    logger.info(f"Compiled {input_path} -> {output_path}")
    return diagnostics
