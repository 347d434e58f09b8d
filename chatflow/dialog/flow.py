"""
Flow engine - walks a compiled chapter and drives the presentation layer.

The engine owns the active conversation's state while it is open. Every
mutation to that state happens in one of three places: a confirmed
slice, a jump, or a committed resume. Presenting a slice only issues a
ticket; the state is not touched until the ticket is confirmed, so a
cancelled or abandoned slice costs nothing and is replayed on the next
advance.

Usage:
    engine = FlowEngine(catalog, store, presenter, event_bus=bus)
    engine.advance("emma")          # messages go to presenter.present()
    engine.select_choice("emma", 0) # after presenter.present_choices()
    engine.resume("emma")           # after presenter.present_pause()
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING, Callable, Optional, Union

from chatcore.core.events import ChatEvent, EventBus
from chatflow.components.conversation import ConversationState
from chatflow.dialog.compiler import Compiler
from chatflow.dialog.model import Choice, Message, Node, ParsedScript
from chatflow.dialog.presenter import PresentationTicket, Presenter
from chatflow.dialog.validator import Repair, StateValidator

if TYPE_CHECKING:
    from chatcore.resources.catalog import Story, StoryCatalog
    from chatflow.save.manager import ConversationStore
    from chatflow.save.profile import UnlockProfile

logger = logging.getLogger(__name__)


class FlowStatus(Enum):
    """What the engine is waiting for after a call returns."""
    IDLE = auto()
    PRESENTING = auto()        # Slice handed out, waiting on its ticket
    AWAITING_PAUSE = auto()    # Waiting on resume()
    AWAITING_CHOICE = auto()   # Waiting on select_choice()
    ENDED = auto()             # Story finished normally
    CONTENT_ERROR = auto()     # Story stopped on an authoring bug
    INTERRUPTED = auto()       # Slice cancelled; advance() replays it
    BUSY = auto()              # Request rejected, a slice is in flight
    INACTIVE = auto()          # Unknown or inactive conversation


@dataclass(eq=False)
class _PendingSlice:
    """Everything needed to commit a slice once its ticket is confirmed."""
    ticket: PresentationTicket
    state: ConversationState
    end_index: int = 0
    choice: Optional[Choice] = None


class FlowEngine:
    """
    Resumable interpreter for chat scripts.

    One conversation is active at a time. Opening another one cancels
    any slice in flight, force-saves the old conversation, then loads,
    repairs and compiles the new one.

    Args:
        catalog: Where stories come from
        store: Where conversation states live
        presenter: Presentation layer
        compiler: Chapter compiler (default: Compiler())
        event_bus: Side channel for ChatEvents
        profile: Long-lived unlock profile
        reset_cooldown: Minimum seconds between resets of one conversation
        clock: Monotonic time source
    """

    def __init__(
        self,
        catalog: StoryCatalog,
        store: ConversationStore,
        presenter: Presenter,
        compiler: Optional[Compiler] = None,
        event_bus: Optional[EventBus] = None,
        profile: Optional[UnlockProfile] = None,
        reset_cooldown: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.catalog = catalog
        self.store = store
        self.presenter = presenter
        self.compiler = compiler or Compiler()
        self.event_bus = event_bus
        self.profile = profile
        self.validator = StateValidator()
        self.reset_cooldown = reset_cooldown
        self._clock = clock

        # Active conversation
        self._story: Optional[Story] = None
        self._state: Optional[ConversationState] = None
        self._script: Optional[ParsedScript] = None
        self._status = FlowStatus.IDLE

        # In-flight work
        self._pending: Optional[_PendingSlice] = None
        self._resume_offset: Optional[int] = None
        self._in_present = False
        self._after_commit: Optional[FlowStatus] = None
        self._jumps_without_output = 0

        self._last_reset: dict[str, float] = {}

    # Properties

    @property
    def status(self) -> FlowStatus:
        return self._status

    @property
    def active_conversation_id(self) -> Optional[str]:
        if self._state is None:
            return None
        return self._state.conversation_id

    @property
    def state(self) -> Optional[ConversationState]:
        return self._state

    @property
    def script(self) -> Optional[ParsedScript]:
        return self._script

    @property
    def current_node(self) -> Optional[Node]:
        if self._state is None or self._script is None:
            return None
        return self._script.get(self._state.node_name)

    @property
    def is_presenting(self) -> bool:
        return self._pending is not None

    # Commands

    def advance(self, conversation_id: str) -> FlowStatus:
        """
        Continue a conversation from its persisted cursor.

        Opens the conversation first if it is not the active one. A
        paused conversation re-shows its pause, one waiting on a choice
        re-shows its choices.
        """
        if self._pending is not None and self.active_conversation_id == conversation_id:
            logger.debug(f"[{conversation_id}] advance rejected: slice in flight")
            return FlowStatus.BUSY

        if self.active_conversation_id != conversation_id or self._script is None:
            if conversation_id not in self.catalog:
                # Leaves the active conversation's status alone
                logger.warning(f"[{conversation_id}] No such story")
                return FlowStatus.INACTIVE
            status = self._open(conversation_id)
            if status is not None:
                self._status = status
                return status

        self._resume_offset = None
        return self._drive()

    def resume(self, conversation_id: str) -> FlowStatus:
        """Continue past the pause the conversation is waiting on."""
        if not self._is_active(conversation_id):
            return FlowStatus.INACTIVE
        if self._pending is not None:
            logger.debug(f"[{conversation_id}] resume rejected: slice in flight")
            return FlowStatus.BUSY

        if self._state.is_paused:
            # Flag is cleared when the resumed slice is confirmed
            self._resume_offset = self._state.next_message_index
        else:
            logger.debug(f"[{conversation_id}] resume without a pause - advancing")
        return self._drive()

    def select_choice(self, conversation_id: str, choice: Union[Choice, int]) -> FlowStatus:
        """
        Take a branch of the current node.

        Args:
            conversation_id: Active conversation
            choice: One of the node's Choices, or its index

        Raises:
            ValueError: choice does not belong to the current node
        """
        if not self._is_active(conversation_id):
            return FlowStatus.INACTIVE
        if self._pending is not None:
            logger.debug(f"[{conversation_id}] choice rejected: slice in flight")
            return FlowStatus.BUSY
        if self._status != FlowStatus.AWAITING_CHOICE:
            logger.warning(f"[{conversation_id}] choice ignored: not waiting for one ({self._status.name})")
            return self._status

        node = self.current_node
        selected = self._resolve_choice(node, choice)

        logger.debug(f"[{conversation_id}] {node.name}: chose '{selected.label}'")
        self._publish(
            ChatEvent.CHOICE_SELECTED,
            conversation_id=conversation_id,
            node=node.name,
            label=selected.label,
            target=selected.target_node or None,
        )
        self._jumps_without_output = 0

        responses = [m for m in selected.response_messages if not self._state.has_consumed(m)]
        if responses:
            status = self._present(node, responses, choice=selected)
            if status is not None:
                self._status = status
                return status
            return self._drive()

        status = self._follow_choice(selected)
        if status is not None:
            self._status = status
            return status
        return self._drive()

    def reset(self, conversation_id: str) -> FlowStatus:
        """
        Discard a conversation's state entirely.

        Resets closer together than reset_cooldown are ignored (duplicate
        triggers from one user action) and report BUSY.
        """
        now = self._clock()
        last = self._last_reset.get(conversation_id)
        if last is not None and now - last < self.reset_cooldown:
            logger.debug(f"[{conversation_id}] reset ignored: cooldown")
            return FlowStatus.BUSY
        self._last_reset[conversation_id] = now

        if self.active_conversation_id == conversation_id:
            self._cancel_pending()
            self._deactivate()
            self._status = FlowStatus.IDLE

        self.store.clear(conversation_id)
        self.presenter.discard(conversation_id)
        logger.info(f"[{conversation_id}] Story reset")
        self._publish(ChatEvent.STORY_RESET, conversation_id=conversation_id)
        return FlowStatus.IDLE

    def cancel(self, conversation_id: str) -> FlowStatus:
        """Cancel the slice in flight; the state is left as it was before it."""
        if not self._is_active(conversation_id):
            return FlowStatus.INACTIVE
        if self._pending is not None:
            self._cancel_pending()
        return self._status

    def close(self) -> None:
        """Cancel in-flight work, persist and release the active conversation."""
        if self._state is None:
            self.store.flush()
            return
        self._cancel_pending()
        conversation_id = self._state.conversation_id
        self.store.put(self._state)
        self.store.save(force=True)
        self._deactivate()
        self._status = FlowStatus.IDLE
        self._publish(ChatEvent.CONVERSATION_CLOSED, conversation_id=conversation_id)

    # Opening

    def _open(self, conversation_id: str) -> Optional[FlowStatus]:
        """Make a conversation active. Returns a status only if it cannot run."""
        story = self.catalog.get(conversation_id)
        if self._state is not None:
            self.close()

        state = self.store.get_or_create(conversation_id)
        self._story = story
        self._state = state
        self._script = None
        self._jumps_without_output = 0
        self._resume_offset = None

        if story.chapter_count == 0:
            return self._fail("story has no chapters")

        repairs = self.validator.validate_chapter(state, story.chapter_count)
        script = self._compile_chapter(story, state.chapter_index)
        if script is None:
            return self._fail(f"chapter {state.chapter_index} could not be compiled")

        if not state.node_name:
            state.node_name = script.start_node
            state.is_paused = script.nodes[state.node_name].pauses_at(0)
        repairs.extend(self.validator.validate(state, script))
        if Repair.NODE_RESET in repairs or Repair.INDEX_RESET in repairs:
            # Repaired cursor starts the node afresh, including a pause at 0
            state.is_paused = script.nodes[state.node_name].pauses_at(state.next_message_index)
        self._script = script

        if repairs:
            self._publish(
                ChatEvent.STATE_REPAIRED,
                conversation_id=conversation_id,
                repairs=repairs,
            )
        self._save()

        logger.debug(
            f"[{conversation_id}] Opened at chapter {state.chapter_index}, "
            f"{state.node_name}:{state.next_message_index}"
        )
        self._publish(
            ChatEvent.CONVERSATION_OPENED,
            conversation_id=conversation_id,
            chapter=state.chapter_index,
            node=state.node_name,
        )
        return None

    def _compile_chapter(self, story: Story, index: int) -> Optional[ParsedScript]:
        text = story.read_chapter(index)
        if text is None:
            return None
        script, _ = self.compiler.compile(text, source_name=story.chapter_name(index))
        if not script.nodes:
            return None
        return script

    def _deactivate(self) -> None:
        self._story = None
        self._state = None
        self._script = None
        self._resume_offset = None

    def _is_active(self, conversation_id: str) -> bool:
        if self._state is None or self._state.conversation_id != conversation_id:
            logger.warning(f"[{conversation_id}] Not the active conversation")
            return False
        return self._script is not None

    # Traversal

    def _drive(self) -> FlowStatus:
        """Step until the flow needs something from outside."""
        while True:
            status = self._step()
            if status is not None:
                self._status = status
                return status

    def _step(self) -> Optional[FlowStatus]:
        """One decision from the current cursor; None means keep going."""
        state = self._state
        node = self.current_node
        if node is None:
            return self._fail(f"node '{state.node_name}' not found")

        index = state.next_message_index
        resuming = self._resume_offset == index

        if state.is_paused and not resuming:
            logger.debug(f"[{state.conversation_id}] {node.name}: paused at {index}")
            self.presenter.present_pause()
            return FlowStatus.AWAITING_PAUSE

        end = node.next_pause_after(index)
        if end is None or end > node.message_count:
            end = node.message_count

        if index < end:
            messages = [m for m in node.messages[index:end] if not state.has_consumed(m)]
            if messages:
                return self._present(node, messages, end_index=end)
            # Everything in the slice was already seen
            self._commit_cursor(node, end)
            return None

        if state.is_paused:
            # Resumed a pause sitting at the end of the node
            state.is_paused = False
            self._save()

        return self._determine_next_action(node)

    def _determine_next_action(self, node: Node) -> Optional[FlowStatus]:
        if node.has_choices:
            logger.debug(f"[{self._state.conversation_id}] {node.name}: awaiting choice")
            self.presenter.present_choices(list(node.choices))
            return FlowStatus.AWAITING_CHOICE

        if node.auto_jump_target:
            return self._jump(node.auto_jump_target)

        return self._end()

    def _present(
        self,
        node: Node,
        messages: list[Message],
        end_index: int = 0,
        choice: Optional[Choice] = None,
    ) -> Optional[FlowStatus]:
        """
        Hand a slice to the presenter.

        Returns None if the presenter confirmed it synchronously (keep
        stepping), otherwise the status to report.
        """
        ticket = PresentationTicket(
            conversation_id=self._state.conversation_id,
            node_name=node.name,
            messages=messages,
            on_confirm=self._on_confirmed,
            on_cancel=self._on_cancelled,
            player=choice is not None,
        )
        pending = _PendingSlice(ticket=ticket, state=self._state, end_index=end_index, choice=choice)
        self._pending = pending
        self._status = FlowStatus.PRESENTING

        logger.debug(f"[{ticket.conversation_id}] {node.name}: presenting {len(messages)} messages")
        self._in_present = True
        try:
            self.presenter.present(list(messages), ticket)
        except Exception:
            logger.exception(f"[{ticket.conversation_id}] Presenter failed - slice cancelled")
            ticket.cancel()
        finally:
            self._in_present = False

        if ticket.cancelled:
            return FlowStatus.INTERRUPTED
        if ticket.settled and self._pending is not pending:
            return self._after_commit
        return FlowStatus.PRESENTING

    def _on_confirmed(self, ticket: PresentationTicket) -> bool:
        pending = self._pending
        state = self._state
        if (
            pending is None
            or pending.ticket is not ticket
            or pending.state is not state
            or state.conversation_id != ticket.conversation_id
            or state.node_name != ticket.node_name
        ):
            logger.warning(f"Stale confirmation ignored: {ticket!r}")
            return False

        self._pending = None
        state.record_presented(ticket.messages)
        self._apply_unlocks(ticket.messages)
        self._jumps_without_output = 0
        self._publish(
            ChatEvent.MESSAGES_PRESENTED,
            conversation_id=state.conversation_id,
            node=ticket.node_name,
            messages=list(ticket.messages),
            player=ticket.player,
        )

        if pending.choice is not None:
            self._after_commit = self._follow_choice(pending.choice)
        else:
            self._commit_cursor(self.current_node, pending.end_index)
            self._after_commit = None

        if not self._in_present:
            # Confirmed later, from the presenter's own loop
            if self._after_commit is not None:
                self._status = self._after_commit
            else:
                self._drive()
        return True

    def _on_cancelled(self, ticket: PresentationTicket) -> None:
        if self._pending is None or self._pending.ticket is not ticket:
            return
        self._pending = None
        self._status = FlowStatus.INTERRUPTED
        logger.debug(f"[{ticket.conversation_id}] {ticket.node_name}: slice cancelled")

    def _cancel_pending(self) -> None:
        if self._pending is not None:
            self._pending.ticket.cancel()
        self._pending = None

    def _commit_cursor(self, node: Node, end_index: int) -> None:
        """Move past a presented slice; landing on a pause arms it."""
        state = self._state
        state.next_message_index = end_index
        state.is_paused = node.pauses_at(end_index)
        self._resume_offset = None
        self._save()

    def _apply_unlocks(self, messages: list[Message]) -> None:
        state = self._state
        for message in messages:
            if not message.unlocks or not message.media_key:
                continue
            key = message.media_key
            if self.profile is not None:
                self.profile.unlock(state.conversation_id, key)
            if key in state.unlocked_ids:
                continue
            state.unlocked_ids.add(key)
            logger.info(f"[{state.conversation_id}] Unlocked {key}")
            self._publish(ChatEvent.ITEM_UNLOCKED, conversation_id=state.conversation_id, item_id=key)

    # Jumps

    def _resolve_choice(self, node: Node, choice: Union[Choice, int]) -> Choice:
        if isinstance(choice, int):
            if not 0 <= choice < len(node.choices):
                raise ValueError(f"Choice index {choice} out of range for node '{node.name}'")
            return node.choices[choice]
        for candidate in node.choices:
            if candidate is choice or candidate == choice:
                return candidate
        raise ValueError(f"Choice '{choice.label}' does not belong to node '{node.name}'")

    def _follow_choice(self, choice: Choice) -> Optional[FlowStatus]:
        if not choice.has_target:
            return self._end()
        return self._jump(choice.target_node)

    def _jump(self, target: str) -> Optional[FlowStatus]:
        """Move the cursor to target, crossing into the next chapter if needed."""
        state = self._state

        self._jumps_without_output += 1
        if self._jumps_without_output > len(self._script):
            return self._fail(f"runaway auto-jumps ending at '{target}'")

        if target in self._script:
            self._enter_node(target)
            return None

        next_chapter = state.chapter_index + 1
        if not self._story.has_chapter(next_chapter):
            return self._fail(f"jump target '{target}' not found and there is no next chapter")

        script = self._compile_chapter(self._story, next_chapter)
        if script is None:
            return self._fail(f"chapter {next_chapter} could not be compiled")
        if target not in script:
            return self._fail(f"jump target '{target}' not found in chapter {next_chapter}")

        # Commit the crossing only once the target resolves
        state.chapter_index = next_chapter
        self._script = script
        self._jumps_without_output = 0
        logger.debug(f"[{state.conversation_id}] Crossed into chapter {next_chapter}")
        self._publish(
            ChatEvent.CHAPTER_CHANGED,
            conversation_id=state.conversation_id,
            chapter=next_chapter,
            source=script.source_name,
        )
        self._enter_node(target)
        return None

    def _enter_node(self, name: str) -> None:
        state = self._state
        state.node_name = name
        state.next_message_index = 0
        state.is_paused = self._script.nodes[name].pauses_at(0)
        self._resume_offset = None
        self._save()

        logger.debug(f"[{state.conversation_id}] Entered {name}")
        self._publish(ChatEvent.NODE_ENTERED, conversation_id=state.conversation_id, node=name)

    # Terminal states

    def _end(self) -> FlowStatus:
        state = self._state
        logger.debug(f"[{state.conversation_id}] Story ended at {state.node_name}")
        self._save()
        self.presenter.present_end(content_error=False)
        self._publish(ChatEvent.STORY_ENDED, conversation_id=state.conversation_id, node=state.node_name)
        return FlowStatus.ENDED

    def _fail(self, reason: str) -> FlowStatus:
        conversation_id = self.active_conversation_id
        logger.error(f"[{conversation_id}] Content error: {reason}")
        if self._state is not None:
            self._save()
        self.presenter.present_end(content_error=True)
        self._publish(ChatEvent.CONTENT_ERROR, conversation_id=conversation_id, reason=reason)
        return FlowStatus.CONTENT_ERROR

    # Helpers

    def _save(self) -> None:
        self.store.put(self._state)
        self.store.save()

    def _publish(self, event_type: ChatEvent, **data) -> None:
        if self.event_bus is not None:
            self.event_bus.publish(event_type, **data)
