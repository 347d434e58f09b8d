"""
Typed event bus for the side channel between the engine and its hosts.

Events are Enum members so subscribers never match on magic strings.
The flow engine publishes what happened (messages presented, items
unlocked, story reset); the store publishes persistence outcomes.

Usage:
    bus = EventBus()
    bus.subscribe(ChatEvent.ITEM_UNLOCKED, on_unlock)
    bus.publish(ChatEvent.ITEM_UNLOCKED, conversation_id="emma", item_id="cg/beach.png")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable
from weakref import WeakMethod, ref

logger = logging.getLogger(__name__)


class ChatEvent(Enum):
    """Events published by the flow engine."""
    # Conversation lifecycle
    CONVERSATION_OPENED = auto()
    CONVERSATION_CLOSED = auto()
    STORY_RESET = auto()

    # Traversal
    NODE_ENTERED = auto()
    CHAPTER_CHANGED = auto()
    MESSAGES_PRESENTED = auto()
    CHOICE_SELECTED = auto()
    STATE_REPAIRED = auto()

    # Outcomes
    ITEM_UNLOCKED = auto()
    STORY_ENDED = auto()
    CONTENT_ERROR = auto()


class SaveEvent(Enum):
    """Events published by the conversation store."""
    SAVE_COMPLETED = auto()
    SAVE_THROTTLED = auto()
    SAVE_FAILED = auto()
    LOAD_COMPLETED = auto()
    LOAD_FAILED = auto()
    STATE_CREATED = auto()
    STATE_CLEARED = auto()


@dataclass
class Event:
    """
    Event data container.

    Attributes:
        type: The event type (Enum member)
        data: Keyword payload given to publish()
        consumed: Set by a handler to stop propagation
    """
    type: Enum
    data: dict[str, Any] = field(default_factory=dict)
    consumed: bool = False

    def consume(self) -> None:
        """Stop delivery to lower-priority handlers."""
        self.consumed = True

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def __getitem__(self, key: str) -> Any:
        return self.data[key]


EventHandler = Callable[[Event], None]


@dataclass(eq=False)
class _Subscription:
    priority: int
    handler: Any
    one_shot: bool

    def resolve(self) -> EventHandler | None:
        if isinstance(self.handler, (ref, WeakMethod)):
            return self.handler()
        return self.handler


class EventBus:
    """
    Publish/subscribe hub.

    Features:
    - Enum-typed events
    - Priority ordering (higher first, FIFO within a priority)
    - Weak references by default, so a dropped subscriber unregisters itself
    - One-shot handlers
    - Consumption stops propagation
    - Events published from inside a handler are queued, not nested
    """

    def __init__(self):
        self._subscriptions: dict[Enum, list[_Subscription]] = {}
        self._queue: list[Event] = []
        self._dispatching = False

    def subscribe(
        self,
        event_type: Enum,
        handler: EventHandler,
        priority: int = 0,
        one_shot: bool = False,
        weak: bool = True,
    ) -> None:
        """
        Register a handler for an event type.

        Args:
            event_type: The event type to listen for
            handler: Callback receiving the Event
            priority: Higher priority handlers run first
            one_shot: Remove the handler after its first call
            weak: Hold the handler through a weak reference
        """
        if weak:
            target = WeakMethod(handler) if hasattr(handler, '__self__') else ref(handler)
        else:
            target = handler

        subscriptions = self._subscriptions.setdefault(event_type, [])
        position = len(subscriptions)
        for i, existing in enumerate(subscriptions):
            if priority > existing.priority:
                position = i
                break
        subscriptions.insert(position, _Subscription(priority, target, one_shot))

    def unsubscribe(self, event_type: Enum, handler: EventHandler) -> None:
        """Remove every registration of handler for event_type."""
        subscriptions = self._subscriptions.get(event_type)
        if not subscriptions:
            return
        self._subscriptions[event_type] = [
            s for s in subscriptions if s.resolve() != handler
        ]

    def publish(self, event_type: Enum, **data: Any) -> Event:
        """
        Publish an event.

        Returns:
            The Event (check .consumed to see whether a handler claimed it)
        """
        event = Event(type=event_type, data=data)
        self.publish_event(event)
        return event

    def publish_event(self, event: Event) -> None:
        """Publish a pre-built event."""
        if self._dispatching:
            self._queue.append(event)
            return
        self._dispatch(event)

    def has_subscribers(self, event_type: Enum) -> bool:
        return any(s.resolve() is not None for s in self._subscriptions.get(event_type, []))

    def clear(self, event_type: Enum | None = None) -> None:
        """Drop handlers for one event type, or all of them."""
        if event_type is None:
            self._subscriptions.clear()
        else:
            self._subscriptions.pop(event_type, None)

    def _dispatch(self, event: Event) -> None:
        self._dispatching = True
        try:
            subscriptions = self._subscriptions.get(event.type, [])
            stale: list[_Subscription] = []

            for subscription in list(subscriptions):
                handler = subscription.resolve()
                if handler is None:
                    stale.append(subscription)
                    continue

                try:
                    handler(event)
                except Exception:
                    logger.exception("Error in event handler for %s", event.type)

                if subscription.one_shot:
                    stale.append(subscription)
                if event.consumed:
                    break

            for subscription in stale:
                if subscription in subscriptions:
                    subscriptions.remove(subscription)
        finally:
            self._dispatching = False

        while self._queue:
            self._dispatch(self._queue.pop(0))
