import os
import sys
import pytest

# Ensure chatcore/chatflow can be imported
sys.path.append(os.getcwd())


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def event_bus():
    """Fresh EventBus for each test."""
    from chatcore.core.events import EventBus
    return EventBus()


@pytest.fixture
def recording_presenter():
    """Presenter that records calls and confirms slices immediately."""
    from chatflow.dialog.presenter import Presenter

    class RecordingPresenter(Presenter):
        def __init__(self, auto_confirm=True):
            self.auto_confirm = auto_confirm
            self.slices = []
            self.tickets = []
            self.choices = []
            self.pauses = 0
            self.ends = []
            self.discarded = []

        @property
        def texts(self):
            return [m.text for s in self.slices for m in s]

        def present(self, messages, ticket):
            self.slices.append(list(messages))
            self.tickets.append(ticket)
            if self.auto_confirm:
                ticket.confirm()

        def present_choices(self, choices):
            self.choices.append([c.label for c in choices])

        def present_pause(self):
            self.pauses += 1

        def present_end(self, content_error=False):
            self.ends.append(content_error)

        def discard(self, conversation_id):
            self.discarded.append(conversation_id)

    return RecordingPresenter()


@pytest.fixture
def manual_presenter(recording_presenter):
    """Recording presenter that leaves tickets for the test to settle."""
    recording_presenter.auto_confirm = False
    return recording_presenter


@pytest.fixture
def catalog():
    from chatcore.resources.catalog import StoryCatalog
    return StoryCatalog()


@pytest.fixture
def store(tmp_path, event_bus, clock):
    from chatflow.save.manager import ConversationStore
    return ConversationStore(tmp_path / "saves", event_bus=event_bus, clock=clock)


@pytest.fixture
def make_engine(catalog, store, event_bus, clock):
    """Build a FlowEngine over in-memory stories."""
    from chatcore.resources.catalog import Story
    from chatflow.dialog.flow import FlowEngine

    def _make(presenter, stories=None, **kwargs):
        for story_id, sources in (stories or {}).items():
            catalog.register(Story.from_sources(story_id, sources))
        kwargs.setdefault("event_bus", event_bus)
        kwargs.setdefault("clock", clock)
        return FlowEngine(catalog, store, presenter, **kwargs)

    return _make
