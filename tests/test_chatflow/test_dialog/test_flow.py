import pytest
from chatcore.core.events import ChatEvent
from chatcore.resources.catalog import Story, Chapter
from chatflow.dialog.flow import FlowEngine, FlowStatus
from chatflow.dialog.model import Choice
from chatflow.dialog.presenter import Presenter
from chatflow.dialog.validator import Repair
from chatflow.save.manager import ConversationStore
from chatflow.save.profile import UnlockProfile

PAUSED = """
title: start
a: m0
a: m1
-> ...
a: m2
a: m3
"""

BRANCHING = """
title: start
---
a: hello
a: how are you
-> ...
a: pick one
>> choice
-> "Fine"
#player: "Fine, thanks"
<<jump fine>>
-> "Bad"
<<jump bad>>
>> endchoice
===
title: fine
a: great
===
title: bad
a: oh no
"""

def texts(messages):
    return [m.text for m in messages]

def record_events(event_bus, *event_types):
    seen = []
    for event_type in event_types:
        event_bus.subscribe(event_type, lambda e: seen.append(e), weak=False)
    return seen

def test_pause_exactness(make_engine, recording_presenter):
    engine = make_engine(recording_presenter, {"npc": [PAUSED]})

    assert engine.advance("npc") == FlowStatus.AWAITING_PAUSE
    assert [texts(s) for s in recording_presenter.slices] == [["m0", "m1"]]
    assert recording_presenter.pauses == 1
    assert engine.state.is_paused
    assert engine.state.next_message_index == 2

    assert engine.resume("npc") == FlowStatus.ENDED
    assert [texts(s) for s in recording_presenter.slices] == [["m0", "m1"], ["m2", "m3"]]
    assert recording_presenter.ends == [False]
    assert not engine.state.is_paused

def test_advance_while_paused_reshows_pause(make_engine, recording_presenter):
    engine = make_engine(recording_presenter, {"npc": [PAUSED]})
    engine.advance("npc")

    assert engine.advance("npc") == FlowStatus.AWAITING_PAUSE
    assert recording_presenter.pauses == 2
    assert len(recording_presenter.slices) == 1

def test_pause_at_end_of_node_does_not_repeat(make_engine, recording_presenter):
    engine = make_engine(recording_presenter, {"npc": ["title: start\na: only\n-> ...\n"]})

    assert engine.advance("npc") == FlowStatus.AWAITING_PAUSE
    assert engine.resume("npc") == FlowStatus.ENDED
    assert engine.advance("npc") == FlowStatus.ENDED
    assert recording_presenter.pauses == 1

def test_pause_before_first_message(make_engine, recording_presenter):
    engine = make_engine(recording_presenter, {"npc": ["title: start\n-> ...\na: later\n"]})

    assert engine.advance("npc") == FlowStatus.AWAITING_PAUSE
    assert recording_presenter.slices == []
    assert engine.resume("npc") == FlowStatus.ENDED
    assert texts(recording_presenter.slices[0]) == ["later"]

def test_choice_with_responses(make_engine, recording_presenter, event_bus):
    events = record_events(event_bus, ChatEvent.CHOICE_SELECTED, ChatEvent.NODE_ENTERED)
    engine = make_engine(recording_presenter, {"npc": [BRANCHING]})
    engine.advance("npc")

    assert engine.resume("npc") == FlowStatus.AWAITING_CHOICE
    assert recording_presenter.choices == [["Fine", "Bad"]]

    assert engine.select_choice("npc", 0) == FlowStatus.ENDED
    assert texts(recording_presenter.slices[-2]) == ["Fine, thanks"]
    assert recording_presenter.tickets[-2].player
    assert texts(recording_presenter.slices[-1]) == ["great"]
    assert engine.state.node_name == "fine"
    assert texts(engine.state.history) == ["hello", "how are you", "pick one", "Fine, thanks", "great"]

    assert [e.type for e in events] == [ChatEvent.CHOICE_SELECTED, ChatEvent.NODE_ENTERED]
    assert events[0]["label"] == "Fine"

def test_choice_without_responses_jumps_immediately(make_engine, recording_presenter):
    engine = make_engine(recording_presenter, {"npc": [BRANCHING]})
    engine.advance("npc")
    engine.resume("npc")

    assert engine.select_choice("npc", engine.current_node.choices[1]) == FlowStatus.ENDED
    assert texts(recording_presenter.slices[-1]) == ["oh no"]

def test_choice_without_target_ends_normally(make_engine, recording_presenter):
    source = 'title: start\na: hi\n>> choice\n-> "Bye"\n#player: "bye"\n>> endchoice\n'
    engine = make_engine(recording_presenter, {"npc": [source]})

    assert engine.advance("npc") == FlowStatus.AWAITING_CHOICE
    assert engine.select_choice("npc", 0) == FlowStatus.ENDED
    assert recording_presenter.ends == [False]
    assert texts(engine.state.history) == ["hi", "bye"]

def test_choice_exclusivity(make_engine, recording_presenter):
    source = 'title: A\na: hi\n>> choice\n-> "Go"\n<<jump B>>\n>> endchoice\n<<jump B>>\ntitle: B\nb: there\n'
    engine = make_engine(recording_presenter, {"npc": [source]})

    assert engine.advance("npc") == FlowStatus.AWAITING_CHOICE
    assert engine.state.node_name == "A"
    assert texts(recording_presenter.slices[0]) == ["hi"]
    assert len(recording_presenter.slices) == 1

def test_invalid_choice_raises(make_engine, recording_presenter):
    engine = make_engine(recording_presenter, {"npc": [BRANCHING]})
    engine.advance("npc")
    engine.resume("npc")

    with pytest.raises(ValueError):
        engine.select_choice("npc", 5)
    with pytest.raises(ValueError):
        engine.select_choice("npc", Choice(label="Elsewhere", target_node="x"))
    assert engine.status == FlowStatus.AWAITING_CHOICE

def test_choice_ignored_when_not_awaiting(make_engine, recording_presenter):
    engine = make_engine(recording_presenter, {"npc": [BRANCHING]})
    engine.advance("npc")

    assert engine.select_choice("npc", 0) == FlowStatus.AWAITING_PAUSE
    assert engine.state.node_name == "start"

def test_chapter_crossing(make_engine, manual_presenter, event_bus):
    events = record_events(event_bus, ChatEvent.CHAPTER_CHANGED)
    chapters = [
        "title: A\na: hi\n<<jump X>>\n",
        "title: Y\ny: skipped\ntitle: X\nx: there\n",
    ]
    engine = make_engine(manual_presenter, {"npc": chapters})

    assert engine.advance("npc") == FlowStatus.PRESENTING
    assert manual_presenter.tickets[0].confirm()

    assert engine.status == FlowStatus.PRESENTING
    assert engine.state.chapter_index == 1
    assert engine.state.node_name == "X"
    assert engine.state.next_message_index == 0
    assert texts(manual_presenter.slices[1]) == ["there"]
    assert events[0]["chapter"] == 1

def test_missing_target_in_last_chapter_is_content_error(make_engine, recording_presenter, event_bus):
    events = record_events(event_bus, ChatEvent.CONTENT_ERROR)
    engine = make_engine(recording_presenter, {"npc": ["title: A\na: hi\n<<jump Nowhere>>\n"]})

    assert engine.advance("npc") == FlowStatus.CONTENT_ERROR
    assert recording_presenter.ends == [True]
    assert engine.state.node_name == "A"
    assert len(events) == 1

def test_failed_crossing_keeps_cursor(make_engine, recording_presenter):
    chapters = ["title: A\na: hi\n<<jump X>>\n", "title: Y\ny: nope\n"]
    engine = make_engine(recording_presenter, {"npc": chapters})

    assert engine.advance("npc") == FlowStatus.CONTENT_ERROR
    assert engine.state.chapter_index == 0
    assert engine.state.node_name == "A"
    assert engine.script.source_name == "npc_0"

def test_unreadable_chapter_is_content_error(make_engine, recording_presenter, catalog, tmp_path):
    catalog.register(Story(id="npc", chapters=[Chapter(name="gone", path=tmp_path / "gone.chat")]))
    engine = make_engine(recording_presenter)

    assert engine.advance("npc") == FlowStatus.CONTENT_ERROR
    assert recording_presenter.ends == [True]

def test_runaway_jumps_are_content_error(make_engine, recording_presenter):
    source = "title: A\na: hi\n<<jump B>>\ntitle: B\nb: yo\n<<jump A>>\n"
    engine = make_engine(recording_presenter, {"npc": [source]})

    assert engine.advance("npc") == FlowStatus.CONTENT_ERROR
    assert texts(engine.state.history) == ["hi", "yo"]

def test_routing_nodes_pass_through(make_engine, recording_presenter):
    source = "title: A\n<<jump B>>\ntitle: B\n<<jump C>>\ntitle: C\nc: arrived\n"
    engine = make_engine(recording_presenter, {"npc": [source]})

    assert engine.advance("npc") == FlowStatus.ENDED
    assert engine.state.node_name == "C"
    assert texts(engine.state.history) == ["arrived"]

def test_resume_replays_nothing_twice(tmp_path, catalog, event_bus, clock, recording_presenter):
    catalog.register(Story.from_sources("npc", [BRANCHING]))

    # Uninterrupted run
    straight_store = ConversationStore(tmp_path / "straight", clock=clock)
    straight = FlowEngine(catalog, straight_store, recording_presenter, clock=clock)
    straight.advance("npc")
    straight.resume("npc")
    straight.select_choice("npc", 0)
    expected = [m.id for m in straight.state.history]

    # Run with a restart at the pause and another at the choice
    first = FlowEngine(catalog, ConversationStore(tmp_path / "saves", clock=clock), recording_presenter, clock=clock)
    assert first.advance("npc") == FlowStatus.AWAITING_PAUSE
    first.close()

    second = FlowEngine(catalog, ConversationStore(tmp_path / "saves", clock=clock), recording_presenter, clock=clock)
    assert second.advance("npc") == FlowStatus.AWAITING_PAUSE
    assert second.resume("npc") == FlowStatus.AWAITING_CHOICE
    second.close()

    third = FlowEngine(catalog, ConversationStore(tmp_path / "saves", clock=clock), recording_presenter, clock=clock)
    assert third.advance("npc") == FlowStatus.AWAITING_CHOICE
    assert third.select_choice("npc", 0) == FlowStatus.ENDED

    history = [m.id for m in third.state.history]
    assert history == expected
    assert len(set(history)) == len(history)

def test_cancel_leaves_state_untouched(make_engine, manual_presenter):
    engine = make_engine(manual_presenter, {"npc": [PAUSED]})
    engine.advance("npc")
    manual_presenter.tickets[0].confirm()
    assert engine.status == FlowStatus.AWAITING_PAUSE

    assert engine.resume("npc") == FlowStatus.PRESENTING
    before = engine.state.clone()

    assert engine.cancel("npc") == FlowStatus.INTERRUPTED
    assert engine.state == before
    assert engine.state.is_paused
    assert manual_presenter.tickets[1].confirm() is False

    assert engine.advance("npc") == FlowStatus.AWAITING_PAUSE

def test_interrupted_slice_is_replayed(make_engine, manual_presenter):
    engine = make_engine(manual_presenter, {"npc": [PAUSED]})

    engine.advance("npc")
    engine.cancel("npc")
    assert engine.state.history == []
    assert engine.state.next_message_index == 0

    assert engine.advance("npc") == FlowStatus.PRESENTING
    assert texts(manual_presenter.slices[1]) == ["m0", "m1"]
    manual_presenter.tickets[1].confirm()
    assert engine.status == FlowStatus.AWAITING_PAUSE

def test_requests_rejected_while_presenting(make_engine, manual_presenter):
    engine = make_engine(manual_presenter, {"npc": [PAUSED]})
    engine.advance("npc")

    assert engine.advance("npc") == FlowStatus.BUSY
    assert engine.resume("npc") == FlowStatus.BUSY
    assert engine.select_choice("npc", 0) == FlowStatus.BUSY
    assert len(manual_presenter.slices) == 1

def test_switching_conversation_discards_stale_confirmation(make_engine, manual_presenter, store, event_bus):
    events = record_events(event_bus, ChatEvent.CONVERSATION_CLOSED, ChatEvent.CONVERSATION_OPENED)
    engine = make_engine(manual_presenter, {"a": [PAUSED], "b": [PAUSED]})

    engine.advance("a")
    stale = manual_presenter.tickets[0]
    assert engine.advance("b") == FlowStatus.PRESENTING

    assert stale.cancelled
    assert stale.confirm() is False
    assert store.get("a").history == []
    assert engine.active_conversation_id == "b"
    assert engine.state.history == []
    assert [e.type for e in events] == [
        ChatEvent.CONVERSATION_OPENED,
        ChatEvent.CONVERSATION_CLOSED,
        ChatEvent.CONVERSATION_OPENED,
    ]

def test_reset_discards_state(make_engine, recording_presenter, store, clock, event_bus):
    events = record_events(event_bus, ChatEvent.STORY_RESET)
    engine = make_engine(recording_presenter, {"npc": [PAUSED]})
    engine.advance("npc")

    assert engine.reset("npc") == FlowStatus.IDLE
    assert not store.has("npc")
    assert engine.active_conversation_id is None
    assert recording_presenter.discarded == ["npc"]
    assert len(events) == 1

    assert engine.advance("npc") == FlowStatus.AWAITING_PAUSE
    assert texts(recording_presenter.slices[-1]) == ["m0", "m1"]

def test_reset_is_rate_limited(make_engine, recording_presenter, clock):
    engine = make_engine(recording_presenter, {"npc": [PAUSED]})

    assert engine.reset("npc") == FlowStatus.IDLE
    assert engine.reset("npc") == FlowStatus.BUSY
    clock.advance(2.5)
    assert engine.reset("npc") == FlowStatus.IDLE

def test_unlocks_applied_on_confirmation(tmp_path, catalog, event_bus, clock, manual_presenter):
    events = record_events(event_bus, ChatEvent.ITEM_UNLOCKED)
    profile = UnlockProfile(tmp_path / "profile.json")
    store = ConversationStore(tmp_path / "saves", event_bus=event_bus, profile=profile, clock=clock)
    catalog.register(Story.from_sources("npc", [
        "title: start\n>> media npc type:image unlock:true path:x.png\n-> ...\na: after\n"
    ]))
    engine = FlowEngine(catalog, store, manual_presenter, event_bus=event_bus, profile=profile, clock=clock)

    engine.advance("npc")
    assert engine.state.unlocked_ids == set()
    manual_presenter.tickets[0].confirm()

    assert engine.state.unlocked_ids == {"x.png"}
    assert profile.unlocked("npc") == {"x.png"}
    assert [e["item_id"] for e in events] == ["x.png"]

    # Unlocks outlive a reset through the profile
    engine.reset("npc")
    engine.advance("npc")
    assert engine.state.unlocked_ids == {"x.png"}
    assert engine.state.history == []

def test_inactive_requests(make_engine, recording_presenter):
    engine = make_engine(recording_presenter, {"npc": [PAUSED]})

    assert engine.advance("nobody") == FlowStatus.INACTIVE
    assert engine.resume("npc") == FlowStatus.INACTIVE
    assert engine.select_choice("npc", 0) == FlowStatus.INACTIVE
    assert engine.cancel("npc") == FlowStatus.INACTIVE

def test_repaired_state_reported(make_engine, recording_presenter, store, event_bus):
    events = record_events(event_bus, ChatEvent.STATE_REPAIRED)
    state = store.get_or_create("npc")
    state.node_name = "deleted"
    state.next_message_index = 3
    store.put(state)
    engine = make_engine(recording_presenter, {"npc": [PAUSED]})

    assert engine.advance("npc") == FlowStatus.AWAITING_PAUSE
    assert events[0]["repairs"] == [Repair.NODE_RESET]
    assert texts(recording_presenter.slices[0]) == ["m0", "m1"]

@pytest.mark.parametrize("node_name, index", [("Renamed", 0), ("A", 9)])
def test_repaired_cursor_honours_pause_at_start(make_engine, recording_presenter, store, node_name, index):
    state = store.get_or_create("npc")
    state.node_name = node_name
    state.next_message_index = index
    store.put(state)
    engine = make_engine(recording_presenter, {"npc": ["title: A\n-> ...\nemma: one\nemma: two\n"]})

    assert engine.advance("npc") == FlowStatus.AWAITING_PAUSE
    assert recording_presenter.slices == []
    assert engine.state.is_paused

    assert engine.resume("npc") == FlowStatus.ENDED
    assert recording_presenter.texts == ["one", "two"]

def test_unknown_story_keeps_active_choice(make_engine, recording_presenter):
    engine = make_engine(recording_presenter, {"npc": [BRANCHING]})
    engine.advance("npc")
    assert engine.resume("npc") == FlowStatus.AWAITING_CHOICE

    assert engine.advance("ghost") == FlowStatus.INACTIVE
    assert engine.status == FlowStatus.AWAITING_CHOICE
    assert engine.select_choice("npc", 0) == FlowStatus.ENDED
    assert recording_presenter.texts[-2:] == ["Fine, thanks", "great"]

def test_resetting_other_story_keeps_active_choice(make_engine, recording_presenter):
    engine = make_engine(recording_presenter, {"npc": [BRANCHING], "other": [PAUSED]})
    engine.advance("npc")
    engine.resume("npc")

    assert engine.reset("other") == FlowStatus.IDLE
    assert engine.active_conversation_id == "npc"
    assert engine.status == FlowStatus.AWAITING_CHOICE
    assert engine.select_choice("npc", 1) == FlowStatus.ENDED
    assert recording_presenter.texts[-1] == "oh no"

def test_presenter_failure_interrupts(make_engine):
    class BrokenPresenter(Presenter):
        def present(self, messages, ticket):
            raise RuntimeError("widget pool exhausted")

        def present_choices(self, choices):
            pass

    engine = make_engine(BrokenPresenter(), {"npc": [PAUSED]})

    assert engine.advance("npc") == FlowStatus.INTERRUPTED
    assert engine.state.history == []
    assert not engine.is_presenting

def test_close_saves_progress(make_engine, recording_presenter, store, clock):
    engine = make_engine(recording_presenter, {"npc": [PAUSED]})
    engine.advance("npc")
    assert store.dirty

    engine.close()

    assert not store.dirty
    assert engine.active_conversation_id is None
    reloaded = ConversationStore(store.save_path, clock=clock)
    assert reloaded.get("npc").next_message_index == 2
