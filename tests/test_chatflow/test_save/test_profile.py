import json
import pytest
from chatflow.save.profile import UnlockProfile

def test_unlock_persists(tmp_path):
    profile = UnlockProfile(tmp_path / "profile.json")

    assert profile.unlock("emma", "cg/a.png") is True
    assert profile.unlock("emma", "cg/a.png") is False

    reloaded = UnlockProfile(tmp_path / "profile.json")
    assert reloaded.load()
    assert reloaded.unlocked("emma") == {"cg/a.png"}
    assert reloaded.is_unlocked("cg/a.png")

def test_unlocked_across_conversations(tmp_path):
    profile = UnlockProfile(tmp_path / "profile.json")
    profile.unlock("emma", "a")
    profile.unlock("noah", "b")

    assert profile.unlocked() == {"a", "b"}
    assert profile.unlocked("nobody") == set()

def test_file_layout(tmp_path):
    profile = UnlockProfile(tmp_path / "profile.json")
    profile.unlock("emma", "z")
    profile.unlock("emma", "a")

    with open(tmp_path / "profile.json") as f:
        assert json.load(f) == {"version": 1, "unlocked": {"emma": ["a", "z"]}}

def test_missing_file_is_empty(tmp_path):
    profile = UnlockProfile(tmp_path / "none.json")
    assert profile.load()
    assert profile.unlocked() == set()

def test_invalid_file(tmp_path):
    path = tmp_path / "profile.json"
    path.write_text(json.dumps({"version": 1, "unlocked": {"emma": "a"}}))

    profile = UnlockProfile(path)
    assert profile.load() is False
    assert profile.unlocked() == set()

def test_in_memory_profile():
    profile = UnlockProfile()
    assert profile.unlock("emma", "a")
    assert profile.save() is False
