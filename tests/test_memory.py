"""Tests for session memory and the preference store."""

import pytest
import yaml

from browser_agent.config import DEFAULT_MODEL
from browser_agent.memory import PreferenceStore, Preferences, SessionMemory
from browser_agent.models import ConversationTurn


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


@pytest.fixture
def clean_env(monkeypatch):
    for var in ("NIM_API_KEY", "BROWSER_AGENT_MODEL", "FIRECRAWL_API_KEY"):
        monkeypatch.delenv(var, raising=False)


class TestHistory:
    def test_bounded_to_newest_twenty(self):
        memory = SessionMemory()
        for i in range(25):
            memory.append((1, "1"), ConversationTurn(role="user", content=str(i)))

        history = memory.get_history((1, "1"))
        assert len(history) == 20
        assert [t.content for t in history] == [str(i) for i in range(5, 25)]

    def test_appended_turns_are_timestamped_copies(self):
        memory = SessionMemory()
        turn = ConversationTurn(role="assistant", content="hi", timestamp=0.0)
        memory.append((1, "1"), turn)

        stored = memory.get_history((1, "1"))[0]
        assert stored is not turn
        assert stored.timestamp > 0

    def test_get_history_returns_a_copy(self):
        memory = SessionMemory()
        memory.append((1, "1"), ConversationTurn(role="user", content="a"))
        memory.get_history((1, "1")).clear()
        assert len(memory.get_history((1, "1"))) == 1

    def test_unknown_key_is_empty(self):
        assert SessionMemory().get_history((9, "2")) == []

    def test_panes_are_isolated(self):
        memory = SessionMemory()
        memory.append((1, "1"), ConversationTurn(role="user", content="left"))
        memory.append((1, "2"), ConversationTurn(role="user", content="right"))

        assert [t.content for t in memory.get_history((1, "1"))] == ["left"]
        assert [t.content for t in memory.get_history((1, "2"))] == ["right"]

    def test_clear_history(self):
        memory = SessionMemory()
        for key in ((1, "1"), (1, "2"), (2, "1")):
            memory.append(key, ConversationTurn(role="user", content="x"))

        assert memory.clear_history(1, "2") == 1
        assert memory.get_history((1, "1"))
        assert memory.clear_history(1) == 1
        assert memory.get_history((1, "1")) == []
        assert memory.get_history((2, "1"))


class TestTabContextCache:
    def test_fresh_then_stale(self):
        clock = FakeClock()
        memory = SessionMemory(clock=clock)
        memory.cache_tab_context(3, {"title": "Docs"})

        clock.now += 29.9
        assert memory.get_cached_tab_context(3) == {"title": "Docs"}
        clock.now += 0.2
        assert memory.get_cached_tab_context(3) is None

    def test_custom_max_age(self):
        clock = FakeClock()
        memory = SessionMemory(clock=clock)
        memory.cache_tab_context(3, {"title": "Docs"})
        clock.now += 2
        assert memory.get_cached_tab_context(3, max_age_ms=1000) is None

    def test_cached_context_is_isolated(self):
        memory = SessionMemory()
        context = {"headings": [{"text": "A"}]}
        memory.cache_tab_context(1, context)
        context["headings"].append({"text": "B"})

        cached = memory.get_cached_tab_context(1)
        cached["headings"].clear()
        assert memory.get_cached_tab_context(1) == {"headings": [{"text": "A"}]}

    def test_missing(self):
        assert SessionMemory().get_cached_tab_context(42) is None

    def test_all_tab_contexts_skips_stale_tabs(self):
        clock = FakeClock()
        memory = SessionMemory(clock=clock)
        memory.cache_tab_context(1, {"title": "Old"})
        clock.now += 20
        memory.cache_tab_context(2, {"title": "Inbox"})
        memory.cache_tab_context(3, {"title": "Docs"})
        clock.now += 15

        contexts = memory.all_tab_contexts()
        assert contexts == {2: {"title": "Inbox"}, 3: {"title": "Docs"}}
        contexts[2]["title"] = "changed"
        assert memory.get_cached_tab_context(2) == {"title": "Inbox"}


class TestPreferenceStore:
    def test_defaults_without_file(self, tmp_path, clean_env):
        prefs = PreferenceStore(tmp_path / "preferences.yaml").load()
        assert prefs == Preferences()
        assert prefs.model == DEFAULT_MODEL
        assert prefs.confirm_form_submission is True
        assert prefs.confirm_navigation is False

    def test_save_and_load(self, tmp_path, clean_env):
        path = tmp_path / "nested" / "preferences.yaml"
        store = PreferenceStore(path)
        store.save("api_key", "nvapi-abc")
        store.save("confirm_navigation", True)

        prefs = PreferenceStore(path).load()
        assert prefs.api_key == "nvapi-abc"
        assert prefs.confirm_navigation is True
        assert yaml.safe_load(path.read_text()) == {"api_key": "nvapi-abc", "confirm_navigation": True}

    def test_unknown_keys_in_file_ignored(self, tmp_path, clean_env):
        path = tmp_path / "preferences.yaml"
        path.write_text("model: meta/llama-3.1-8b-instruct\ntheme: dark\n")
        assert PreferenceStore(path).load().model == "meta/llama-3.1-8b-instruct"

    def test_malformed_file_falls_back_to_defaults(self, tmp_path, clean_env):
        path = tmp_path / "preferences.yaml"
        path.write_text("- just\n- a list\n")
        assert PreferenceStore(path).load() == Preferences()

    def test_environment_overrides_file(self, tmp_path, clean_env, monkeypatch):
        path = tmp_path / "preferences.yaml"
        path.write_text("api_key: from-file\n")
        monkeypatch.setenv("NIM_API_KEY", "from-env")
        monkeypatch.setenv("FIRECRAWL_API_KEY", "fc-123")

        prefs = PreferenceStore(path).load()
        assert prefs.api_key == "from-env"
        assert prefs.search_api_key == "fc-123"

    def test_unknown_preference_rejected(self, tmp_path):
        with pytest.raises(KeyError):
            PreferenceStore(tmp_path / "p.yaml").save("colour", "blue")
