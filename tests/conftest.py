"""
Shared fixtures for the test suite.
"""

import pytest

from meera.audio import AudioChannel
from meera.config import Config
from meera.orchestrator import TurnOrchestrator
from meera.store import ConversationStore

from fakes import FakeChat


@pytest.fixture
def history_path(tmp_path):
    return tmp_path / "history.json"


@pytest.fixture
def api_key(monkeypatch):
    monkeypatch.setattr(Config, "GEMINI_API_KEY", "test-key")
    return "test-key"


@pytest.fixture
def no_api_key(monkeypatch):
    monkeypatch.setattr(Config, "GEMINI_API_KEY", None)


@pytest.fixture
def make_orchestrator(history_path):
    """Build an orchestrator with zero delays and a store in tmp_path."""
    def _make(chat=None, capture=None, synth=None, output=None, **options):
        options.setdefault("reveal_interval", 0)
        options.setdefault("grace_delay", 0)
        options.setdefault("restart_debounce", 0)
        options.setdefault("speak_replies", synth is not None)
        options.setdefault("rollback_policy", "rollback")
        options.setdefault("restart_policy", "always")
        return TurnOrchestrator(
            ConversationStore(history_path),
            chat or FakeChat(),
            capture=capture,
            synthesizer=synth,
            audio=AudioChannel(output),
            **options,
        )
    return _make
