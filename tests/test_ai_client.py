import pytest
import requests

from abengine import ai_client
from abengine.ai_client import OllamaHypothesisGenerator, build_prompt
from abengine.exceptions import HypothesisGenerationFailed
from abengine.models import ChangeType


class FakeResponse:
    def __init__(self, content, status_code=200):
        self._content = content
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return {"message": {"role": "assistant", "content": self._content}}


def _reply(monkeypatch, content, status_code=200):
    calls = []

    def fake_post(url, json=None, timeout=None):
        calls.append({"url": url, "json": json, "timeout": timeout})
        return FakeResponse(content, status_code)

    monkeypatch.setattr(ai_client.requests, "post", fake_post)
    return calls


def test_parses_json_hypothesis(monkeypatch):
    calls = _reply(monkeypatch, '{"hypothesis": "Show prices on the menu", "change_type": "menu", "priority": 7}')
    generator = OllamaHypothesisGenerator(host="http://ollama:11434", model="llama3", timeout=5)

    hypothesis = generator.next_hypothesis("site-1", [])

    assert hypothesis.text == "Show prices on the menu"
    assert hypothesis.change_type is ChangeType.MENU
    assert hypothesis.priority_score == 7.0
    assert calls[0]["url"] == "http://ollama:11434/api/chat"
    assert calls[0]["json"]["model"] == "llama3"
    assert calls[0]["timeout"] == 5


def test_strips_code_fences(monkeypatch):
    _reply(monkeypatch, '```json\n{"hypothesis": "Bigger photos", "change_type": "image", "priority": "3"}\n```')

    hypothesis = OllamaHypothesisGenerator().next_hypothesis("site-1", [])

    assert hypothesis.text == "Bigger photos"
    assert hypothesis.change_type is ChangeType.IMAGE
    assert hypothesis.priority_score == 3.0


def test_plain_text_becomes_the_hypothesis(monkeypatch):
    _reply(monkeypatch, "Move the phone number above the fold")

    hypothesis = OllamaHypothesisGenerator().next_hypothesis("site-1", [])

    assert hypothesis.text == "Move the phone number above the fold"
    assert hypothesis.change_type is ChangeType.OTHER
    assert hypothesis.priority_score == 0.0


def test_unknown_change_type_and_bad_priority(monkeypatch):
    _reply(monkeypatch, '{"hypothesis": "Try a video", "change_type": "video", "priority": "high"}')

    hypothesis = OllamaHypothesisGenerator().next_hypothesis("site-1", [])

    assert hypothesis.change_type is ChangeType.OTHER
    assert hypothesis.priority_score == 0.0


def test_connection_error_is_wrapped(monkeypatch):
    def fake_post(url, json=None, timeout=None):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr(ai_client.requests, "post", fake_post)

    with pytest.raises(HypothesisGenerationFailed):
        OllamaHypothesisGenerator().next_hypothesis("site-1", [])


def test_http_error_is_wrapped(monkeypatch):
    _reply(monkeypatch, "", status_code=500)

    with pytest.raises(HypothesisGenerationFailed):
        OllamaHypothesisGenerator().next_hypothesis("site-1", [])


@pytest.mark.parametrize("content", ["", "   ", '{"change_type": "copy"}', "[1, 2]"])
def test_missing_hypothesis_fails(monkeypatch, content):
    _reply(monkeypatch, content)

    with pytest.raises(HypothesisGenerationFailed):
        OllamaHypothesisGenerator().next_hypothesis("site-1", [])


def test_prompt_lists_recent_learnings_only():
    learnings = [
        {"hypothesis": f"idea {i}", "change_type": "copy", "result": "reverted"} for i in range(15)
    ]

    prompt = build_prompt("site-1", learnings)

    assert "- idea 14 (" in prompt
    assert "- idea 4 (" not in prompt
    assert "site-1" in prompt
    assert "copy|image|layout|color|menu|other" in prompt


def test_prompt_without_history():
    assert "- none yet" in build_prompt("site-1", [])
