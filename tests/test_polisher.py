"""Tests for the text polisher."""

from unittest.mock import MagicMock

import pytest

from streamsub.polisher import TextPolisher, split_text
from streamsub.completion_client import CompletionClient, GenerateClient
from streamsub.exceptions import CompletionError

@pytest.fixture
def client():
    return MagicMock(spec=CompletionClient)

@pytest.fixture
def polisher(client):
    return TextPolisher(client, "Polish: {{TRANSCRIPT}}", max_chars=10, temperature=0.2, max_tokens=50)

@pytest.mark.unit
def test_split_text():
    assert split_text("abcdefghij" * 3 + "xy", 10) == ["abcdefghij"] * 3 + ["xy"]
    assert split_text("", 10) == []
    with pytest.raises(ValueError):
        split_text("abc", 0)

@pytest.mark.unit
class TestTextPolisher:

    def test_blank_text_skips_request(self, polisher, client):
        assert polisher.polish("   ") is None
        assert polisher.polish("") is None
        client.complete.assert_not_called()

    def test_short_text_single_request(self, polisher, client):
        client.complete.return_value = "你好。"
        progress = []

        assert polisher.polish("你好", on_progress=lambda i, n: progress.append((i, n))) == "你好。"

        client.complete.assert_called_once_with("Polish: 你好", temperature=0.2, max_tokens=50)
        assert progress == [(1, 1)]

    def test_short_text_failure_returns_none(self, polisher, client):
        client.complete.side_effect = CompletionError("HTTP 500")
        assert polisher.polish("你好") is None

    def test_long_text_keeps_raw_for_failed_segment(self, polisher, client):
        raw = "a" * 10 + "b" * 10 + "c" * 5
        client.complete.side_effect = ["A.", CompletionError("timeout"), "C."]
        progress = []

        result = polisher.polish(raw, on_progress=lambda i, n: progress.append((i, n)))

        assert result == "A.\n" + "b" * 10 + "\nC."
        assert progress == [(1, 3), (2, 3), (3, 3)]
        prompts = [call.args[0] for call in client.complete.call_args_list]
        assert prompts == ["Polish: " + "a" * 10, "Polish: " + "b" * 10, "Polish: " + "c" * 5]

@pytest.mark.unit
class TestFallbackBackend:

    @pytest.fixture
    def fallback(self):
        fallback = MagicMock(spec=GenerateClient)
        fallback.url = "http://localhost:11434/api/generate"
        return fallback

    @pytest.fixture
    def polisher(self, client, fallback):
        return TextPolisher(client, "Polish: {{TRANSCRIPT}}", max_chars=10, temperature=0.2, max_tokens=50,
                            fallback=fallback, fallback_max_tokens=20)

    def test_primary_success_skips_fallback(self, polisher, client, fallback):
        client.complete.return_value = "你好。"
        assert polisher.polish("你好") == "你好。"
        fallback.complete.assert_not_called()

    def test_fallback_used_when_primary_fails(self, polisher, client, fallback):
        client.complete.side_effect = CompletionError("HTTP 500")
        fallback.complete.return_value = "你好！"

        assert polisher.polish("你好") == "你好！"

        client.complete.assert_called_once()
        fallback.complete.assert_called_once_with("Polish: 你好", temperature=0.2, max_tokens=20)

    def test_both_backends_failing_returns_none(self, polisher, client, fallback):
        client.complete.side_effect = CompletionError("HTTP 500")
        fallback.complete.side_effect = CompletionError("connection refused")
        assert polisher.polish("你好") is None

    def test_long_text_falls_back_per_segment(self, polisher, client, fallback):
        client.complete.side_effect = ["A.", CompletionError("timeout")]
        fallback.complete.return_value = "B."
        assert polisher.polish("a" * 10 + "b" * 10) == "A.\nB."
        fallback.complete.assert_called_once_with("Polish: " + "b" * 10, temperature=0.2, max_tokens=20)
