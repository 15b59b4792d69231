"""Tests for the chat completion client using a mocked requests session."""

import io
import json
from unittest.mock import MagicMock

import pytest
import requests

from streamsub.completion_client import CompletionClient, GenerateClient, render_prompt, strip_reasoning
from streamsub.exceptions import CompletionError

URL = "http://127.0.0.1:1234/v1/chat/completions"

def _response(status_code=200, payload=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    if isinstance(payload, Exception):
        response.json.side_effect = payload
    else:
        response.json.return_value = payload
    return response

def _stream_response(lines, status_code=200):
    response = MagicMock()
    response.status_code = status_code
    response.iter_lines.return_value = iter(line.encode("utf-8") for line in lines)
    response.__enter__.return_value = response
    response.__exit__.return_value = False
    return response

@pytest.fixture
def session():
    return MagicMock(spec=requests.Session)

@pytest.fixture
def client(session):
    return CompletionClient(url=URL, model="test-model", timeout=5, session=session)

@pytest.mark.unit
class TestHelpers:

    def test_render_prompt(self):
        assert render_prompt("Fix: {{TRANSCRIPT}}", "abc") == "Fix: abc"
        assert render_prompt("{{TRANSCRIPT}}!", "abcdef", max_chars=3) == "abc!"

    def test_strip_reasoning(self):
        assert strip_reasoning("<think>hmm\nlet me see</think>\n答案。") == "答案。"
        assert strip_reasoning("stray reasoning</think> final") == "final"
        assert strip_reasoning("  plain  ") == "plain"

@pytest.mark.unit
class TestComplete:

    def test_sends_single_user_message(self, client, session):
        session.post.return_value = _response(payload={"choices": [{"message": {"content": "你好。"}}]})

        assert client.complete("prompt text", temperature=0.1, max_tokens=100) == "你好。"

        args, kwargs = session.post.call_args
        assert args[0] == URL
        assert kwargs["timeout"] == 5
        assert kwargs["json"] == {
            "model": "test-model",
            "messages": [{"role": "user", "content": "prompt text"}],
            "temperature": 0.1,
            "max_tokens": 100,
        }

    def test_reasoning_is_stripped(self, client, session):
        session.post.return_value = _response(
            payload={"choices": [{"message": {"content": "<think>draft</think>Final text."}}]}
        )
        assert client.complete("p") == "Final text."

    def test_falls_back_to_reasoning_field(self, client, session):
        session.post.return_value = _response(
            payload={"choices": [{"message": {"content": "", "reasoning": "From reasoning."}}]}
        )
        assert client.complete("p") == "From reasoning."

    def test_http_error_raises(self, client, session):
        session.post.return_value = _response(status_code=500, text="internal error")
        with pytest.raises(CompletionError, match="HTTP 500"):
            client.complete("p")

    def test_transport_error_raises(self, client, session):
        session.post.side_effect = requests.Timeout("timed out")
        with pytest.raises(CompletionError):
            client.complete("p")

    @pytest.mark.parametrize("payload", [
        ValueError("not json"),
        {"choices": []},
        {"unexpected": True},
        {"choices": [{"message": {"content": "<think>only thinking</think>"}}]},
    ])
    def test_bad_bodies_raise(self, client, session, payload):
        session.post.return_value = _response(payload=payload)
        with pytest.raises(CompletionError):
            client.complete("p")

@pytest.mark.unit
class TestStream:

    def test_accumulates_deltas_until_done(self, client, session):
        frames = [
            {"choices": [{"delta": {"content": "<think>x</think>"}}]},
            {"choices": [{"delta": {"content": "Hello"}}]},
            {"choices": [{"delta": {}}]},
            {"choices": [{"delta": {"content": " world"}}]},
        ]
        lines = [f"data: {json.dumps(frame)}" for frame in frames]
        lines[2:2] = ["", ": keep-alive", "data: {not json"]
        lines += ["data: [DONE]", 'data: {"choices": [{"delta": {"content": "ignored"}}]}']
        session.post.return_value = _stream_response(lines)
        tokens = []

        assert client.stream("p", on_token=tokens.append) == "Hello world"

        assert tokens == ["<think>x</think>", "Hello", " world"]
        kwargs = session.post.call_args[1]
        assert kwargs["stream"] is True
        assert kwargs["json"]["stream"] is True

    def test_utf8_body_without_charset_header(self, client, session):
        body = (
            'data: {"choices":[{"delta":{"content":"总结"}}]}\n\n'
            'data: {"choices":[{"delta":{"content":"：人物"}}]}\n\n'
            "data: [DONE]\n\n"
        ).encode("utf-8")
        response = requests.Response()
        response.status_code = 200
        response.headers["Content-Type"] = "text/event-stream"
        response.raw = io.BytesIO(body)
        # What requests derives from a text/* type without a charset
        response.encoding = requests.utils.get_encoding_from_headers(response.headers)
        session.post.return_value = response

        assert response.encoding == "ISO-8859-1"
        assert client.stream("p") == "总结：人物"

    def test_http_error_raises(self, client, session):
        session.post.return_value = _stream_response([], status_code=503)
        with pytest.raises(CompletionError):
            client.stream("p")

    def test_connection_error_raises(self, client, session):
        session.post.side_effect = requests.ConnectionError("refused")
        with pytest.raises(CompletionError):
            client.stream("p")

@pytest.mark.unit
class TestGenerateClient:

    @pytest.fixture
    def generate(self, session):
        return GenerateClient(url="http://localhost:11434/api/generate", model="qwen2:7b",
                              timeout=7, context_tokens=4096, session=session)

    def test_sends_generate_body(self, generate, session):
        session.post.return_value = _response(payload={"response": "  你好。\n"})

        assert generate.complete("prompt text", temperature=0.1, max_tokens=2000) == "你好。"

        args, kwargs = session.post.call_args
        assert args[0] == "http://localhost:11434/api/generate"
        assert kwargs["timeout"] == 7
        assert kwargs["json"] == {
            "model": "qwen2:7b",
            "prompt": "prompt text",
            "stream": False,
            "options": {"temperature": 0.1, "num_predict": 2000, "num_ctx": 4096},
        }

    def test_http_error_raises(self, generate, session):
        session.post.return_value = _response(status_code=404, text="model not found")
        with pytest.raises(CompletionError, match="HTTP 404"):
            generate.complete("p")

    def test_connection_error_raises(self, generate, session):
        session.post.side_effect = requests.ConnectionError("refused")
        with pytest.raises(CompletionError):
            generate.complete("p")

    @pytest.mark.parametrize("payload", [
        ValueError("not json"),
        {"done": True},
        {"response": None},
        {"response": "   "},
    ])
    def test_bad_bodies_raise(self, generate, session, payload):
        session.post.return_value = _response(payload=payload)
        with pytest.raises(CompletionError):
            generate.complete("p")
