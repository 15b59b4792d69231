"""Client for an OpenAI-compatible chat completion endpoint (LM Studio, Ollama, ...)."""

import json
import logging
import re
import requests
from typing import Callable, Optional

from .exceptions import CompletionError

logger = logging.getLogger(__name__)

TRANSCRIPT_PLACEHOLDER = "{{TRANSCRIPT}}"
REASONING_START = "<think>"
REASONING_END = "</think>"
_REASONING_BLOCK = re.compile(re.escape(REASONING_START) + r".*?" + re.escape(REASONING_END), re.DOTALL)
SSE_PREFIX = "data: "
SSE_DONE = "[DONE]"

def render_prompt(template: str, transcript: str, max_chars: Optional[int] = None) -> str:
    """
    Substitutes the transcript into a prompt template.

    Args:
        template: Prompt text containing ``{{TRANSCRIPT}}``.
        transcript: Text to insert.
        max_chars: Truncate the transcript to this many characters first.
                   None inserts it whole.
    """
    if max_chars is not None:
        transcript = transcript[:max_chars]
    return template.replace(TRANSCRIPT_PLACEHOLDER, transcript)

def strip_reasoning(text: str) -> str:
    """Removes <think>...</think> blocks; a lone closing marker drops everything before it."""
    text = _REASONING_BLOCK.sub("", text)
    if REASONING_END in text:
        text = text.rsplit(REASONING_END, 1)[1]
    return text.strip()

class CompletionClient:
    """Sends single-prompt chat requests and returns the answer text."""

    def __init__(
        self,
        url: str,
        model: str,
        timeout: float = 180,
        session: Optional[requests.Session] = None
    ):
        """
        Args:
            url: Full URL of the chat completions endpoint.
            model: Model identifier sent with every request.
            timeout: Per-request timeout in seconds.
            session: requests session to reuse; a new one is created if None.
        """
        self.url = url
        self.model = model
        self.timeout = timeout
        self.session = session or requests.Session()
        logger.info(f"CompletionClient initialized for {self.url} with model: {self.model}")

    def _body(self, prompt: str, temperature: float, max_tokens: int, stream: bool) -> dict:
        body = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if stream:
            body["stream"] = True
        return body

    def complete(self, prompt: str, temperature: float = 0.1, max_tokens: int = 8000) -> str:
        """
        Sends a non-streaming request.

        Returns:
            The answer with any reasoning block removed.

        Raises:
            CompletionError: On transport failure, timeout, non-2xx status,
                             malformed body or empty answer.
        """
        try:
            response = self.session.post(
                self.url,
                json=self._body(prompt, temperature, max_tokens, stream=False),
                timeout=self.timeout
            )
        except requests.RequestException as e:
            raise CompletionError(f"Completion request to {self.url} failed: {e}") from e

        if not 200 <= response.status_code < 300:
            raise CompletionError(f"Completion endpoint returned HTTP {response.status_code}: {response.text[:500]}")

        try:
            message = response.json()["choices"][0]["message"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise CompletionError(f"Malformed completion response: {e}") from e

        content = message.get("content") or message.get("reasoning") or ""
        if not isinstance(content, str):
            raise CompletionError("Completion response content is not text")
        text = strip_reasoning(content)
        if not text:
            raise CompletionError("Completion endpoint returned empty content")
        return text

    def stream(
        self,
        prompt: str,
        temperature: float = 0.3,
        max_tokens: int = 2000,
        on_token: Optional[Callable[[str], None]] = None
    ) -> str:
        """
        Sends a streaming request and accumulates the Server-Sent-Events deltas.

        Args:
            on_token: Called with every content delta as it arrives.

        Returns:
            The accumulated answer with any reasoning block removed.

        Raises:
            CompletionError: On transport failure, timeout or non-2xx status.
        """
        pieces = []
        try:
            with self.session.post(
                self.url,
                json=self._body(prompt, temperature, max_tokens, stream=True),
                timeout=self.timeout,
                stream=True
            ) as response:
                if not 200 <= response.status_code < 300:
                    raise CompletionError(f"Completion endpoint returned HTTP {response.status_code}")
                # SSE is UTF-8 regardless of what the Content-Type charset says
                for raw_line in response.iter_lines():
                    line = raw_line.decode("utf-8", errors="replace")
                    if not line.startswith(SSE_PREFIX):
                        continue
                    payload = line[len(SSE_PREFIX):].strip()
                    if payload == SSE_DONE:
                        break
                    try:
                        content = json.loads(payload)["choices"][0]["delta"].get("content")
                    except (ValueError, KeyError, IndexError, TypeError, AttributeError):
                        logger.debug(f"Ignoring undecodable stream frame: {payload[:200]}")
                        continue
                    if content:
                        pieces.append(content)
                        if on_token is not None:
                            on_token(content)
        except requests.RequestException as e:
            raise CompletionError(f"Streaming completion request to {self.url} failed: {e}") from e
        return strip_reasoning("".join(pieces))

class GenerateClient:
    """
    Sends prompts to an Ollama-style ``/api/generate`` endpoint.

    Used as the second polishing backend when the chat endpoint fails. Offers
    the same ``complete`` call as CompletionClient.
    """

    def __init__(
        self,
        url: str,
        model: str,
        timeout: float = 120,
        context_tokens: int = 4096,
        session: Optional[requests.Session] = None
    ):
        self.url = url
        self.model = model
        self.timeout = timeout
        self.context_tokens = context_tokens
        self.session = session or requests.Session()
        logger.info(f"GenerateClient initialized for {self.url} with model: {self.model}")

    def complete(self, prompt: str, temperature: float = 0.1, max_tokens: int = 2000) -> str:
        """
        Sends a non-streaming generate request.

        Returns:
            The ``response`` field with any reasoning block removed.

        Raises:
            CompletionError: On transport failure, timeout, non-2xx status,
                             malformed body or empty answer.
        """
        body = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": temperature,
                "num_predict": max_tokens,
                "num_ctx": self.context_tokens,
            },
        }
        try:
            response = self.session.post(self.url, json=body, timeout=self.timeout)
        except requests.RequestException as e:
            raise CompletionError(f"Generate request to {self.url} failed: {e}") from e

        if not 200 <= response.status_code < 300:
            raise CompletionError(f"Generate endpoint returned HTTP {response.status_code}: {response.text[:500]}")
        try:
            content = response.json()["response"]
        except (ValueError, KeyError, TypeError) as e:
            raise CompletionError(f"Malformed generate response: {e}") from e
        if not isinstance(content, str):
            raise CompletionError("Generate response is not text")
        text = strip_reasoning(content)
        if not text:
            raise CompletionError("Generate endpoint returned empty content")
        return text
