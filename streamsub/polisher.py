"""AI clean-up of raw transcript text through the completion endpoint."""

import logging
from typing import Callable, List, Optional, Union

from .completion_client import CompletionClient, GenerateClient, render_prompt
from .exceptions import CompletionError

logger = logging.getLogger(__name__)

def split_text(text: str, max_chars: int) -> List[str]:
    """Splits text into consecutive pieces of at most max_chars characters."""
    if max_chars <= 0:
        raise ValueError("max_chars must be positive")
    return [text[i:i + max_chars] for i in range(0, len(text), max_chars)]

class TextPolisher:
    """Adds punctuation and fixes recognition errors in raw transcript text."""

    def __init__(
        self,
        client: CompletionClient,
        prompt_template: str,
        max_chars: int = 1500,
        temperature: float = 0.1,
        max_tokens: int = 8000,
        fallback: Optional[Union[CompletionClient, GenerateClient]] = None,
        fallback_max_tokens: int = 2000
    ):
        """
        Args:
            client: Primary chat endpoint.
            prompt_template: Prompt containing {{TRANSCRIPT}}.
            max_chars: Longest text sent in one request.
            temperature: Sampling temperature for both backends.
            max_tokens: Answer limit for the primary endpoint.
            fallback: Second backend tried when the primary request fails.
            fallback_max_tokens: Answer limit for the fallback backend.
        """
        self.client = client
        self.fallback = fallback
        self.fallback_max_tokens = fallback_max_tokens
        self.prompt_template = prompt_template
        self.max_chars = max_chars
        self.temperature = temperature
        self.max_tokens = max_tokens

    def polish(
        self,
        raw_text: str,
        on_progress: Optional[Callable[[int, int], None]] = None
    ) -> Optional[str]:
        """
        Polishes raw text.

        Text longer than max_chars is sent in fixed-size pieces; a piece whose
        request fails keeps its raw text, so the result is only None when the
        text is blank or a single-request polish fails.

        Args:
            raw_text: Unpunctuated engine output.
            on_progress: Called with (piece_number, piece_count) before each request.

        Returns:
            The polished text, or None when no polish is available.
        """
        if not raw_text or not raw_text.strip():
            return None
        if len(raw_text) <= self.max_chars:
            if on_progress is not None:
                on_progress(1, 1)
            return self._polish_segment(raw_text)

        segments = split_text(raw_text, self.max_chars)
        logger.info(f"Polishing {len(raw_text)} characters in {len(segments)} segments")
        results = []
        for i, segment in enumerate(segments, start=1):
            if on_progress is not None:
                on_progress(i, len(segments))
            polished = self._polish_segment(segment)
            if polished is None:
                logger.warning(f"Polish of segment {i}/{len(segments)} failed, keeping raw text")
                results.append(segment)
            else:
                results.append(polished)
        return "\n".join(results)

    def _polish_segment(self, text: str) -> Optional[str]:
        """Primary endpoint first, then the fallback backend; None when both fail."""
        prompt = render_prompt(self.prompt_template, text)
        try:
            polished = self.client.complete(prompt, temperature=self.temperature, max_tokens=self.max_tokens)
        except CompletionError as e:
            logger.warning(f"Polish request failed ({len(text)} chars): {e}")
            polished = self._polish_with_fallback(prompt)
            if polished is None:
                return None
        logger.debug(f"Polished {len(text)} -> {len(polished)} characters")
        return polished

    def _polish_with_fallback(self, prompt: str) -> Optional[str]:
        if self.fallback is None:
            return None
        logger.info(f"Retrying polish with fallback backend {self.fallback.url}")
        try:
            return self.fallback.complete(prompt, temperature=self.temperature, max_tokens=self.fallback_max_tokens)
        except CompletionError as e:
            logger.warning(f"Fallback polish request failed: {e}")
            return None
