"""Maps polished text back onto the timeline of the raw segments."""

import logging
from typing import List, Sequence

from .models import Subtitle
from .utils import segment_joiner

logger = logging.getLogger(__name__)

SENTENCE_TERMINALS = frozenset("。？！.?!")

def split_sentences(line: str) -> List[str]:
    """
    Splits one line after each sentence-terminal mark.

    Full-width and half-width full stops, question and exclamation marks end a
    sentence; a '.' between two digits (3.5) does not. Text after the last
    terminal is kept as a final sentence.
    """
    sentences = []
    current = []
    for i, char in enumerate(line):
        current.append(char)
        if char not in SENTENCE_TERMINALS:
            continue
        if char == "." and 0 < i < len(line) - 1 and line[i - 1].isdigit() and line[i + 1].isdigit():
            continue
        sentence = "".join(current).strip()
        if sentence:
            sentences.append(sentence)
        current = []
    tail = "".join(current).strip()
    if tail:
        sentences.append(tail)
    return sentences

def redistribute_timestamps(polished_text: str, original: Sequence[Subtitle]) -> List[Subtitle]:
    """
    Lays polished sentences over the span of the original subtitles.

    Each sentence gets a share of the span proportional to its character
    count, back to back from the first original start time.

    Args:
        polished_text: Text returned by the polisher.
        original: Raw subtitles covering the same audio, in time order.

    Returns:
        Polished subtitles, or ``original`` unchanged when the polished text
        has no sentences or the span is empty.
    """
    if not original:
        return []

    sentences = []
    for line in polished_text.splitlines():
        line = line.strip()
        if line:
            sentences.extend(split_sentences(line))

    span_start = original[0].start_time
    total_span = original[-1].end_time - span_start
    if not sentences or total_span <= 0:
        logger.debug("Polished text produced no sentences, keeping raw timing")
        return list(original)

    total_chars = sum(len(sentence) for sentence in sentences)
    result = []
    current = span_start
    for sentence in sentences:
        duration = total_span * len(sentence) / total_chars
        result.append(Subtitle(text=sentence, start_time=current, end_time=current + duration, is_polished=True))
        current += duration
    return result

def join_segment_text(subtitles: Sequence[Subtitle], language: str) -> str:
    """Concatenates raw subtitle text into the running text sent for polishing."""
    return segment_joiner(language).join(sub.text for sub in subtitles)
