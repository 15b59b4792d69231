"""Merging of overlapping chunk results into the running subtitle list."""

from typing import List, Sequence

from .models import Subtitle

def text_similarity(a: str, b: str) -> float:
    """Jaccard similarity of the character sets of two strings (0..1)."""
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    set_a, set_b = set(a), set(b)
    return len(set_a & set_b) / len(set_a | set_b)

def _overlaps(a: Subtitle, b: Subtitle) -> bool:
    return a.start_time < b.end_time and b.start_time < a.end_time

def deduplicate(subtitles: Sequence[Subtitle], threshold: float = 0.7) -> List[Subtitle]:
    """
    Drops entries that repeat an earlier one.

    A subtitle is a repeat when it overlaps a kept subtitle in time and their
    character-set similarity exceeds ``threshold``. Earlier entries win.
    """
    kept: List[Subtitle] = []
    for sub in subtitles:
        if any(_overlaps(existing, sub) and text_similarity(existing.text, sub.text) > threshold
               for existing in kept):
            continue
        kept.append(sub)
    return kept

def merge_chunk(
    existing: Sequence[Subtitle],
    incoming: Sequence[Subtitle],
    boundary: float,
    boundary_tolerance: float = 1.0,
    stale_margin: float = 0.5,
    threshold: float = 0.7
) -> List[Subtitle]:
    """
    Merges one chunk's subtitles into the accumulated list.

    Args:
        existing: Accumulated subtitles, sorted by start time.
        incoming: Subtitles of the new chunk.
        boundary: End of the previous chunk without its overlap.
        boundary_tolerance: New subtitles whose midpoint is at or before
            ``boundary - boundary_tolerance`` are dropped.
        stale_margin: Existing subtitles starting at or after the first kept
            new subtitle's start minus this margin are replaced.
        threshold: Similarity above which overlapping entries are duplicates.

    Returns:
        A new list, sorted by start time and deduplicated.
    """
    if not existing:
        merged = list(incoming)
    else:
        fresh = [sub for sub in incoming if sub.midpoint > boundary - boundary_tolerance]
        merged = list(existing)
        if fresh:
            cutoff = fresh[0].start_time - stale_margin
            merged = [sub for sub in merged if sub.start_time < cutoff]
        merged.extend(fresh)
    merged.sort(key=lambda sub: sub.start_time)
    return deduplicate(merged, threshold)
