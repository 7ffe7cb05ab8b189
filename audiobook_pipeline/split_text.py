from __future__ import annotations

import logging
import re
from typing import List, Sequence, Tuple

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 15
SHORT_SEGMENT_FACTOR = 1.5

PARAGRAPH_BREAK_PATTERN = re.compile(r"\n{2,}")
_SENTENCE_START = r"[A-ZÀ-ÖØ-ÞА-ЯЁЄІЇҐ0-9\"“«‘„\[(]"
SENTENCE_BOUNDARY_PATTERN = re.compile(
    rf"(?<=[.?!])\s+(?={_SENTENCE_START})|(?<=\n)\s*(?={_SENTENCE_START})"
)


def split_into_paragraphs(text: str) -> List[str]:
    """
    Split text on blank lines, returning trimmed, non-empty paragraphs.
    """
    return [p.strip() for p in PARAGRAPH_BREAK_PATTERN.split(text or "") if p.strip()]


def split_into_sentences(text: str) -> List[str]:
    """
    Split a paragraph into sentences.

    A boundary is terminal punctuation followed by whitespace and something that
    looks like the start of a new sentence: a Latin or Cyrillic capital, a digit,
    or an opening quote/bracket. A line break followed by such a character also
    counts as a boundary.
    """
    return [s.strip() for s in SENTENCE_BOUNDARY_PATTERN.split(text or "") if s.strip()]


def split_recursive(
    text: str,
    target_chars: int,
    depth: int = 0,
    *,
    max_depth: int = DEFAULT_MAX_DEPTH,
    path: Tuple[int, ...] = (),
) -> List[str]:
    """
    Reduce an oversized text into fragments of roughly ``target_chars`` characters.

    Boundaries are tried in order of preference: paragraphs, sentences and finally a
    greedy character window that backs off to the nearest whitespace. ``target_chars``
    is a soft goal; fragments at depth > 0 up to 1.5x the target are left alone.
    Past ``max_depth`` the text is returned unsplit, which bounds the recursion on
    pathological input.

    ``path`` records the child indices leading to this call and is only used for
    debug logging.
    """
    if not text or not text.strip():
        return []
    if target_chars <= 0:
        raise ValueError("target_chars must be positive.")

    if depth > max_depth:
        logger.debug(
            "[%s] Max split depth %d reached. Keeping segment of %d chars as is.",
            _format_path(path),
            depth,
            len(text),
        )
        return [text]

    if depth > 0 and len(text) <= target_chars * SHORT_SEGMENT_FACTOR:
        return [text]

    logger.debug(
        "[%s] Segment of %d chars exceeds target %d at depth %d. Splitting.",
        _format_path(path),
        len(text),
        target_chars,
        depth,
    )

    paragraphs = [p.strip() for p in PARAGRAPH_BREAK_PATTERN.split(text)]
    if len(paragraphs) > 1:
        return _split_children(paragraphs, target_chars, depth, max_depth, path)

    sentences = split_into_sentences(text)
    if len(sentences) > 1:
        return _split_children(sentences, target_chars, depth, max_depth, path)

    fragments = hard_split_by_length(text, target_chars)
    logger.debug(
        "[%s] Character window split produced %d fragments.",
        _format_path(path),
        len(fragments),
    )
    return fragments


def hard_split_by_length(text: str, max_chars: int) -> List[str]:
    """
    Greedy window split that keeps words together when possible.

    The cursor advances by ``max_chars`` and walks back to the nearest whitespace,
    unless that would leave a fragment shorter than half the window, in which case
    the text is cut exactly at the window boundary. Every step advances the cursor,
    so the loop always terminates.
    """
    text = (text or "").strip()
    if not text:
        return []
    if max_chars <= 0:
        raise ValueError("max_chars must be positive.")

    fragments: List[str] = []
    length = len(text)
    position = 0
    min_fragment = max(1, max_chars // 2)

    while position < length:
        split_point = min(position + max_chars, length)
        if split_point < length:
            for index in range(split_point, position + min_fragment - 1, -1):
                if text[index].isspace():
                    split_point = index + 1
                    break
        fragment = text[position:split_point].strip()
        if fragment:
            fragments.append(fragment)
        position = split_point

    return fragments


def _split_children(
    parts: Sequence[str],
    target_chars: int,
    depth: int,
    max_depth: int,
    path: Tuple[int, ...],
) -> List[str]:
    results: List[str] = []
    for index, part in enumerate(parts):
        part = part.strip()
        if not part:
            continue
        results.extend(
            split_recursive(
                part,
                target_chars,
                depth + 1,
                max_depth=max_depth,
                path=path + (index,),
            )
        )
    return results


def _format_path(path: Tuple[int, ...]) -> str:
    return "/".join(str(i) for i in path) or "root"
