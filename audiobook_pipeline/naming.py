from __future__ import annotations

import re

from unidecode import unidecode

__all__ = [
    "OVERSIZED",
    "TOKEN_ERR",
    "SUB_TOKEN_ERR",
    "sanitize_title",
    "chunk_file_name",
]

OVERSIZED = "_OVERSIZED"
TOKEN_ERR = "_TOKEN_ERR"
SUB_TOKEN_ERR = "_SUB_TOKEN_ERR"
FILE_NAME_SUFFIXES = ("", OVERSIZED, TOKEN_ERR, SUB_TOKEN_ERR)

DEFAULT_BASE_NAME = "AudiobookPart"
MAX_BASE_LENGTH = 50

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def sanitize_title(title: str | None) -> str:
    """
    Turn a book title into a file name base.

    Non-Latin scripts are transliterated first so Cyrillic titles stay readable,
    then anything outside ``[A-Za-z0-9_-]`` becomes an underscore.
    """
    transliterated = unidecode(title or "")
    sanitized = _UNSAFE_CHARS.sub("_", transliterated)[:MAX_BASE_LENGTH]
    return sanitized or DEFAULT_BASE_NAME


def chunk_file_name(base: str, index: int, suffix: str = "") -> str:
    """
    ``{base}_Part_{NNN}{suffix}.wav`` where NNN is the 1-based part number.
    """
    if suffix not in FILE_NAME_SUFFIXES:
        raise ValueError(f"Unknown chunk file name suffix: {suffix!r}")
    return f"{base}_Part_{index + 1:03d}{suffix}.wav"
