from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from . import split_text
from .naming import OVERSIZED, SUB_TOKEN_ERR, TOKEN_ERR, chunk_file_name, sanitize_title
from .progress import (
    AggregationEvent,
    CharSplitEvent,
    DoneEvent,
    ErrorEvent,
    PreprocessingEvent,
    ProgressCallback,
    ValidationEvent,
)
from .token_counter import TokenCounter, TokenCountError, count_tokens_with_retry

logger = logging.getLogger(__name__)

AGGREGATION_PROGRESS_EVERY = 50


class ChunkStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class ChunkingConfig:
    """
    Tuning values for turning text into token-checked chunks.
    """

    max_tts_tokens: int = 8000
    ideal_tokens_per_chunk: int = 2000
    ideal_chars_per_chunk: int = 6000
    ideal_chunk_size_multiplier: float = 1.5
    fine_grained_split_divisor: int = 2
    token_count_retries: int = 2
    token_retry_delay: float = 1.0
    max_split_depth: int = split_text.DEFAULT_MAX_DEPTH

    @property
    def ideal_chunk_token_upper_bound(self) -> int:
        return int(self.ideal_tokens_per_chunk * self.ideal_chunk_size_multiplier)

    @property
    def fine_grained_char_target(self) -> int:
        return int(self.ideal_chars_per_chunk // self.fine_grained_split_divisor)

    def validate(self) -> None:
        if self.max_tts_tokens <= 0 or self.ideal_tokens_per_chunk <= 0:
            raise ValueError("Token limits must be positive.")
        if self.ideal_chars_per_chunk <= 0:
            raise ValueError("ideal_chars_per_chunk must be positive.")
        if self.fine_grained_split_divisor <= 0:
            raise ValueError("fine_grained_split_divisor must be positive.")
        if self.fine_grained_char_target <= 0:
            raise ValueError("Fine grained split target must be at least one character.")
        if self.ideal_chunk_token_upper_bound > self.max_tts_tokens:
            logger.warning(
                "Ideal chunk bound %d exceeds the hard limit of %d tokens.",
                self.ideal_chunk_token_upper_bound,
                self.max_tts_tokens,
            )


@dataclass
class Chapter:
    title: Optional[str]
    content: str


@dataclass
class Chunk:
    index: int
    text: str
    file_name: str
    chapter_title: Optional[str] = None
    status: ChunkStatus = ChunkStatus.PENDING
    token_count: Optional[int] = None
    error_details: Optional[str] = None
    oversized: bool = False
    token_error: bool = False
    token_retries: int = 0
    retries: int = 0
    audio: Optional[bytes] = None
    audio_path: Optional[Path] = None


def aggregate_paragraphs(
    paragraphs: Sequence[str],
    char_target: int,
    on_progress: Optional[ProgressCallback] = None,
) -> List[str]:
    """
    Greedily pack paragraphs into candidates of about ``char_target`` characters.

    Paragraphs are joined by a blank line. A paragraph that is larger than the
    target on its own becomes a standalone candidate rather than being merged.
    No remote calls are made.
    """
    candidates: List[str] = []
    if not paragraphs:
        return candidates

    total = len(paragraphs)
    _emit(
        on_progress,
        AggregationEvent(
            message=f"Aggregating {total} paragraphs into chunks...",
            processed_items=0,
            total_items=total,
            current_chunk_count=0,
        ),
    )

    buffer = ""
    for i, paragraph in enumerate(paragraphs):
        if not buffer and len(paragraph) > char_target:
            candidates.append(paragraph)
            _emit(
                on_progress,
                CharSplitEvent(
                    message=(
                        f"Paragraph {i + 1} ({len(paragraph)} chars) exceeds the "
                        f"{char_target} char target; keeping it as its own candidate."
                    ),
                    stage="initial",
                ),
            )
            continue

        separator = "\n\n" if buffer else ""
        if buffer and len(buffer) + len(separator) + len(paragraph) > char_target:
            candidates.append(buffer)
            buffer = paragraph
        else:
            buffer += separator + paragraph

        if i % AGGREGATION_PROGRESS_EVERY == 0 or i == total - 1:
            _emit(
                on_progress,
                AggregationEvent(
                    message="Aggregating paragraphs...",
                    processed_items=i + 1,
                    total_items=total,
                    current_chunk_count=len(candidates),
                ),
            )

    if buffer:
        candidates.append(buffer)

    _emit(
        on_progress,
        AggregationEvent(
            message=f"Finished aggregating. Created {len(candidates)} candidate chunks.",
            processed_items=total,
            total_items=total,
            current_chunk_count=len(candidates),
        ),
    )
    return candidates


class ChunkValidator:
    """
    Turns text into chunks whose size is confirmed by the token counter.

    Candidates come from the character heuristic. Each one is counted; those within
    the ideal bound are accepted, larger ones are re-split once with a finer
    character target and every fragment is accepted, flagged oversized when it is
    still above the hard limit. A failed count degrades only the affected candidate
    to an error chunk.
    """

    def __init__(
        self,
        counter: TokenCounter,
        config: Optional[ChunkingConfig] = None,
        *,
        style_prompt: str = "",
    ) -> None:
        self.counter = counter
        self.config = config or ChunkingConfig()
        self.config.validate()
        self.style_prompt = style_prompt

    def build_chunks(
        self,
        text: str,
        title: str = "Audiobook",
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[Chunk]:
        return self.build_chunks_for_chapters(
            [Chapter(title=title, content=text)],
            book_title=title,
            on_progress=on_progress,
        )

    def build_chunks_for_chapters(
        self,
        chapters: Iterable[Chapter],
        book_title: str = "Audiobook",
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[Chunk]:
        config = self.config
        chapters = [c for c in chapters if c.content and c.content.strip()]
        if not chapters:
            _emit(on_progress, DoneEvent(message="No content to process."))
            return []

        logger.info(
            "Chunking with hard limit %d tokens, ideal %d tokens (bound %d), ideal %d chars.",
            config.max_tts_tokens,
            config.ideal_tokens_per_chunk,
            config.ideal_chunk_token_upper_bound,
            config.ideal_chars_per_chunk,
        )

        base_name = sanitize_title(book_title)
        chunks: List[Chunk] = []

        for chapter in chapters:
            _emit(
                on_progress,
                PreprocessingEvent(
                    message=f"Splitting '{chapter.title or book_title}' into paragraphs..."
                ),
            )
            paragraphs = split_text.split_into_paragraphs(chapter.content)
            candidates = aggregate_paragraphs(
                paragraphs, config.ideal_chars_per_chunk, on_progress
            )
            logger.info(
                "Paragraph aggregation created %d candidates from %d paragraphs.",
                len(candidates),
                len(paragraphs),
            )
            self._validate_candidates(
                candidates,
                chunks,
                base_name=base_name,
                chapter_title=chapter.title or book_title,
                on_progress=on_progress,
            )

        _emit(
            on_progress,
            DoneEvent(
                message=f"Chunking complete. Generated {len(chunks)} final chunks.",
                chunk_count=len(chunks),
            ),
        )
        logger.info("Finished validation. Generated %d final chunks.", len(chunks))
        return chunks

    def _validate_candidates(
        self,
        candidates: Sequence[str],
        chunks: List[Chunk],
        *,
        base_name: str,
        chapter_title: Optional[str],
        on_progress: Optional[ProgressCallback],
    ) -> None:
        config = self.config
        total = len(candidates)
        _emit(
            on_progress,
            ValidationEvent(message=f"Validating {total} candidate chunks by token count..."),
        )

        for i, candidate in enumerate(candidates):
            _emit(
                on_progress,
                ValidationEvent(
                    message=f"Validating candidate chunk {i + 1}/{total}...",
                    processed_items=i,
                    total_items=total,
                    current_chunk_count=len(chunks),
                ),
            )
            context = f"candidate chunk {i + 1}"
            try:
                result = self._count(candidate, context)
            except TokenCountError as exc:
                self._append_error(
                    chunks, candidate, exc, TOKEN_ERR, base_name, chapter_title, on_progress
                )
                continue

            if result.tokens <= config.ideal_chunk_token_upper_bound:
                chunks.append(
                    self._accept(chunks, candidate, result.tokens, result.retries, base_name, chapter_title)
                )
                continue

            logger.warning(
                "Candidate chunk %d (%d tokens) is over the ideal bound of %d. Re-splitting.",
                i + 1,
                result.tokens,
                config.ideal_chunk_token_upper_bound,
            )
            fragments = split_text.split_recursive(
                candidate,
                config.fine_grained_char_target,
                max_depth=config.max_split_depth,
                path=(i,),
            )
            _emit(
                on_progress,
                CharSplitEvent(
                    message=(
                        f"Candidate {i + 1} is too large by tokens ({result.tokens}). "
                        f"Re-split into {len(fragments)} fragments."
                    ),
                    stage="fine",
                    fragment_count=len(fragments),
                ),
            )
            self._validate_fragments(
                fragments,
                chunks,
                context=context,
                base_name=base_name,
                chapter_title=chapter_title,
                on_progress=on_progress,
            )

    def _validate_fragments(
        self,
        fragments: Sequence[str],
        chunks: List[Chunk],
        *,
        context: str,
        base_name: str,
        chapter_title: Optional[str],
        on_progress: Optional[ProgressCallback],
    ) -> None:
        for j, fragment in enumerate(fragments):
            if not fragment.strip():
                continue
            try:
                result = self._count(fragment, f"fragment {j + 1} of {context}")
            except TokenCountError as exc:
                self._append_error(
                    chunks, fragment, exc, SUB_TOKEN_ERR, base_name, chapter_title, on_progress
                )
                continue

            oversized = result.tokens > self.config.max_tts_tokens
            if oversized:
                logger.error(
                    "Fragment %d of %s is still oversized (%d tokens > %d). Text starts with %r",
                    j + 1,
                    context,
                    result.tokens,
                    self.config.max_tts_tokens,
                    fragment[:100],
                )
            chunks.append(
                self._accept(
                    chunks,
                    fragment,
                    result.tokens,
                    result.retries,
                    base_name,
                    chapter_title,
                    oversized=oversized,
                )
            )

    def _count(self, text: str, context: str):
        return count_tokens_with_retry(
            self.counter,
            text,
            style_prompt=self.style_prompt,
            max_retries=self.config.token_count_retries,
            retry_delay=self.config.token_retry_delay,
            context=context,
        )

    @staticmethod
    def _accept(
        chunks: Sequence[Chunk],
        text: str,
        tokens: int,
        retries: int,
        base_name: str,
        chapter_title: Optional[str],
        *,
        oversized: bool = False,
    ) -> Chunk:
        index = len(chunks)
        return Chunk(
            index=index,
            text=text,
            file_name=chunk_file_name(base_name, index, OVERSIZED if oversized else ""),
            chapter_title=chapter_title,
            status=ChunkStatus.PENDING,
            token_count=tokens,
            oversized=oversized,
            token_retries=retries,
        )

    @staticmethod
    def _append_error(
        chunks: List[Chunk],
        text: str,
        exc: Exception,
        suffix: str,
        base_name: str,
        chapter_title: Optional[str],
        on_progress: Optional[ProgressCallback],
    ) -> None:
        index = len(chunks)
        level = "re-split fragment" if suffix == SUB_TOKEN_ERR else "candidate chunk"
        details = f"Token counting failed for this {level}: {exc}"
        logger.error("Chunk %d degraded to an error chunk. %s", index, details)
        chunks.append(
            Chunk(
                index=index,
                text=text,
                file_name=chunk_file_name(base_name, index, suffix),
                chapter_title=chapter_title,
                status=ChunkStatus.ERROR,
                error_details=details,
                token_error=True,
            )
        )
        _emit(on_progress, ErrorEvent(message=details, chunk_index=index))


def _emit(callback: Optional[ProgressCallback], event) -> None:
    if callback is not None:
        callback(event)
