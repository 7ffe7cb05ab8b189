from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .chunker import Chunk, ChunkStatus
from .tts_engine import SynthesisError, TtsEngine
from .wav_encoder import WAV_HEADER_SIZE, encode_wav, is_playable_wav

logger = logging.getLogger(__name__)

__all__ = [
    "CancellationToken",
    "GenerationConfig",
    "GenerationSummary",
    "AudiobookGenerator",
]

ChunkCallback = Callable[[Chunk], None]


class CancellationToken:
    """
    Cooperative cancellation flag, checked between chunks and between retries.

    Requests already in flight are allowed to finish.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class GenerationConfig:
    max_retries: int = 2
    retry_delay: float = 1.5
    output_directory: Optional[Path] = None

    def ensure_directories(self) -> None:
        if self.output_directory is not None:
            self.output_directory.mkdir(parents=True, exist_ok=True)


@dataclass
class GenerationSummary:
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: bool = False

    @property
    def partial(self) -> bool:
        return self.succeeded > 0 and (self.failed > 0 or self.skipped > 0)


class AudiobookGenerator:
    """
    Synthesizes validated chunks one at a time and packages each result as WAV.
    """

    def __init__(self, engine: TtsEngine, config: Optional[GenerationConfig] = None) -> None:
        self.engine = engine
        self.config = config or GenerationConfig()
        self.config.ensure_directories()

    def generate(
        self,
        chunks: Sequence[Chunk],
        cancel_token: Optional[CancellationToken] = None,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> GenerationSummary:
        summary = GenerationSummary()
        total = len(chunks)

        for position, chunk in enumerate(chunks):
            if cancel_token is not None and cancel_token.cancelled:
                logger.info("Audiobook generation cancelled before part %d.", position + 1)
                summary.cancelled = True
                break

            if chunk.oversized:
                chunk.status = ChunkStatus.ERROR
                chunk.error_details = (
                    f"Text segment is too large ({chunk.token_count} tokens) "
                    "and cannot be processed into audio."
                )
                logger.warning("Skipping oversized chunk %s.", chunk.file_name)
                summary.skipped += 1
                _notify(on_chunk, chunk)
                continue

            if chunk.status == ChunkStatus.ERROR:
                logger.warning(
                    "Skipping chunk %s with a prior error: %s", chunk.file_name, chunk.error_details
                )
                summary.skipped += 1
                _notify(on_chunk, chunk)
                continue

            logger.info(
                "Generating audio for part %d of %d (%s).", position + 1, total, chunk.file_name
            )
            chunk.status = ChunkStatus.GENERATING
            _notify(on_chunk, chunk)

            self._synthesize_with_retry(chunk, cancel_token)
            if chunk.status == ChunkStatus.SUCCESS:
                summary.succeeded += 1
            elif chunk.status == ChunkStatus.ERROR:
                summary.failed += 1
            else:
                summary.cancelled = True
            _notify(on_chunk, chunk)
            if summary.cancelled:
                break

        logger.info(
            "Generation finished: %d succeeded, %d failed, %d skipped%s.",
            summary.succeeded,
            summary.failed,
            summary.skipped,
            " (cancelled)" if summary.cancelled else "",
        )
        return summary

    def _synthesize_with_retry(
        self, chunk: Chunk, cancel_token: Optional[CancellationToken]
    ) -> None:
        max_attempts = self.config.max_retries + 1
        last_error: Optional[Exception] = None
        attempts = 0

        for attempt in range(max_attempts):
            if cancel_token is not None and cancel_token.cancelled:
                break
            if attempt > 0:
                delay = self.config.retry_delay * attempt
                logger.warning(
                    "Retrying %s (attempt %d/%d) in %.2fs.",
                    chunk.file_name,
                    attempt + 1,
                    max_attempts,
                    delay,
                )
                time.sleep(delay)
            attempts += 1
            try:
                audio = self._synthesize_chunk(chunk)
            except Exception as exc:
                last_error = exc
                logger.error(
                    "Error generating audio for %s (attempt %d): %s",
                    chunk.file_name,
                    attempt + 1,
                    exc,
                )
                continue

            chunk.audio = audio
            chunk.retries = attempt
            chunk.error_details = None
            if self.config.output_directory is not None:
                chunk.audio_path = self.config.output_directory / chunk.file_name
                chunk.audio_path.write_bytes(audio)
            chunk.status = ChunkStatus.SUCCESS
            return

        chunk.retries = max(0, attempts - 1)
        if last_error is None:
            # Cancelled before any attempt ran.
            chunk.status = ChunkStatus.PENDING
            return

        chunk.status = ChunkStatus.ERROR
        reason = getattr(last_error, "reason", None)
        message = str(last_error) or "Unknown chunk error after retries"
        chunk.error_details = f"[{reason.value}] {message}" if reason is not None else message

    def _synthesize_chunk(self, chunk: Chunk) -> bytes:
        result = self.engine.synthesize(chunk.text)
        audio = encode_wav(result.pcm, result.params)
        if not audio:
            raise SynthesisError("Generated audio for chunk is empty (size 0).")
        if not is_playable_wav(audio):
            raise SynthesisError(
                f"Generated WAV audio for chunk is too small ({len(audio)} bytes, "
                f"header is {WAV_HEADER_SIZE})."
            )
        return audio


def successful_chunks(chunks: Sequence[Chunk]) -> List[Chunk]:
    return [c for c in chunks if c.status == ChunkStatus.SUCCESS and c.audio]


def _notify(callback: Optional[ChunkCallback], chunk: Chunk) -> None:
    if callback is not None:
        callback(chunk)
