from __future__ import annotations

import io
import logging
import zipfile
from pathlib import Path
from typing import Sequence

from pydub import AudioSegment

from .chunker import Chunk
from .generator import successful_chunks

logger = logging.getLogger(__name__)

__all__ = ["merge_audio_chunks", "write_parts_archive"]


def merge_audio_chunks(
    chunks: Sequence[Chunk],
    output_path: Path,
    *,
    silence_gap_ms: int = 300,
    output_format: str = "wav",
) -> AudioSegment:
    """
    Join the successfully synthesized parts, in index order, into one audiobook.
    """
    parts = sorted(successful_chunks(chunks), key=lambda c: c.index)
    if not parts:
        raise ValueError("No successfully generated audio parts to merge.")
    if len(parts) < len(chunks):
        logger.warning(
            "Merging %d of %d parts; the others have no audio.", len(parts), len(chunks)
        )

    merged: AudioSegment | None = None
    part_count = len(parts)

    for idx, chunk in enumerate(parts):
        segment = AudioSegment.from_file(io.BytesIO(chunk.audio), format="wav")
        merged = segment if merged is None else merged + segment

        if idx < part_count - 1 and silence_gap_ms > 0:
            merged += _matching_silence(segment, silence_gap_ms)

    output_path.parent.mkdir(parents=True, exist_ok=True)
    merged.export(output_path, format=output_format)
    logger.info("Merged %d parts into %s", part_count, output_path)
    return merged


def write_parts_archive(chunks: Sequence[Chunk], archive_path: Path) -> int:
    """
    Zip every successful part under its chunk file name. Returns the part count.
    """
    parts = successful_chunks(chunks)
    if not parts:
        raise ValueError("No successfully generated audio parts to archive.")

    archive_path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(archive_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for chunk in parts:
            archive.writestr(chunk.file_name, chunk.audio)
    logger.info("Wrote %d parts to %s", len(parts), archive_path)
    return len(parts)


def _matching_silence(segment: AudioSegment, duration_ms: int) -> AudioSegment:
    silence = AudioSegment.silent(duration=duration_ms, frame_rate=segment.frame_rate)
    silence = silence.set_channels(segment.channels)
    silence = silence.set_sample_width(segment.sample_width)
    return silence
