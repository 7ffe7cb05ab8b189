from __future__ import annotations

import base64
import binascii
import logging
import struct
from dataclasses import dataclass
from typing import Optional, Union

logger = logging.getLogger(__name__)

__all__ = [
    "AudioParameters",
    "WavHeader",
    "WAV_HEADER_SIZE",
    "parse_audio_mime_type",
    "trim_trailing_silence",
    "encode_wav",
    "encode_wav_from_base64",
    "read_wav_header",
    "is_playable_wav",
]

WAV_HEADER_SIZE = 44
_HEADER_FORMAT = "<4sI4s4sIHHIIHH4sI"
PCM_FORMAT_CODE = 1
SUPPORTED_BIT_DEPTHS = (8, 16, 24, 32)

# 16-bit sample magnitude at or below which audio counts as silence.
SILENCE_THRESHOLD = 5
MIN_SILENCE_MS = 2000
PADDING_MS = 500


@dataclass(frozen=True)
class AudioParameters:
    sample_rate: int = 24000
    bit_depth: int = 16
    channels: int = 1

    def __post_init__(self) -> None:
        if self.sample_rate <= 0:
            raise ValueError(f"Sample rate must be positive, got {self.sample_rate}")
        if self.channels < 1:
            raise ValueError(f"Channel count must be at least 1, got {self.channels}")
        if self.bit_depth not in SUPPORTED_BIT_DEPTHS:
            raise ValueError(f"Unsupported bit depth {self.bit_depth}")

    @property
    def sample_width(self) -> int:
        return self.bit_depth // 8

    @property
    def block_align(self) -> int:
        return self.channels * self.sample_width

    @property
    def byte_rate(self) -> int:
        return self.sample_rate * self.block_align


@dataclass(frozen=True)
class WavHeader:
    channels: int
    sample_rate: int
    byte_rate: int
    block_align: int
    bit_depth: int
    data_size: int

    @property
    def frame_count(self) -> int:
        return self.data_size // self.block_align if self.block_align else 0


def parse_audio_mime_type(mime_type: Optional[str]) -> AudioParameters:
    """
    Read sample rate, bit depth and channels from e.g. ``audio/L16;rate=24000``.

    Missing or unparsable fields keep the Gemini LINEAR16 defaults (24 kHz, 16 bit, mono).
    """
    defaults = AudioParameters()
    if not mime_type:
        return defaults

    rate = defaults.sample_rate
    bit_depth = defaults.bit_depth
    channels = defaults.channels

    fragments = [fragment.strip() for fragment in mime_type.lower().split(";")]
    main_type = fragments[0]
    if main_type.startswith("audio/l"):
        try:
            bit_depth = int(main_type[len("audio/l"):])
        except ValueError:
            logger.warning("Unable to parse bit depth from mime type %s", mime_type)

    for fragment in fragments[1:]:
        if fragment.startswith("rate="):
            try:
                rate = int(fragment.split("=", 1)[1])
            except ValueError:
                logger.warning("Unable to parse rate from mime type %s", mime_type)
        elif fragment.startswith("channels="):
            try:
                channels = int(fragment.split("=", 1)[1])
            except ValueError:
                logger.warning("Unable to parse channels from mime type %s", mime_type)

    try:
        params = AudioParameters(sample_rate=rate, bit_depth=bit_depth, channels=channels)
    except ValueError as exc:
        logger.warning("Mime type %s gave invalid parameters (%s). Using defaults.", mime_type, exc)
        return defaults
    logger.debug("Parsed %r to %s", mime_type, params)
    return params


def trim_trailing_silence(
    pcm: bytes,
    sample_rate: int,
    *,
    channels: int = 1,
    silence_threshold: int = SILENCE_THRESHOLD,
    min_silence_ms: int = MIN_SILENCE_MS,
    padding_ms: int = PADDING_MS,
) -> bytes:
    """
    Cut a long silent tail from 16-bit little-endian PCM.

    Durations are measured in frames, so interleaved multi-channel audio keeps
    the same timing as mono. Only tails longer than ``min_silence_ms`` are
    touched; they are shortened to ``padding_ms`` of silence after the last frame
    holding a sample whose magnitude exceeds ``silence_threshold``. Entirely
    silent input is returned unchanged.
    """
    frame_size = 2 * channels
    frame_count = len(pcm) // frame_size
    if frame_count == 0:
        return pcm

    last_loud = -1
    for i in range(frame_count * channels - 1, -1, -1):
        (value,) = struct.unpack_from("<h", pcm, i * 2)
        if abs(value) > silence_threshold:
            last_loud = i // channels
            break

    if last_loud < 0:
        return pcm

    min_silence_frames = min_silence_ms * sample_rate // 1000
    trailing = frame_count - (last_loud + 1)
    if trailing <= min_silence_frames:
        return pcm

    padding_frames = padding_ms * sample_rate // 1000
    kept = min(frame_count, last_loud + 1 + padding_frames)
    logger.info(
        "Detected %.2fs of trailing silence. Trimming audio from %d to %d bytes.",
        trailing / sample_rate,
        len(pcm),
        kept * frame_size,
    )
    return pcm[: kept * frame_size]


def encode_wav(
    pcm: bytes,
    params: Optional[AudioParameters] = None,
    *,
    trim_silence: bool = True,
    silence_threshold: int = SILENCE_THRESHOLD,
    min_silence_ms: int = MIN_SILENCE_MS,
    padding_ms: int = PADDING_MS,
) -> bytes:
    """
    Wrap raw PCM samples in a 44-byte RIFF/WAVE header.

    Empty input gives ``b""``. 16-bit audio has its silent tail trimmed and every
    input is truncated to a whole number of frames. When nothing is left the result
    is a header-only (valid, silent) file.
    """
    params = params or AudioParameters()
    if not pcm:
        logger.error("Received empty PCM data. Returning an empty artifact.")
        return b""

    data = bytes(pcm)
    if trim_silence and params.bit_depth == 16:
        data = trim_trailing_silence(
            data,
            params.sample_rate,
            channels=params.channels,
            silence_threshold=silence_threshold,
            min_silence_ms=min_silence_ms,
            padding_ms=padding_ms,
        )

    block_align = params.block_align
    remainder = len(data) % block_align
    if remainder:
        logger.warning(
            "PCM data size %d is not a multiple of block align %d. Truncating to %d bytes.",
            len(data),
            block_align,
            len(data) - remainder,
        )
        data = data[: len(data) - remainder]

    if not data:
        logger.warning("No PCM data left after trimming. Resulting WAV will be header-only.")

    header = struct.pack(
        _HEADER_FORMAT,
        b"RIFF",
        WAV_HEADER_SIZE + len(data) - 8,
        b"WAVE",
        b"fmt ",
        16,
        PCM_FORMAT_CODE,
        params.channels,
        params.sample_rate,
        params.byte_rate,
        block_align,
        params.bit_depth,
        b"data",
        len(data),
    )
    return header + data


def encode_wav_from_base64(
    data: Union[str, bytes],
    params: Optional[AudioParameters] = None,
    **options,
) -> bytes:
    """
    Decode base64 PCM and encode it; malformed input yields ``b""``.

    Whitespace such as line wrapping is ignored.
    """
    if not data or not data.strip():
        logger.error("Received empty or whitespace-only base64 PCM data.")
        return b""
    compact = b"".join(data.split()) if isinstance(data, bytes) else "".join(data.split())
    try:
        pcm = base64.b64decode(compact, validate=True)
    except (binascii.Error, ValueError) as exc:
        logger.error("Failed to decode base64 PCM data: %s", exc)
        return b""
    return encode_wav(pcm, params, **options)


def read_wav_header(data: bytes) -> WavHeader:
    """
    Parse the canonical 44-byte header written by ``encode_wav``.
    """
    if len(data) < WAV_HEADER_SIZE:
        raise ValueError(f"WAV data too short for a header: {len(data)} bytes")
    (
        riff,
        _riff_size,
        wave,
        fmt,
        fmt_size,
        format_code,
        channels,
        sample_rate,
        byte_rate,
        block_align,
        bit_depth,
        data_tag,
        data_size,
    ) = struct.unpack_from(_HEADER_FORMAT, data)
    if riff != b"RIFF" or wave != b"WAVE" or fmt != b"fmt " or data_tag != b"data":
        raise ValueError("Not a canonical RIFF/WAVE file.")
    if fmt_size != 16 or format_code != PCM_FORMAT_CODE:
        raise ValueError("Only uncompressed PCM WAV files are supported.")
    return WavHeader(
        channels=channels,
        sample_rate=sample_rate,
        byte_rate=byte_rate,
        block_align=block_align,
        bit_depth=bit_depth,
        data_size=data_size,
    )


def is_playable_wav(data: Optional[bytes]) -> bool:
    """Header-only or empty artifacts never count as playable audio."""
    return bool(data) and len(data) > WAV_HEADER_SIZE
