"""
Long-form text to audiobook pipeline.

This package exposes the main building blocks used by the CLI entry point:

- Paragraph, sentence and window splitting (`split_text`).
- Token counting against the model, with retries (`token_counter`).
- Paragraph aggregation and token-checked chunk validation (`chunker`).
- Progress event types (`progress`).
- WAV packaging of raw model audio (`wav_encoder`).
- Engine abstractions and concrete implementations (`tts_engine`).
- Per-chunk synthesis with retries and cancellation (`generator`).
- Audio merging and part archives (`merger`).
- Run manifests (`metadata`).
"""

from .split_text import (
    hard_split_by_length,
    split_into_paragraphs,
    split_into_sentences,
    split_recursive,
)
from .token_counter import (
    GoogleGenAITokenCounter,
    MockTokenCounter,
    TokenCounter,
    TokenCountError,
    count_tokens_with_retry,
)
from .chunker import (
    Chapter,
    Chunk,
    ChunkingConfig,
    ChunkStatus,
    ChunkValidator,
    aggregate_paragraphs,
)
from .wav_encoder import AudioParameters, encode_wav, encode_wav_from_base64
from .tts_engine import (
    GoogleGenAITtsEngine,
    MockTtsEngine,
    SynthesisError,
    SynthesisFailure,
    TtsEngine,
)
from .generator import AudiobookGenerator, CancellationToken, GenerationConfig
from .merger import merge_audio_chunks, write_parts_archive
from .metadata import MetadataBuilder

__all__ = [
    "split_into_paragraphs",
    "split_into_sentences",
    "split_recursive",
    "hard_split_by_length",
    "TokenCounter",
    "TokenCountError",
    "GoogleGenAITokenCounter",
    "MockTokenCounter",
    "count_tokens_with_retry",
    "Chapter",
    "Chunk",
    "ChunkStatus",
    "ChunkingConfig",
    "ChunkValidator",
    "aggregate_paragraphs",
    "AudioParameters",
    "encode_wav",
    "encode_wav_from_base64",
    "TtsEngine",
    "GoogleGenAITtsEngine",
    "MockTtsEngine",
    "SynthesisError",
    "SynthesisFailure",
    "AudiobookGenerator",
    "CancellationToken",
    "GenerationConfig",
    "merge_audio_chunks",
    "write_parts_archive",
    "MetadataBuilder",
]
