#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
from pathlib import Path
from typing import List, Sequence, Tuple

from audiobook_pipeline.chunker import Chunk, ChunkingConfig, ChunkValidator
from audiobook_pipeline.generator import AudiobookGenerator, CancellationToken, GenerationConfig
from audiobook_pipeline.merger import merge_audio_chunks, write_parts_archive
from audiobook_pipeline.metadata import MetadataBuilder
from audiobook_pipeline.progress import log_progress
from audiobook_pipeline.token_counter import (
    DEFAULT_TOKEN_MODEL,
    GoogleGenAITokenCounter,
    MockTokenCounter,
    TokenCounter,
)
from audiobook_pipeline.tts_engine import (
    DEFAULT_TTS_MODEL,
    HARM_BLOCK_THRESHOLDS,
    GoogleGenAITtsEngine,
    MockTtsEngine,
    TtsEngine,
    safety_settings_from_threshold,
)

logger = logging.getLogger(__name__)

ENGINE_CHOICES = ("google_genai", "mock")


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    defaults = ChunkingConfig()
    parser = argparse.ArgumentParser(description="Convert long-form text into audiobook parts.")
    parser.add_argument("--input", required=True, help="Input text file path.")
    parser.add_argument("--input-encoding", default="utf-8", help="Encoding used for input file.")
    parser.add_argument("--title", help="Book title used for part file names (default: input file stem).")
    parser.add_argument("--output-dir", default="./output/parts", help="Directory to store the WAV parts.")
    parser.add_argument("--merge-output", help="Optional path for a single merged audiobook file.")
    parser.add_argument("--archive-output", help="Optional path for a zip of all successful parts.")
    parser.add_argument("--metadata-output", default="./output/metadata.json", help="Path for metadata JSON output.")
    parser.add_argument("--silence-gap-ms", type=int, default=300, help="Silence inserted between merged parts in milliseconds.")
    parser.add_argument("--engine", default="google_genai", choices=ENGINE_CHOICES, help="TTS engine to use.")
    parser.add_argument("--api-key", help="API key for the Gemini engine.")
    parser.add_argument("--tts-model", default=DEFAULT_TTS_MODEL, help="Gemini TTS model name.")
    parser.add_argument("--token-model", default=DEFAULT_TOKEN_MODEL, help="Gemini model used for token counting.")
    parser.add_argument("--voice-id", help="Prebuilt voice name.")
    parser.add_argument("--style-prompt", default="", help="Style instruction prepended to every chunk.")
    parser.add_argument("--language-code", help="Language code hint for engine.")
    parser.add_argument("--temperature", type=float, help="Sampling temperature for synthesis.")
    parser.add_argument(
        "--safety-threshold",
        choices=[t.lower() for t in HARM_BLOCK_THRESHOLDS],
        help="Block threshold applied to every harm category.",
    )
    parser.add_argument("--max-tts-tokens", type=int, default=defaults.max_tts_tokens, help="Hard token limit per request.")
    parser.add_argument("--ideal-tokens", type=int, default=defaults.ideal_tokens_per_chunk, help="Ideal tokens per chunk.")
    parser.add_argument("--ideal-chars", type=int, default=defaults.ideal_chars_per_chunk, help="Character target for paragraph aggregation.")
    parser.add_argument("--size-multiplier", type=float, default=defaults.ideal_chunk_size_multiplier, help="Multiplier giving the accepted token bound.")
    parser.add_argument("--split-divisor", type=int, default=defaults.fine_grained_split_divisor, help="Divisor of the character target used when re-splitting.")
    parser.add_argument("--token-retries", type=int, default=defaults.token_count_retries, help="Retries for transient token counting errors.")
    parser.add_argument("--token-retry-delay", type=float, default=defaults.token_retry_delay, help="Base delay between token count retries in seconds.")
    parser.add_argument("--max-retries", type=int, default=2, help="Synthesis retries per chunk.")
    parser.add_argument("--retry-delay", type=float, default=1.5, help="Base delay between synthesis retries in seconds.")
    parser.add_argument("--chunk-only", action="store_true", help="Only build and print the chunk plan.")
    parser.add_argument("--debug", action="store_true", help="Enable verbose logging.")
    return parser.parse_args(argv)


def configure_logging(debug: bool) -> None:
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )


def load_input_text(path: Path, encoding: str) -> str:
    if not path.exists():
        raise FileNotFoundError(f"Input file does not exist: {path}")
    return path.read_text(encoding=encoding)


def resolve_api_key(args: argparse.Namespace) -> str:
    api_key = args.api_key or os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_GENAI_API_KEY")
    if not api_key:
        raise ValueError("Gemini engine requires an API key (use --api-key or GEMINI_API_KEY env var).")
    return api_key


def create_backends(args: argparse.Namespace) -> Tuple[TokenCounter, TtsEngine]:
    engine_name = (args.engine or "").lower()
    if engine_name == "mock":
        return MockTokenCounter(), MockTtsEngine()

    if engine_name == "google_genai":
        api_key = resolve_api_key(args)
        safety = safety_settings_from_threshold(args.safety_threshold) if args.safety_threshold else None
        counter = GoogleGenAITokenCounter(api_key=api_key, model=args.token_model)
        engine = GoogleGenAITtsEngine(
            api_key=api_key,
            model=args.tts_model,
            voice_name=args.voice_id,
            style_prompt=args.style_prompt,
            language_code=args.language_code,
            safety_settings=safety,
            temperature=args.temperature,
        )
        return counter, engine

    raise ValueError(f"Unsupported engine: {args.engine}")


def build_chunking_config(args: argparse.Namespace) -> ChunkingConfig:
    return ChunkingConfig(
        max_tts_tokens=args.max_tts_tokens,
        ideal_tokens_per_chunk=args.ideal_tokens,
        ideal_chars_per_chunk=args.ideal_chars,
        ideal_chunk_size_multiplier=args.size_multiplier,
        fine_grained_split_divisor=args.split_divisor,
        token_count_retries=args.token_retries,
        token_retry_delay=args.token_retry_delay,
    )


def print_chunk_plan(chunks: Sequence[Chunk]) -> None:
    for chunk in chunks:
        tokens = chunk.token_count if chunk.token_count is not None else "-"
        print(f"{chunk.index:4d}  {chunk.file_name:<60} {len(chunk.text):>7} chars {tokens:>6} tokens  {chunk.status.value}")


def install_cancel_handler(token: CancellationToken) -> None:
    def _handler(signum, frame):
        if token.cancelled:
            raise KeyboardInterrupt
        logger.warning("Cancelling after the current part. Press Ctrl+C again to abort immediately.")
        token.cancel()

    signal.signal(signal.SIGINT, _handler)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    configure_logging(args.debug)

    input_path = Path(args.input)
    text = load_input_text(input_path, args.input_encoding)
    title = args.title or input_path.stem

    counter, engine = create_backends(args)
    chunking_config = build_chunking_config(args)
    validator = ChunkValidator(counter, chunking_config, style_prompt=args.style_prompt)
    chunks: List[Chunk] = validator.build_chunks(text, title=title, on_progress=log_progress)
    if not chunks:
        logger.warning("No text chunks found in input. Nothing to synthesize.")
        return 0

    if args.chunk_only:
        print_chunk_plan(chunks)
        return 0

    cancel_token = CancellationToken()
    install_cancel_handler(cancel_token)
    generator = AudiobookGenerator(
        engine,
        GenerationConfig(
            max_retries=args.max_retries,
            retry_delay=args.retry_delay,
            output_directory=Path(args.output_dir),
        ),
    )
    summary = generator.generate(chunks, cancel_token=cancel_token)

    metadata_builder = MetadataBuilder(
        engine=engine,
        config=chunking_config,
        output_path=Path(args.metadata_output),
    )
    metadata = metadata_builder.build_metadata(
        chunks=chunks,
        summary=summary,
        options={"title": title, "input_path": input_path},
    )
    metadata_builder.write_metadata(metadata)
    logger.info("Metadata written to %s", metadata_builder.output_path)

    if summary.succeeded == 0:
        logger.error("No audio parts were produced.")
        return 1

    if args.merge_output:
        merge_output_path = Path(args.merge_output)
        output_format = merge_output_path.suffix.lstrip(".").lower() or "wav"
        merge_audio_chunks(
            chunks,
            merge_output_path,
            silence_gap_ms=args.silence_gap_ms,
            output_format=output_format,
        )
    if args.archive_output:
        write_parts_archive(chunks, Path(args.archive_output))

    if summary.failed or summary.skipped:
        logger.warning(
            "Finished with %d failed and %d skipped parts. See %s for details.",
            summary.failed,
            summary.skipped,
            metadata_builder.output_path,
        )
    logger.info("Synthesis complete. Parts saved to %s", args.output_dir)
    return 0


def run() -> None:
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        logger.error("Interrupted by user.")
        sys.exit(1)
    except Exception as exc:
        logger.exception("Fatal error: %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    run()
