from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional, Sequence

from .chunker import Chunk, ChunkingConfig
from .generator import GenerationSummary
from .tts_engine import TtsEngine

__all__ = ["MetadataBuilder"]


@dataclass
class MetadataBuilder:
    engine: TtsEngine
    config: ChunkingConfig
    output_path: Path

    def build_metadata(
        self,
        *,
        chunks: Sequence[Chunk],
        summary: Optional[GenerationSummary] = None,
        options: Optional[Dict[str, object]] = None,
    ) -> Dict[str, object]:
        options = options or {}
        params = self.engine.expected_params
        token_retries = sum(chunk.token_retries for chunk in chunks)
        synthesis_retries = sum(chunk.retries for chunk in chunks)

        metadata = {
            "created_at": datetime.now(timezone.utc).isoformat(),
            "engine": self.engine.descriptor(),
            "sample_rate": params.sample_rate if params else None,
            "channels": params.channels if params else None,
            "bit_depth": params.bit_depth if params else None,
            "title": options.get("title"),
            "input_path": str(options.get("input_path")) if options.get("input_path") else None,
            "chunks": [
                {
                    "index": chunk.index,
                    "file": chunk.file_name,
                    "chapter": chunk.chapter_title,
                    "status": chunk.status.value,
                    "chars": len(chunk.text),
                    "tokens": chunk.token_count,
                    "oversized": chunk.oversized,
                    "token_error": chunk.token_error,
                    "token_retries": chunk.token_retries,
                    "retries": chunk.retries,
                    "bytes": len(chunk.audio) if chunk.audio else 0,
                    "error": chunk.error_details,
                }
                for chunk in chunks
            ],
            "totals": {
                "chunks": len(chunks),
                "succeeded": summary.succeeded if summary else None,
                "failed": summary.failed if summary else None,
                "skipped": summary.skipped if summary else None,
                "cancelled": summary.cancelled if summary else None,
                "token_retries": token_retries,
                "retries": synthesis_retries,
            },
            "config": {
                "max_tts_tokens": self.config.max_tts_tokens,
                "ideal_tokens_per_chunk": self.config.ideal_tokens_per_chunk,
                "ideal_chunk_token_upper_bound": self.config.ideal_chunk_token_upper_bound,
                "ideal_chars_per_chunk": self.config.ideal_chars_per_chunk,
                "fine_grained_char_target": self.config.fine_grained_char_target,
            },
        }

        return metadata

    def write_metadata(self, metadata: Dict[str, object]) -> None:
        self.output_path.parent.mkdir(parents=True, exist_ok=True)
        with self.output_path.open("w", encoding="utf-8") as f:
            json.dump(metadata, f, ensure_ascii=False, indent=2)
