"""
Progress events emitted while text is turned into validated chunks.

Every event kind is its own frozen dataclass carrying only the fields that make
sense for it. ``type`` is the tag callers switch on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, Union

logger = logging.getLogger(__name__)

__all__ = [
    "PreprocessingEvent",
    "CharSplitEvent",
    "AggregationEvent",
    "ValidationEvent",
    "ErrorEvent",
    "DoneEvent",
    "ProgressEvent",
    "ProgressCallback",
    "log_progress",
]


@dataclass(frozen=True)
class PreprocessingEvent:
    message: str
    type: str = field(default="preprocessing", init=False)


@dataclass(frozen=True)
class CharSplitEvent:
    """Character based splitting: ``initial`` while aggregating, ``fine`` on re-split."""

    message: str
    stage: str = "fine"
    fragment_count: Optional[int] = None
    type: str = field(init=False)

    def __post_init__(self) -> None:
        if self.stage not in {"initial", "fine"}:
            raise ValueError(f"Unknown char split stage: {self.stage}")
        object.__setattr__(self, "type", f"charsplit_{self.stage}")


@dataclass(frozen=True)
class AggregationEvent:
    message: str
    processed_items: int
    total_items: int
    current_chunk_count: int
    type: str = field(default="aggregation_heuristic", init=False)


@dataclass(frozen=True)
class ValidationEvent:
    message: str
    processed_items: Optional[int] = None
    total_items: Optional[int] = None
    current_chunk_count: Optional[int] = None
    type: str = field(default="validation", init=False)


@dataclass(frozen=True)
class ErrorEvent:
    message: str
    chunk_index: Optional[int] = None
    type: str = field(default="error", init=False)


@dataclass(frozen=True)
class DoneEvent:
    message: str
    chunk_count: int = 0
    type: str = field(default="done", init=False)


ProgressEvent = Union[
    PreprocessingEvent,
    CharSplitEvent,
    AggregationEvent,
    ValidationEvent,
    ErrorEvent,
    DoneEvent,
]
ProgressCallback = Callable[[ProgressEvent], None]


def log_progress(event: ProgressEvent) -> None:
    """Progress callback that forwards events to the logger."""
    if isinstance(event, ErrorEvent):
        logger.warning("[%s] %s", event.type, event.message)
    elif isinstance(event, (AggregationEvent, ValidationEvent)) and event.total_items:
        logger.info(
            "[%s] %s (%s/%s, %s chunks)",
            event.type,
            event.message,
            event.processed_items,
            event.total_items,
            event.current_chunk_count,
        )
    else:
        logger.info("[%s] %s", event.type, event.message)
