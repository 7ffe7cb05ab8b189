from __future__ import annotations

import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Union

logger = logging.getLogger(__name__)

__all__ = [
    "TokenCountError",
    "TokenCountResult",
    "TokenCounter",
    "GoogleGenAITokenCounter",
    "MockTokenCounter",
    "count_tokens_with_retry",
    "with_style_prompt",
]

DEFAULT_TOKEN_MODEL = "gemini-2.5-flash"


class TokenCountError(RuntimeError):
    """
    Raised when the token counting service fails.

    ``transient`` marks server-side failures that are worth retrying.
    """

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass(frozen=True)
class TokenCountResult:
    tokens: int
    retries: int = 0


class TokenCounter(ABC):
    """
    Authoritative size oracle: reports how many model tokens a text occupies.
    """

    @abstractmethod
    def count_tokens(self, text: str) -> int:
        """
        Return the token count for ``text`` or raise ``TokenCountError``.
        """

    def descriptor(self) -> str:
        return self.__class__.__name__


class GoogleGenAITokenCounter(TokenCounter):
    """
    Token counter backed by ``models.count_tokens`` of the ``google-genai`` client.
    """

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        model: str = DEFAULT_TOKEN_MODEL,
        client: Optional[object] = None,
    ) -> None:
        try:
            from google import genai  # type: ignore
            from google.genai import errors  # type: ignore
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise RuntimeError(
                "google-genai is required for GoogleGenAITokenCounter but is not installed."
            ) from exc

        if client is None and not api_key:
            raise ValueError("GoogleGenAITokenCounter requires an API key or a client.")
        self._client = client or genai.Client(api_key=api_key)
        self._errors = errors
        self._model = model

    def count_tokens(self, text: str) -> int:
        try:
            response = self._client.models.count_tokens(model=self._model, contents=text)
        except self._errors.APIError as exc:
            transient = isinstance(exc, self._errors.ServerError) or _looks_like_server_error(exc)
            raise TokenCountError(f"Token counting failed: {exc}", transient=transient) from exc
        except Exception as exc:
            raise TokenCountError(
                f"Token counting failed: {exc}", transient=_looks_like_server_error(exc)
            ) from exc

        total = getattr(response, "total_tokens", None)
        if total is None:
            raise TokenCountError("Token counting response did not include total_tokens.")
        return int(total)

    def descriptor(self) -> str:
        return f"{self.__class__.__name__}({self._model})"


class MockTokenCounter(TokenCounter):
    """
    Deterministic counter for tests and offline dry runs.

    Counts come from ``counts`` when the text is listed there and otherwise from
    ``ceil(len(text) / chars_per_token)``. ``failures`` is a queue of exceptions
    (or ``None`` for "succeed") consumed one per call before counting.
    """

    def __init__(
        self,
        counts: Optional[Dict[str, int]] = None,
        *,
        chars_per_token: float = 3.0,
        failures: Optional[Iterable[Optional[Exception]]] = None,
    ) -> None:
        self._counts = counts or {}
        self._chars_per_token = chars_per_token
        self._failures: List[Optional[Exception]] = list(failures or [])
        self.calls: List[str] = []

    def count_tokens(self, text: str) -> int:
        self.calls.append(text)
        if self._failures:
            failure = self._failures.pop(0)
            if failure is not None:
                raise failure
        if text in self._counts:
            return self._counts[text]
        return math.ceil(len(text) / self._chars_per_token)


def with_style_prompt(text: str, style_prompt: Optional[str]) -> str:
    """
    Combine the style instruction with the text the way it is sent for synthesis.
    """
    prompt = (style_prompt or "").strip()
    return f"{prompt}: {text}" if prompt else text


def count_tokens_with_retry(
    counter: TokenCounter,
    text: str,
    *,
    style_prompt: Optional[str] = None,
    max_retries: int = 2,
    retry_delay: float = 1.0,
    context: str = "text",
) -> TokenCountResult:
    """
    Count tokens, retrying transient failures with linearly increasing delays.

    Permanent failures are re-raised immediately; the last transient failure is
    re-raised once ``max_retries`` extra attempts are used up.
    """
    full_text = with_style_prompt(text, style_prompt)
    attempt = 0
    while True:
        if attempt > 0:
            delay = retry_delay * attempt
            logger.info(
                "Retrying token count for %s (attempt %d/%d) in %.2fs.",
                context,
                attempt + 1,
                max_retries + 1,
                delay,
            )
            time.sleep(delay)
        try:
            tokens = counter.count_tokens(full_text)
        except TokenCountError as exc:
            if exc.transient and attempt < max_retries:
                logger.warning(
                    "Token count for %s failed with a server error (attempt %d): %s",
                    context,
                    attempt + 1,
                    exc,
                )
                attempt += 1
                continue
            logger.error(
                "Token count for %s failed (attempt %d): %s. Text starts with %r",
                context,
                attempt + 1,
                exc,
                text[:100],
            )
            raise

        logger.debug(
            "%s: %d tokens for %d chars.", context, tokens, len(full_text)
        )
        return TokenCountResult(tokens=tokens, retries=attempt)


def _looks_like_server_error(exc: Union[Exception, str]) -> bool:
    message = str(exc)
    return "500" in message or "Internal error" in message or "INTERNAL" in message
