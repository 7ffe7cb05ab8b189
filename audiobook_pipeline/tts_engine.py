from __future__ import annotations

import base64
import logging
import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence

from .token_counter import with_style_prompt
from .wav_encoder import AudioParameters, parse_audio_mime_type

logger = logging.getLogger(__name__)

__all__ = [
    "SynthesisFailure",
    "SynthesisError",
    "SynthesisResult",
    "TtsEngine",
    "GoogleGenAITtsEngine",
    "MockTtsEngine",
    "HARM_CATEGORIES",
    "safety_settings_from_threshold",
]

DEFAULT_TTS_MODEL = "gemini-2.5-flash-preview-tts"
DEFAULT_VOICE = "Kore"

HARM_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)
HARM_BLOCK_THRESHOLDS = (
    "BLOCK_NONE",
    "BLOCK_ONLY_HIGH",
    "BLOCK_MEDIUM_AND_ABOVE",
    "BLOCK_LOW_AND_ABOVE",
)


class SynthesisFailure(str, Enum):
    SAFETY = "safety"
    LENGTH = "length"
    REFUSAL = "refusal"
    RECITATION = "recitation"
    NO_DATA = "no_data"
    OTHER = "other"


_FINISH_REASONS = {
    "SAFETY": (
        SynthesisFailure.SAFETY,
        "Audio generation stopped due to content safety policies. "
        "Try a less restrictive safety threshold.",
    ),
    "PROHIBITED_CONTENT": (
        SynthesisFailure.SAFETY,
        "Audio generation stopped due to content safety policies. "
        "Try a less restrictive safety threshold.",
    ),
    "OTHER": (
        SynthesisFailure.REFUSAL,
        "The model declined to generate audio. This commonly depends on the input "
        "text, content policies or a temporary service issue.",
    ),
    "MAX_TOKENS": (SynthesisFailure.LENGTH, "Input text is too long."),
    "RECITATION": (
        SynthesisFailure.RECITATION,
        "Audio generation stopped due to recitation policy.",
    ),
}


class SynthesisError(RuntimeError):
    """
    Synthesis failed; ``reason`` keeps the model's classification.
    """

    def __init__(self, message: str, reason: SynthesisFailure = SynthesisFailure.OTHER) -> None:
        super().__init__(message)
        self.reason = reason


@dataclass
class SynthesisResult:
    pcm: bytes
    params: AudioParameters


def safety_settings_from_threshold(threshold: str) -> List[Dict[str, str]]:
    """
    The four standard harm categories, all blocked at ``threshold``.
    """
    threshold = threshold.upper()
    if threshold not in HARM_BLOCK_THRESHOLDS:
        raise ValueError(
            f"Unknown safety threshold {threshold}. Expected one of {', '.join(HARM_BLOCK_THRESHOLDS)}."
        )
    return [{"category": category, "threshold": threshold} for category in HARM_CATEGORIES]


class TtsEngine(ABC):
    """
    Thin abstraction over a text-to-speech engine that returns raw PCM samples.
    """

    def __init__(self, *, expected_params: Optional[AudioParameters] = None) -> None:
        self.expected_params = expected_params

    @abstractmethod
    def synthesize(self, text: str) -> SynthesisResult:
        """
        Convert one chunk of text into raw PCM, raising ``SynthesisError`` on failure.
        """

    def descriptor(self) -> str:
        return self.__class__.__name__

    def _validate_result(self, result: SynthesisResult) -> SynthesisResult:
        """
        Ensures every chunk comes back in the same audio format.

        The first result establishes the reference format unless the engine was
        initialised with explicit expectations.
        """
        if self.expected_params is None:
            self.expected_params = result.params
        elif result.params != self.expected_params:
            raise SynthesisError(
                f"Engine {self.descriptor()} returned {result.params}, "
                f"expected {self.expected_params}"
            )
        return result


class MockTtsEngine(TtsEngine):
    """
    Lightweight mock for tests and dry runs. Produces a square-wave tone whose
    length depends on the text, optionally followed by silence.
    """

    def __init__(
        self,
        *,
        base_duration_ms: int = 200,
        per_char_ms: int = 5,
        trailing_silence_ms: int = 0,
        amplitude: int = 1000,
        params: Optional[AudioParameters] = None,
        failures: Optional[Iterable[Optional[Exception]]] = None,
    ) -> None:
        super().__init__(expected_params=params or AudioParameters())
        self._base_duration_ms = base_duration_ms
        self._per_char_ms = per_char_ms
        self._trailing_silence_ms = trailing_silence_ms
        self._amplitude = amplitude
        self._failures: List[Optional[Exception]] = list(failures or [])
        self.calls: List[str] = []

    def synthesize(self, text: str) -> SynthesisResult:
        self.calls.append(text)
        if self._failures:
            failure = self._failures.pop(0)
            if failure is not None:
                raise failure

        params = self.expected_params
        duration_ms = self._base_duration_ms + len(text) * self._per_char_ms
        frames = duration_ms * params.sample_rate // 1000
        silent_frames = self._trailing_silence_ms * params.sample_rate // 1000
        tone = _square_wave(frames, params, self._amplitude)
        silence = b"\x00" * (silent_frames * params.block_align)
        return self._validate_result(SynthesisResult(pcm=tone + silence, params=params))


class GoogleGenAITtsEngine(TtsEngine):
    """
    Gemini text-to-speech through the ``google-genai`` streaming API.
    """

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        model: str = DEFAULT_TTS_MODEL,
        voice_name: Optional[str] = None,
        style_prompt: str = "",
        language_code: Optional[str] = None,
        safety_settings: Optional[Sequence[Dict[str, str]]] = None,
        temperature: Optional[float] = None,
        client: Optional[object] = None,
    ) -> None:
        try:
            from google import genai  # type: ignore
            from google.genai import types  # type: ignore
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise RuntimeError(
                "google-genai is required for GoogleGenAITtsEngine but is not installed."
            ) from exc

        super().__init__()
        if client is None and not api_key:
            raise ValueError("GoogleGenAITtsEngine requires an API key or a client.")
        self._client = client or genai.Client(api_key=api_key)
        self._types = types
        self._model = model
        self._voice_name = voice_name or DEFAULT_VOICE
        self._style_prompt = style_prompt
        self._language_code = language_code
        self._safety_settings = list(safety_settings or [])
        self._temperature = temperature

    def descriptor(self) -> str:
        return f"{self.__class__.__name__}({self._model}, voice={self._voice_name})"

    def _build_config(self):
        types = self._types
        speech_config = types.SpeechConfig(
            language_code=self._language_code,
            voice_config=types.VoiceConfig(
                prebuilt_voice_config=types.PrebuiltVoiceConfig(voice_name=self._voice_name)
            ),
        )
        safety = [
            types.SafetySetting(category=s["category"], threshold=s["threshold"])
            for s in self._safety_settings
        ]
        return types.GenerateContentConfig(
            response_modalities=["AUDIO"],
            speech_config=speech_config,
            temperature=self._temperature,
            safety_settings=safety or None,
        )

    def synthesize(self, text: str) -> SynthesisResult:
        if not text or not text.strip():
            raise SynthesisError("No text to speak for audio generation.", SynthesisFailure.NO_DATA)

        types = self._types
        full_text = with_style_prompt(text, self._style_prompt)
        content = types.Content(role="user", parts=[types.Part.from_text(text=full_text)])
        logger.debug(
            "Requesting audio for %d chars (voice %s, language %s).",
            len(full_text),
            self._voice_name,
            self._language_code,
        )

        audio_chunks: List[bytes] = []
        params: Optional[AudioParameters] = None
        finish_reason: Optional[str] = None
        safety_ratings: list = []
        unexpected_text = ""

        for chunk in self._client.models.generate_content_stream(
            model=self._model,
            contents=[content],
            config=self._build_config(),
        ):
            candidate = (chunk.candidates or [None])[0]
            if not candidate:
                continue
            if candidate.finish_reason:
                finish_reason = _enum_name(candidate.finish_reason)
            if candidate.safety_ratings:
                safety_ratings = list(candidate.safety_ratings)
            if not candidate.content or not candidate.content.parts:
                continue
            for part in candidate.content.parts:
                inline = getattr(part, "inline_data", None)
                if inline and inline.data and (inline.mime_type or "").startswith("audio/"):
                    if params is None:
                        params = parse_audio_mime_type(inline.mime_type)
                        logger.debug("First audio part has mime type %s", inline.mime_type)
                    data = inline.data
                    if isinstance(data, str):
                        data = base64.b64decode(data)
                    audio_chunks.append(data)
                elif getattr(part, "text", None):
                    logger.warning("Received unexpected text part in audio stream: %s", part.text)
                    unexpected_text += part.text

        if audio_chunks and params is not None:
            return self._validate_result(SynthesisResult(pcm=b"".join(audio_chunks), params=params))

        raise _classify_missing_audio(finish_reason, safety_ratings, unexpected_text)


def _classify_missing_audio(
    finish_reason: Optional[str], safety_ratings: list, unexpected_text: str
) -> SynthesisError:
    if finish_reason and finish_reason != "STOP":
        reason, detail = _FINISH_REASONS.get(
            finish_reason,
            (SynthesisFailure.OTHER, f"Audio generation stopped. Reason: {finish_reason}."),
        )
    else:
        reason, detail = SynthesisFailure.NO_DATA, "Stream finished but no audio data was received."

    if safety_ratings:
        detail += f" Safety ratings: {[_describe_rating(r) for r in safety_ratings]}."
    if unexpected_text.strip():
        detail += f' Unexpected text response: "{unexpected_text[:100]}".'
    return SynthesisError(f"No audio data found. {detail}", reason)


def _enum_name(value) -> str:
    return str(getattr(value, "value", value))


def _describe_rating(rating) -> str:
    category = _enum_name(getattr(rating, "category", "?"))
    probability = _enum_name(getattr(rating, "probability", "?"))
    return f"{category}={probability}"


def _square_wave(frames: int, params: AudioParameters, amplitude: int) -> bytes:
    if params.bit_depth != 16:
        return b"\x01" * (frames * params.block_align)
    high = struct.pack("<h", amplitude) * params.channels
    low = struct.pack("<h", -amplitude) * params.channels
    period = high * 20 + low * 20
    repeats, remainder = divmod(frames, 40)
    data = period * repeats
    return data + period[: remainder * params.block_align]
