import pytest

from audiobook_pipeline.chunker import Chunk, ChunkStatus
from audiobook_pipeline.generator import (
    AudiobookGenerator,
    CancellationToken,
    GenerationConfig,
    successful_chunks,
)
from audiobook_pipeline.tts_engine import (
    MockTtsEngine,
    SynthesisError,
    SynthesisFailure,
    SynthesisResult,
    TtsEngine,
)
from audiobook_pipeline.wav_encoder import AudioParameters, read_wav_header


class _EmptyEngine(TtsEngine):
    def synthesize(self, text):
        return SynthesisResult(pcm=b"", params=AudioParameters())


@pytest.fixture(autouse=True)
def _no_sleep(monkeypatch):
    delays = []
    monkeypatch.setattr("audiobook_pipeline.generator.time.sleep", delays.append)
    return delays


def _chunks(*texts):
    return [
        Chunk(index=i, text=text, file_name=f"Book_Part_{i + 1:03d}.wav")
        for i, text in enumerate(texts)
    ]


def test_generate_writes_every_part(tmp_path):
    chunks = _chunks("First part.", "Second part.")
    engine = MockTtsEngine()
    generator = AudiobookGenerator(engine, GenerationConfig(output_directory=tmp_path / "parts"))

    summary = generator.generate(chunks)

    assert summary.succeeded == 2
    assert summary.failed == summary.skipped == 0
    assert not summary.partial
    for chunk in chunks:
        assert chunk.status == ChunkStatus.SUCCESS
        assert chunk.retries == 0
        assert chunk.audio_path == tmp_path / "parts" / chunk.file_name
        assert chunk.audio_path.read_bytes() == chunk.audio
        assert read_wav_header(chunk.audio).sample_rate == 24000
    assert engine.calls == ["First part.", "Second part."]


def test_generate_without_output_directory_keeps_audio_in_memory():
    chunks = _chunks("Only part.")

    AudiobookGenerator(MockTtsEngine()).generate(chunks)

    assert chunks[0].audio
    assert chunks[0].audio_path is None


def test_oversized_and_token_error_chunks_are_skipped():
    chunks = _chunks("fine", "huge", "broken")
    chunks[1].oversized = True
    chunks[1].token_count = 9000
    chunks[2].status = ChunkStatus.ERROR
    chunks[2].error_details = "Token counting failed"
    engine = MockTtsEngine()

    summary = AudiobookGenerator(engine).generate(chunks)

    assert engine.calls == ["fine"]
    assert summary.succeeded == 1
    assert summary.skipped == 2
    assert summary.partial
    assert chunks[1].status == ChunkStatus.ERROR
    assert "9000 tokens" in chunks[1].error_details
    assert chunks[2].error_details == "Token counting failed"
    assert [c.file_name for c in successful_chunks(chunks)] == ["Book_Part_001.wav"]


def test_retry_then_success_records_retries(_no_sleep):
    chunks = _chunks("Retry me.")
    engine = MockTtsEngine(
        failures=[
            SynthesisError("temporary", SynthesisFailure.OTHER),
            SynthesisError("temporary", SynthesisFailure.OTHER),
        ]
    )

    summary = AudiobookGenerator(engine, GenerationConfig(retry_delay=1.5)).generate(chunks)

    assert summary.succeeded == 1
    assert chunks[0].status == ChunkStatus.SUCCESS
    assert chunks[0].retries == 2
    assert chunks[0].error_details is None
    assert len(engine.calls) == 3
    assert _no_sleep == [1.5, 3.0]


def test_exhausted_retries_keep_failure_reason():
    chunks = _chunks("Blocked.", "Fine.")
    engine = MockTtsEngine(
        failures=[SynthesisError("No audio data found.", SynthesisFailure.SAFETY) for _ in range(3)]
    )

    summary = AudiobookGenerator(engine).generate(chunks)

    assert chunks[0].status == ChunkStatus.ERROR
    assert chunks[0].error_details.startswith("[safety]")
    assert chunks[0].retries == 2
    assert chunks[1].status == ChunkStatus.SUCCESS
    assert summary.failed == 1
    assert summary.succeeded == 1


def test_header_only_audio_is_a_failure():
    chunks = _chunks("Silent.")

    summary = AudiobookGenerator(_EmptyEngine(), GenerationConfig(max_retries=0)).generate(chunks)

    assert summary.failed == 1
    assert chunks[0].status == ChunkStatus.ERROR
    assert "empty" in chunks[0].error_details


def test_cancel_before_start_leaves_chunks_pending():
    chunks = _chunks("a", "b")
    token = CancellationToken()
    token.cancel()
    engine = MockTtsEngine()

    summary = AudiobookGenerator(engine).generate(chunks, cancel_token=token)

    assert summary.cancelled
    assert engine.calls == []
    assert [c.status for c in chunks] == [ChunkStatus.PENDING, ChunkStatus.PENDING]


def test_cancel_between_chunks_keeps_finished_parts():
    chunks = _chunks("a", "b", "c")
    token = CancellationToken()
    engine = MockTtsEngine()

    def on_chunk(chunk):
        if chunk.status == ChunkStatus.SUCCESS:
            token.cancel()

    summary = AudiobookGenerator(engine).generate(chunks, cancel_token=token, on_chunk=on_chunk)

    assert summary.cancelled
    assert summary.succeeded == 1
    assert engine.calls == ["a"]
    assert [c.status for c in chunks] == [
        ChunkStatus.SUCCESS,
        ChunkStatus.PENDING,
        ChunkStatus.PENDING,
    ]


def test_cancel_during_retries_marks_chunk_failed():
    chunks = _chunks("a")
    token = CancellationToken()

    class _CancellingEngine(MockTtsEngine):
        def synthesize(self, text):
            token.cancel()
            raise SynthesisError("server hiccup")

    engine = _CancellingEngine()

    summary = AudiobookGenerator(engine).generate(chunks, cancel_token=token)

    assert chunks[0].status == ChunkStatus.ERROR
    assert chunks[0].error_details == "[other] server hiccup"
    assert summary.failed == 1
