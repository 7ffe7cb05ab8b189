import re

from audiobook_pipeline.chunker import (
    Chapter,
    ChunkingConfig,
    ChunkStatus,
    ChunkValidator,
    aggregate_paragraphs,
)
from audiobook_pipeline.split_text import split_into_paragraphs
from audiobook_pipeline.token_counter import MockTokenCounter, TokenCountError


def _squash(text):
    return re.sub(r"\s+", "", text)


def _small_config(**overrides):
    values = dict(
        ideal_chars_per_chunk=200,
        ideal_tokens_per_chunk=20,
        ideal_chunk_size_multiplier=1.5,
        fine_grained_split_divisor=2,
        max_tts_tokens=50,
        token_retry_delay=0,
    )
    values.update(overrides)
    return ChunkingConfig(**values)


def test_config_derived_bounds():
    config = ChunkingConfig()

    assert config.ideal_chunk_token_upper_bound == 3000
    assert config.fine_grained_char_target == 3000


def test_aggregate_packs_paragraphs_up_to_target():
    paragraphs = ["p%d" % i + "." * 38 for i in range(5)]

    candidates = aggregate_paragraphs(paragraphs, 100)

    assert candidates == [
        "\n\n".join(paragraphs[0:2]),
        "\n\n".join(paragraphs[2:4]),
        paragraphs[4],
    ]


def test_aggregate_keeps_oversized_paragraph_standalone():
    events = []
    paragraphs = ["x" * 150, "a", "b"]

    candidates = aggregate_paragraphs(paragraphs, 100, events.append)

    assert candidates == ["x" * 150, "a\n\nb"]
    assert [e.type for e in events].count("charsplit_initial") == 1


def test_aggregate_is_stable_when_reapplied():
    paragraphs = [("Sentence %d. " % i) * (1 + i % 7) for i in range(40)]
    paragraphs = [p.strip() for p in paragraphs]

    candidates = aggregate_paragraphs(paragraphs, 150)
    resplit = split_into_paragraphs("\n\n".join(candidates))

    assert resplit == paragraphs
    assert aggregate_paragraphs(resplit, 150) == candidates


def test_all_paragraphs_fit_in_one_chunk():
    text = "\n\n".join("Paragraph number %d is short." % i for i in range(10))
    counter = MockTokenCounter()
    validator = ChunkValidator(counter, ChunkingConfig(token_retry_delay=0))

    chunks = validator.build_chunks(text, title="My Book")

    assert len(chunks) == 1
    chunk = chunks[0]
    assert chunk.index == 0
    assert chunk.status == ChunkStatus.PENDING
    assert chunk.file_name == "My_Book_Part_001.wav"
    assert chunk.chapter_title == "My Book"
    assert chunk.token_count <= validator.config.ideal_chunk_token_upper_bound
    assert len(counter.calls) == 1


def test_transient_failures_then_success_are_invisible():
    counter = MockTokenCounter(
        failures=[
            TokenCountError("500 Internal error", transient=True),
            TokenCountError("500 Internal error", transient=True),
        ]
    )
    validator = ChunkValidator(counter, ChunkingConfig(token_retry_delay=0))

    chunks = validator.build_chunks("Just one paragraph.")

    assert len(chunks) == 1
    assert chunks[0].status == ChunkStatus.PENDING
    assert chunks[0].error_details is None
    assert chunks[0].token_retries == 2
    assert len(counter.calls) == 3


def test_permanent_failure_degrades_only_that_candidate():
    paragraphs = ["a" * 150, "b" * 150]
    counter = MockTokenCounter(failures=[TokenCountError("403 denied")])
    events = []
    validator = ChunkValidator(counter, _small_config(ideal_tokens_per_chunk=100))

    chunks = validator.build_chunks("\n\n".join(paragraphs), title="Book", on_progress=events.append)

    assert [c.status for c in chunks] == [ChunkStatus.ERROR, ChunkStatus.PENDING]
    assert chunks[0].file_name == "Book_Part_001_TOKEN_ERR.wav"
    assert chunks[0].text == paragraphs[0]
    assert "403 denied" in chunks[0].error_details
    assert chunks[0].token_count is None
    assert chunks[1].file_name == "Book_Part_002.wav"
    assert any(e.type == "error" and e.chunk_index == 0 for e in events)


def test_exhausted_transient_failures_become_error_chunk():
    counter = MockTokenCounter(
        failures=[TokenCountError("500", transient=True) for _ in range(3)]
    )
    validator = ChunkValidator(counter, ChunkingConfig(token_retry_delay=0))

    chunks = validator.build_chunks("Some text.")

    assert chunks[0].status == ChunkStatus.ERROR
    assert chunks[0].token_error
    assert len(counter.calls) == 3


def test_oversized_candidate_is_resplit_into_sentences():
    sentence = "Alpha beta gamma delta epsilon zeta."
    paragraph = " ".join([sentence] * 6)
    counter = MockTokenCounter()
    events = []
    validator = ChunkValidator(counter, _small_config())

    chunks = validator.build_chunks(paragraph, title="Book", on_progress=events.append)

    assert [c.text for c in chunks] == [sentence] * 6
    assert [c.index for c in chunks] == list(range(6))
    assert all(not c.oversized for c in chunks)
    assert all(c.token_count <= validator.config.max_tts_tokens for c in chunks)
    assert len(counter.calls) == 7
    fine = [e for e in events if e.type == "charsplit_fine"]
    assert len(fine) == 1 and fine[0].fragment_count == 6


def test_fragments_still_over_limit_are_flagged_not_dropped():
    text = "x" * 250
    counter = MockTokenCounter({"x" * 100: 999})
    validator = ChunkValidator(counter, _small_config())

    chunks = validator.build_chunks(text, title="Book")

    assert [len(c.text) for c in chunks] == [100, 100, 50]
    assert [c.oversized for c in chunks] == [True, True, False]
    assert chunks[0].file_name == "Book_Part_001_OVERSIZED.wav"
    assert chunks[1].file_name == "Book_Part_002_OVERSIZED.wav"
    assert chunks[2].file_name == "Book_Part_003.wav"
    assert all(c.status == ChunkStatus.PENDING for c in chunks)
    assert "".join(c.text for c in chunks) == text


def test_fragment_count_failure_uses_sub_token_suffix():
    counter = MockTokenCounter(failures=[None, TokenCountError("bad request")])
    validator = ChunkValidator(counter, _small_config())

    chunks = validator.build_chunks("x" * 250, title="Book")

    assert chunks[0].status == ChunkStatus.ERROR
    assert chunks[0].file_name == "Book_Part_001_SUB_TOKEN_ERR.wav"
    assert [c.status for c in chunks[1:]] == [ChunkStatus.PENDING, ChunkStatus.PENDING]


def test_chunk_flags_are_explicit_and_match_file_names():
    counter = MockTokenCounter(
        {"x" * 100: 999},
        failures=[None, None, TokenCountError("bad request")],
    )
    validator = ChunkValidator(counter, _small_config())

    chunks = validator.build_chunks("x" * 250, title="Book")

    assert [c.oversized for c in chunks] == [True, False, False]
    assert [c.token_error for c in chunks] == [False, True, False]
    assert [c.file_name for c in chunks] == [
        "Book_Part_001_OVERSIZED.wav",
        "Book_Part_002_SUB_TOKEN_ERR.wav",
        "Book_Part_003.wav",
    ]

def test_chunks_cover_the_whole_input():
    text = "\n\n".join(
        [
            "Opening line.",
            "Средний абзац. " * 30,
            "nowhitespace" * 40,
            "Closing. Words! More? Yes.",
        ]
    )
    counter = MockTokenCounter(failures=[None, TokenCountError("boom")])
    validator = ChunkValidator(counter, _small_config())

    chunks = validator.build_chunks(text)

    assert _squash("".join(c.text for c in chunks)) == _squash(text)
    assert [c.index for c in chunks] == list(range(len(chunks)))


def test_style_prompt_is_included_in_counts():
    counter = MockTokenCounter()
    validator = ChunkValidator(counter, ChunkingConfig(token_retry_delay=0), style_prompt="Read calmly")

    validator.build_chunks("Hello there.")

    assert counter.calls == ["Read calmly: Hello there."]


def test_progress_events_are_ordered():
    events = []
    validator = ChunkValidator(MockTokenCounter(), ChunkingConfig(token_retry_delay=0))

    validator.build_chunks("One.\n\nTwo.", on_progress=events.append)

    types = [e.type for e in events]
    assert types[0] == "preprocessing"
    assert "aggregation_heuristic" in types
    assert "validation" in types
    assert types[-1] == "done"
    assert events[-1].chunk_count == 1


def test_empty_text_produces_no_chunks():
    events = []
    validator = ChunkValidator(MockTokenCounter())

    assert validator.build_chunks("  \n\n  ", on_progress=events.append) == []
    assert [e.type for e in events] == ["done"]


def test_chapter_indices_continue_across_chapters():
    chapters = [
        Chapter(title="One", content="a" * 150 + "\n\n" + "b" * 150),
        Chapter(title="Two", content="c" * 150),
    ]
    validator = ChunkValidator(MockTokenCounter(), _small_config(ideal_tokens_per_chunk=100))

    chunks = validator.build_chunks_for_chapters(chapters, book_title="Война и мир")

    assert [c.index for c in chunks] == [0, 1, 2]
    assert [c.chapter_title for c in chunks] == ["One", "One", "Two"]
    assert chunks[2].file_name == "Voina_i_mir_Part_003.wav"
