import pytest

from audiobook_pipeline.naming import (
    OVERSIZED,
    SUB_TOKEN_ERR,
    TOKEN_ERR,
    chunk_file_name,
    sanitize_title,
)


@pytest.mark.parametrize(
    "title, expected",
    [
        ("My Book", "My_Book"),
        ("Война и мир", "Voina_i_mir"),
        ("a/b:c?d", "a_b_c_d"),
        ("", "AudiobookPart"),
        (None, "AudiobookPart"),
    ],
)
def test_sanitize_title(title, expected):
    assert sanitize_title(title) == expected


def test_sanitize_title_truncates_long_titles():
    assert sanitize_title("x" * 80) == "x" * 50


def test_chunk_file_name_uses_one_based_part_numbers():
    assert chunk_file_name("Book", 0) == "Book_Part_001.wav"
    assert chunk_file_name("Book", 41, OVERSIZED) == "Book_Part_042_OVERSIZED.wav"
    assert chunk_file_name("Book", 999) == "Book_Part_1000.wav"


def test_chunk_file_name_error_suffixes():
    assert chunk_file_name("Book", 1, TOKEN_ERR) == "Book_Part_002_TOKEN_ERR.wav"
    assert chunk_file_name("Book", 2, SUB_TOKEN_ERR) == "Book_Part_003_SUB_TOKEN_ERR.wav"
    with pytest.raises(ValueError):
        chunk_file_name("Book", 0, "_WHATEVER")
