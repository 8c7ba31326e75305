from __future__ import annotations

import pytest

from ragstream.chunking import MIN_CHUNK_CHARS, iter_chunks, split_text


def test_split_text_short_sentences_produce_overlapping_chunks() -> None:
    chunks = split_text("A sentence. Another sentence. Yet another.", chunk_size=20, chunk_overlap=10)

    assert chunks == ["A sentence.", "sentence. Another sentence.", "sentence. Yet another."]
    for chunk in chunks:
        assert chunk.strip()
        # chunk_size plus one carried-over overlap word.
        assert len(chunk) <= 20 + len("sentence. ") + len("Another sentence.")


def test_split_text_is_deterministic_and_restartable() -> None:
    text = "First point about topic. Second point about details! Third point about results? " * 20

    first = list(iter_chunks(text, chunk_size=120, chunk_overlap=40))
    second = list(iter_chunks(text, chunk_size=120, chunk_overlap=40))

    assert first == second
    assert len(first) > 1


def test_split_text_drops_noise_chunks() -> None:
    text = "Ok. Hi! A much longer sentence that easily passes the minimum. No. ...   . ?"
    chunks = split_text(text, chunk_size=30, chunk_overlap=0)

    assert chunks
    assert all(len(chunk.strip()) >= MIN_CHUNK_CHARS for chunk in chunks)


def test_split_text_overlap_carries_trailing_words() -> None:
    text = "one two three four five. six seven eight nine ten. eleven twelve thirteen fourteen."
    chunks = split_text(text, chunk_size=30, chunk_overlap=20)

    assert len(chunks) == 3
    # overlap // 10 == 2 words carried from the previous chunk.
    assert chunks[1].startswith("four five. six")
    assert chunks[2].startswith("nine ten. eleven")


def test_split_text_zero_word_overlap_starts_fresh() -> None:
    chunks = split_text("Alpha beta gamma. Delta epsilon zeta.", chunk_size=20, chunk_overlap=5)

    assert chunks == ["Alpha beta gamma.", "Delta epsilon zeta."]


def test_split_text_empty_input() -> None:
    assert split_text("", chunk_size=50, chunk_overlap=10) == []
    assert split_text("   \n\t ", chunk_size=50, chunk_overlap=10) == []


@pytest.mark.parametrize(
    ("chunk_size", "chunk_overlap"),
    [(0, 0), (-5, 0), (10, -1), (10, 10)],
)
def test_split_text_rejects_invalid_parameters(chunk_size: int, chunk_overlap: int) -> None:
    with pytest.raises(ValueError):
        split_text("Some text here.", chunk_size=chunk_size, chunk_overlap=chunk_overlap)
