"""Recursive chunking: size bound, reconstruction, ordering, boundaries."""
import pytest

from notechat.rag.chunker import RecursiveTextChunker, chunk_document
from notechat.rag.md_parser import Document

NOTE = (
    "# Garden log\n\n"
    "Planted tomatoes along the south fence. The soil was dry, so I watered twice. "
    "Next week the beans go in.\n\n"
    "## Pests\n"
    "Slugs again! Beer traps seem to help. Need to check them every morning before work.\n\n"
    "Reminder: order more mulch, compost and a second hose for the back beds."
)


def make_doc(text: str) -> Document:
    return Document(id="garden.md", name="garden", raw_text=text)


@pytest.mark.parametrize("max_size,overlap", [(40, 0), (60, 10), (100, 25), (500, 50), (7, 3)])
def test_chunks_respect_max_size(max_size, overlap):
    chunks = chunk_document(make_doc(NOTE), max_size, overlap)

    assert chunks
    assert all(len(c.text) <= max_size for c in chunks)


@pytest.mark.parametrize("max_size,overlap", [(40, 0), (60, 10), (100, 25), (7, 3)])
def test_removing_overlap_reconstructs_text(max_size, overlap):
    chunks = chunk_document(make_doc(NOTE), max_size, overlap)

    assert "".join(c.text[c.overlap:] for c in chunks) == NOTE


def test_ordinals_increase_and_offsets_match():
    chunks = chunk_document(make_doc(NOTE), 50, 10)

    assert [c.ordinal for c in chunks] == list(range(len(chunks)))
    for chunk in chunks:
        assert NOTE[chunk.char_start:chunk.char_end] == chunk.text
        assert chunk.source_document_id == "garden.md"
        assert chunk.source_document_name == "garden"


def test_overlap_repeats_tail_of_previous_chunk():
    chunks = chunk_document(make_doc(NOTE), 60, 15)

    assert chunks[0].overlap == 0
    for prev, chunk in zip(chunks, chunks[1:]):
        assert chunk.overlap == min(15, len(prev.text))
        assert chunk.text.startswith(prev.text[len(prev.text) - chunk.overlap:])


def test_prefers_paragraph_boundary():
    text = "a" * 50 + "\n\n" + "b" * 50
    chunks = chunk_document(make_doc(text), 80, 0)

    assert [c.text for c in chunks] == ["a" * 50 + "\n\n", "b" * 50]


def test_falls_back_to_word_boundary():
    text = "alpha beta gamma delta epsilon zeta"
    chunks = chunk_document(make_doc(text), 12, 0)

    assert [c.text for c in chunks] == ["alpha beta ", "gamma delta ", "epsilon zeta"]


def test_hard_cut_without_separators():
    text = "x" * 250
    chunks = chunk_document(make_doc(text), 100, 0)

    assert [len(c.text) for c in chunks] == [100, 100, 50]


def test_short_text_is_single_chunk():
    chunks = chunk_document(make_doc("tiny note"), 100, 20)

    assert len(chunks) == 1
    assert chunks[0].text == "tiny note"
    assert chunks[0].overlap == 0


def test_empty_text_produces_no_chunks():
    assert chunk_document(make_doc(""), 100, 10) == []


def test_chunking_is_deterministic():
    first = chunk_document(make_doc(NOTE), 45, 9)
    second = chunk_document(make_doc(NOTE), 45, 9)

    assert first == second


@pytest.mark.parametrize("max_size,overlap", [(0, 0), (10, 10), (10, 12), (10, -1)])
def test_rejects_malformed_sizes(max_size, overlap):
    with pytest.raises(ValueError):
        RecursiveTextChunker(chunk_size=max_size, chunk_overlap=overlap)
