"""
Unit tests for text cleaning and chunking.
"""

import pytest

from src.rag.text_chunker import (
    ChunkingOptions, TextChunk, TextChunker, add_title_prefix, clean_text, sentence_spans, strip_title_prefix
)
from src.utils.error_handlers import ValidationError


def build_document(paragraphs: int = 6) -> str:
    """Multi-paragraph text well over one chunk long."""
    sentences = [
        "Progressive overload means adding weight, reps or sets over time.",
        "Most lifters grow best with ten to twenty hard sets per muscle each week.",
        "Rest two to three minutes between heavy compound sets.",
        "Dr. Smith recommends e.g. pausing at the bottom of each squat.",
    ]
    return "\n\n".join(" ".join(sentences) for _ in range(paragraphs))


@pytest.fixture
def chunker():
    return TextChunker(ChunkingOptions(chunk_size=200, chunk_overlap=40, min_chunk_size=30))


class TestCleanText:
    """Test cases for clean_text."""

    def test_normalizes_whitespace_and_line_endings(self):
        raw = "Squats  build\r\nlegs.\tDeadlifts build   the back.\n\n\n\nRest well."
        assert clean_text(raw) == "Squats build\nlegs. Deadlifts build the back.\n\nRest well."

    def test_restores_missing_sentence_spaces(self):
        assert clean_text("Train hard.Sleep well.") == "Train hard. Sleep well."

    def test_joins_hyphenated_line_breaks(self):
        assert clean_text("hyper-\ntrophy") == "hypertrophy"

    def test_converts_simple_html(self):
        cleaned = clean_text("<h1>Chest</h1><p>Bench &amp; fly.</p><script>x()</script>")
        assert "Chest" in cleaned
        assert "Bench & fly." in cleaned
        assert "x()" not in cleaned
        assert "<" not in cleaned

    def test_empty_input(self):
        assert clean_text("") == ""
        assert clean_text(None) == ""


class TestTitlePrefix:
    """Test cases for title prefixing."""

    def test_add_and_strip(self):
        content = add_title_prefix("Chest Guide", "Bench press basics.")
        assert content == "Chest Guide\n\nBench press basics."
        assert strip_title_prefix("Chest Guide", content) == "Bench press basics."

    def test_blank_title_leaves_content(self):
        assert add_title_prefix("  ", "body") == "body"

    def test_strip_without_prefix_is_noop(self):
        assert strip_title_prefix("Chest Guide", "Other text") == "Other text"


class TestSentenceSpans:
    """Test cases for sentence boundary detection."""

    def test_abbreviations_do_not_split(self):
        text = "Dr. Smith trains daily. He squats e.g. twice a week!"
        sentences = [text[start:end] for start, end in sentence_spans(text)]
        assert sentences == ["Dr. Smith trains daily.", "He squats e.g. twice a week!"]

    def test_trailing_fragment_without_punctuation(self):
        text = "First sentence. trailing words"
        sentences = [text[start:end] for start, end in sentence_spans(text)]
        assert sentences == ["First sentence.", "trailing words"]


class TestTextChunker:
    """Test cases for TextChunker."""

    def test_empty_input_produces_no_chunks(self, chunker):
        assert chunker.chunk("") == []
        assert chunker.chunk("   \n\n  ") == []

    def test_short_document_is_single_chunk(self, chunker):
        text = "  Short note about rest periods.  "
        chunks = chunker.chunk(text)

        assert len(chunks) == 1
        assert chunks[0].content == "Short note about rest periods."
        assert chunks[0].index == 0
        assert text[chunks[0].start_offset:chunks[0].end_offset] == chunks[0].content

    def test_offsets_index_the_source_text(self, chunker):
        text = build_document()
        chunks = chunker.chunk(text)

        assert len(chunks) > 1
        for chunk in chunks:
            assert text[chunk.start_offset:chunk.end_offset] == chunk.content

    def test_chunks_cover_the_whole_text_in_order(self, chunker):
        text = build_document()
        chunks = chunker.chunk(text)

        assert [chunk.index for chunk in chunks] == list(range(len(chunks)))
        assert chunks[0].start_offset == 0
        assert chunks[-1].end_offset == len(text)
        for previous, current in zip(chunks, chunks[1:]):
            # Consecutive chunks overlap or touch; no text is skipped
            assert current.start_offset <= previous.end_offset
            assert current.start_offset > previous.start_offset

    def test_chunks_respect_size_limit(self, chunker):
        text = build_document()
        for chunk in chunker.chunk(text):
            assert len(chunk.content) <= 200

    def test_breaks_prefer_sentence_ends(self, chunker):
        chunks = chunker.chunk(build_document())
        for chunk in chunks[:-1]:
            assert chunk.content.endswith((".", "!", "?"))

    def test_short_tail_is_merged(self):
        options = ChunkingOptions(chunk_size=100, chunk_overlap=10, min_chunk_size=40)
        chunker = TextChunker(options)
        text = "A" * 60 + " " + "B" * 30 + ". " + "tail words"
        chunks = chunker.chunk(text)

        assert chunks[-1].content.endswith("tail words")
        assert all(len(chunk.content) >= options.min_chunk_size for chunk in chunks)

    def test_validate_chunks_reports_no_issues(self, chunker):
        chunks = chunker.chunk(build_document())
        assert chunker.validate_chunks(chunks) == []

    def test_validate_chunks_flags_oversized_chunks(self, chunker):
        chunks = [
            TextChunk(content="x" * 2001, index=0, start_offset=0, end_offset=2001),
            TextChunk(content="y" * 40, index=1, start_offset=2001, end_offset=2041),
        ]

        assert chunker.validate_chunks(chunks) == ["Chunk 0 is longer than 2000 characters"]

    def test_validate_chunks_flags_first_coverage_gap(self, chunker):
        chunks = [
            TextChunk(content="a" * 40, index=0, start_offset=0, end_offset=40),
            TextChunk(content="b" * 40, index=1, start_offset=60, end_offset=100),
            TextChunk(content="c" * 40, index=2, start_offset=200, end_offset=240),
        ]

        assert chunker.validate_chunks(chunks) == ["Gap of 20 characters between chunks 0 and 1"]

    def test_validate_chunks_allows_small_gaps(self, chunker):
        chunks = [
            TextChunk(content="a" * 40, index=0, start_offset=0, end_offset=40),
            TextChunk(content="b" * 40, index=1, start_offset=50, end_offset=90),
        ]

        assert chunker.validate_chunks(chunks) == []

    def test_character_mode_uses_recursive_splitter(self):
        options = ChunkingOptions(
            chunk_size=120, chunk_overlap=20, min_chunk_size=20,
            preserve_sentences=False, preserve_paragraphs=False
        )
        chunker = TextChunker(options)
        text = build_document(3)
        chunks = chunker.chunk(text)

        assert len(chunks) > 1
        for chunk in chunks:
            assert text[chunk.start_offset:chunk.end_offset] == chunk.content

    def test_estimate_chunk_count(self, chunker):
        assert chunker.estimate_chunk_count("") == 0
        assert chunker.estimate_chunk_count("short") == 1
        assert chunker.estimate_chunk_count("x" * 360) == 2

    @pytest.mark.parametrize("options", [
        ChunkingOptions(chunk_size=0),
        ChunkingOptions(chunk_size=100, chunk_overlap=100),
        ChunkingOptions(chunk_size=100, chunk_overlap=10, min_chunk_size=200),
        ChunkingOptions(chunk_size=100, chunk_overlap=10, min_chunk_size=100),
    ])
    def test_invalid_options_rejected(self, options):
        with pytest.raises(ValidationError):
            TextChunker(options)
