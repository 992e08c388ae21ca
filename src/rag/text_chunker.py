"""
Text chunking for vector embeddings.

Splits cleaned document text into overlapping, sentence and paragraph aware
segments with character offsets into the source text. Chunk content is stored
with the parent document title prefixed so every vector keeps its topic.
"""

import html
import re
from dataclasses import dataclass
from typing import List, Optional

import structlog
from langchain_text_splitters import RecursiveCharacterTextSplitter

from src.utils.error_handlers import ValidationError

logger = structlog.get_logger(__name__)

TITLE_SEPARATOR = "\n\n"

# Abbreviations common in fitness and science text that never end a sentence
_ABBREVIATION_PATTERN = re.compile(
    r"\b(?:Dr|Mr|Mrs|Ms|vs|etc|i\.e|e\.g|rep|reps|max|min|kg|lb|lbs|cm|ft|in|sec|vol|no|fig|ref|al|pp|approx)\.",
    re.IGNORECASE
)
_SENTENCE_END_PATTERN = re.compile(r"[.!?]+(?=\s|$)")
_PARAGRAPH_PATTERN = re.compile(r"\n\s*\n")
_WHITESPACE_PATTERN = re.compile(r"\s")

# Break-point preferences, as fractions of the current window
PARAGRAPH_BREAK_MIN_RATIO = 0.5
SENTENCE_BREAK_MIN_RATIO = 0.3
WORD_BREAK_MIN_RATIO = 0.5

# validate_chunks limits
MAX_CHUNK_LENGTH = 2000
MAX_CHUNK_GAP = 10


@dataclass(frozen=True)
class ChunkingOptions:
    """Chunk sizing in characters."""
    chunk_size: int = 512
    chunk_overlap: int = 100
    min_chunk_size: int = 50
    preserve_sentences: bool = True
    preserve_paragraphs: bool = True

    def validate(self) -> None:
        if self.chunk_size < 1:
            raise ValidationError("chunk_size must be positive", field="chunk_size", value=self.chunk_size)
        if self.chunk_overlap < 0 or self.chunk_overlap >= self.chunk_size:
            raise ValidationError(
                "chunk_overlap must be >= 0 and smaller than chunk_size",
                field="chunk_overlap",
                value=self.chunk_overlap
            )
        if self.min_chunk_size < 1 or self.min_chunk_size >= self.chunk_size:
            raise ValidationError(
                "min_chunk_size must be >= 1 and smaller than chunk_size",
                field="min_chunk_size",
                value=self.min_chunk_size
            )


@dataclass(frozen=True)
class TextChunk:
    """A chunk of source text. Offsets index the text passed to ``chunk``."""
    content: str
    index: int
    start_offset: int
    end_offset: int


def clean_text(text: str) -> str:
    """
    Normalize raw extracted text before chunking.

    Converts simple HTML to text, normalizes line endings and spaces, restores
    missing spaces after sentence punctuation and joins hyphenated line breaks.
    """
    if not text:
        return ""

    cleaned = text
    if re.search(r"<[^>]+>", cleaned):
        cleaned = _html_to_text(cleaned)

    cleaned = cleaned.replace("\r\n", "\n").replace("\r", "\n")
    cleaned = cleaned.replace("\t", " ")
    cleaned = re.sub(r"(\w)-\n(\w)", r"\1\2", cleaned)
    cleaned = re.sub(r" +", " ", cleaned)
    cleaned = re.sub(r"([a-z])([.!?])([A-Z])", r"\1\2 \3", cleaned)
    cleaned = re.sub(r"(\d)([A-Z][a-z])", r"\1 \2", cleaned)
    cleaned = re.sub(r"[ ]+([.!?,;:])", r"\1", cleaned)
    cleaned = re.sub(r" *\n *", "\n", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


def _html_to_text(markup: str) -> str:
    text = re.sub(r"<(script|style)[^>]*>[\s\S]*?</\1>", "", markup, flags=re.IGNORECASE)
    text = re.sub(r"<br\s*/?>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</(p|h[1-6])>", "\n\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</(div|li)>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<li[^>]*>", "- ", text, flags=re.IGNORECASE)
    text = re.sub(r"<[^>]+>", "", text)
    return html.unescape(text)


def add_title_prefix(title: str, content: str) -> str:
    """Prefix chunk content with its document title for embedding and storage."""
    title = (title or "").strip()
    if not title:
        return content
    return f"{title}{TITLE_SEPARATOR}{content}"


def strip_title_prefix(title: str, content: str) -> str:
    """Inverse of ``add_title_prefix``; content without the prefix is returned unchanged."""
    prefix = f"{(title or '').strip()}{TITLE_SEPARATOR}"
    if title and content.startswith(prefix):
        return content[len(prefix):]
    return content


def sentence_spans(text: str) -> List[tuple]:
    """Return (start, end) spans of the sentences in ``text``, protecting abbreviations."""
    protected = {match.end() - 1 for match in _ABBREVIATION_PATTERN.finditer(text)}
    spans = []
    position = 0
    for match in _SENTENCE_END_PATTERN.finditer(text):
        if match.end() - match.start() == 1 and match.start() in protected:
            continue
        if text[position:match.end()].strip():
            spans.append(_strip_span(text, position, match.end()))
        position = match.end()
    if text[position:].strip():
        spans.append(_strip_span(text, position, len(text)))
    return spans


def _strip_span(text: str, start: int, end: int) -> tuple:
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    return start, end


class TextChunker:
    """
    Splits documents into overlapping chunks sized for embedding.

    Break points are chosen in order of preference: a paragraph break in the
    back half of the window, a sentence end past 30% of it, whitespace in the
    back half, and finally a hard cut. The next chunk starts ``chunk_overlap``
    characters before the previous end, snapped forward to a sentence or word
    start. A trailing fragment shorter than ``min_chunk_size`` is merged into
    the chunk before it.
    """

    def __init__(self, options: Optional[ChunkingOptions] = None):
        self.options = options or ChunkingOptions()
        self.options.validate()
        self.logger = logger.bind(log_type="SYSTEM", component="text_chunker")

    @classmethod
    def from_settings(cls, settings) -> "TextChunker":
        return cls(ChunkingOptions(
            chunk_size=settings.document_chunk_size,
            chunk_overlap=settings.document_chunk_overlap,
            min_chunk_size=settings.document_min_chunk_size,
        ))

    def chunk(self, text: str, options: Optional[ChunkingOptions] = None) -> List[TextChunk]:
        """
        Split ``text`` into ordered chunks.

        Args:
            text: Cleaned document text
            options: Overrides the chunker's default options

        Returns:
            Chunks in document order; empty for empty or whitespace-only input
        """
        opts = options or self.options
        if options is not None:
            opts.validate()

        if not text or not text.strip():
            return []

        if not opts.preserve_sentences and not opts.preserve_paragraphs:
            chunks = self._split_characters(text, opts)
        else:
            chunks = self._split_structured(text, opts)

        self.logger.debug(
            "Text chunked",
            text_length=len(text),
            chunk_count=len(chunks),
            chunk_size=opts.chunk_size,
            chunk_overlap=opts.chunk_overlap
        )
        return chunks

    def _split_structured(self, text: str, opts: ChunkingOptions) -> List[TextChunk]:
        first, last = _strip_span(text, 0, len(text))
        if last - first <= opts.chunk_size:
            return [TextChunk(content=text[first:last], index=0, start_offset=first, end_offset=last)]

        spans = sentence_spans(text) if opts.preserve_sentences else []
        sentence_ends = sorted({end for _, end in spans})
        sentence_starts = sorted({start for start, _ in spans} | set(self._paragraph_starts(text)))

        chunks: List[TextChunk] = []
        start = first
        while start < last:
            end = min(start + opts.chunk_size, last)
            if end < last:
                end = self._find_break(text, start, end, sentence_ends, opts)
                if len(text[end:last].strip()) < opts.min_chunk_size:
                    end = last

            chunk_start, chunk_end = _strip_span(text, start, end)
            if chunk_end > chunk_start:
                chunks.append(TextChunk(
                    content=text[chunk_start:chunk_end],
                    index=len(chunks),
                    start_offset=chunk_start,
                    end_offset=chunk_end
                ))

            if end >= last:
                break
            start = self._next_start(text, start, end, sentence_starts, opts)

        return chunks

    @staticmethod
    def _paragraph_starts(text: str) -> List[int]:
        return [match.end() for match in _PARAGRAPH_PATTERN.finditer(text)]

    @staticmethod
    def _find_break(
        text: str,
        start: int,
        limit: int,
        sentence_ends: List[int],
        opts: ChunkingOptions
    ) -> int:
        window = limit - start
        floor = opts.min_chunk_size

        if opts.preserve_paragraphs:
            paragraph = text.rfind("\n\n", start, limit)
            if paragraph - start > max(window * PARAGRAPH_BREAK_MIN_RATIO, floor):
                return paragraph

        if opts.preserve_sentences:
            minimum = start + max(window * SENTENCE_BREAK_MIN_RATIO, floor)
            candidates = [end for end in sentence_ends if minimum < end <= limit]
            if candidates:
                return candidates[-1]

        segment = text[start:limit]
        spaces = [match.start() for match in _WHITESPACE_PATTERN.finditer(segment)]
        if spaces and spaces[-1] > max(window * WORD_BREAK_MIN_RATIO, floor):
            return start + spaces[-1]

        return limit

    @staticmethod
    def _next_start(
        text: str,
        start: int,
        end: int,
        sentence_starts: List[int],
        opts: ChunkingOptions
    ) -> int:
        target = max(end - opts.chunk_overlap, start + 1)

        if target < end:
            snapped = next((pos for pos in sentence_starts if target <= pos < end), None)
            if snapped is None:
                snapped = target
                if snapped > 0 and not text[snapped - 1].isspace():
                    while snapped < end and not text[snapped].isspace():
                        snapped += 1
            target = snapped

        while target < len(text) and text[target].isspace():
            target += 1
        return max(target, start + 1)

    @staticmethod
    def _split_characters(text: str, opts: ChunkingOptions) -> List[TextChunk]:
        splitter = RecursiveCharacterTextSplitter(
            chunk_size=opts.chunk_size,
            chunk_overlap=opts.chunk_overlap,
            length_function=len,
            separators=["\n\n", "\n", " ", ""],
            add_start_index=True
        )
        pieces = []
        for document in splitter.create_documents([text]):
            start = document.metadata.get("start_index", -1)
            if start < 0:
                start = text.find(document.page_content)
            pieces.append((start, start + len(document.page_content)))

        if len(pieces) > 1 and len(text[pieces[-1][0]:pieces[-1][1]].strip()) < opts.min_chunk_size:
            tail = pieces.pop()
            pieces[-1] = (pieces[-1][0], tail[1])

        chunks = []
        for start, end in pieces:
            start, end = _strip_span(text, start, end)
            if end > start:
                chunks.append(TextChunk(content=text[start:end], index=len(chunks), start_offset=start, end_offset=end))
        return chunks

    def estimate_chunk_count(self, text: str, options: Optional[ChunkingOptions] = None) -> int:
        """Rough chunk count without performing the split."""
        opts = options or self.options
        length = len((text or "").strip())
        if length == 0:
            return 0
        if length <= opts.chunk_size:
            return 1
        step = max(opts.chunk_size - opts.chunk_overlap, 1)
        return 1 + -(-(length - opts.chunk_size) // step)

    def validate_chunks(self, chunks: List[TextChunk], options: Optional[ChunkingOptions] = None) -> List[str]:
        """Return a list of problems found in ``chunks`` (empty when valid)."""
        opts = options or self.options
        issues = []
        for position, chunk in enumerate(chunks):
            if chunk.index != position:
                issues.append(f"Chunk {position} has index {chunk.index}")
            if not chunk.content.strip():
                issues.append(f"Chunk {position} is empty")
            if len(chunks) > 1 and len(chunk.content) < opts.min_chunk_size:
                issues.append(f"Chunk {position} is shorter than {opts.min_chunk_size} characters")
            if len(chunk.content) > MAX_CHUNK_LENGTH:
                issues.append(f"Chunk {position} is longer than {MAX_CHUNK_LENGTH} characters")
            if chunk.end_offset < chunk.start_offset:
                issues.append(f"Chunk {position} has inverted offsets")

        # Only the first gap is reported
        for position in range(1, len(chunks)):
            gap = chunks[position].start_offset - chunks[position - 1].end_offset
            if gap > MAX_CHUNK_GAP:
                issues.append(f"Gap of {gap} characters between chunks {position - 1} and {position}")
                break
        return issues
