"""
Citation tracking.

Citations travel as structured metadata next to the snippets; generated
answers are expected not to name their sources inline.
"""

import re
from typing import Dict, List, Sequence

from . import Citation, RetrievalSnippet


def reference_id(document_id: str, chunk_index: int) -> str:
    """Stable reference for one chunk."""
    return f"{document_id}:{chunk_index}"


def attach_citations(snippets: Sequence[RetrievalSnippet]) -> List[RetrievalSnippet]:
    """
    Return copies of ``snippets`` with citations attached.

    Citation numbers start at 1 and follow the order in which documents first
    appear; snippets from the same document share a number.
    """
    numbers: Dict[str, int] = {}
    cited = []
    for snippet in snippets:
        number = numbers.setdefault(snippet.document_id, len(numbers) + 1)
        citation = Citation(
            reference_id=reference_id(snippet.document_id, snippet.chunk_index),
            citation_number=number,
            document_id=snippet.document_id,
            document_title=snippet.document_title,
            chunk_index=snippet.chunk_index,
        )
        cited.append(snippet.model_copy(update={"citation": citation}))
    return cited


def format_citation(snippet: RetrievalSnippet) -> Dict[str, str]:
    """UI view of a snippet's source."""
    return {
        "document_id": snippet.document_id,
        "document_title": snippet.document_title,
    }


def collect_citations(snippets: Sequence[RetrievalSnippet]) -> List[Dict[str, object]]:
    """One entry per cited document, in citation-number order, with its chunk references."""
    if any(snippet.citation is None for snippet in snippets):
        snippets = attach_citations(snippets)

    collected: Dict[str, Dict[str, object]] = {}
    for snippet in snippets:
        citation = snippet.citation
        entry = collected.setdefault(citation.document_id, {
            **format_citation(snippet),
            "citation_number": citation.citation_number,
            "reference_ids": [],
        })
        if citation.reference_id not in entry["reference_ids"]:
            entry["reference_ids"].append(citation.reference_id)
    return sorted(collected.values(), key=lambda entry: entry["citation_number"])


def find_inline_attributions(answer: str, citations: Sequence[Citation]) -> List[str]:
    """
    List source titles that ``answer`` names in its prose.

    The consumer uses this to reject or rewrite answers that repeat source
    names instead of relying on the structured citations.
    """
    if not answer:
        return []

    found = []
    for citation in citations:
        title = citation.document_title.strip()
        if not title or title in found:
            continue
        pattern = r"(?<!\w)" + re.escape(title) + r"(?!\w)"
        if re.search(pattern, answer, flags=re.IGNORECASE):
            found.append(title)
    return found
