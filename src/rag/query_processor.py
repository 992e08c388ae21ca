"""
Query processing for retrieval.

Turns a raw user query into retrieval-ready query strings:
1. Language detection and translation of Arabic/French queries to English
2. Semantic mapping of colloquial terms onto knowledge-base vocabulary
3. Broad/specific classification and multi-query fan-out for broad queries
"""

import asyncio
import json
import re
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Dict, List, Optional, Sequence, Tuple

import structlog
from langchain_core.messages import HumanMessage, SystemMessage
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from src.config.rag_config import RagConfig
from src.services.logging_service import preview_text
from src.utils.error_handlers import classify_provider_error, is_retryable_error

from . import ProcessedQuery

logger = structlog.get_logger(__name__)

TRANSLATION_CACHE_MAX_SIZE = 1000
MAX_EXPANDED_QUERIES = 5
MIN_BROAD_QUERIES = 3
SHORT_QUERY_WORDS = 5
SEMANTIC_TERMS_PER_MATCH = 6

LANGUAGE_NAMES = {"en": "English", "ar": "Arabic", "fr": "French"}

_ARABIC_PATTERN = re.compile("[\\u0600-\\u06FF\\u0750-\\u077F\\u08A0-\\u08FF\\uFB50-\\uFDFF\\uFE70-\\uFEFF]")
ARABIC_RATIO_THRESHOLD = 0.3

# Words shared with English ("muscle", "sport", "fitness") are left out
FRENCH_INDICATORS = frozenset({
    "quel", "quelle", "quels", "quelles", "comment", "pourquoi", "où", "quand", "qui", "que",
    "est-ce", "qu'est-ce", "c'est", "je", "tu", "il", "elle", "nous", "vous", "ils", "elles",
    "le", "la", "les", "un", "une", "des", "du", "de", "à", "au", "aux", "mes", "mon", "ma",
    "pour", "avec", "entraînement", "entrainement", "exercice", "exercices", "poids",
    "répétitions", "séries", "musculation", "jambes", "bras", "dos", "épaules", "poitrine",
})
FRENCH_MIN_INDICATORS = 2
_FRENCH_TOKEN_PATTERN = re.compile(r"[\w'’-]+")

SEMANTIC_MAP: Dict[str, List[str]] = {
    # Body regions
    "lower body": ["quadriceps", "hamstrings", "glutes", "calves", "leg training", "squats", "deadlifts", "leg press", "lunges"],
    "lower": ["quadriceps", "hamstrings", "glutes", "calves", "leg training", "squats", "deadlifts"],
    "legs": ["quadriceps", "hamstrings", "glutes", "calves", "leg training", "squats", "deadlifts", "leg press"],
    "upper body": ["chest", "back", "shoulders", "biceps", "triceps", "arm training", "pectorals", "latissimus dorsi"],
    "upper": ["chest", "back", "shoulders", "biceps", "triceps", "pectorals", "latissimus dorsi"],
    # Muscle groups
    "arms": ["biceps", "triceps", "brachialis", "forearms", "arm training", "curls", "extensions"],
    "chest": ["pectorals", "pecs", "incline press", "chest fly", "bench press", "pectoral training"],
    "back": ["latissimus dorsi", "lats", "rhomboids", "traps", "rows", "pulldowns", "pull-ups", "back training"],
    "shoulders": ["deltoids", "delts", "shoulder press", "lateral raises", "rear delts", "shoulder training"],
    "quads": ["quadriceps", "vastus lateralis", "vastus medialis", "rectus femoris", "leg extensions"],
    "hamstrings": ["biceps femoris", "semitendinosus", "semimembranosus", "leg curls", "romanian deadlifts"],
    "glutes": ["gluteus maximus", "gluteus medius", "gluteus minimus", "hip thrusts", "glute bridges"],
    "calves": ["gastrocnemius", "soleus", "calf raises", "standing calf raises", "seated calf raises"],
    # Training splits
    "push day": ["chest", "shoulders", "triceps", "bench press", "shoulder press", "tricep extensions"],
    "pull day": ["back", "biceps", "rows", "pull-ups", "pulldowns", "curls", "latissimus dorsi"],
    "leg day": ["quadriceps", "hamstrings", "glutes", "calves", "squats", "deadlifts", "leg press"],
    # Training goals
    "muscle growth": ["hypertrophy", "muscle building", "rep ranges", "time under tension", "progressive overload"],
    "strength": ["powerlifting", "maximal strength", "low reps", "heavy weight", "compound movements"],
    "endurance": ["muscular endurance", "high reps", "circuit training", "metabolic training"],
    # Exercise categories
    "compound": ["squats", "deadlifts", "bench press", "rows", "overhead press", "pull-ups"],
    "isolation": ["bicep curls", "tricep extensions", "leg extensions", "leg curls", "lateral raises"],
    # Equipment
    "dumbbells": ["dumbbell exercises", "unilateral training", "stabilization", "free weights"],
    "barbells": ["barbell exercises", "bilateral training", "compound movements", "heavy loading"],
    "machines": ["machine exercises", "isolation", "safety", "controlled movement"],
    # Programming variables
    "frequency": ["training frequency", "sessions per week", "recovery time", "workout scheduling"],
    "volume": ["training volume", "sets and reps", "weekly volume", "progression"],
    "intensity": ["training intensity", "load", "weight selection", "effort level"],
}

NARROW_PATTERNS = [
    re.compile(r"^\s*what(?:'s| is| are)\b(?!.*\b(?:best|how to|for)\b)"),
    re.compile(r"\bdefine\b"),
    re.compile(r"\bdefinition of\b"),
    re.compile(r"\bhow many\b.*\bin\b"),
    re.compile(r"\bwhen was\b"),
    re.compile(r"\bwho is\b"),
    re.compile(r"\bwhich exercise\b.*\bspecifically\b"),
]

BROAD_PATTERNS = [
    re.compile(r"\bhow to (?:train|build|grow)\b"),
    re.compile(r"\bbest way to\b"),
    re.compile(r"\bbest\b.*\bfor\b.*\bmuscle"),
    re.compile(r"\bworkout\b.*\bfor\b"),
    re.compile(r"\btraining\b.*\bprogram"),
    re.compile(r"\bmuscle\b.*\bgrowth\b"),
    re.compile(r"\bhypertrophy\b"),
]

# Topics used to phrase template sub-queries, most specific first
TEMPLATE_TOPICS = [
    "lower body", "upper body", "arms", "biceps", "triceps", "chest", "back", "shoulders",
    "legs", "quads", "hamstrings", "glutes", "calves", "core", "abs",
]

CONCEPT_TEMPLATES = [
    (re.compile(r"\b(?:hypertrophy|muscle|growth|size|mass|bigger)\b"), ["optimal rep ranges for hypertrophy", "progressive overload"]),
    (re.compile(r"\b(?:strength|strong|1rm|max)\b"), ["strength training fundamentals", "progressive overload"]),
    (re.compile(r"\b(?:workout|routine|program|split)\b"), ["training frequency", "ideal rest periods"]),
]
DEFAULT_CONCEPT_TEMPLATES = ["optimal rep ranges", "ideal rest periods", "progressive overload"]

SUB_QUERY_SYSTEM_PROMPT = """You are an expert query analyzer for a fitness knowledge base. Decompose the user's question into more specific, self-contained questions that can be used to retrieve relevant documents.

RULES:
- Return the questions as a JSON array of strings and nothing else.
- Do not number the questions.
- Phrase each question as if a user were asking it.
- Cover different aspects: exercise selection, volume/sets/reps, frequency, technique, programming.
- Keep questions concise and avoid near-duplicates.

Example: "how to train chest" -> ["what are the most effective chest exercises", "what volume and rep ranges work best for chest growth", "how often should I train chest per week", "what is proper chest exercise technique"]"""

TRANSLATION_SYSTEM_PROMPT = (
    "You translate fitness and workout questions into English. Keep the translation concise, "
    "preserve the original meaning and return only the English translation."
)


def detect_language(text: str) -> str:
    """Return 'ar', 'fr' or 'en' for a query."""
    if not text:
        return "en"

    non_space = re.sub(r"\s", "", text)
    if non_space:
        arabic_ratio = len(_ARABIC_PATTERN.findall(non_space)) / len(non_space)
        if arabic_ratio > ARABIC_RATIO_THRESHOLD:
            return "ar"

    tokens = {token.replace("’", "'") for token in _FRENCH_TOKEN_PATTERN.findall(text.lower())}
    if len(tokens & FRENCH_INDICATORS) >= FRENCH_MIN_INDICATORS:
        return "fr"

    return "en"


def _term_pattern(term: str) -> re.Pattern:
    return re.compile(r"(?<!\w)" + re.escape(term) + r"(?!\w)")


_SEMANTIC_PATTERNS = {term: _term_pattern(term) for term in SEMANTIC_MAP}


def apply_semantic_mapping(query: str) -> Tuple[str, List[str]]:
    """
    Append domain vocabulary for colloquial terms found in ``query``.

    Terms match as whole words. A single-word term is skipped when every
    occurrence sits inside an already matched phrase ("lower" in "lower body").
    At most six expansion terms are appended per matched term, and terms the
    query already contains are not repeated.

    Returns:
        (mapped query, matched terms in map order)
    """
    lowered = query.lower()
    covered: List[Tuple[int, int]] = []
    matched = set()

    for term in sorted(SEMANTIC_MAP, key=lambda item: -len(item.split())):
        spans = [match.span() for match in _SEMANTIC_PATTERNS[term].finditer(lowered)]
        free = [
            (start, end) for start, end in spans
            if not any(start >= c_start and end <= c_end for c_start, c_end in covered)
        ]
        if free:
            matched.add(term)
            covered.extend(free)

    applied = [term for term in SEMANTIC_MAP if term in matched]
    if not applied:
        return query, []

    additions: List[str] = []
    present = lowered
    for term in applied:
        for expansion in SEMANTIC_MAP[term][:SEMANTIC_TERMS_PER_MATCH]:
            if _term_pattern(expansion).search(present):
                continue
            additions.append(expansion)
            present += " " + expansion

    if not additions:
        return query, applied
    return f"{query} {' '.join(additions)}", applied


def is_broad_query(query: str) -> bool:
    """
    Classify a query as broad (fan out) or specific (single search).

    Narrow-definition patterns win, then broad-action patterns, then any query
    of five words or fewer counts as broad. A "what is/are" opening is only
    narrow when the query does not ask for the best option, a method, or a goal
    ("what are the best exercises for muscle growth" fans out).
    """
    lowered = query.lower().strip()
    if not lowered:
        return False
    if any(pattern.search(lowered) for pattern in NARROW_PATTERNS):
        return False
    if any(pattern.search(lowered) for pattern in BROAD_PATTERNS):
        return True
    return len(lowered.split()) <= SHORT_QUERY_WORDS


def dedupe_queries(queries: Sequence[str]) -> List[str]:
    """Drop blank and repeated queries (case and whitespace insensitive), keeping order."""
    seen = set()
    unique = []
    for query in queries:
        normalized = " ".join(query.split()).lower()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        unique.append(" ".join(query.split()))
    return unique


def template_sub_queries(query: str) -> List[str]:
    """Deterministic sub-queries covering exercise selection, volume/frequency and technique."""
    lowered = query.lower()
    topic = next((item for item in TEMPLATE_TOPICS if _term_pattern(item).search(lowered)), None)

    if topic:
        templates = [
            f"best exercises for {topic}",
            f"optimal training volume and frequency for {topic}",
            f"proper technique for {topic} exercises",
        ]
    else:
        templates = [
            f"exercise selection for {query}",
            f"training volume and frequency for {query}",
            f"technique tips for {query}",
        ]

    concepts = []
    for pattern, items in CONCEPT_TEMPLATES:
        if pattern.search(lowered):
            concepts.extend(items)
    if not concepts:
        concepts = list(DEFAULT_CONCEPT_TEMPLATES)

    return dedupe_queries(templates + concepts)


def parse_sub_queries(text: str, limit: int) -> List[str]:
    """
    Parse an LLM response into sub-queries.

    Accepts a JSON array (optionally wrapped in code fences); otherwise falls
    back to lines that look like questions or quoted strings.
    """
    cleaned = re.sub(r"```(?:json)?", "", text or "").strip()
    queries: List[str] = []

    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        parsed = None

    if isinstance(parsed, list):
        queries = [item.strip() for item in parsed if isinstance(item, str) and item.strip()]
    else:
        for line in cleaned.splitlines():
            line = re.sub(r"^\s*(?:[-*]|\d+[.)])\s*", "", line).strip().rstrip(",")
            if "?" in line or re.match(r"^[\"'].*[\"']$", line):
                queries.append(line.strip("\"'").strip())

    return [query for query in queries if query][:limit]


def _message_text(response) -> str:
    content = getattr(response, "content", response)
    if isinstance(content, list):
        content = " ".join(part.get("text", "") if isinstance(part, dict) else str(part) for part in content)
    return str(content)


class Translator(ABC):
    """Best-effort translation collaborator."""

    @abstractmethod
    async def translate(self, text: str, source_language: str, target_language: str = "en") -> str:
        """Translate ``text``; raise on failure."""


class SubQueryGenerator(ABC):
    """Collaborator decomposing a broad query into focused questions."""

    @abstractmethod
    async def generate(self, query: str, max_queries: int) -> List[str]:
        """Return up to ``max_queries`` sub-queries; raise on failure."""


class _LLMCollaborator:
    """Shared chat-model call with tenacity retries on transient errors."""

    provider = "azure_openai_chat"

    def __init__(self, llm, max_attempts: int = 2, min_wait: float = 1.0, max_wait: float = 4.0):
        self.llm = llm
        self.max_attempts = max_attempts
        self.min_wait = min_wait
        self.max_wait = max_wait

    async def _invoke(self, system_prompt: str, user_prompt: str) -> str:
        messages = [SystemMessage(content=system_prompt), HumanMessage(content=user_prompt)]
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=1, min=self.min_wait, max=self.max_wait),
            retry=retry_if_exception(is_retryable_error),
            reraise=True
        )
        async for attempt in retrying:
            with attempt:
                try:
                    response = await self.llm.ainvoke(messages)
                except Exception as e:
                    raise classify_provider_error(e, self.provider) from e
                return _message_text(response).strip()


class LLMTranslator(_LLMCollaborator, Translator):
    """Translator backed by an Azure OpenAI chat model."""

    async def translate(self, text: str, source_language: str, target_language: str = "en") -> str:
        source = LANGUAGE_NAMES.get(source_language, "unknown")
        target = LANGUAGE_NAMES.get(target_language, target_language)
        translation = await self._invoke(
            TRANSLATION_SYSTEM_PROMPT,
            f"Translate this {source} query to {target}:\n\n{text}"
        )
        return translation.strip().strip('"').strip()


class LLMSubQueryGenerator(_LLMCollaborator, SubQueryGenerator):
    """Sub-query generator backed by an Azure OpenAI chat model."""

    async def generate(self, query: str, max_queries: int) -> List[str]:
        response = await self._invoke(
            SUB_QUERY_SYSTEM_PROMPT,
            f"Generate up to {max_queries} questions for: \"{query}\""
        )
        return parse_sub_queries(response, max_queries)


class QueryProcessor:
    """
    Produces a ``ProcessedQuery`` for every retrieval call.

    Translation and sub-query generation are optional collaborators; when
    they are missing, fail, or run past their time box the processor falls
    back to the untranslated text and to template sub-queries.
    """

    def __init__(
        self,
        translator: Optional[Translator] = None,
        sub_query_generator: Optional[SubQueryGenerator] = None,
        translation_timeout: float = 5.0,
        sub_query_timeout: float = 5.0,
        cache_size: int = TRANSLATION_CACHE_MAX_SIZE
    ):
        self.translator = translator
        self.sub_query_generator = sub_query_generator
        self.translation_timeout = translation_timeout
        self.sub_query_timeout = sub_query_timeout
        self.cache_size = cache_size
        self._translation_cache: "OrderedDict[str, str]" = OrderedDict()
        self.logger = logger.bind(log_type="SYSTEM", component="query_processor")

    async def process(self, query: str, config: RagConfig) -> ProcessedQuery:
        """
        Translate, map and expand ``query``.

        ``expanded_queries`` always starts with the semantically mapped query;
        broad queries add sub-queries for 3 to 5 entries in total.
        ``keyword_queries`` holds the same list with the translated, unmapped
        query in first place.
        """
        language = detect_language(query)
        translated = await self.translate(query, language)
        is_translated = translated != query

        mapped, applied = apply_semantic_mapping(translated)
        is_multi_query = config.enable_multi_query and is_broad_query(translated)

        if is_multi_query:
            expanded = await self._expand(translated, mapped, config.max_sub_queries)
        else:
            expanded = [mapped]

        processed = ProcessedQuery(
            original_query=query,
            translated_query=translated,
            is_translated=is_translated,
            detected_language=language,
            semantically_mapped_query=mapped,
            applied_mappings=applied,
            is_multi_query=is_multi_query,
            expanded_queries=expanded,
            keyword_queries=dedupe_queries([translated] + expanded[1:]),
        )

        self.logger.info(
            "Query processed",
            query=preview_text(query),
            language=language,
            is_translated=is_translated,
            semantic_terms=applied,
            is_multi_query=is_multi_query,
            expanded_count=len(expanded)
        )
        return processed

    async def translate(self, text: str, language: Optional[str] = None) -> str:
        """Translate a non-English query to English; any failure returns ``text``."""
        language = language or detect_language(text)
        if language == "en" or self.translator is None:
            return text

        cached = self._translation_cache.get(text)
        if cached is not None:
            self._translation_cache.move_to_end(text)
            return cached

        try:
            translation = await asyncio.wait_for(
                self.translator.translate(text, language, "en"),
                timeout=self.translation_timeout
            )
        except Exception as e:
            self.logger.warning(
                "Translation failed, using original query",
                language=language,
                error=str(e),
                error_type=type(e).__name__
            )
            return text

        if not translation or not translation.strip():
            return text

        translation = translation.strip()
        self._translation_cache[text] = translation
        if len(self._translation_cache) > self.cache_size:
            self._translation_cache.popitem(last=False)

        self.logger.debug("Query translated", language=language, translation=preview_text(translation))
        return translation

    async def _expand(self, query: str, mapped: str, max_sub_queries: int) -> List[str]:
        limit = min(1 + max_sub_queries, MAX_EXPANDED_QUERIES)
        generated: List[str] = []

        if self.sub_query_generator is not None:
            try:
                generated = await asyncio.wait_for(
                    self.sub_query_generator.generate(query, max_sub_queries),
                    timeout=self.sub_query_timeout
                )
            except Exception as e:
                self.logger.warning(
                    "Sub-query generation failed, using templates",
                    error=str(e),
                    error_type=type(e).__name__
                )
                generated = []

        expanded = dedupe_queries([mapped] + list(generated))[:limit]
        if len(expanded) < MIN_BROAD_QUERIES:
            expanded = dedupe_queries(expanded + template_sub_queries(query))[:limit]
        return expanded
