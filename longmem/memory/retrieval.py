"""
Memory retrieval.

Combines two search paths over the memory store:

- Vector search over the raw query plus LLM-generated rewrites of it
  (a hypothetical answer and a rephrasing).
- Full-text search (FTS5), with the match expression built by one of
  several strategies.

Both paths run concurrently and their results are fused into a single
ranked list.
"""

import logging
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..llm.base import EmbeddingProvider, Model, QueryProvider, collect_stream
from ..llm.config import FTSStrategy, MemoryConfig
from ..llm.prompts import (
    format_query_keywords_prompt,
    format_query_summary_prompt,
    format_query_transform_prompt,
)
from .storage import SQLiteStore
from .types import (
    HistorySearchResult,
    InjectedContext,
    MemoryFTSResult,
    ResultSource,
    RetrievalResponse,
    SearchResult,
    UnifiedResult,
)


logger = logging.getLogger(__name__)


# FTS5 ranks are mapped to scores by 1 + rank / FTS_RANK_SCALE, clamped to [0, 1]
FTS_RANK_SCALE = 20.0

# Weights for results found by both paths
VECTOR_WEIGHT = 0.6
FTS_WEIGHT = 0.4
BOTH_BOOST = 1.2

_FTS_SPECIAL = re.compile(r"[\"'*+^:()]")
_SEPARATORS = re.compile(r"[\W_]+")
_FTS_OPERATORS = {"AND", "OR", "NOT", "NEAR"}


class RetrievalError(Exception):
    """Raised when both the vector and the full-text search fail."""
    pass


class RetrievalCancelled(RetrievalError):
    """Raised when a retrieval is cancelled by its caller."""
    pass


def _fts_terms(text: str) -> List[str]:
    """Split text into FTS5-safe bare terms."""
    terms = []
    for word in text.split():
        word = _FTS_SPECIAL.sub("", word)
        # Remaining punctuation separates tokens, as in the FTS5 tokenizer
        for part in _SEPARATORS.split(word):
            if part in _FTS_OPERATORS:
                part = part.lower()
            if len(part) > 1:
                terms.append(part)
    return terms


def tokenize_for_fts(query: str) -> str:
    """
    Turn free text into an FTS5 OR-query.

    Example:
        >>> tokenize_for_fts("hello-world (test)*")
        'hello OR world OR test'
    """
    return " OR ".join(_fts_terms(query))


def keywords_to_fts(response: str) -> str:
    """
    Build an FTS5 OR-query from a comma-separated keyword list.

    The words of a multi-word keyword stay together as an implicit AND
    group, so ``virtual functions, polymorphism`` matches rows holding
    both "virtual" and "functions", or "polymorphism".
    """
    groups = []
    for keyword in response.split(","):
        terms = _fts_terms(keyword)
        if terms:
            groups.append(" ".join(terms))
    return " OR ".join(groups)


def parse_transform_response(response: str) -> Tuple[str, str]:
    """
    Extract the ``ANSWER:`` and ``REPHRASE:`` lines of a transform response.

    Returns:
        (answer, rephrase); either may be empty.
    """
    answer = ""
    rephrase = ""
    for line in response.splitlines():
        line = line.strip()
        if line.startswith("ANSWER:"):
            answer = line[len("ANSWER:"):].strip()
        elif line.startswith("REPHRASE:"):
            rephrase = line[len("REPHRASE:"):].strip()
    return answer, rephrase


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def calculate_unified_score(result: UnifiedResult, rank_scale: float = FTS_RANK_SCALE) -> float:
    """
    Score a fused result in [0, 1].

    FTS-only results score ``1 + rank/scale`` clamped to [0, 1]; results
    found by both paths get a weighted blend of both scores and a boost.
    """
    if result.source == ResultSource.VECTOR:
        return result.vector_score

    fts_norm = _clamp(1.0 + result.fts_rank / rank_scale)
    if result.source == ResultSource.FTS:
        return fts_norm

    return _clamp((result.vector_score * VECTOR_WEIGHT + fts_norm * FTS_WEIGHT) * BOTH_BOOST)


def fuse_results(
    vector_results: Sequence[SearchResult],
    fts_results: Sequence[MemoryFTSResult],
    top_k: int,
    rank_scale: float = FTS_RANK_SCALE,
) -> List[UnifiedResult]:
    """
    Merge vector and FTS results into one ranked list.

    Results are keyed by memory id. Ties keep insertion order: vector
    results first, then FTS-only results.

    Args:
        vector_results: Vector hits
        fts_results: Full-text hits
        top_k: Maximum number of results
        rank_scale: FTS rank normalization scale

    Returns:
        Unified results sorted by score, highest first
    """
    merged: Dict[str, UnifiedResult] = {}

    for hit in vector_results:
        if hit.item.id in merged:
            continue
        merged[hit.item.id] = UnifiedResult(
            item=hit.item,
            source=ResultSource.VECTOR,
            vector_score=hit.similarity,
        )

    for hit in fts_results:
        existing = merged.get(hit.item.id)
        if existing is None:
            merged[hit.item.id] = UnifiedResult(
                item=hit.item,
                source=ResultSource.FTS,
                fts_rank=hit.rank,
                snippet=hit.snippet,
            )
        elif existing.source == ResultSource.VECTOR:
            existing.source = ResultSource.BOTH
            existing.fts_rank = hit.rank
            existing.snippet = hit.snippet

    results = list(merged.values())
    for result in results:
        result.score = calculate_unified_score(result, rank_scale)

    results.sort(key=lambda r: r.score, reverse=True)
    return results[:max(top_k, 0)]


def format_as_text(response: RetrievalResponse) -> str:
    """Render retrieval results as plain text for tool output."""
    if not response.results:
        return "No memories found."

    lines = [f"Found {len(response.results)} memories:\n\n"]
    for i, result in enumerate(response.results, start=1):
        lines.append(f"{i}. [{result.score:.2f}] {result.item.text}\n")
        if result.item.tags:
            lines.append(f"   Tags: {', '.join(result.item.tags)}\n")
        lines.append(f"   Source: {result.source.value}\n")
    return "".join(lines)


def format_injected_context(context: InjectedContext, max_chars: int) -> str:
    """
    Render injected context for a system prompt.

    Whole lines are kept until ``max_chars`` would be exceeded.

    Returns:
        The rendered block, or an empty string if nothing was retrieved.
    """
    if context.is_empty or max_chars <= 0:
        return ""

    lines = []
    if context.memory_facts:
        lines.append("Relevant memories:\n")
        for fact in context.memory_facts:
            line = f"- {fact.item.text}"
            if fact.item.tags:
                line += f" (tags: {', '.join(fact.item.tags)})"
            lines.append(line + "\n")

    if context.history_snippets:
        lines.append("Relevant conversation history:\n")
        for snippet in context.history_snippets:
            lines.append(f"- [{snippet.item.role}] {snippet.snippet}\n")

    output = []
    used = 0
    for line in lines:
        if used + len(line) > max_chars:
            break
        output.append(line)
        used += len(line)

    return "".join(output)


class Retriever:
    """
    Hybrid memory retriever.

    Holds only immutable configuration, so a single instance may serve
    concurrent ``retrieve`` calls.

    Example usage:
        retriever = Retriever(store, embedder, query_provider,
                              embedding_model, tool_model, MemoryConfig())
        response = retriever.retrieve("how do virtual functions work?")
        print(format_as_text(response))
    """

    def __init__(
        self,
        store: SQLiteStore,
        embedding_provider: EmbeddingProvider,
        query_provider: Optional[QueryProvider],
        embedding_model: Model,
        tool_model: Optional[Model],
        config: Optional[MemoryConfig] = None,
    ):
        """
        Initialize the retriever.

        Args:
            store: Memory store to search
            embedding_provider: Embeds queries for vector search
            query_provider: Rewrites queries; None disables rewriting
            embedding_model: Model the stored memories were embedded with
            tool_model: Model used for query rewriting
            config: Retrieval tuning; defaults if None
        """
        self.store = store
        self.embedding_provider = embedding_provider
        self.query_provider = query_provider
        self.embedding_model = embedding_model
        self.tool_model = tool_model
        self.config = config or MemoryConfig()

    def retrieve(self, query: str, cancel: Optional[threading.Event] = None) -> RetrievalResponse:
        """
        Search memories by meaning and by text.

        Args:
            query: Raw user query
            cancel: Optional event; once set, the call stops early

        Returns:
            Fused results, at most ``memory_top_k``

        Raises:
            RetrievalError: If both search paths fail
            RetrievalCancelled: If ``cancel`` is set
        """
        self._check_cancelled(cancel)

        vector_results, vector_error, fts_results, fts_error = self._run_both(
            (self._vector_search, query, cancel),
            (self._fts_search, query),
        )

        self._check_cancelled(cancel)

        if vector_error is not None and fts_error is not None:
            raise RetrievalError(
                f"vector search failed: {vector_error}; FTS search failed: {fts_error}"
            )
        if vector_error is not None:
            logger.warning(f"Vector search failed, using FTS results only: {vector_error}")
        if fts_error is not None:
            logger.warning(f"FTS search failed, using vector results only: {fts_error}")

        results = fuse_results(
            vector_results or [],
            fts_results or [],
            self.config.memory_top_k,
            self.config.fts_rank_scale,
        )
        logger.debug(
            f"Retrieved {len(results)} memories "
            f"({len(vector_results or [])} vector, {len(fts_results or [])} FTS)"
        )
        return RetrievalResponse(results=results, query=query)

    def retrieve_context(self, query: str) -> InjectedContext:
        """
        Collect memory facts and history snippets for prompt injection.

        Raises:
            RetrievalError: If both searches fail
        """
        facts, facts_error, history, history_error = self._run_both(
            (self._vector_search, query, None),
            (self._history_search, query),
        )

        if facts_error is not None and history_error is not None:
            raise RetrievalError(
                f"vector search failed: {facts_error}; history search failed: {history_error}"
            )
        if facts_error is not None:
            logger.warning(f"Vector search failed for context: {facts_error}")
        if history_error is not None:
            logger.warning(f"History search failed for context: {history_error}")

        return InjectedContext(memory_facts=facts or [], history_snippets=history or [])

    def transform_query(self, query: str) -> List[str]:
        """
        Expand a query into vector search candidates.

        The original query is always first. Rewrites are added when a
        query provider is available and answers in the expected format.
        """
        candidates = [query]
        if self.query_provider is None or self.tool_model is None:
            return candidates

        try:
            response = collect_stream(
                self.query_provider,
                self.tool_model,
                format_query_transform_prompt(query),
            )
        except Exception as e:
            logger.warning(f"Query transformation failed, using original query: {e}")
            return candidates

        answer, rephrase = parse_transform_response(response)
        for candidate in (answer, rephrase):
            if candidate and candidate not in candidates:
                candidates.append(candidate)

        logger.debug(f"Expanded query into {len(candidates)} candidates")
        return candidates

    def build_fts_query(self, query: str, strategy: FTSStrategy) -> str:
        """Build the FTS5 match expression for a non-auto strategy."""
        if strategy == FTSStrategy.SUMMARY:
            summary = self._ask(format_query_summary_prompt(query), "summary")
            fts_query = tokenize_for_fts(summary) if summary else ""
        elif strategy == FTSStrategy.KEYWORDS:
            keywords = self._ask(format_query_keywords_prompt(query), "keywords")
            fts_query = keywords_to_fts(keywords) if keywords else ""
        else:
            return tokenize_for_fts(query)

        return fts_query or tokenize_for_fts(query)

    # ------------------------------------------------------------------
    # Search paths
    # ------------------------------------------------------------------

    def _vector_search(self, query: str, cancel: Optional[threading.Event]) -> List[SearchResult]:
        top_k = self.config.memory_top_k
        candidates = self.transform_query(query)

        seen = set()
        results: List[SearchResult] = []
        failures: List[Exception] = []

        for candidate in candidates:
            if cancel is not None and cancel.is_set():
                break
            try:
                embedding = self.embedding_provider.embed(self.embedding_model, candidate)
                hits = self.store.search_memories(embedding, top_k, self.config.min_similarity)
            except Exception as e:
                logger.warning(f"Skipping query candidate {candidate!r}: {e}")
                failures.append(e)
                continue

            for hit in hits:
                if hit.item.id not in seen:
                    seen.add(hit.item.id)
                    results.append(hit)

        if failures and len(failures) == len(candidates):
            raise failures[0]

        results.sort(key=lambda r: r.similarity, reverse=True)
        return results[:top_k]

    def _fts_search(self, query: str) -> List[MemoryFTSResult]:
        top_k = self.config.memory_top_k
        strategy = self.config.fts_strategy

        if strategy != FTSStrategy.AUTO:
            fts_query = self.build_fts_query(query, strategy)
            if not fts_query:
                return []
            return self.store.search_memories_fts(fts_query, top_k)

        direct_query = tokenize_for_fts(query)
        results = self.store.search_memories_fts(direct_query, top_k) if direct_query else []

        if len(results) >= max(top_k // 2, 3):
            return results

        summary_query = self.build_fts_query(query, FTSStrategy.SUMMARY)
        if not summary_query or summary_query == direct_query:
            return results

        seen = {r.item.id for r in results}
        for hit in self.store.search_memories_fts(summary_query, top_k):
            if hit.item.id not in seen:
                seen.add(hit.item.id)
                results.append(hit)

        return results[:top_k]

    def _history_search(self, query: str) -> List[HistorySearchResult]:
        fts_query = tokenize_for_fts(query)
        if not fts_query:
            return []
        return self.store.search_history(fts_query, self.config.history_top_k)

    def _ask(self, prompt: str, purpose: str) -> str:
        """Run a prompt on the tool model; empty string on any failure."""
        if self.query_provider is None or self.tool_model is None:
            return ""
        try:
            return collect_stream(self.query_provider, self.tool_model, prompt).strip()
        except Exception as e:
            logger.warning(f"FTS {purpose} generation failed, using direct query: {e}")
            return ""

    # ------------------------------------------------------------------
    # Concurrency
    # ------------------------------------------------------------------

    def _run_both(self, first: tuple, second: tuple):
        """
        Run two calls concurrently and wait for both.

        Returns:
            (first_result, first_error, second_result, second_error)
        """
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="longmem-retrieve") as executor:
            first_future = executor.submit(self._call_in_worker, *first)
            second_future = executor.submit(self._call_in_worker, *second)

            first_result, first_error = self._outcome(first_future)
            second_result, second_error = self._outcome(second_future)

        return first_result, first_error, second_result, second_error

    def _call_in_worker(self, func: Callable, *args):
        try:
            return func(*args)
        finally:
            # Worker threads are short-lived; do not leave their connection open
            self.store.release_connection()

    @staticmethod
    def _outcome(future):
        try:
            return future.result(), None
        except Exception as e:
            return None, e

    @staticmethod
    def _check_cancelled(cancel: Optional[threading.Event]):
        if cancel is not None and cancel.is_set():
            raise RetrievalCancelled("retrieval cancelled")
