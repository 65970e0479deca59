"""
LLM Prompt Templates - Prompts used to rewrite queries before retrieval.

- Query transformation (hypothetical answer + rephrasing) for vector search
- Query summary and keyword extraction for full-text search
"""


# =============================================================================
# Vector Search Prompts
# =============================================================================

QUERY_TRANSFORM_PROMPT = """Given this user query, provide two transformations for memory retrieval:
1. A brief 1-2 sentence answer to the query (as if you know the answer)
2. A rephrased version optimized for semantic search

User query: {query}

Respond in this exact format (no other text):
ANSWER: <brief answer>
REPHRASE: <rephrased query>"""


# =============================================================================
# Full-Text Search Prompts
# =============================================================================

QUERY_SUMMARY_PROMPT = """Summarize this query in one short sentence for text search:
Query: {query}

Respond with ONLY the summary, no other text."""

QUERY_KEYWORDS_PROMPT = """Extract 3-5 key search terms from this query:
Query: {query}

Respond with ONLY comma-separated keywords, no other text."""


def format_query_transform_prompt(query: str) -> str:
    """Format the query transformation prompt."""
    return QUERY_TRANSFORM_PROMPT.format(query=query)


def format_query_summary_prompt(query: str) -> str:
    """Format the FTS summary prompt."""
    return QUERY_SUMMARY_PROMPT.format(query=query)


def format_query_keywords_prompt(query: str) -> str:
    """Format the FTS keyword extraction prompt."""
    return QUERY_KEYWORDS_PROMPT.format(query=query)
