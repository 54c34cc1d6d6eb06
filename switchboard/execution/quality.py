"""Response quality scoring and cross-response consensus.

Both functions are cheap text heuristics used to rank speculative
candidates; neither calls a model.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from itertools import combinations

from switchboard.agent.registry import AgentDescriptor

BASE_SCORE = 0.5
HEDGING_PHRASES = (
    "i don't know",
    "i'm not sure",
    "i cannot",
    "i'm unable",
    "as an ai",
    "i don't have access",
)
_TERMINAL_PUNCTUATION = re.compile(r"[.!?]")


def extract_keywords(text: str, min_length: int = 4) -> set[str]:
    """Lower-cased whitespace tokens strictly longer than min_length."""
    return {word for word in text.lower().split() if len(word) > min_length}


def _domain_terms(descriptor: AgentDescriptor) -> list[str]:
    return [term for term in " ".join(descriptor.capabilities).lower().split() if len(term) > 4]


def score_response_quality(
    response: str,
    query: str,
    descriptor: AgentDescriptor | None = None,
) -> float:
    """Score a response in [0, 1].

    Components:
        base                                  0.50
        20-500 words                         +0.10   (<10 words: -0.20)
        query words (>3 chars) echoed        +0.15 * ratio
        has terminal punctuation             +0.10
        uses the agent's domain terminology  +0.10
        structured (bullets, list, code)     +0.05
        hedging / refusal phrasing           -0.20
    """
    score = BASE_SCORE
    lowered = response.lower()

    word_count = len(response.split())
    if 20 <= word_count <= 500:
        score += 0.1
    elif word_count < 10:
        score -= 0.2

    query_words = [word for word in query.lower().split() if len(word) > 3]
    if query_words:
        hits = sum(1 for word in query_words if word in lowered)
        score += (hits / len(query_words)) * 0.15

    if _TERMINAL_PUNCTUATION.search(response):
        score += 0.1

    if descriptor is not None and any(term in lowered for term in _domain_terms(descriptor)):
        score += 0.1

    if any(phrase in lowered for phrase in HEDGING_PHRASES):
        score -= 0.2

    if "- " in response or "1." in response or "```" in response:
        score += 0.05

    return max(0.0, min(1.0, score))


def jaccard(a: set[str], b: set[str]) -> float:
    union = a | b
    return len(a & b) / len(union) if union else 0.0


def calculate_consensus(responses: Sequence[str]) -> float:
    """Average pairwise Jaccard similarity of response keyword sets.

    1.0 for fewer than two responses. The result does not depend on
    response order.
    """
    if len(responses) < 2:
        return 1.0
    keyword_sets = [extract_keywords(text) for text in responses]
    pairs = list(combinations(keyword_sets, 2))
    return sum(jaccard(a, b) for a, b in pairs) / len(pairs)
