"""Tests for response quality scoring and consensus."""

import pytest

from switchboard.agent.registry import AgentId
from switchboard.execution.quality import (
    calculate_consensus,
    extract_keywords,
    jaccard,
    score_response_quality,
)

LONG_ANSWER = (
    "The weather today in Prague is mild with light rain expected in the afternoon, "
    "so bring an umbrella if you plan to walk around the old town later."
)


class TestScoreResponseQuality:
    def test_hedging_short_answer_scores_low(self):
        # 0.5 base, -0.2 under ten words, -0.2 hedging
        assert score_response_quality("I don't know", "what is the weather") == pytest.approx(0.1)

    def test_complete_answer_scores_high(self):
        score = score_response_quality(LONG_ANSWER, "what is the weather in prague")
        # base + length + punctuation + 2 of 3 query words echoed
        assert score == pytest.approx(0.5 + 0.1 + 0.1 + 0.1)

    def test_structure_bonus(self):
        plain = score_response_quality("First thing then second thing.", "")
        bulleted = score_response_quality("- First thing\n- second thing.", "")
        assert bulleted - plain == pytest.approx(0.05)

    def test_domain_terminology(self, registry):
        descriptor = registry.get(AgentId.HOME)
        term = next(t for t in " ".join(descriptor.capabilities).lower().split() if len(t) > 4)
        without = score_response_quality("Done, all set.", "", None)
        with_domain = score_response_quality(f"Done, {term} all set.", "", descriptor)
        assert with_domain - without == pytest.approx(0.1)

    def test_every_bonus_reaches_one(self, registry):
        descriptor = registry.get(AgentId.HOME)
        term = next(t for t in " ".join(descriptor.capabilities).lower().split() if len(t) > 4)
        answer = f"- {term} {LONG_ANSWER}"
        assert score_response_quality(answer, "weather prague", descriptor) == pytest.approx(1.0)


class TestConsensus:
    def test_single_response_is_full_agreement(self):
        assert calculate_consensus([]) == 1.0
        assert calculate_consensus(["only one"]) == 1.0

    def test_identical_responses(self):
        assert calculate_consensus([LONG_ANSWER, LONG_ANSWER]) == 1.0

    def test_disjoint_responses(self):
        assert calculate_consensus(["apples oranges", "engines wheels"]) == 0.0

    def test_order_independent(self):
        texts = ["rainy weather tomorrow", "sunny weather tomorrow", "stock market crash"]
        assert calculate_consensus(texts) == pytest.approx(calculate_consensus(texts[::-1]))

    def test_keywords_longer_than_four(self):
        assert extract_keywords("The quick brown foxes jump") == {"quick", "brown", "foxes"}

    def test_jaccard_empty(self):
        assert jaccard(set(), set()) == 0.0
