"""Tests for pattern similarity, greedy clustering and merging."""

import pytest

from replywise.learning.similarity import (
    cluster_patterns,
    deduplicate_patterns,
    jaccard_similarity,
    merge_patterns,
    merge_similar_patterns,
    pattern_similarity,
    word_overlap,
)
from replywise.models.pattern import ExamplePair
from tests.conftest import make_pattern


class TestJaccard:
    """Tests for the set similarity primitive."""

    def test_both_empty_is_zero(self):
        """Two empty sets have similarity 0 by convention."""
        assert jaccard_similarity(set(), set()) == 0.0

    def test_partial_overlap(self):
        """Shared elements over the union."""
        assert jaccard_similarity({"a", "b", "c"}, {"b", "c", "d"}) == 0.5

    def test_word_overlap_is_case_insensitive(self):
        """Template words are compared lower-cased."""
        assert word_overlap("Please Find Attached", "please find attached") == 1.0


class TestPatternSimilarity:
    """Tests for the weighted pattern similarity."""

    def test_identical_pattern_scores_one(self):
        """A pattern with keywords and a template is fully similar to itself."""
        p = make_pattern()
        assert pattern_similarity(p, p) == pytest.approx(1.0)

    def test_different_type_is_zero(self):
        """Different pattern types never compare, whatever the overlap."""
        p1 = make_pattern(pattern_type="question_response")
        p2 = make_pattern(pattern_type="greeting_style")
        assert pattern_similarity(p1, p2) == 0.0

    def test_different_category_is_zero(self):
        """Different context categories never compare."""
        p1 = make_pattern(context_category="customer_inquiry")
        p2 = make_pattern(context_category="technical_support")
        assert pattern_similarity(p1, p2) == 0.0

    def test_weighted_example_below_threshold(self):
        """Keywords 1/3 and template overlap 0.5 blend to 0.4 and are not merged."""
        p1 = make_pattern(trigger_keywords=["price", "quote"], response_template="please find attached")
        p2 = make_pattern(trigger_keywords=["price", "cost"], response_template="please find enclosed")

        assert pattern_similarity(p1, p2) == pytest.approx(0.4)
        assert len(merge_similar_patterns([p1, p2], 0.8)) == 2

    def test_keyword_case_does_not_matter(self):
        """Keywords are normalized to lower case before comparison."""
        p1 = make_pattern(trigger_keywords=["Refund", "RETURN"])
        p2 = make_pattern(trigger_keywords=["refund", "return"])
        assert pattern_similarity(p1, p2) == pytest.approx(1.0)


def _kw(*numbers):
    return [f"k{n}" for n in numbers]


class TestGreedyClustering:
    """Greedy clustering is order dependent and not transitive.

    Members join the cluster of the first head they are similar to; they
    need not be similar to each other. This approximation is intentional.
    """

    def setup_method(self):
        template = "thanks we will get back to you"
        self.a = make_pattern(trigger_keywords=_kw(1, 2, 3, 4, 5, 6), response_template=template)
        self.b = make_pattern(trigger_keywords=_kw(1, 2, 3, 4, 5, 7), response_template=template)
        self.c = make_pattern(trigger_keywords=_kw(1, 2, 3, 4, 6, 8), response_template=template)

    def test_fixture_similarities(self):
        """A is close to both B and C, while B and C are not close to each other."""
        assert pattern_similarity(self.a, self.b) >= 0.8
        assert pattern_similarity(self.a, self.c) >= 0.8
        assert pattern_similarity(self.b, self.c) < 0.8

    def test_members_only_need_to_match_head(self):
        """B and C land in A's cluster although they are not mutually similar."""
        clusters = cluster_patterns([self.a, self.b, self.c], 0.8)
        assert len(clusters) == 1
        assert clusters[0] == [self.a, self.b, self.c]

    def test_input_order_changes_clusters(self):
        """Starting from B, C is left out because it is not similar to B."""
        clusters = cluster_patterns([self.b, self.c, self.a], 0.8)
        assert clusters == [[self.b, self.a], [self.c]]

    def test_singletons_pass_through(self):
        """Unrelated patterns stay in their own clusters."""
        other = make_pattern(pattern_type="closing_style")
        assert cluster_patterns([self.a, other], 0.8) == [[self.a], [other]]


class TestMerge:
    """Tests for reducing a cluster to a single pattern."""

    def test_singleton_merge_is_identity(self):
        """Merging a single pattern returns it unchanged."""
        p = make_pattern()
        assert merge_patterns([p]) == p

    def test_empty_cluster_rejected(self):
        """There is nothing to merge in an empty cluster."""
        with pytest.raises(ValueError):
            merge_patterns([])

    def test_merge_combines_members(self):
        """Head fields kept, keywords unioned, confidence averaged, pairs concatenated."""
        p1 = make_pattern(
            trigger_keywords=["refund"],
            confidence_score=0.9,
            example_pairs=[ExamplePair(question="q1", answer="a1")],
        )
        p2 = make_pattern(
            trigger_keywords=["Refund", "money back"],
            response_template="different template",
            confidence_score=0.5,
            example_pairs=[ExamplePair(question="q2", answer="a2")],
        )

        merged = merge_patterns([p1, p2])

        assert merged.response_template == p1.response_template
        assert merged.pattern_type == p1.pattern_type
        assert merged.trigger_keywords == ["refund", "money back"]
        assert merged.confidence_score == pytest.approx(0.7)
        assert [pair.question for pair in merged.example_pairs] == ["q1", "q2"]

    def test_merged_scores_stay_in_range(self):
        """Merged confidence and success rate respect their bounds."""
        patterns = [make_pattern(confidence_score=c) for c in (0.1, 1.0, 0.55)]
        merged = merge_patterns(patterns)
        assert 0.1 <= merged.confidence_score <= 1.0
        assert 0.0 <= merged.success_rate <= 1.0

    def test_merge_similar_reduces_duplicates(self):
        """Identical patterns collapse into one."""
        p = make_pattern()
        result = merge_similar_patterns([p, make_pattern(), make_pattern()], 0.8)
        assert len(result) == 1


class TestDeduplicate:
    """Tests for the dedup-only pass used on chunk output."""

    def test_keeps_heads_without_merging(self):
        """Near-duplicates are dropped; the head keeps its own fields."""
        p1 = make_pattern(trigger_keywords=["refund", "return"], confidence_score=0.9)
        p2 = make_pattern(trigger_keywords=["refund", "return", "damaged"], confidence_score=0.4)

        result = deduplicate_patterns([p1, p2])

        assert result == [p1]
        assert result[0].confidence_score == 0.9
