"""Pattern similarity, greedy clustering and merging.

Similarity between two patterns of the same ``(pattern_type,
context_category)`` is a weighted blend of keyword Jaccard similarity and
response-template word overlap. Patterns of different kinds always score 0.

Clustering is a single left-to-right greedy pass: each unassigned pattern
claims every later unassigned pattern that is similar *to it*. Members of a
cluster are therefore similar to the cluster head, not necessarily to each
other. This is an accepted approximation and must not be turned into a
transitive closure; downstream pattern sets depend on the greedy output.
"""

import logging
from collections.abc import Iterable, Sequence

from replywise.models.pattern import Pattern, normalize_terms

logger = logging.getLogger(__name__)

KEYWORD_WEIGHT = 0.6
TEMPLATE_WEIGHT = 0.4
DEFAULT_MERGE_THRESHOLD = 0.8
DEDUP_THRESHOLD = 0.7


def jaccard_similarity(set_a: set[str], set_b: set[str]) -> float:
    """Compute Jaccard similarity coefficient between two sets.

    Returns 0.0 if both sets are empty (by convention).

    Examples:
        >>> jaccard_similarity({"a", "b", "c"}, {"b", "c", "d"})
        0.5
        >>> jaccard_similarity(set(), set())
        0.0
    """
    if not set_a and not set_b:
        return 0.0

    union = len(set_a | set_b)
    return len(set_a & set_b) / union if union > 0 else 0.0


def word_set(text: str) -> set[str]:
    """Lower-cased whitespace-delimited words of ``text``."""
    return set(text.lower().split())


def word_overlap(text_a: str, text_b: str) -> float:
    """Jaccard similarity over the lower-cased word sets of two texts."""
    return jaccard_similarity(word_set(text_a), word_set(text_b))


def keyword_similarity(p1: Pattern, p2: Pattern) -> float:
    """Jaccard similarity of the two patterns' trigger keywords, case-insensitive."""
    return jaccard_similarity(
        {k.lower() for k in p1.trigger_keywords},
        {k.lower() for k in p2.trigger_keywords},
    )


def pattern_similarity(p1: Pattern, p2: Pattern) -> float:
    """Similarity of two patterns in ``[0, 1]``.

    Different ``pattern_type`` or ``context_category`` is a hard gate
    returning 0 regardless of keyword overlap.
    """
    if p1.pattern_type != p2.pattern_type or p1.context_category != p2.context_category:
        return 0.0

    return (
        KEYWORD_WEIGHT * keyword_similarity(p1, p2)
        + TEMPLATE_WEIGHT * word_overlap(p1.response_template, p2.response_template)
    )


def cluster_patterns(
    patterns: Sequence[Pattern],
    threshold: float = DEFAULT_MERGE_THRESHOLD,
) -> list[list[Pattern]]:
    """Group patterns with one greedy left-to-right pass.

    For each not-yet-assigned pattern ``p_i``, every later unassigned
    ``p_j`` with ``similarity(p_i, p_j) >= threshold`` joins ``p_i``'s
    cluster. Cluster order follows the position of each cluster head.

    Args:
        patterns: Patterns in input order.
        threshold: Minimum similarity to join a cluster.

    Returns:
        Clusters, each a list whose first element is the cluster head.
    """
    assigned: set[int] = set()
    clusters: list[list[Pattern]] = []

    for i, head in enumerate(patterns):
        if i in assigned:
            continue
        assigned.add(i)
        cluster = [head]

        for j in range(i + 1, len(patterns)):
            if j in assigned:
                continue
            if pattern_similarity(head, patterns[j]) >= threshold:
                cluster.append(patterns[j])
                assigned.add(j)

        clusters.append(cluster)

    return clusters


def _union_terms(groups: Iterable[list[str]]) -> list[str]:
    merged: list[str] = []
    for group in groups:
        merged.extend(group)
    return normalize_terms(merged)


def merge_patterns(patterns: Sequence[Pattern]) -> Pattern:
    """Reduce a cluster to one pattern.

    Keeps the head's type, category, template, statistics and metadata;
    unions keywords, phrases and sender patterns; averages confidence;
    concatenates example pairs in input order. A singleton is returned
    unchanged.

    Raises:
        ValueError: If ``patterns`` is empty.
    """
    if not patterns:
        raise ValueError("cannot merge an empty cluster")

    head = patterns[0]
    if len(patterns) == 1:
        return head

    example_pairs = [pair for p in patterns for pair in p.example_pairs]

    return head.updated(
        id=None,
        trigger_keywords=_union_terms(p.trigger_keywords for p in patterns),
        trigger_phrases=_union_terms(p.trigger_phrases for p in patterns),
        sender_patterns=_union_terms(p.sender_patterns for p in patterns),
        confidence_score=sum(p.confidence_score for p in patterns) / len(patterns),
        example_pairs=example_pairs,
    )


def merge_similar_patterns(
    patterns: Sequence[Pattern],
    threshold: float = DEFAULT_MERGE_THRESHOLD,
) -> list[Pattern]:
    """Cluster patterns and merge each multi-member cluster.

    Args:
        patterns: Candidate patterns in input order.
        threshold: Merge threshold (learning configuration).

    Returns:
        One pattern per cluster, in cluster order.
    """
    clusters = cluster_patterns(patterns, threshold)
    merged = [merge_patterns(cluster) for cluster in clusters]
    if len(merged) < len(patterns):
        logger.debug(
            "Merged %d patterns into %d (threshold=%.2f)",
            len(patterns),
            len(merged),
            threshold,
        )
    return merged


def deduplicate_patterns(
    patterns: Sequence[Pattern],
    threshold: float = DEDUP_THRESHOLD,
) -> list[Pattern]:
    """Drop near-duplicates, keeping the head of each greedy cluster as-is.

    Unlike ``merge_similar_patterns`` no fields are combined; this is
    used on per-chunk extraction output of a single long email.
    """
    return [cluster[0] for cluster in cluster_patterns(patterns, threshold)]
