"""Heuristic working-language detection for grouping extraction batches."""

import re

MIXED = "mixed"

# Small per-language stop-word lists; counts of hits decide the language.
STOP_WORDS: dict[str, frozenset[str]] = {
    "sl": frozenset({
        "je", "in", "za", "na", "se", "da", "ki", "so", "bo", "ali", "kot", "od",
        "do", "pri", "pa", "če", "lahko", "sem", "si", "ga", "mu", "ji", "jo",
        "jim", "jih", "hvala", "prosim", "lep", "pozdrav", "sporočilo",
    }),
    "en": frozenset({
        "the", "and", "for", "are", "but", "not", "you", "all", "can", "had",
        "her", "was", "one", "our", "out", "day", "get", "has", "him", "his",
        "how", "man", "new", "now", "old", "see", "two", "way", "who", "did",
        "its", "let", "put", "say", "she", "too", "use", "thank", "please",
        "regards", "message",
    }),
}

# Orthographic cues that strongly indicate a language; each present cue
# family adds a fixed bonus, which is what breaks stop-word ties.
DIACRITIC_CUES: dict[str, tuple[str, ...]] = {
    "sl": ("č", "ž", "š", "ć", "đ", "ije", "konec", "dimenzije", "vrečo"),
}
DIACRITIC_BONUS = 3

_NON_WORD_RE = re.compile(r"[^\w\s]")


def language_scores(text: str) -> dict[str, int]:
    """Stop-word hit counts per language, plus diacritic bonuses."""
    words = [w for w in _NON_WORD_RE.sub(" ", text.lower()).split() if len(w) > 1]
    scores = {lang: 0 for lang in STOP_WORDS}
    for word in words:
        for lang, stop_words in STOP_WORDS.items():
            if word in stop_words:
                scores[lang] += 1

    for lang, cues in DIACRITIC_CUES.items():
        if any(cue in text for cue in cues):
            scores[lang] = scores.get(lang, 0) + DIACRITIC_BONUS

    return scores


def detect_language(text: str) -> str:
    """Return the dominant language code, or ``"mixed"`` when none dominates.

    Examples:
        >>> detect_language("Thank you for the message, please see the attached quote")
        'en'
        >>> detect_language("")
        'mixed'
    """
    scores = language_scores(text)
    if not scores:
        return MIXED

    best = max(scores.values())
    if best == 0:
        return MIXED

    leaders = [lang for lang, score in scores.items() if score == best]
    return leaders[0] if len(leaders) == 1 else MIXED
