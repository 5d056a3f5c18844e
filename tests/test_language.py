"""Tests for working-language detection."""

from replywise.learning.language import detect_language, language_scores


class TestDetectLanguage:
    """Tests for detect_language."""

    def test_english(self):
        """English stop words dominate."""
        text = "Thank you for the quote, please send the invoice and we can get it out today"
        assert detect_language(text) == "en"

    def test_slovenian(self):
        """Slovenian stop words and diacritics dominate."""
        text = "Hvala za sporočilo, prosim pošljite ponudbo. Lep pozdrav"
        assert detect_language(text) == "sl"

    def test_empty_is_mixed(self):
        """No signal at all is mixed."""
        assert detect_language("") == "mixed"

    def test_tie_is_mixed(self):
        """Equal stop-word counts without diacritics are mixed."""
        assert detect_language("the in") == "mixed"

    def test_diacritics_break_ties(self):
        """A diacritic cue adds a bonus that decides an otherwise even text."""
        scores = language_scores("the in čas")
        assert scores["sl"] == scores["en"] + 3
        assert detect_language("the in čas") == "sl"
