from book_sync.matching import (
    TITLE_THRESHOLD,
    build_query,
    is_good_match,
    normalize,
    title_score,
)


class TestNormalize:
    def test_strips_series_annotation(self):
        assert normalize("The Culture (Culture, #3)") == "the culture"

    def test_strips_novel_suffix(self):
        assert normalize("Piranesi: A Novel") == "piranesi"

    def test_strips_punctuation_and_collapses_whitespace(self):
        assert normalize("  Hello,   World!  ") == "hello world"

    def test_empty_inputs(self):
        assert normalize(None) == ""
        assert normalize("") == ""


class TestTitleScore:
    def test_series_annotation_scores_full_match(self):
        assert title_score("The Culture (Culture, #3)", "The Culture") == 1.0

    def test_uses_smaller_word_set(self):
        # 较短的一侧完全包含在较长的一侧
        assert title_score("Dune", "Dune Messiah Special Edition") == 1.0

    def test_partial_overlap(self):
        assert title_score("one two three four", "one two five six") == 0.5

    def test_empty_side_scores_zero(self):
        assert title_score("", "Dune") == 0.0
        assert title_score("Dune", "(only parens)") == 0.0


class TestIsGoodMatch:
    @staticmethod
    def _titles(total: int, matching: int) -> tuple[str, str]:
        expected = " ".join(f"w{i}" for i in range(total))
        candidate = " ".join(
            f"w{i}" if i < matching else f"x{i}" for i in range(total)
        )
        return expected, candidate

    def test_threshold_constant(self):
        assert TITLE_THRESHOLD == 0.70

    def test_exactly_seventy_percent_accepted(self):
        expected, candidate = self._titles(10, 7)
        assert title_score(expected, candidate) == 0.7
        assert is_good_match(expected, None, candidate, None)

    def test_sixty_nine_percent_rejected(self):
        expected, candidate = self._titles(100, 69)
        assert title_score(expected, candidate) == 0.69
        assert not is_good_match(expected, None, candidate, None)

    def test_author_token_substring_accepted(self):
        assert is_good_match(
            "Ancillary Justice", "Ann Leckie",
            "Ancillary Justice", "by A. Leckie (trans.)",
        )

    def test_author_mismatch_rejected(self):
        assert not is_good_match("Dune", "Frank Herbert", "Dune", "Brian Herbart")

    def test_short_author_tokens_ignored(self):
        # "Le" 长度不足 3，不参与匹配
        assert not is_good_match("Dune", "Le Guin", "Dune", "Le Carre")

    def test_missing_expected_author_skips_author_check(self):
        assert is_good_match("Dune", None, "Dune", "Someone Else")
        assert is_good_match("Dune", "", "Dune", "")

    def test_title_mismatch_rejected_before_author(self):
        assert not is_good_match("Dune", "Frank Herbert", "Emma", "Frank Herbert")


class TestBuildQuery:
    def test_removes_parenthetical_and_appends_author(self):
        assert build_query("Excession (Culture, #5)", "Iain M. Banks") == "Excession Iain M. Banks"

    def test_missing_parts(self):
        assert build_query(None, "Ann Leckie") == "Ann Leckie"
        assert build_query("Dune", None) == "Dune"
        assert build_query(None, None) == ""
