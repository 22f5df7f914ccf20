"""Tests for name normalization, edit-distance similarity and keyword extraction."""

import pytest

from utils.normalization import (
    extract_keywords,
    first_significant_word,
    levenshtein,
    normalize_name,
    normalize_task_name,
    similarity,
    tokenize,
)

# ============================================================================
# normalize_name
# ============================================================================


class TestNormalizeName:
    def test_russian_legal_form_and_quotes(self):
        assert normalize_name('  ООО "Сбербанк"  ') == normalize_name("Сбербанк")
        assert normalize_name('  ООО "Сбербанк"  ') == "сбербанк"

    def test_guillemets(self):
        assert normalize_name("ПАО «Газпром нефть»") == "газпром нефть"

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("Acme Inc.", "acme"),
            ("Acme, LLC", "acme,"),
            ("Siemens AG", "siemens"),
            ("Foo GmbH", "foo"),
            ("Bar Ltd", "bar"),
            ("ИП Иванов", "иванов"),
        ],
    )
    def test_legal_forms_stripped(self, raw, expected):
        assert normalize_name(raw) == expected

    def test_legal_form_only_as_whole_word(self):
        """'ао' inside a word is part of the name."""
        assert normalize_name("Маока") == "маока"
        assert normalize_name("Incubator") == "incubator"
        assert normalize_name("Agile Team") == "agile team"

    def test_collapses_whitespace(self):
        assert normalize_name("  Настроить \t  CI/CD \n") == "настроить ci/cd"

    def test_case_fold(self):
        assert normalize_name("Настроить CI/CD") == normalize_name("настроить ci/cd")

    def test_none_and_non_string(self):
        assert normalize_name(None) == ""
        assert normalize_name(42) == "42"

    def test_only_legal_form(self):
        assert normalize_name('ООО ""') == ""

    def test_idempotent(self):
        once = normalize_name('ЗАО "Ромашка"  и партнёры')
        assert normalize_name(once) == once


class TestNormalizeTaskName:
    def test_budget_annotation_removed(self):
        assert normalize_task_name("Сделать лендинг (50 тыс руб)") == "сделать лендинг"
        assert normalize_task_name("Landing page ($5k)") == "landing page"
        assert normalize_task_name("Дизайн (424.39₽)") == "дизайн"

    def test_plain_parenthetical_kept(self):
        assert normalize_task_name("Review (task)") == "review (task)"

    def test_trailing_punctuation_removed(self):
        assert normalize_task_name("Настроить CI/CD.") == "настроить ci/cd"
        assert normalize_task_name("Deploy!!") == "deploy"

    def test_matches_plain_normalization_otherwise(self):
        assert normalize_task_name("Настроить CI/CD") == normalize_name("Настроить CI/CD")


# ============================================================================
# Similarity
# ============================================================================


class TestSimilarity:
    def test_identity(self):
        for value in ["a", "сбербанк", "Настроить CI/CD", "x" * 50]:
            assert similarity(value, value) == 1.0

    def test_both_empty(self):
        assert similarity("", "") == 1.0

    def test_one_empty(self):
        assert similarity("abc", "") == 0.0

    def test_formula(self):
        # kitten -> sitting: 3 edits over 7 characters
        assert levenshtein("kitten", "sitting") == 3
        assert similarity("kitten", "sitting") == pytest.approx(1 - 3 / 7)

    def test_symmetric(self):
        assert similarity("яндекс", "яндекс такси") == similarity("яндекс такси", "яндекс")

    def test_none_coerced(self):
        assert similarity(None, None) == 1.0
        assert similarity(None, "ab") == 0.0

    def test_range(self):
        value = similarity("совершенно", "другое")
        assert 0.0 <= value <= 1.0


# ============================================================================
# Keywords
# ============================================================================


class TestFirstSignificantWord:
    def test_skips_short_tokens(self):
        assert first_significant_word("ип ао яндекс маркет") == "яндекс"

    def test_none_when_all_short(self):
        assert first_significant_word("ab cd") is None

    def test_custom_min_length(self):
        assert first_significant_word("abc defgh", min_length=4) == "defgh"


class TestTokenize:
    def test_punctuation_and_case(self):
        assert tokenize("Hello, World! CI/CD") == ["hello", "world", "ci", "cd"]

    def test_latin_accents_stripped(self):
        assert tokenize("Café résumé") == ["cafe", "resume"]

    def test_cyrillic_letters_kept(self):
        assert tokenize("Ещё йогурт") == ["ещё", "йогурт"]

    def test_underscore_is_separator(self):
        assert tokenize("snake_case") == ["snake", "case"]


class TestExtractKeywords:
    def test_drops_short_and_stop_words(self):
        keywords = extract_keywords(["Завтра начну это на сайте для клиента"])
        assert keywords == ["завтра", "начну", "сайте", "клиента"]

    def test_dedup_keeps_first_seen_order(self):
        keywords = extract_keywords(["интеграция платёжки", "платёжки интеграция отчёт"])
        assert keywords == ["интеграция", "платёжки", "отчёт"]

    def test_cap(self):
        text = " ".join(f"word{i:02d}" for i in range(30))
        assert len(extract_keywords([text])) == 10
        assert len(extract_keywords([text], max_keywords=3)) == 3

    def test_english_stop_words(self):
        assert extract_keywords(["the invoice and the contract"]) == ["invoice", "contract"]

    def test_skips_none(self):
        assert extract_keywords([None, "deploy"]) == ["deploy"]

    def test_empty(self):
        assert extract_keywords([]) == []
