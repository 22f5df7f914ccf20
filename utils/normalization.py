"""Name canonicalization, edit-distance similarity and keyword extraction.

Pure functions, no I/O. Every resolution path compares names through
normalize_name() so that "ООО «Сбербанк»" and "сбербанк" collide.
"""

import re
import unicodedata
from typing import Any, Iterable

from rapidfuzz.distance import Levenshtein

# Quote characters stripped before comparison
QUOTE_CHARS = "\"'«»“”„‘’`"

RU_LEGAL_FORMS = ("ооо", "оао", "зао", "пао", "ао", "ип", "нко", "гуп", "муп", "фгуп")
EN_LEGAL_FORMS = ("llc", "inc", "corp", "ltd", "gmbh", "ag", "plc")

_QUOTES_RE = re.compile(f"[{re.escape(QUOTE_CHARS)}]")
# Whole words only: "ао" must not be cut out of "маока"
_LEGAL_FORM_RE = re.compile(
    r"(?<!\w)(?:" + "|".join(RU_LEGAL_FORMS + EN_LEGAL_FORMS) + r")\.?(?!\w)",
    re.IGNORECASE,
)
_WHITESPACE_RE = re.compile(r"\s+")
# Budget annotations in task names: "(50 тыс руб)", "($5k)", "(424.39₽)"
_BUDGET_RE = re.compile(
    r"\s*\((?=[^)]*\d)[^)]*(?:₽|руб|rub|тыс|млн|usd|eur|\$|\dk\b|\dm\b)[^)]*\)",
    re.IGNORECASE,
)
_TRAILING_PUNCT_RE = re.compile(r"[.,;:!]+$")
_NON_WORD_RE = re.compile(r"[^\w\s]|_")

STOP_WORDS = frozenset(
    {
        # Russian
        "это", "как", "что", "так", "для", "при", "еще", "ещё", "уже", "тоже",
        "также", "есть", "был", "была", "были", "будет", "быть", "всё", "все",
        "вот", "надо", "нужно", "можно", "могу", "хочу", "буду", "мне", "меня",
        "мой", "они", "она", "оно", "его", "её", "там", "тут", "где", "когда",
        "чтобы", "если", "или", "про", "без", "над", "под",
        # English
        "the", "and", "for", "are", "but", "not", "you", "all", "can", "had",
        "her", "was", "one", "our", "out", "has", "have", "been", "will",
        "with", "this", "that", "from", "they", "what", "about", "into",
    }
)  # fmt: skip


def _coerce(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def normalize_name(name: Any) -> str:
    """Canonical comparison form of a name.

    Lowercases, strips quote characters and legal-form tokens (whole words),
    collapses whitespace and trims. Never raises.
    """
    text = _coerce(name).lower()
    text = _QUOTES_RE.sub(" ", text)
    text = _LEGAL_FORM_RE.sub(" ", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def normalize_task_name(name: Any) -> str:
    """normalize_name() plus removal of budget annotations and trailing punctuation."""
    text = _BUDGET_RE.sub("", _coerce(name))
    text = normalize_name(text)
    return _TRAILING_PUNCT_RE.sub("", text).strip()


def levenshtein(a: Any, b: Any) -> int:
    return Levenshtein.distance(_coerce(a), _coerce(b))


def similarity(a: Any, b: Any) -> float:
    """1 - levenshtein(a, b) / max(len(a), len(b)); 1.0 for two empty strings."""
    str_a, str_b = _coerce(a), _coerce(b)
    longest = max(len(str_a), len(str_b))
    if longest == 0:
        return 1.0
    return 1.0 - Levenshtein.distance(str_a, str_b) / longest


def first_significant_word(normalized: str, min_length: int = 3) -> str | None:
    """First whitespace token at least min_length characters long."""
    for word in normalized.split():
        if len(word) >= min_length:
            return word
    return None


def _strip_latin_accents(text: str) -> str:
    # Only Latin diacritics are dropped; "й" and "ё" are distinct Cyrillic letters
    out = []
    for ch in text:
        decomposed = unicodedata.normalize("NFKD", ch)
        base = decomposed[0]
        if base.isascii() and len(decomposed) > 1:
            out.append("".join(c for c in decomposed if not unicodedata.combining(c)))
        else:
            out.append(ch)
    return "".join(out)


def tokenize(text: Any) -> list[str]:
    """Lowercase, strip accents and punctuation, split on whitespace."""
    cleaned = _strip_latin_accents(_coerce(text).lower())
    cleaned = _NON_WORD_RE.sub(" ", cleaned)
    return [token for token in cleaned.split() if token]


def extract_keywords(
    texts: Iterable[Any],
    max_keywords: int = 10,
    min_length: int = 3,
) -> list[str]:
    """Distinct content words from texts in first-seen order, capped at max_keywords."""
    keywords: list[str] = []
    seen: set[str] = set()
    for text in texts:
        for token in tokenize(text):
            if len(token) < min_length or token in STOP_WORDS or token in seen:
                continue
            seen.add(token)
            keywords.append(token)
            if len(keywords) >= max_keywords:
                return keywords
    return keywords
