import re
import unicodedata
from functools import lru_cache

from rapidfuzz.distance import Levenshtein

MIN_QUERY_LEN = 2

# Separators that split words but carry no meaning ("Genève-Bel_Air", "St.Gallen", "l'Isle")
SEPARATOR_PATTERN = re.compile(r"[-_./'’]+")

# Anything left that is not a letter or digit (underscore is \w in Python)
NON_WORD_PATTERN = re.compile(r"[\W_]+")

# Abbreviation classes folded to one canonical token (whole words only)
SAINT_PATTERN = re.compile(r"\b(?:st|saint)\b")
HUB_PATTERN = re.compile(r"\b(?:hauptbahnhof|hbf|hb)\b")

HUB_TOKEN = "hb"
HUB_WORDS = frozenset({"hb", "hbf", "hauptbahnhof"})

# Generic tokens dropped to get the "core" form of a name
GENERIC_STOP_WORDS = frozenset({
    "gare", "bahnhof", "station", "stazione", "bahnhofplatz",
})

# Word characters for trigram extraction
TRIGRAM_WORD_PATTERN = re.compile(r"[^\W_]+")


@lru_cache(maxsize=4096)
def remove_accents(text: str) -> str:
    """Remove accents from text.

    Example: "Genève" -> "Geneve"
    """
    # Compatibility decomposition also splits ligatures ("ﬁ" -> "fi")
    normalized = unicodedata.normalize("NFKD", text)
    # Drop every combining mark (Mn, Mc, Me)
    return "".join(c for c in normalized if not unicodedata.category(c).startswith("M"))


@lru_cache(maxsize=8192)
def _normalize(text: str) -> str:
    result = remove_accents(text.strip().lower()).lower()
    result = SEPARATOR_PATTERN.sub(" ", result)
    result = NON_WORD_PATTERN.sub(" ", result)
    result = SAINT_PATTERN.sub("saint", result)
    result = HUB_PATTERN.sub(HUB_TOKEN, result)
    return " ".join(result.split())


def normalize_search_text(value: object) -> str:
    """Canonicalize a stop name or query for matching.

    - Lowercases and strips accents
    - Turns separators (``-_./'``) and any other punctuation into spaces
    - Folds ``st``/``saint`` to ``saint`` and ``hauptbahnhof``/``hbf``/``hb`` to ``hb``
    - Collapses whitespace

    The result is idempotent and does not depend on the system locale. The
    alias sync and index build use this function too, so precomputed columns
    stay byte-identical to what the search path computes.

    Example: "  Genève-Bel_Air.  " -> "geneve bel air"
    Example: "Zürich Hauptbahnhof" -> "zurich hb"
    """
    if value is None:
        return ""
    return _normalize(str(value))


def tokenize(text: str) -> list[str]:
    """Split text into normalized tokens."""
    normalized = normalize_search_text(text)
    if not normalized:
        return []
    return normalized.split(" ")


def strip_stop_words(normalized_text: str) -> str:
    """Drop generic station words to get the core form of a name.

    Example: "geneve gare cornavin" -> "geneve cornavin"
    """
    return " ".join(token for token in tokenize(normalized_text) if token not in GENERIC_STOP_WORDS)


def token_prefixes(tokens: list[str]) -> list[str]:
    """Return the distinct 2-, 3- and 4-character prefixes of tokens.

    Used by the degraded retrieval queries in place of trigram matching.
    """
    prefixes: list[str] = []
    for token in tokens:
        for size in (4, 3, 2):
            if len(token) >= size and token[:size] not in prefixes:
                prefixes.append(token[:size])
    return prefixes


def has_hub_token(tokens: list[str]) -> bool:
    """True if any token names a main interchange (hb, hbf, hauptbahnhof)."""
    return any(token in HUB_WORDS for token in tokens)


def similarity_threshold(query_length: int) -> float:
    """Minimum fuzzy similarity for a candidate to be accepted.

    Short queries need a closer match, long ones tolerate more edits.
    """
    if query_length <= 4:
        return 0.72
    if query_length <= 6:
        return 0.62
    if query_length <= 8:
        return 0.52
    return 0.44


def trigram_threshold(query_length: int) -> float:
    """Looser trigram threshold used to select rows in SQL (the scorer filters again)."""
    if query_length <= 4:
        return 0.48
    if query_length <= 6:
        return 0.40
    if query_length <= 8:
        return 0.34
    return 0.28


def bounded_levenshtein(left: str, right: str, max_distance: int) -> int:
    """Edit distance between two strings, or ``max_distance + 1`` once it is exceeded."""
    if left == right:
        return 0
    if abs(len(left) - len(right)) > max_distance:
        return max_distance + 1
    return Levenshtein.distance(left, right, score_cutoff=max_distance)


@lru_cache(maxsize=8192)
def _trigrams(text: str) -> frozenset[str]:
    grams: set[str] = set()
    for word in TRIGRAM_WORD_PATTERN.findall(text.lower()):
        padded = f"  {word} "
        for i in range(len(padded) - 2):
            grams.add(padded[i : i + 3])
    return frozenset(grams)


def trigram_similarity(left: str | None, right: str | None) -> float:
    """Trigram similarity of two strings, computed the way pg_trgm does.

    Each word is padded with two leading spaces and one trailing space, and
    the score is the size of the shared trigram set over the size of the union.

    Example: trigram_similarity("cornavin", "cornavin") -> 1.0
    """
    if not left or not right:
        return 0.0
    a = _trigrams(left)
    b = _trigrams(right)
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)
