"""Text helpers: normalization, tokenization, token estimates and lossy compression."""

from __future__ import annotations

import math
import re

TOKEN_RE = re.compile(r"\w+", re.UNICODE)
CONTROL_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
INLINE_SPACE_RE = re.compile(r"[ \t]+")
SPACE_BEFORE_PUNCT_RE = re.compile(r"\s+([,.;:!?])")
REPEATED_PUNCT_RE = re.compile(r"([,;:])(?:\s*[,;:])+")
HEADING_RE = re.compile(r"^(#{1,6})[ \t]+(.+?)[ \t#]*$", re.MULTILINE)

DEFAULT_CHARS_PER_TOKEN = 4

# Kept verbatim by the compressor: dropping any of them inverts meaning.
NEGATIONS = frozenset(
    {
        "not",
        "no",
        "nor",
        "never",
        "neither",
        "nobody",
        "nothing",
        "nowhere",
        "none",
        "cannot",
        "without",
        "can't",
        "don't",
        "doesn't",
        "didn't",
        "won't",
        "wouldn't",
        "shouldn't",
        "couldn't",
        "isn't",
        "aren't",
        "wasn't",
        "weren't",
        "hasn't",
        "haven't",
        "hadn't",
        "mustn't",
        "needn't",
        "ain't",
    }
)

STOPWORDS = frozenset(
    {
        "a", "an", "the", "is", "are", "was", "were", "be", "been", "being",
        "have", "has", "had", "do", "does", "did", "will", "would", "shall",
        "should", "may", "might", "must", "can", "could", "am",
        "i", "me", "my", "myself", "we", "our", "ours", "ourselves",
        "you", "your", "yours", "yourself", "yourselves",
        "he", "him", "his", "himself", "she", "her", "hers", "herself",
        "it", "its", "itself", "they", "them", "their", "theirs", "themselves",
        "what", "which", "who", "whom", "this", "that", "these", "those",
        "of", "in", "for", "on", "with", "at", "by", "from", "to", "into",
        "through", "during", "before", "after", "above", "below", "between",
        "and", "but", "or", "so", "if", "then", "because", "as", "until",
        "while", "about", "against", "each", "few", "more", "most", "other",
        "some", "such", "only", "own", "same", "than", "too", "very", "just",
        "also", "both", "how", "when", "where", "why", "all", "any", "here",
        "there", "up", "out", "over", "under", "again", "further", "once",
    }
)

FILLER_PHRASES = (
    "it is important to note that",
    "it should be noted that",
    "it is worth mentioning that",
    "it is worth noting that",
    "it is worth noting",
    "as a matter of fact",
    "in other words",
    "in order to",
    "due to the fact that",
    "for the purpose of",
    "in the event that",
    "at the end of the day",
    "as previously mentioned",
    "it goes without saying",
    "needless to say",
    "in terms of",
    "with regard to",
    "with respect to",
    "on the other hand",
    "in addition to",
    "as well as",
    "in light of",
    "as a result of",
)

# Phrases carrying a negation ("it goes without saying") are left in place.
REMOVABLE_FILLER_PHRASES = tuple(
    phrase
    for phrase in FILLER_PHRASES
    if not any(word in NEGATIONS or word.endswith("n't") for word in phrase.split())
)

_FILLER_RE = re.compile(
    "|".join(
        r"\b" + r"\s+".join(map(re.escape, phrase.split())) + r"\b"
        for phrase in sorted(REMOVABLE_FILLER_PHRASES, key=len, reverse=True)
    ),
    re.IGNORECASE,
)


def normalize(text: str) -> str:
    """Strip control characters, collapse spaces/tabs and trim every line."""
    cleaned = CONTROL_RE.sub("", text)
    collapsed = INLINE_SPACE_RE.sub(" ", cleaned)
    return "\n".join(line.strip() for line in collapsed.splitlines()).strip()


def tokenize(text: str) -> list[str]:
    return [token.lower() for token in TOKEN_RE.findall(text)]


def extract_terms(query: str) -> list[str]:
    """Return the distinct content-bearing terms of a query, in order of appearance."""
    terms: list[str] = []
    seen: set[str] = set()
    for token in tokenize(query):
        if len(token) <= 2 or token in STOPWORDS or token in seen:
            continue
        seen.add(token)
        terms.append(token)
    return terms


def estimate_tokens(text: str, chars_per_token: int = DEFAULT_CHARS_PER_TOKEN) -> int:
    """Approximate the token cost of ``text`` from its character count."""
    stripped = text.strip()
    if not stripped:
        return 0
    return math.ceil(len(stripped) / chars_per_token)


def truncate_to_tokens(text: str, max_tokens: int, chars_per_token: int = DEFAULT_CHARS_PER_TOKEN) -> str:
    """Cut ``text`` so that its estimate does not exceed ``max_tokens``."""
    if max_tokens <= 0:
        return ""
    return truncate_to_chars(text, max_tokens * chars_per_token)


def truncate_to_chars(text: str, limit: int) -> str:
    """Cut ``text`` to at most ``limit`` characters.

    Prefers a word boundary; falls back to a hard cut when the first word alone
    is longer than the allowance.
    """
    if limit <= 0:
        return ""
    text = text.strip()
    if len(text) <= limit:
        return text
    head = text[:limit]
    if not text[limit].isspace():
        boundary = head.rstrip().rfind(" ")
        if boundary > 0:
            head = head[:boundary]
    return head.rstrip()


def split_sections(text: str) -> list[tuple[str | None, str]]:
    """Split Markdown text at ATX headings.

    Returns ``(heading, body)`` pairs in document order. The heading line stays
    in its body; text before the first heading gets a ``None`` heading.
    """
    sections: list[tuple[str | None, str]] = []
    heading: str | None = None
    start = 0
    for match in HEADING_RE.finditer(text):
        body = text[start : match.start()].strip()
        if body:
            sections.append((heading, body))
        heading = match.group(2).strip()
        start = match.start()
    body = text[start:].strip()
    if body:
        sections.append((heading, body))
    return sections


def is_negation(word: str) -> bool:
    cleaned = _clean_word(word)
    return cleaned in NEGATIONS or cleaned.endswith("n't")


def remove_filler_phrases(text: str) -> str:
    stripped = _FILLER_RE.sub(" ", text)
    return _tidy(stripped)


def remove_stopwords(text: str) -> str:
    kept: list[str] = []
    for word in text.split():
        if is_negation(word):
            kept.append(word)
            continue
        if _clean_word(word) in STOPWORDS:
            continue
        kept.append(word)
    return " ".join(kept)


def compress_text(text: str) -> str:
    """Shorten text by dropping filler phrases and stopwords, keeping every negation."""
    return _tidy(remove_stopwords(remove_filler_phrases(text)))


def compression_ratio(original: str, compressed: str, chars_per_token: int = DEFAULT_CHARS_PER_TOKEN) -> float:
    original_tokens = estimate_tokens(original, chars_per_token)
    if original_tokens == 0:
        return 0.0
    return 1.0 - estimate_tokens(compressed, chars_per_token) / original_tokens


def _clean_word(word: str) -> str:
    lowered = word.lower().replace("’", "'")
    return lowered.strip("".join(ch for ch in set(lowered) if not ch.isalnum() and ch != "'")).strip("'")


def _tidy(text: str) -> str:
    collapsed = " ".join(text.split())
    collapsed = SPACE_BEFORE_PUNCT_RE.sub(r"\1", collapsed)
    collapsed = REPEATED_PUNCT_RE.sub(r"\1", collapsed)
    return collapsed.strip(" ,;:")


__all__ = [
    "DEFAULT_CHARS_PER_TOKEN",
    "FILLER_PHRASES",
    "REMOVABLE_FILLER_PHRASES",
    "NEGATIONS",
    "STOPWORDS",
    "compress_text",
    "compression_ratio",
    "estimate_tokens",
    "extract_terms",
    "is_negation",
    "normalize",
    "remove_filler_phrases",
    "remove_stopwords",
    "split_sections",
    "tokenize",
    "truncate_to_chars",
    "truncate_to_tokens",
]
