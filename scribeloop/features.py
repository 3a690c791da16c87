"""
Lexical feature extraction for document classification.

Pure functions: the same text always yields the same TextFeatures.
"""

import re
import string
from typing import List

from .types import TextFeatures


GREETINGS = frozenset(["hey", "hi", "hello", "dear", "greetings"])

SIGNATURES = ("regards", "thanks", "best", "sincerely", "cheers", "thank you")

TECHNICAL_TERMS = (
    "function", "var", "let", "const", "def", "class", "struct", "enum",
    "import", "export", "return", "if", "else", "for", "while", "switch",
    "case", "break", "continue", "try", "catch", "throw", "async", "await",
    "func", "public", "private", "static", "final", "override", "init",
    "protocol", "extension", "typealias", "guard", "defer", "inout",
)

CODE_PUNCTUATION = ("()", "{}", "[]", "=>", "->", "==", "!=", "&&", "||")

FORMAL_WORDS = (
    "hereby", "pursuant", "therefore", "furthermore", "moreover", "consequently",
    "regards", "sincerely", "cordially", "respectfully", "kindly", "please",
    "attached", "enclosed", "following", "regarding", "concerning", "reference",
)

SENTENCE_END = ".!?"
GREETING_WINDOW = 5

_WORD_RE = re.compile(r"[\w']+")
_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")
_TECHNICAL_RE = re.compile(r"\b(" + "|".join(TECHNICAL_TERMS) + r")\b")
_SIGNATURE_RE = re.compile(r"\b(" + "|".join(re.escape(s) for s in SIGNATURES) + r")\b")


def words(text: str) -> List[str]:
    return _WORD_RE.findall(text)


def count_sentences(text: str) -> int:
    """Segments between . ! ? boundaries; at least 1 for non-empty text."""
    stripped = text.strip()
    if not stripped:
        return 0
    segments = [s for s in _SENTENCE_SPLIT_RE.split(stripped) if s.strip()]
    return max(1, len(segments))


def has_complete_sentences(text: str) -> bool:
    stripped = text.strip()
    return bool(stripped) and stripped[-1] in SENTENCE_END


def punctuation_density(text: str) -> float:
    if not text:
        return 0.0
    count = sum(1 for ch in text if ch in string.punctuation)
    return min(1.0, count / len(text))


def has_greeting(text: str) -> bool:
    """A greeting word among the first few words."""
    leading = [w.lower() for w in words(text)[:GREETING_WINDOW]]
    return any(w in GREETINGS for w in leading)


def has_signature(text: str) -> bool:
    return _SIGNATURE_RE.search(text.lower()) is not None


def count_technical_terms(text: str) -> int:
    """Code keywords (whole words) plus one per code punctuation pattern present."""
    lowered = text.lower()
    count = len(_TECHNICAL_RE.findall(lowered))
    count += sum(1 for pattern in CODE_PUNCTUATION if pattern in lowered)
    return count


def formality_score(text: str, word_count: int) -> float:
    if word_count <= 0:
        return 0.0

    lowered = text.lower()
    formal_count = sum(1 for w in FORMAL_WORDS if w in lowered)
    score = formal_count / word_count * 10.0

    if has_complete_sentences(text):
        score += 0.2

    # Casual markers
    if "!!" in text or "..." in text:
        score -= 0.2

    caps_words = [
        w for w in text.split()
        if len(w) > 1 and w.upper() == w and any(ch.isalpha() for ch in w)
    ]
    score -= 0.1 * len(caps_words)

    return max(0.0, min(1.0, score))


def extract_features(text: str) -> TextFeatures:
    word_count = len(words(text))
    sentence_count = count_sentences(text)
    average = word_count / sentence_count if sentence_count else 0.0

    return TextFeatures(
        sentence_count=sentence_count,
        word_count=word_count,
        average_sentence_length=average,
        has_complete_sentences=has_complete_sentences(text),
        formality_score=formality_score(text, word_count),
        technical_term_count=count_technical_terms(text),
        punctuation_density=punctuation_density(text),
        has_greeting=has_greeting(text),
        has_signature=has_signature(text),
    )
