"""
Rule-based text cleanup and per-document-type formatting.

Runs entirely offline and is deterministic. The enhancer uses it when
the cloud is not eligible or fails.

Stages, in order:
    normalize -> self-corrections -> fillers -> sentences -> document format
"""

import re
import string
import unicodedata
from typing import List, Tuple

from .types import DocumentType


# Self-correction markers, longest first so "I meant to say" wins over "I meant"
CORRECTION_MARKERS = ("i meant to say", "no sorry", "no wait", "oh wait", "wait no", "i meant", "i mean")
AMBIGUOUS_MARKERS = ("i meant", "i mean")

# Always removed
HESITATIONS = ("um+", "uh+m?", "er+", "ah+", "hmm+", "mm+")

# Removed only when set off by commas or opening a sentence ("it was, like, huge")
DISCOURSE_FILLERS = (
    "you know", "i mean", "so yeah", "you see", "basically", "literally",
    "actually", "sort of", "kind of", "like", "okay", "well", "right",
)

QUESTION_STARTERS = frozenset([
    "what", "when", "where", "who", "whom", "whose", "why", "how", "which",
    "is", "are", "am", "was", "were", "can", "could", "would", "will", "do",
    "does", "did", "should", "shall", "have", "has", "may", "might",
])

TAG_QUESTIONS = ("right", "correct", "okay", "isn't it", "don't you", "aren't you", "won't you", "yeah")

MESSAGE_QUESTION_PHRASES = ("can you", "could you", "would you", "will you", "do you", "are you")

SEARCH_STOP_WORDS = frozenset([
    "the", "a", "an", "is", "are", "was", "were", "to", "for", "of", "in", "on",
])
MAX_SEARCH_WORDS = 10

EMAIL_PARAGRAPH_SENTENCES = 3
DOCUMENT_PARAGRAPH_SENTENCES = 4
DOCUMENT_PARAGRAPH_MIN_CHARS = 200

EMAIL_GREETINGS = ("hi", "hello", "hey", "dear", "good morning", "good afternoon", "good evening")
EMAIL_CLOSINGS = (
    "best regards", "kind regards", "warm regards", "regards", "thanks",
    "thank you", "many thanks", "best", "cheers", "sincerely", "all the best",
)

_SENTENCE_BREAK_RE = re.compile(r"(?<=[.!?])\s+")
_MARKER_RE = re.compile(r"\b(" + "|".join(re.escape(m) for m in CORRECTION_MARKERS) + r")\b", re.IGNORECASE)
_HESITATION_RE = re.compile(r",?\s*\b(?:" + "|".join(HESITATIONS) + r")\b\s*,?", re.IGNORECASE)
_FILLER_ALT = "|".join(re.escape(f) for f in DISCOURSE_FILLERS)
_SET_OFF_FILLER_RE = re.compile(r",\s*(?:" + _FILLER_ALT + r")\s*,", re.IGNORECASE)
_LEADING_FILLER_RE = re.compile(r"(^|[.!?]\s+)(?:" + _FILLER_ALT + r")\s*,\s*", re.IGNORECASE)
_STANDALONE_I_RE = re.compile(r"\bi\b(?!\.\w)")


# Stage 1

def normalize(text: str) -> str:
    """Trim, NFC-normalize, unify line endings, collapse spaces, space after sentence ends."""
    text = unicodedata.normalize("NFC", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"([.!?])([A-Z])", r"\1 \2", text)
    return text.strip()


# Stage 2

def remove_self_corrections(text: str) -> str:
    """
    Replace a corrected phrase with its correction.

        "Meet on Tuesday, no wait, Friday"  -> "Meet on Friday"
        "Send it to John, I mean Jane"      -> "Send it to Jane"
        "at 3, no wait, at 4 please"        -> "at 4 please"

    The correction runs from the marker to the next clause punctuation.
    If its first word appears earlier in the clause, everything from that
    word on is replaced; otherwise as many trailing words as the
    correction has. Markers that open a sentence are left alone.
    """
    pos = 0
    while True:
        match = _MARKER_RE.search(text, pos)
        if not match:
            return text

        before = text[:match.start()]
        after = text[match.end():]

        sentence_start = max(before.rfind(ch) for ch in ".!?\n") + 1
        head = before[:sentence_start]
        clause_words = before[sentence_start:].strip(" ,;:-").split()

        tail = after.lstrip(" ,;:-")
        phrase_match = re.match(r"[^,.!?;\n]*", tail)
        phrase_words = phrase_match.group(0).split()
        rest = tail[phrase_match.end():]

        # "what I mean is" is not a correction; a bare "I mean" needs a pause before it
        ambiguous = match.group(1).lower() in AMBIGUOUS_MARKERS and not before.rstrip().endswith(",")

        if not clause_words or not phrase_words or ambiguous:
            pos = match.end()
            continue

        folded = [w.lower().strip(string.punctuation) for w in clause_words]
        first = phrase_words[0].lower().strip(string.punctuation)
        if first in folded:
            cut = len(folded) - 1 - folded[::-1].index(first)
        else:
            cut = max(0, len(clause_words) - len(phrase_words))

        clause = " ".join(clause_words[:cut] + phrase_words)
        prefix = head + (" " if head and not head.endswith((" ", "\n")) else "")
        text = prefix + clause + rest
        pos = len(prefix) + len(clause)


# Stage 3

def remove_fillers(text: str) -> Tuple[str, int]:
    """Drop hesitations everywhere and discourse fillers where they are set off. Returns (text, removed)."""
    removed = 0

    def drop_hesitation(m: re.Match) -> str:
        nonlocal removed
        removed += 1
        # Keep a comma that separated two clauses
        return ", " if m.group(0).startswith(",") and m.group(0).rstrip().endswith(",") else " "

    def drop_set_off(m: re.Match) -> str:
        nonlocal removed
        removed += 1
        return " "

    def drop_leading(m: re.Match) -> str:
        nonlocal removed
        removed += 1
        return m.group(1)

    text = _HESITATION_RE.sub(drop_hesitation, text)
    text = _SET_OFF_FILLER_RE.sub(drop_set_off, text)
    text = _LEADING_FILLER_RE.sub(drop_leading, text)
    return tidy_spacing(text), removed


def tidy_spacing(text: str) -> str:
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\s+([,.!?;:])", r"\1", text)
    text = re.sub(r",{2,}", ",", text)
    text = re.sub(r"^[,;:\s]+", "", text)
    text = re.sub(r"([.!?])\s*,", r"\1", text)
    return text.strip()


# Stage 4

def split_sentences(text: str) -> List[str]:
    return [s.strip() for s in _SENTENCE_BREAK_RE.split(text) if s.strip()]


def capitalize_first(text: str) -> str:
    for i, ch in enumerate(text):
        if ch.isalpha():
            return text[:i] + ch.upper() + text[i + 1:]
        if not (ch.isspace() or ch in "\"'([{"):
            return text
    return text


def fix_pronoun_i(text: str) -> str:
    return _STANDALONE_I_RE.sub("I", text)


def is_question(sentence: str) -> bool:
    lowered = sentence.lower().strip().rstrip(string.punctuation)
    if not lowered:
        return False
    first = lowered.split()[0]
    if first in QUESTION_STARTERS:
        return True
    return any(lowered.endswith(", " + tag) for tag in TAG_QUESTIONS)


def ensure_terminal_punctuation(text: str) -> str:
    stripped = text.rstrip()
    if not stripped or stripped[-1] in ".!?":
        return stripped
    stripped = stripped.rstrip(",;:")
    sentences = split_sentences(stripped)
    last = sentences[-1] if sentences else stripped
    return stripped + ("?" if is_question(last) else ".")


def punctuate_sentences(text: str, capitalize: bool = True, punctuate: bool = True) -> str:
    """Capitalize each sentence, fix 'i', and close the text with . or ?"""
    lines = []
    for line in text.split("\n"):
        sentences = split_sentences(line)
        if capitalize:
            sentences = [capitalize_first(s) for s in sentences]
        lines.append(" ".join(sentences))
    result = fix_pronoun_i("\n".join(lines))
    if punctuate:
        result = ensure_terminal_punctuation(result)
    return result


# Stage 5

def _paragraphs(sentences: List[str], per_paragraph: int) -> str:
    groups = [sentences[i:i + per_paragraph] for i in range(0, len(sentences), per_paragraph)]
    return "\n\n".join(" ".join(group) for group in groups)


def has_greeting(text: str) -> bool:
    lowered = text.lower()
    return any(lowered.startswith(g + " ") or lowered.startswith(g + ",") for g in EMAIL_GREETINGS)


def _split_greeting(text: str) -> Tuple[str, str]:
    """Pull a leading 'Hi Sam,' style greeting onto its own line."""
    lowered = text.lower()
    for greeting in EMAIL_GREETINGS:
        if lowered.startswith(greeting + " ") or lowered.startswith(greeting + ","):
            comma = text.find(",")
            if 0 < comma <= len(greeting) + 30:
                return text[:comma + 1].strip(), text[comma + 1:].strip()
    return "", text


def _split_closing(text: str) -> Tuple[str, str]:
    """Pull a trailing 'Thanks, Sam' style closing onto its own lines."""
    sentences = split_sentences(text)
    if len(sentences) < 2:
        return text, ""
    last = sentences[-1]
    lowered = last.lower()
    for closing in EMAIL_CLOSINGS:
        if lowered.startswith(closing) and len(last.split()) <= len(closing.split()) + 2:
            body = " ".join(sentences[:-1])
            name = last[len(closing):].strip(" ,.!")
            signoff = last[:len(closing)] + ("," + "\n" + name if name else "")
            return body, capitalize_first(signoff)
    return text, ""


def format_email(text: str) -> str:
    greeting, body = _split_greeting(text)
    body, closing = _split_closing(body)
    body = _paragraphs(split_sentences(capitalize_first(body)), EMAIL_PARAGRAPH_SENTENCES)
    parts = [capitalize_first(greeting)] if greeting else []
    parts.append(body)
    if closing:
        parts.append(closing)
    return "\n\n".join(p for p in parts if p)


def format_document(text: str) -> str:
    if len(text) <= DOCUMENT_PARAGRAPH_MIN_CHARS or "\n\n" in text:
        return text
    return _paragraphs(split_sentences(text), DOCUMENT_PARAGRAPH_SENTENCES)


def format_message(text: str) -> str:
    """Light touch: only the end of the message gets punctuation, and only for questions."""
    stripped = text.rstrip()
    if not stripped or stripped[-1] in ".!?":
        return stripped
    lowered = stripped.lower()
    last = split_sentences(stripped)[-1]
    if any(p in lowered for p in MESSAGE_QUESTION_PHRASES) or is_question(last):
        return stripped + "?"
    return stripped


def format_search(text: str) -> str:
    """Lowercase keywords: no stop words, no punctuation, at most ten words."""
    lowered = text.lower()
    cleaned = lowered.translate(str.maketrans({ch: " " for ch in string.punctuation if ch not in "'-"}))
    keywords = [w.strip("'-") for w in cleaned.split()]
    keywords = [w for w in keywords if w and w not in SEARCH_STOP_WORDS]
    return " ".join(keywords[:MAX_SEARCH_WORDS])


def apply_local_rules(
    text: str,
    document_type: DocumentType,
    remove_filler_words: bool = True,
    auto_punctuate: bool = True,
    auto_capitalize: bool = True,
    greeting: str = "",
) -> Tuple[str, List[str]]:
    """
    Run the full offline pipeline.

    A greeting such as "Hi Sam," is put in front of the cleaned text
    unless the speaker already opened with one.

    Returns:
        (enhanced text, names of the rules that changed something)
    """
    applied: List[str] = []

    def step(name: str, value: str) -> str:
        if value != current:
            applied.append(name)
        return value

    current = normalize(text)
    if current != text:
        applied.append("normalize")

    # Code is kept verbatim apart from whitespace normalization
    if document_type == DocumentType.CODE:
        return current, applied

    current = step("self_correction", remove_self_corrections(current))

    if remove_filler_words:
        cleaned, _removed = remove_fillers(current)
        current = step("filler_removal", cleaned)

    if greeting and current and not has_greeting(current):
        current = step("greeting", f"{greeting} {current}")

    if document_type == DocumentType.SEARCH:
        current = step("search_keywords", format_search(current))
        return current, applied

    if document_type in (DocumentType.MESSAGE, DocumentType.SOCIAL):
        current = step("pronoun_case", fix_pronoun_i(current))
        if auto_punctuate:
            current = step("message_punctuation", format_message(current))
        return current, applied

    current = step(
        "sentence_case",
        punctuate_sentences(current, capitalize=auto_capitalize, punctuate=auto_punctuate),
    )

    if document_type == DocumentType.EMAIL:
        current = step("email_layout", format_email(current))
    elif document_type == DocumentType.DOCUMENT:
        current = step("document_paragraphs", format_document(current))

    return current, applied
