"""
Spoken formatting commands.

A dictation that opens with "BV" or "Better Voice" names what to produce,
for example "BV write an email to Sarah. I'll be late tomorrow". The
command fixes the document type, which overrides the classifier, and
may carry a recipient and an output format.

Usage:
    command = parse_voice_command(text)
    if command:
        enhanced = orchestrator.enhance_detailed(command.content, command.document_type, command=command)
"""

import re
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional, Tuple

from .formatting import capitalize_first, has_greeting, split_sentences
from .types import DocumentType


PREFIXES = ("better voice", "bettervoice", "bv")

TWEET_LIMIT = 280
LINKEDIN_WORD_LIMIT = 150

# (phrases, document type, format, recipient follows the phrase)
# Longer phrases are tried first, so "write an email to" wins over "email"
INSTRUCTIONS: List[Tuple[Tuple[str, ...], DocumentType, str, bool]] = [
    (("write an email to", "compose an email to", "draft an email to", "email"),
     DocumentType.EMAIL, "email", True),
    (("send a text message to", "text", "message"), DocumentType.MESSAGE, "text_message", True),
    (("send a slack message to", "slack"), DocumentType.MESSAGE, "slack_message", True),
    (("write a memo about", "create a memo about"), DocumentType.DOCUMENT, "memo", False),
    (("write meeting notes", "create meeting notes"), DocumentType.DOCUMENT, "meeting_notes", False),
    (("write a formal letter to",), DocumentType.DOCUMENT, "formal_letter", True),
    (("format as bullet points",), DocumentType.DOCUMENT, "bullet_points", False),
    (("create a to-do list", "create a todo list"), DocumentType.DOCUMENT, "todo_list", False),
    (("write meeting minutes",), DocumentType.DOCUMENT, "meeting_minutes", False),
    (("draft a tweet", "write a tweet"), DocumentType.SOCIAL, "tweet", False),
    (("compose a linkedin post", "write a linkedin post", "update linkedin"),
     DocumentType.SOCIAL, "linkedin", False),
    (("search for",), DocumentType.SEARCH, "search_query", False),
]

_PREFIX_RE = re.compile(r"^\s*(" + "|".join(re.escape(p) for p in PREFIXES) + r")\b[\s,:.]*", re.IGNORECASE)


def _phrase_table() -> List[Tuple[str, DocumentType, str, bool]]:
    rows = [
        (phrase, doc_type, fmt, has_recipient)
        for phrases, doc_type, fmt, has_recipient in INSTRUCTIONS
        for phrase in phrases
    ]
    return sorted(rows, key=lambda row: len(row[0]), reverse=True)


_PHRASES = _phrase_table()


@dataclass(frozen=True)
class VoiceCommand:
    """A parsed "BV ..." instruction."""
    prefix: str
    instruction: str
    content: str
    document_type: DocumentType
    recipient: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def format(self) -> str:
        return self.metadata.get("format", "")


def _split_recipient(rest: str) -> Tuple[Optional[str], str]:
    """'Sarah. See you at noon' -> ('Sarah', 'See you at noon')"""
    match = re.search(r"[.!]", rest)
    if match:
        recipient = rest[:match.start()].strip(" ,")
        content = rest[match.end():].strip(" ,")
        if recipient and content:
            return recipient, content
    return None, rest.strip(" ,")


def parse_voice_command(text: str) -> Optional[VoiceCommand]:
    """
    Returns:
        The command, or None when the text has no command prefix or the
        instruction after it is not recognized
    """
    match = _PREFIX_RE.match(text or "")
    if not match:
        return None
    prefix = match.group(1)
    remainder = text[match.end():].strip(" ,")
    if not remainder:
        return None

    lowered = remainder.lower()
    for phrase, doc_type, fmt, has_recipient in _PHRASES:
        if not re.match(re.escape(phrase) + r"\b", lowered):
            continue
        rest = remainder[len(phrase):].lstrip(" ,:.!").strip()
        recipient = None
        if has_recipient:
            recipient, rest = _split_recipient(rest)
        metadata = {"format": fmt}
        if fmt == "tweet":
            metadata["limit"] = str(TWEET_LIMIT)
        return VoiceCommand(
            prefix=prefix,
            instruction=remainder[:len(phrase)],
            content=rest.strip(),
            document_type=doc_type,
            recipient=recipient,
            metadata=metadata,
        )

    return None


# Formatting

def recipient_greeting(command: Optional[VoiceCommand]) -> str:
    """'Hi Sarah,' for an email or message with a recipient, else ''."""
    if command is None or not command.recipient:
        return ""
    if command.document_type not in (DocumentType.EMAIL, DocumentType.MESSAGE):
        return ""
    return f"Hi {command.recipient},"


def with_recipient_greeting(text: str, command: Optional[VoiceCommand]) -> str:
    """Open the text with the recipient greeting unless it already greets someone."""
    greeting = recipient_greeting(command)
    if not greeting or not text or has_greeting(text):
        return text
    return f"{greeting} {text}"


def _listed(text: str, marker: str) -> str:
    items = [capitalize_first(s.rstrip(".!?").strip()) for s in split_sentences(text)]
    return "\n".join(f"{marker} {item}" for item in items if item)


def apply_command_format(text: str, command: Optional[VoiceCommand], today: Optional[date] = None) -> str:
    """Shape enhanced text into the output the command asked for."""
    if command is None or not text:
        return text

    fmt = command.format
    if fmt == "bullet_points":
        return _listed(text, "•")
    if fmt == "todo_list":
        return _listed(text, "☐")
    if fmt == "memo":
        stamp = (today or date.today()).strftime("%b %d, %Y")
        return f"MEMO\nDate: {stamp}\n\n{capitalize_first(text)}"
    if fmt == "tweet":
        limit = int(command.metadata.get("limit", TWEET_LIMIT))
        if len(text) > limit:
            return text[:limit - 3] + "..."
        return text
    if fmt == "linkedin":
        words = text.split(" ")
        if len(words) > LINKEDIN_WORD_LIMIT:
            return " ".join(words[:LINKEDIN_WORD_LIMIT]) + "..."
        return text
    return text
