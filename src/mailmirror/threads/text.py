# =============================================================================
# Message Text Cleaning
# =============================================================================
# Turns a hydrated message into the short text a chat bubble shows:
#   - HTML-only bodies are converted to plain text with inscriptis
#   - quoted previous messages ("On ... wrote:", "> ...") are cut
#   - signatures and phone sign-offs are cut
#
# These are heuristics; they err on the side of showing too much.
# =============================================================================

import re
from typing import Any

from inscriptis import get_text
from inscriptis.css_profiles import CSS_PROFILES
from inscriptis.model.config import ParserConfig


_PARSER_CONFIG = ParserConfig(
    css=CSS_PROFILES["strict"],     # Better whitespace handling
    display_links=False,
    display_images=False,
    display_anchors=False,
)

SIGNATURE_PATTERNS = [
    re.compile(r"^--\s*$", re.MULTILINE),                  # RFC 3676 "-- "
    re.compile(r"^_{3,}", re.MULTILINE),
    re.compile(r"^-{3,}", re.MULTILINE),
    re.compile(r"^Sent from my (iPhone|iPad|Android|Galaxy|Pixel|Samsung)", re.MULTILINE | re.IGNORECASE),
    re.compile(r"^Get Outlook for (iOS|Android|Mac|Windows)", re.MULTILINE | re.IGNORECASE),
    re.compile(r"^Sent from Mail for Windows", re.MULTILINE | re.IGNORECASE),
    re.compile(r"^Sent from Yahoo Mail", re.MULTILINE | re.IGNORECASE),
    re.compile(r"^Sent from AOL Mobile Mail", re.MULTILINE | re.IGNORECASE),
]

# Sign-offs only count in the second half of a message
SIGN_OFF_PATTERNS = [
    re.compile(r"^(Best|Kind|Warm)?\s*(Regards|Wishes),?\s*\n", re.MULTILINE | re.IGNORECASE),
    re.compile(r"^Thanks?,?\s*\n", re.MULTILINE | re.IGNORECASE),
    re.compile(r"^Cheers,?\s*\n", re.MULTILINE | re.IGNORECASE),
    re.compile(r"^Sincerely,?\s*\n", re.MULTILINE | re.IGNORECASE),
    re.compile(r"^Thank you,?\s*\n", re.MULTILINE | re.IGNORECASE),
]

QUOTE_PATTERNS = [
    re.compile(r"^On .+wrote:\s*$", re.MULTILINE | re.IGNORECASE),
    re.compile(r"^-{5,}\s*Original Message\s*-{5,}", re.MULTILINE | re.IGNORECASE),  # Outlook
    re.compile(r"^From:\s*.+\nSent:\s*.+\nTo:\s*.+", re.MULTILINE | re.IGNORECASE),
    re.compile(r"^_{5,}\nFrom:\s*", re.MULTILINE | re.IGNORECASE),
]

_QUOTE_CONTEXT = re.compile(r"^(On|From|Sent|To|Subject|Date):", re.IGNORECASE)


def html_to_plain_text(html: str) -> str:
    """Convert an HTML body to readable plain text."""
    if not html or not html.strip():
        return ""

    # Office/IE conditional comments, styles and scripts confuse the parser
    html = re.sub(r"<!--\[if[^\]]*\]>.*?<!\[endif\]-->", "", html, flags=re.DOTALL | re.IGNORECASE)
    html = re.sub(r"<style[^>]*>.*?</style>", "", html, flags=re.DOTALL | re.IGNORECASE)
    html = re.sub(r"<script[^>]*>.*?</script>", "", html, flags=re.DOTALL | re.IGNORECASE)

    text = get_text(html, _PARSER_CONFIG)

    # Zero-width characters, trailing spaces and runs of blank lines
    text = re.sub("[\u200b\u200c\u200d\u2060\ufeff]+", "", text)
    text = "\n".join(line.rstrip() for line in text.split("\n"))
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def strip_signature(text: str) -> str:
    """Cut a message at its earliest signature delimiter or late sign-off."""
    if not text:
        return ""

    cut = len(text)
    for pattern in SIGNATURE_PATTERNS:
        match = pattern.search(text)
        if match and match.start() < cut:
            cut = match.start()

    for pattern in SIGN_OFF_PATTERNS:
        match = pattern.search(text)
        if match and match.start() < cut and match.start() > len(text) * 0.5:
            cut = match.start()

    if cut < len(text):
        return text[:cut].strip()
    return text


def strip_quoted_content(text: str) -> str:
    """Remove quoted earlier messages from a reply."""
    if not text:
        return ""

    for pattern in QUOTE_PATTERNS:
        match = pattern.search(text)
        if match:
            text = text[:match.start()].strip()

    kept = []
    in_quote = False
    for line in text.split("\n"):
        stripped = line.strip()
        if stripped.startswith(">"):
            in_quote = True
            continue
        if in_quote and stripped:
            if _QUOTE_CONTEXT.match(stripped):
                continue
            in_quote = False
        if not in_quote:
            kept.append(line)

    return "\n".join(kept).strip()


def get_clean_message_body(message: Any) -> str:
    """The text of a message with quotes and signature removed."""
    body = getattr(message, "text", "") or ""
    if not body:
        body = html_to_plain_text(getattr(message, "html", "") or "")

    body = strip_quoted_content(body)
    body = strip_signature(body)
    return body.strip()


def get_preview(message: Any, max_length: int = 50) -> str:
    """
    A one-line snippet of a message's text.

    Headers have no text and yield an empty preview.
    """
    text = getattr(message, "text", "") or ""
    cleaned = " ".join(text.split())
    if len(cleaned) <= max_length:
        return cleaned
    return cleaned[:max_length] + "..."
