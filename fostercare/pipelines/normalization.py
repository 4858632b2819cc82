"""Text normalization for referral documents.

Extraction patterns are written against lower-cased, single-spaced text
with plain ASCII quotes and hyphens; this module produces that form.
"""
from __future__ import annotations

import re
import unicodedata

# Word processors and PDF exports substitute typographic characters
_PUNCTUATION = str.maketrans({
    "“": '"',
    "”": '"',
    "‘": "'",
    "’": "'",
    "–": "-",
    "—": "-",
    "‐": "-",
    " ": " ",
})

_WHITESPACE_RE = re.compile(r"\s+")
_REPEATED_PUNCT_RE = re.compile(r"([!?.]){2,}")
_URL_RE = re.compile(r"https?://\S+|www\.\S+")
_EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
_HTML_TAG_RE = re.compile(r"<[^>]+>")


def normalize_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


def normalize_punctuation(text: str) -> str:
    """Map typographic quotes and dashes to ASCII and squash repeated ``!?.``."""
    return _REPEATED_PUNCT_RE.sub(r"\1", text.translate(_PUNCTUATION))


def remove_urls(text: str) -> str:
    return _URL_RE.sub("", text)


def remove_emails(text: str) -> str:
    return _EMAIL_RE.sub("", text)


def clean_html(text: str) -> str:
    return _HTML_TAG_RE.sub("", text)


def normalize_text(
    text: str,
    *,
    lowercase: bool = True,
    remove_extra_whitespace: bool = True,
    clean_urls: bool = True,
    clean_emails: bool = False,
    clean_html_tags: bool = True,
) -> str:
    """Normalize referral text before extraction.

    Args:
        text: Input text
        lowercase: Convert to lowercase
        remove_extra_whitespace: Collapse runs of whitespace and trim
        clean_urls: Remove URLs
        clean_emails: Remove email addresses
        clean_html_tags: Remove HTML tags (email bodies are often HTML)

    Returns:
        Normalized text, or "" for blank input
    """
    if not text or not text.strip():
        return ""

    steps = [
        (clean_html_tags, clean_html),
        (clean_urls, remove_urls),
        (clean_emails, remove_emails),
    ]
    for enabled, step in steps:
        if enabled:
            text = step(text)

    text = normalize_punctuation(unicodedata.normalize("NFC", text))
    if lowercase:
        text = text.lower()
    if remove_extra_whitespace:
        text = normalize_whitespace(text)
    return text
