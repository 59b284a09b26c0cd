"""
Luna - Text Utilities
======================
Helper functions for text cleaning, normalisation, and the symptom-key
normalisation shared by the conversation layer.

These utilities are stateless and side-effect-free.
"""

from __future__ import annotations

import re
import unicodedata


# ── Non-printable character pattern ────────────────────────────────────
# Control characters (C0/C1) except \n, \r, \t, plus BOM, zero-width
# characters, soft hyphens and directional marks left behind by PDF
# extraction.
_NON_PRINTABLE_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f\ufeff\u200b\u200c\u200d\u200e\u200f\u00ad\u2060\ufffe]")


def clean_text(text: str) -> str:
    """
    Sanitise raw document text for chunking and embedding.

    Steps:
        1. Unicode NFC normalisation (canonical composition).
        2. Strip non-printable / zero-width characters and formatting
           artifacts (BOM, soft hyphens, directional marks).
        3. Collapse runs of horizontal whitespace into a single space,
           *preserving* newlines.
        4. Strip leading / trailing whitespace from every line.
        5. Collapse 3+ consecutive blank lines to 2.

    Args:
        text: Raw text extracted from a source file.

    Returns:
        Cleaned, normalised text ready for chunking.
    """
    text = unicodedata.normalize("NFC", text)
    text = _NON_PRINTABLE_RE.sub("", text)
    text = re.sub(r"[^\S\n]+", " ", text)
    lines = [line.strip() for line in text.splitlines()]
    text = "\n".join(lines)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def symptom_key(prompt: str) -> str:
    """
    Normalise a prompt into the key used for the user's symptom history.

    Only surrounding whitespace is stripped and case is folded to lower;
    inner whitespace and punctuation are kept so the stored key matches
    what the user typed.

    Examples::

        "I have a headache"      → "i have a headache"
        "  Cramps since Monday " → "cramps since monday"
    """
    return prompt.strip().lower()
