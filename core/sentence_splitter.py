"""
Sentence Splitter — turns model text into speakable sentences.

A '.', '!' or '?' ends a sentence only when it is followed by whitespace and
the next word starts with an uppercase letter or a digit (or the text ends
there). A period right after a digit never ends a sentence, which keeps
"3.14" and numbered list items ("1. Apple.") intact.

Spans shorter than MIN_SENTENCE_LENGTH are never emitted on their own: they
accumulate into the following span ("Dr. Smith ...") and a short tail merges
onto the previous sentence.
"""
from __future__ import annotations

import re
from typing import Optional

MIN_SENTENCE_LENGTH = 20
TERMINATORS = ".!?"
CLOSERS = "\"')]”’"

_WS = re.compile(r"\s+")


def normalize_whitespace(text: str) -> str:
    return _WS.sub(" ", text or "").strip()


def boundary_end(text: str, i: int, final: bool = True) -> Optional[int]:
    """Index just past the sentence ending at text[i], or None if no boundary.

    With final=False the text is a stream prefix: a terminator whose next word
    has not arrived yet is undecided and is reported as no boundary.
    """
    ch = text[i]
    if ch not in TERMINATORS:
        return None
    if ch == "." and i > 0 and text[i - 1].isdigit():
        return None

    n = len(text)
    end = i + 1
    while end < n and text[end] in CLOSERS:
        end += 1
    if end == n:
        return end if final else None
    if not text[end].isspace():
        return None

    k = end
    while k < n and text[k].isspace():
        k += 1
    if k == n:
        return end if final else None
    nxt = text[k]
    if nxt.isupper() or nxt.isdigit():
        return end
    return None


def _spans(text: str, final: bool = True):
    """Yield (start, end) of each boundary-delimited span, in order."""
    start = 0
    for i in range(len(text)):
        end = boundary_end(text, i, final)
        if end is not None and end > start:
            yield start, end
            start = end


def split_sentences(text: str) -> list[str]:
    """Split text into sentences; every sentence but a sole one meets the minimum."""
    normalized = normalize_whitespace(text)
    if not normalized:
        return []

    out: list[str] = []
    pending_start = 0
    for _, end in _spans(normalized):
        candidate = normalized[pending_start:end].strip()
        if len(candidate) >= MIN_SENTENCE_LENGTH:
            out.append(candidate)
            pending_start = end

    tail = normalized[pending_start:].strip()
    if tail:
        if len(tail) < MIN_SENTENCE_LENGTH and out:
            out[-1] = f"{out[-1]} {tail}"
        else:
            out.append(tail)
    return out


def extract_first(text: str) -> tuple[str, str]:
    """(first sentence, everything after it). No qualifying boundary ⇒ (text, "")."""
    normalized = normalize_whitespace(text)
    if not normalized:
        return "", ""
    for _, end in _spans(normalized):
        first = normalized[:end].strip()
        if len(first) >= MIN_SENTENCE_LENGTH:
            return first, normalized[end:].strip()
    return normalized, ""


def find_sentence_end(buffer: str, start: int = 0, final: bool = False) -> Optional[int]:
    """End index of the next complete sentence in buffer[start:], if any.

    Used while a reply is still streaming in; the span must meet the minimum
    length, shorter spans keep accumulating like in split_sentences.
    """
    for i in range(start, len(buffer)):
        end = boundary_end(buffer, i, final)
        if end is not None and len(buffer[start:end].strip()) >= MIN_SENTENCE_LENGTH:
            return end
    return None


def is_speakable(sentence: str) -> bool:
    """False for fragments with no letters or digits, e.g. a stray '.'."""
    return any(ch.isalnum() for ch in sentence or "")
