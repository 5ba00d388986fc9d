"""Small text statistics shared by the validator and generation engine."""

from __future__ import annotations

import re
from typing import List, Tuple

HEADING_PATTERN = re.compile(r"^(#{1,6})\s+(.+)$", re.MULTILINE)
SENTENCE_SPLIT = re.compile(r"[.!?]+|\n")
_VOWELS = "aeiouy"


def split_sentences(text: str) -> List[str]:
    """Split on terminal punctuation and line breaks; blank pieces are dropped."""
    return [piece.strip() for piece in SENTENCE_SPLIT.split(text) if piece.strip()]


def split_words(text: str) -> List[str]:
    return [word for word in text.split() if word]


def headings(text: str) -> List[Tuple[int, str]]:
    """Return (level, text) for each Markdown ATX heading."""
    return [(len(marks), title.strip()) for marks, title in HEADING_PATTERN.findall(text)]


def count_syllables(word: str) -> int:
    word = re.sub(r"[^a-z]", "", word.lower())
    if len(word) <= 3:
        return 1
    count = 0
    previous_vowel = False
    for char in word:
        is_vowel = char in _VOWELS
        if is_vowel and not previous_vowel:
            count += 1
        previous_vowel = is_vowel
    # silent e
    if word.endswith("e") and count > 1:
        count -= 1
    return max(1, count)


def flesch_reading_ease(text: str) -> float:
    """Simplified Flesch reading ease clamped to [0, 100]; 0 for empty text."""
    sentences = split_sentences(text)
    words = split_words(text)
    if not sentences or not words:
        return 0.0
    syllables = sum(count_syllables(word) for word in words)
    avg_sentence_length = len(words) / len(sentences)
    avg_syllables = syllables / len(words)
    score = 206.835 - 1.015 * avg_sentence_length - 84.6 * avg_syllables
    return max(0.0, min(100.0, score))


def complex_words(text: str) -> List[str]:
    """Distinct words longer than three letters with more than two syllables."""
    found: dict[str, None] = {}
    for word in split_words(text):
        clean = re.sub(r"[^\w]", "", word)
        if len(clean) > 3 and count_syllables(clean) > 2:
            found.setdefault(clean.lower(), None)
    return list(found)
