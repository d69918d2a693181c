# privacy.py
"""
Privacy-enhancing text transformations applied to post content before it is
submitted.

Three independent strategies are available: PII masking, contextual
obfuscation (noise-word injection) and generalization of numbers, times and
ages. None of them is a formal privacy mechanism; the scores they report are
display values.
"""

from __future__ import annotations

import math
import random
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

PII_LEVELS = ("low", "medium", "high")
PRIVACY_MODES = ("none", "pii", "obfuscate", "generalize")


@dataclass(frozen=True)
class PrivacyResult:
    processed_content: str
    technique: str
    privacy_score: int
    noise_magnitude: int


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


# --- PII masking ---

# Applied in this order. Later patterns see already-masked text, and no
# placeholder contains a digit or an "@", so a second pass finds nothing.
_PII_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b", re.ASCII), "[PHONE]"),
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b", re.ASCII), "[EMAIL]"),
    (re.compile(r"\b\d{3}-\d{2}-\d{4}\b", re.ASCII), "[SSN]"),
    (re.compile(r"\b\d{1,2}/\d{1,2}/\d{4}\b", re.ASCII), "[DATE]"),
    (re.compile(r"\b\d{5}(?:-\d{4})?\b", re.ASCII), "[ZIP]"),
]

_STREET_SUFFIXES = (
    "street|avenue|road|drive|lane|court|st|ave|rd|dr|ln|ct|blvd|boulevard|"
    "way|place|pl|circle|cir|parkway|pkwy"
)

_EXTENDED_PII_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (
        re.compile(r"\b\d+\s+[A-Za-z\s]+(?:" + _STREET_SUFFIXES + r")\b\.?", re.ASCII | re.IGNORECASE),
        "[ADDRESS]",
    ),
    (re.compile(r"\$\d+(?:,\d{3})*(?:\.\d{2})?", re.ASCII), "[AMOUNT]"),
]


def mask_pii(text: str, level: str = "medium") -> PrivacyResult:
    """Replace phone numbers, emails, SSNs, dates and zip codes with
    placeholders; `medium` and `high` also mask street addresses and
    currency amounts.

    The base patterns count once per pattern that matched, the extended
    ones once per match.
    """
    masked = text
    replacements = 0

    for regex, placeholder in _PII_PATTERNS:
        masked, count = regex.subn(placeholder, masked)
        if count:
            replacements += 1

    if level in ("medium", "high"):
        for regex, placeholder in _EXTENDED_PII_PATTERNS:
            masked, count = regex.subn(placeholder, masked)
            replacements += count

    return PrivacyResult(
        processed_content=masked,
        technique=f"PII Masking ({level})",
        privacy_score=min(100, 60 + replacements * 10),
        noise_magnitude=replacements,
    )


# --- contextual obfuscation ---

CONTEXTUAL_NOISE = {
    "positive": ["indeed", "certainly", "absolutely", "definitely", "quite"],
    "neutral": ["perhaps", "possibly", "likely", "generally", "typically"],
    "transition": ["however", "moreover", "furthermore", "additionally", "meanwhile"],
}

_POSITIVE_WORDS = re.compile(r"\b(good|great|love|awesome|amazing|excellent)\b", re.IGNORECASE)


def noise_probability(epsilon: float) -> float:
    """min(0.5, 1 / (epsilon + 1)); negative below epsilon -1, so nothing is inserted there."""
    if epsilon == -1:
        return 0.5
    return min(0.5, 1.0 / (epsilon + 1))


def obfuscate_content(text: str, epsilon: float = 1.0, rng: Optional[random.Random] = None) -> PrivacyResult:
    """Insert at most one context-matched noise word at a random position.

    Texts of three words or fewer are never modified. Pass a seeded
    `random.Random` as `rng` for reproducible output.
    """
    rng = rng or random
    words = text.split(" ")
    processed_words = list(words)
    modifications = 0

    if _POSITIVE_WORDS.search(text):
        category = "positive"
    else:
        category = "neutral" if rng.random() < 0.5 else "transition"
    noise_words = CONTEXTUAL_NOISE[category]

    if rng.random() < noise_probability(epsilon) and len(words) > 3:
        position = rng.randrange(len(words))
        processed_words.insert(position, rng.choice(noise_words))
        modifications += 1

    return PrivacyResult(
        processed_content=" ".join(processed_words),
        technique=f"Content Obfuscation (ε={epsilon:g})",
        privacy_score=min(100, 40 + modifications * 15 + round_half_up((2 - epsilon) * 20)),
        noise_magnitude=modifications,
    )


# --- generalization ---

_CLOCK_TIME = re.compile(r"\b\d{1,2}:\d{2}\s*(?:AM|PM)\b", re.ASCII | re.IGNORECASE)
_AGE_PHRASE = re.compile(r"\b(\d{1,2})\s+years?\s+old\b", re.ASCII | re.IGNORECASE)
_BARE_INTEGER = re.compile(r"\b(\d+)\b", re.ASCII)


def _age_band(age: int) -> str:
    if age < 18:
        return "young"
    if age < 30:
        return "in their twenties"
    if age < 50:
        return "middle-aged"
    return "older"


def _magnitude_word(n: int) -> str:
    if n < 10:
        return "several"
    if n < 100:
        return "dozens"
    if n < 1000:
        return "hundreds"
    return "thousands"


def generalize_content(text: str) -> PrivacyResult:
    """Coarsen clock times, ages and bare integers.

    Times and ages are rewritten before bare integers so their digits are
    still intact when they are matched.
    """
    generalizations = 0

    def _time(match: re.Match) -> str:
        nonlocal generalizations
        generalizations += 1
        return "during the day"

    def _age(match: re.Match) -> str:
        nonlocal generalizations
        generalizations += 1
        return _age_band(int(match.group(1)))

    def _number(match: re.Match) -> str:
        nonlocal generalizations
        n = int(match.group(1))
        if n <= 0:
            return match.group(0)
        generalizations += 1
        return _magnitude_word(n)

    generalized = _CLOCK_TIME.sub(_time, text)
    generalized = _AGE_PHRASE.sub(_age, generalized)
    generalized = _BARE_INTEGER.sub(_number, generalized)

    return PrivacyResult(
        processed_content=generalized,
        technique="Content Generalization",
        privacy_score=min(100, 50 + generalizations * 12),
        noise_magnitude=generalizations,
    )


def no_transform(text: str) -> PrivacyResult:
    return PrivacyResult(processed_content=text, technique="None", privacy_score=0, noise_magnitude=0)


def apply_privacy_mode(
    mode: str,
    text: str,
    pii_level: str = "medium",
    epsilon: float = 1.0,
    rng: Optional[random.Random] = None,
) -> PrivacyResult:
    """Dispatch to the strategy selected in the composer; unknown modes
    leave the text untouched."""
    if mode == "pii":
        return mask_pii(text, pii_level)
    if mode == "obfuscate":
        return obfuscate_content(text, epsilon, rng)
    if mode == "generalize":
        return generalize_content(text)
    return no_transform(text)
