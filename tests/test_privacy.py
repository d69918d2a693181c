import random

import pytest

from privacy import (
    apply_privacy_mode,
    generalize_content,
    mask_pii,
    no_transform,
    noise_probability,
    obfuscate_content,
    round_half_up,
)


class ScriptedRandom:
    """random.Random stand-in with predetermined draws."""

    def __init__(self, draws, position=0, pick=0):
        self.draws = list(draws)
        self.position = position
        self.pick = pick

    def random(self):
        return self.draws.pop(0)

    def randrange(self, n):
        return min(self.position, n - 1)

    def choice(self, seq):
        return seq[self.pick]


# -------------------- PII masking --------------------

@pytest.mark.parametrize("text,expected", [
    ("Call me at 555-123-4567", "Call me at [PHONE]"),
    ("mail bob@example.com now", "mail [EMAIL] now"),
    ("ssn 123-45-6789", "ssn [SSN]"),
    ("born 12/25/1990", "born [DATE]"),
    ("zip 90210", "zip [ZIP]"),
])
def test_mask_pii_base_patterns(text, expected):
    result = mask_pii(text, "low")
    assert result.processed_content == expected
    assert result.noise_magnitude == 1
    assert result.privacy_score == 70
    assert result.technique == "PII Masking (low)"


def test_base_pattern_counts_once_per_pattern():
    result = mask_pii("555-123-4567 or 555-987-6543", "low")
    assert result.processed_content == "[PHONE] or [PHONE]"
    assert result.noise_magnitude == 1


def test_extended_patterns_only_above_low():
    text = "I live at 123 Main Street"
    assert mask_pii(text, "low").processed_content == text
    medium = mask_pii(text, "medium")
    assert medium.processed_content == "I live at [ADDRESS]"
    assert medium.noise_magnitude == 1


def test_amounts_count_per_match():
    result = mask_pii("paid $5 and $1,250.00", "high")
    assert result.processed_content == "paid [AMOUNT] and [AMOUNT]"
    assert result.noise_magnitude == 2
    assert result.privacy_score == 80


def test_mask_pii_is_idempotent():
    text = "Reach me at 555-123-4567 or bob@example.com, zip 90210, I paid $40"
    first = mask_pii(text, "high")
    second = mask_pii(first.processed_content, "high")
    assert second.processed_content == first.processed_content
    assert second.noise_magnitude == 0
    assert second.privacy_score == 60


def test_mask_pii_score_caps_at_100():
    text = "555-123-4567 a@b.io 123-45-6789 1/2/2020 90210 $1 $2 $3 $4 $5"
    assert mask_pii(text, "medium").privacy_score == 100


def test_mask_pii_leaves_input_untouched():
    text = "no secrets here"
    result = mask_pii(text)
    assert result.processed_content == text
    assert result.noise_magnitude == 0
    assert result.technique == "PII Masking (medium)"


# -------------------- obfuscation --------------------

def test_positive_text_gets_positive_noise():
    rng = ScriptedRandom([0.1], position=2, pick=0)
    result = obfuscate_content("I love this great day", 1.0, rng)
    assert result.processed_content == "I love indeed this great day"
    assert result.noise_magnitude == 1
    assert result.privacy_score == 75
    assert result.technique == "Content Obfuscation (ε=1)"


def test_neutral_and_transition_categories():
    neutral = obfuscate_content("the weather is fine today", 1.0, ScriptedRandom([0.3, 0.2], pick=1))
    assert neutral.processed_content == "possibly the weather is fine today"
    transition = obfuscate_content("the weather is fine today", 1.0, ScriptedRandom([0.7, 0.1], pick=0))
    assert transition.processed_content == "however the weather is fine today"


def test_no_insertion_when_draw_misses():
    result = obfuscate_content("the weather is fine today", 1.0, ScriptedRandom([0.3, 0.9]))
    assert result.processed_content == "the weather is fine today"
    assert result.noise_magnitude == 0
    assert result.privacy_score == 60


def test_short_text_never_modified():
    result = obfuscate_content("hello there world", 1.0, ScriptedRandom([0.3, 0.0]))
    assert result.processed_content == "hello there world"
    assert result.noise_magnitude == 0


def test_epsilon_changes_probability_and_score():
    high = obfuscate_content("the weather is fine today", 3, ScriptedRandom([0.3, 0.3]))
    assert high.noise_magnitude == 0
    assert high.privacy_score == 20
    assert high.technique == "Content Obfuscation (ε=3)"

    low = obfuscate_content("the weather is fine today", 0.5, ScriptedRandom([0.3, 0.6]))
    assert low.privacy_score == 70
    assert low.technique == "Content Obfuscation (ε=0.5)"


def test_noise_probability():
    assert noise_probability(0) == 0.5
    assert noise_probability(1) == 0.5
    assert noise_probability(3) == 0.25
    assert noise_probability(-0.5) == 0.5
    assert noise_probability(-1) == 0.5
    assert noise_probability(-3) < 0


def test_epsilon_below_minus_one_never_inserts():
    inserted = sum(
        obfuscate_content("one two three four five", -3.0, random.Random(seed)).noise_magnitude
        for seed in range(200)
    )
    assert inserted == 0


def test_seeded_rng_is_reproducible():
    text = "we went to the market and bought some bread"
    a = obfuscate_content(text, 1.0, random.Random(42))
    b = obfuscate_content(text, 1.0, random.Random(42))
    assert a == b


def test_default_rng_adds_at_most_one_word():
    text = "we went to the market and bought some bread"
    for _ in range(20):
        result = obfuscate_content(text)
        words = result.processed_content.split(" ")
        assert len(words) - len(text.split(" ")) == result.noise_magnitude
        assert result.noise_magnitude in (0, 1)


# -------------------- generalization --------------------

def test_generalize_clock_time():
    result = generalize_content("Meet at 10:30 AM")
    assert result.processed_content == "Meet at during the day"
    assert result.noise_magnitude == 1
    assert result.privacy_score == 62


@pytest.mark.parametrize("text,expected", [
    ("she is 17 years old", "she is young"),
    ("she is 25 years old", "she is in their twenties"),
    ("he is 45 year old", "he is middle-aged"),
    ("he is 70 years old", "he is older"),
])
def test_generalize_ages(text, expected):
    result = generalize_content(text)
    assert result.processed_content == expected
    assert result.noise_magnitude == 1


def test_generalize_integers():
    result = generalize_content("3 cats, 45 dogs, 120 fish and 5000 ants")
    assert result.processed_content == "several cats, dozens dogs, hundreds fish and thousands ants"
    assert result.noise_magnitude == 4
    assert result.privacy_score == 98


def test_zero_is_left_alone():
    result = generalize_content("0 items")
    assert result.processed_content == "0 items"
    assert result.noise_magnitude == 0
    assert result.privacy_score == 50


def test_generalization_score_caps_at_100():
    assert generalize_content("1 2 3 4 5").privacy_score == 100


# -------------------- dispatch --------------------

def test_no_transform():
    result = no_transform("hello")
    assert (result.processed_content, result.technique, result.privacy_score, result.noise_magnitude) == \
        ("hello", "None", 0, 0)


def test_apply_privacy_mode_dispatch():
    assert apply_privacy_mode("pii", "call 555-123-4567", pii_level="low").technique == "PII Masking (low)"
    assert apply_privacy_mode("generalize", "3 cats").processed_content == "several cats"
    assert apply_privacy_mode("obfuscate", "a b", rng=ScriptedRandom([0.3, 0.0])).technique.startswith(
        "Content Obfuscation")
    assert apply_privacy_mode("none", "x").technique == "None"
    assert apply_privacy_mode("bogus", "x").technique == "None"


def test_round_half_up():
    assert round_half_up(2.5) == 3
    assert round_half_up(2.4) == 2
    assert round_half_up(-0.4) == 0
