# scoring.py
"""
Privacy score shown next to a post.

The score is a display heuristic combining the chosen access level, the
transform that was applied and the length of the final text. It is not a
privacy guarantee of any kind and must not be presented as one.
"""

from privacy import PrivacyResult, round_half_up

ACCESS_LEVEL_POINTS = {
    "private": 40,
    "friends": 30,
    "followers": 20,
    "public": 0,
}


def length_bonus(content_length: int) -> int:
    # shorter content leaks less
    if content_length < 50:
        return 15
    if content_length < 100:
        return 10
    if content_length < 200:
        return 5
    return 0


def calculate_privacy_score(access_level: str, result: PrivacyResult, final_content_length: int) -> int:
    """Combine access level, transform output and length into 0..100."""
    score = ACCESS_LEVEL_POINTS.get(access_level, 0)
    score += round_half_up(result.privacy_score * 0.4)
    score += length_bonus(final_content_length)
    score += min(15, result.noise_magnitude * 3)
    return max(0, min(100, score))
