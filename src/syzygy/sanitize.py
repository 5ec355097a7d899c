from __future__ import annotations

import re

MIN_FEATURE_NAME_LENGTH = 3
MAX_FEATURE_NAME_LENGTH = 100
MIN_BRIEF_LENGTH = 10
MAX_BRIEF_LENGTH = 500
MAX_SLUG_LENGTH = 50

STOP_WORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "by", "for", "from",
        "has", "he", "in", "is", "it", "its", "of", "on", "that", "the",
        "to", "was", "will", "with", "i", "want", "would", "like", "their",
        "output", "interspersed",
    }
)

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_NON_WORD = re.compile(r"[^\w\s-]", re.ASCII)


class FeatureNameError(ValueError):
    """Raised when a feature name or brief is rejected."""


def validate_feature_name(name: str) -> str:
    trimmed = name.strip()
    if len(trimmed) < MIN_FEATURE_NAME_LENGTH:
        raise FeatureNameError(
            f"Feature name must be at least {MIN_FEATURE_NAME_LENGTH} characters."
        )
    if len(trimmed) > MAX_FEATURE_NAME_LENGTH:
        raise FeatureNameError(
            f"Feature name must be at most {MAX_FEATURE_NAME_LENGTH} characters."
        )
    if "../" in trimmed or "./" in trimmed or "..\\" in trimmed:
        raise FeatureNameError("Feature name must not contain path traversal sequences.")
    if _CONTROL_CHARS.search(trimmed):
        raise FeatureNameError("Feature name must not contain control characters.")
    return trimmed


def validate_brief(brief: str) -> str:
    trimmed = brief.strip()
    if len(trimmed) < MIN_BRIEF_LENGTH:
        raise FeatureNameError(f"Brief must be at least {MIN_BRIEF_LENGTH} characters.")
    if len(trimmed) > MAX_BRIEF_LENGTH:
        raise FeatureNameError(f"Brief must be at most {MAX_BRIEF_LENGTH} characters.")
    return trimmed


def _truncate_at_word(slug: str, limit: int) -> str:
    if len(slug) <= limit:
        return slug
    cut = slug[:limit]
    boundary = cut.rfind("-")
    return cut[:boundary] if boundary > 0 else cut


def create_slug(name: str) -> str:
    """Turn a free-form feature name into a short, URL-safe identifier.

    Stop words are dropped first, then the result is cut at a word boundary.
    When every word is a stop word the normalized name is used as-is.
    """
    normalized = _NON_WORD.sub("", name.lower().strip())
    words = normalized.split()
    slug = _truncate_at_word("-".join(w for w in words if w not in STOP_WORDS), MAX_SLUG_LENGTH)
    if not slug:
        slug = "-".join(words)[:MAX_SLUG_LENGTH]
    return slug.strip("-")
