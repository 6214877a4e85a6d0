"""String normalisation and similarity helpers shared by identity and duplicate matching."""

import re
from typing import Optional, Set

from rapidfuzz.distance import Levenshtein

_LEGAL_SUFFIX_RE = re.compile(
    r"(?:\s+(?:llc|pllc|llp|lp|inc|incorporated|corp|corporation|co|company|ltd|limited))+\s*$"
)
_JOINING_PUNCT_RE = re.compile(r"['.’]")
_PUNCT_RE = re.compile(r"[^\w\s]")
_SPACE_RE = re.compile(r"\s+")
_NON_DIGIT_RE = re.compile(r"\D")

BLOCK_PREFIX_LENGTH = 3
BLOCK_MIN_TOKEN_LENGTH = 3
BLOCK_GRAM_LENGTH = 3


def normalize_text(text: Optional[str]) -> str:
    """Lower-case, drop punctuation and collapse whitespace."""
    if not text:
        return ""
    value = _PUNCT_RE.sub(" ", text.lower())
    return _SPACE_RE.sub(" ", value).strip()


def normalize_name(name: Optional[str]) -> str:
    """Normalise a business name for fuzzy comparison.

    ``"Joe's Roofing, L.L.C."`` and ``"joes roofing"`` both become ``"joes roofing"``.
    """
    if not name:
        return ""
    value = _JOINING_PUNCT_RE.sub("", name.lower())
    value = _SPACE_RE.sub(" ", _PUNCT_RE.sub(" ", value)).strip()
    return _LEGAL_SUFFIX_RE.sub("", value)


def normalize_phone(phone: Optional[str]) -> str:
    if not phone:
        return ""
    return _NON_DIGIT_RE.sub("", phone)


def similarity(left: str, right: str) -> float:
    """Return ``(max_len - levenshtein) / max_len`` with unit edit costs.

    Two empty strings are identical (1.0) so rating-only reviews still compare equal.
    """
    max_len = max(len(left), len(right))
    if max_len == 0:
        return 1.0
    distance = Levenshtein.distance(left, right)
    return (max_len - distance) / max_len


def could_reach(left: str, right: str, threshold: float) -> bool:
    """Cheap upper bound: the edit distance is at least the length difference."""
    max_len = max(len(left), len(right))
    if max_len == 0:
        return True
    return (max_len - abs(len(left) - len(right))) / max_len > threshold


def name_block_keys(normalized: str) -> Set[str]:
    """Blocking keys for a normalised name.

    The prefix and whole tokens catch exact words; character trigrams of each token
    catch single-letter typos such as ``plimbmasters`` against ``plumbmasters``.
    """
    if not normalized:
        return set()
    keys = {"p:" + normalized[:BLOCK_PREFIX_LENGTH]}
    keys.update("t:" + token for token in normalized.split() if len(token) >= BLOCK_MIN_TOKEN_LENGTH)
    for token in normalized.split():
        for start in range(len(token) - BLOCK_GRAM_LENGTH + 1):
            keys.add("g:" + token[start : start + BLOCK_GRAM_LENGTH])
    return keys
