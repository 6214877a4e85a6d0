"""Optional content classifier seam for the ranking engine."""

from typing import Dict, List, Protocol, Sequence


class ContentClassifier(Protocol):
    def analyze(self, text: str) -> Dict[str, object]:
        """Return ``{"quality_multiplier": float, "keywords": [str, ...]}`` for one review text."""
        ...


class NeutralClassifier:
    """Used when no classifier is configured: every review is neutral."""

    def analyze(self, text: str) -> Dict[str, object]:
        return {"quality_multiplier": 1.0, "keywords": []}


def summarize(classifier: ContentClassifier, texts: Sequence[str], keyword_limit: int = 10) -> Dict[str, object]:
    """Average the per-review multipliers and collect the most frequent keywords."""
    if not texts:
        return {"quality_multiplier": 1.0, "keywords": []}

    total = 0.0
    counts: Dict[str, int] = {}
    for text in texts:
        result = classifier.analyze(text) or {}
        total += float(result.get("quality_multiplier", 1.0) or 1.0)
        for keyword in result.get("keywords", []) or []:
            counts[keyword] = counts.get(keyword, 0) + 1

    ranked: List[str] = sorted(counts, key=lambda k: (-counts[k], k))
    return {"quality_multiplier": total / len(texts), "keywords": ranked[:keyword_limit]}
