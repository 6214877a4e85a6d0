"""Resolve inbound reviews to catalog businesses."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set

from reviewrank.core.models import Business, ReviewRecord
from reviewrank.matching.text import could_reach, name_block_keys, normalize_name, normalize_phone, similarity

logger = logging.getLogger(__name__)

NAME_MATCH_THRESHOLD = 0.85
PHONE_MATCH_CONFIDENCE = 0.95

STRATEGY_PLACE_ID = "place_id"
STRATEGY_BUSINESS_ID = "business_id"
STRATEGY_PHONE = "phone"
STRATEGY_NAME = "fuzzy_name"


@dataclass(frozen=True)
class IdentityMatch:
    business: Business
    confidence: float
    strategy: str


class IdentityMatcher:
    """Pure resolver over a snapshot of the catalog.

    Strategies are tried in order and the first hit wins: place id, internal id,
    normalised phone, then fuzzy name. Fuzzy candidates are first narrowed with
    name blocking keys so a lookup never scans the whole catalog.
    """

    def __init__(self, businesses: Iterable[Business], name_threshold: float = NAME_MATCH_THRESHOLD) -> None:
        self.name_threshold = name_threshold
        self._by_id: Dict[str, Business] = {}
        self._by_place_id: Dict[str, Business] = {}
        self._by_phone: Dict[str, Business] = {}
        self._names: Dict[str, str] = {}
        self._blocks: Dict[str, Set[str]] = defaultdict(set)

        for business in businesses:
            self.add(business)

    def __len__(self) -> int:
        return len(self._by_id)

    def add(self, business: Business) -> None:
        if business.id in self._by_id:
            return
        self._by_id[business.id] = business
        if business.place_id:
            self._by_place_id.setdefault(business.place_id, business)
        phone = normalize_phone(business.phone)
        if phone:
            self._by_phone.setdefault(phone, business)
        normalized = business.normalized_name or normalize_name(business.name)
        if normalized:
            self._names[business.id] = normalized
            for key in name_block_keys(normalized):
                self._blocks[key].add(business.id)

    def match(self, record: ReviewRecord) -> Optional[IdentityMatch]:
        """Return the best match for ``record`` or ``None`` when it cannot be resolved."""
        if record.place_id:
            business = self._by_place_id.get(record.place_id)
            if business is not None:
                return IdentityMatch(business, 1.0, STRATEGY_PLACE_ID)

        if record.business_id:
            business = self._by_id.get(record.business_id)
            if business is not None:
                return IdentityMatch(business, 1.0, STRATEGY_BUSINESS_ID)

        phone = normalize_phone(record.phone)
        if phone:
            business = self._by_phone.get(phone)
            if business is not None:
                return IdentityMatch(business, PHONE_MATCH_CONFIDENCE, STRATEGY_PHONE)

        if record.business_name:
            return self._match_name(record.business_name)
        return None

    def _match_name(self, name: str) -> Optional[IdentityMatch]:
        target = normalize_name(name)
        if not target:
            return None

        best_id: Optional[str] = None
        best_score = 0.0
        for business_id in sorted(self._candidates(target)):
            candidate = self._names[business_id]
            if not could_reach(target, candidate, self.name_threshold):
                continue
            score = similarity(target, candidate)
            if score > self.name_threshold and score > best_score:
                best_id, best_score = business_id, score

        if best_id is None:
            logger.debug("No fuzzy name match for %r", name)
            return None
        return IdentityMatch(self._by_id[best_id], best_score, STRATEGY_NAME)

    def _candidates(self, normalized: str) -> Set[str]:
        candidates: Set[str] = set()
        for key in name_block_keys(normalized):
            candidates.update(self._blocks.get(key, ()))
        return candidates


def hint_summary(records: Iterable[ReviewRecord]) -> Dict[str, List[str]]:
    """Collect the distinct identity hints of a batch, used to prefetch only relevant businesses."""
    place_ids: Set[str] = set()
    business_ids: Set[str] = set()
    phones: Set[str] = set()
    name_keys: Set[str] = set()
    for record in records:
        if record.place_id:
            place_ids.add(record.place_id)
        if record.business_id:
            business_ids.add(record.business_id)
        phone = normalize_phone(record.phone)
        if phone:
            phones.add(phone)
        if record.business_name:
            name_keys.update(name_block_keys(normalize_name(record.business_name)))
    return {
        "place_ids": sorted(place_ids),
        "business_ids": sorted(business_ids),
        "phones": sorted(phones),
        "name_keys": sorted(name_keys),
    }
