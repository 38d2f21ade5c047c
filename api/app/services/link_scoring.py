from __future__ import annotations

import re
from collections.abc import Collection, Iterable
from dataclasses import dataclass
from typing import Any, Literal

ItemType = Literal["provider", "listing", "package", "product"]
MatchMode = Literal["fuzzy", "geo"]

ITEM_TYPES: tuple[ItemType, ...] = ("provider", "listing", "package", "product")
MATCH_MODES: tuple[MatchMode, ...] = ("fuzzy", "geo")

CONFIDENCE_THRESHOLD = 0.3
EXACT_MATCH_CONFIDENCE = 1.0
NAME_MATCH_CONFIDENCE = 0.8
DISTRICT_MATCH_CONFIDENCE: dict[str, float] = {
    "fuzzy": 0.5,
    "geo": 0.6,
}

_TOKEN_RE = re.compile(r"\S+")


@dataclass(frozen=True, slots=True)
class VillageSnapshot:
    id: str
    name: str
    district_id: str | None = None
    slug: str | None = None
    latitude: float | None = None
    longitude: float | None = None


@dataclass(frozen=True, slots=True)
class CandidateEntity:
    """A provider, listing, package or product reduced to its locality hints."""

    item_type: ItemType
    item_id: str
    name: str
    village_ids: tuple[str, ...] = ()
    district_id: str | None = None
    locality_text: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class CandidateSnapshot:
    name: str
    item_type: ItemType
    district_id: str | None = None
    matched_on: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "item_type": self.item_type,
            "district_id": self.district_id,
            "matched_on": self.matched_on,
        }


@dataclass(frozen=True, slots=True)
class ScoredCandidate:
    candidate: CandidateEntity
    confidence: float
    source: str
    matched_on: str

    def snapshot(self) -> CandidateSnapshot:
        return CandidateSnapshot(
            name=self.candidate.name,
            item_type=self.candidate.item_type,
            district_id=self.candidate.district_id,
            matched_on=self.matched_on,
        )


def score_candidate(mode: str, village: VillageSnapshot, candidate: CandidateEntity) -> float:
    return _score(mode, village, candidate)[0]


def score_pool(
    mode: str,
    village: VillageSnapshot,
    candidates: Iterable[CandidateEntity],
    *,
    exclude: Collection[tuple[str, str]] = (),
    threshold: float = CONFIDENCE_THRESHOLD,
) -> list[ScoredCandidate]:
    """Score one candidate pool against a village.

    Candidates whose ``(item_type, item_id)`` key is in ``exclude`` are skipped, and
    only candidates scoring strictly above ``threshold`` are returned, in input order.
    """
    scored: list[ScoredCandidate] = []
    for candidate in candidates:
        if (candidate.item_type, candidate.item_id) in exclude:
            continue
        confidence, matched_on = _score(mode, village, candidate)
        if confidence > threshold:
            scored.append(
                ScoredCandidate(
                    candidate=candidate,
                    confidence=confidence,
                    source=mode,
                    matched_on=matched_on,
                )
            )
    return scored


def _score(mode: str, village: VillageSnapshot, candidate: CandidateEntity) -> tuple[float, str]:
    if mode not in MATCH_MODES:
        raise ValueError(f"unsupported match mode: {mode}")

    if village.id in candidate.village_ids:
        return EXACT_MATCH_CONFIDENCE, "village_id"

    if mode == "fuzzy" and _name_matches(village.name, candidate):
        return NAME_MATCH_CONFIDENCE, "name"

    # geo has no coordinates on candidates yet, so radius scoring degrades to district equality
    if village.district_id and candidate.district_id == village.district_id:
        return DISTRICT_MATCH_CONFIDENCE[mode], "district_id"

    return 0.0, ""


def _name_matches(village_name: str, candidate: CandidateEntity) -> bool:
    needle = _normalize(village_name)
    if not needle:
        return False

    haystacks = [_normalize(candidate.name), *(_normalize(text) for text in candidate.locality_text)]
    if any(needle in haystack for haystack in haystacks if haystack):
        return True

    first_token = _first_token(candidate.name)
    return bool(first_token) and first_token in needle


def _first_token(value: str | None) -> str:
    match = _TOKEN_RE.search(_normalize(value))
    return match.group(0) if match else ""


def _normalize(value: str | None) -> str:
    if not value:
        return ""
    return " ".join(value.lower().split())
