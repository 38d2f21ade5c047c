import pytest

from app.services.link_scoring import (
    CandidateEntity,
    VillageSnapshot,
    score_candidate,
    score_pool,
)

VILLAGE = VillageSnapshot(id="v1", name="Kanda", district_id="d1")


def _candidate(
    item_type: str = "provider",
    item_id: str = "p1",
    name: str = "Unrelated Name",
    village_ids: tuple[str, ...] = (),
    district_id: str | None = None,
    locality_text: tuple[str, ...] = (),
) -> CandidateEntity:
    return CandidateEntity(
        item_type=item_type,  # type: ignore[arg-type]
        item_id=item_id,
        name=name,
        village_ids=village_ids,
        district_id=district_id,
        locality_text=locality_text,
    )


@pytest.mark.parametrize("mode", ["fuzzy", "geo"])
def test_owning_village_id_scores_full_confidence_in_every_mode(mode: str) -> None:
    candidate = _candidate(name="Kanda Homestays", village_ids=("v1",), district_id="d9")

    assert score_candidate(mode, VILLAGE, candidate) == 1.0


def test_fuzzy_name_substring_beats_district_match() -> None:
    candidate = _candidate(name="Kanda Homestays", district_id="d1")

    assert score_candidate("fuzzy", VILLAGE, candidate) == 0.8


def test_fuzzy_name_match_is_case_insensitive() -> None:
    assert score_candidate("fuzzy", VILLAGE, _candidate(name="KANDA valley treks")) == 0.8


def test_fuzzy_matches_when_village_name_contains_first_token() -> None:
    village = VillageSnapshot(id="v2", name="Upper Kanda", district_id="d1")

    assert score_candidate("fuzzy", village, _candidate(name="Kanda Farm Stay")) == 0.8


def test_fuzzy_district_only_match() -> None:
    assert score_candidate("fuzzy", VILLAGE, _candidate(name="Riverside Lodge", district_id="d1")) == 0.5


def test_fuzzy_checks_package_destination_text() -> None:
    candidate = _candidate(
        item_type="package",
        name="Himalayan Weekend",
        locality_text=("Trek to Kanda and Bageshwar",),
    )

    assert score_candidate("fuzzy", VILLAGE, candidate) == 0.8


def test_geo_uses_district_and_ignores_names() -> None:
    assert score_candidate("geo", VILLAGE, _candidate(name="Kanda Homestays", district_id="d1")) == 0.6
    assert score_candidate("geo", VILLAGE, _candidate(name="Kanda Homestays")) == 0.0


def test_no_signal_scores_zero() -> None:
    assert score_candidate("fuzzy", VILLAGE, _candidate(name="Riverside Lodge", district_id="d2")) == 0.0


def test_blank_candidate_name_does_not_match_by_token() -> None:
    assert score_candidate("fuzzy", VILLAGE, _candidate(name="   ")) == 0.0


def test_unknown_mode_is_rejected() -> None:
    with pytest.raises(ValueError):
        score_candidate("ai", VILLAGE, _candidate())


def test_score_pool_applies_threshold_and_exclusions() -> None:
    candidates = [
        _candidate(item_id="p1", name="Kanda Homestays"),
        _candidate(item_id="p2", name="Riverside Lodge", district_id="d1"),
        _candidate(item_id="p3", name="Faraway Inn", district_id="d2"),
        _candidate(item_id="p4", name="Kanda Crafts"),
    ]

    scored = score_pool("fuzzy", VILLAGE, candidates, exclude={("provider", "p4")})

    assert [(row.candidate.item_id, row.confidence) for row in scored] == [("p1", 0.8), ("p2", 0.5)]
    assert all(row.source == "fuzzy" for row in scored)
    assert scored[0].snapshot().to_dict() == {
        "name": "Kanda Homestays",
        "item_type": "provider",
        "district_id": None,
        "matched_on": "name",
    }


def test_score_pool_threshold_is_strict() -> None:
    candidates = [_candidate(item_id="p1", name="Riverside Lodge", district_id="d1")]

    assert score_pool("fuzzy", VILLAGE, candidates, threshold=0.5) == []


def test_passes_are_independent_of_each_other() -> None:
    providers = [_candidate(item_type="provider", item_id="x1", name="Kanda Homestays")]
    products = [_candidate(item_type="product", item_id="x1", name="Kanda Honey")]

    provider_only = score_pool("fuzzy", VILLAGE, providers)
    product_only = score_pool("fuzzy", VILLAGE, products, exclude={("provider", "x1")})

    assert len(provider_only) == 1
    assert len(product_only) == 1
    assert product_only[0].candidate.item_type == "product"
