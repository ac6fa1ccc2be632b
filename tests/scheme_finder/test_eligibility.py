"""Unit tests for scheme_finder.eligibility (rule evaluation, validation, ranking)."""

import random

import pytest

from src.scheme_finder.eligibility import (
    EligibilityMatcher,
    evaluate_program,
    prefilter,
    rank_candidates,
)
from src.scheme_finder.errors import OracleUnavailable
from src.scheme_finder.merger import merge, merge_exclusion
from src.scheme_finder.models import USER_STATED, MatchCandidate, UserContext


def _context(**facts):
    return merge(UserContext(), facts, USER_STATED, seq=1)


@pytest.mark.unit
def test_unset_region_keeps_regional_programs_with_region_missing(sample_catalog):
    """2 national + 3 regional with no region: all five stay, regional ones list region as missing."""
    result = EligibilityMatcher().match(_context(occupation="farmer"), sample_catalog)

    assert len(result.candidates) == 5
    by_id = {candidate.program_id: candidate for candidate in result.candidates}
    for program_id in ("reg_ka_farmer", "reg_kl_disability", "reg_up_girls"):
        assert "region" in by_id[program_id].missing
        assert by_id[program_id].verdict == "unknown"
    assert by_id["nat_farmer"].verdict == "eligible"
    assert [candidate.program_id for candidate in result.candidates] == [
        "nat_farmer",
        "reg_ka_farmer",
        "nat_health",
        "reg_kl_disability",
        "reg_up_girls",
    ]


@pytest.mark.unit
def test_known_region_prefilters_other_regions(sample_catalog):
    programs = prefilter(_context(region="kerala"), sample_catalog)
    assert [program.program_id for program in programs] == ["nat_farmer", "nat_health", "reg_kl_disability"]


@pytest.mark.unit
def test_rule_verdicts(sample_catalog):
    health = sample_catalog.get("nat_health")
    assert evaluate_program(health, _context(income=300000)).verdict == "ineligible"
    assert evaluate_program(health, _context(income=120000)).verdict == "eligible"
    straddling = evaluate_program(health, _context(income="200000-300000"))
    assert straddling.verdict == "unknown"
    assert straddling.missing == ["income"]


@pytest.mark.unit
def test_excluded_values_fail_constraints(sample_catalog):
    context = merge_exclusion(UserContext(), "region", "karnataka", seq=1)
    candidate = evaluate_program(sample_catalog.get("reg_ka_farmer"), context)
    assert candidate.verdict == "ineligible"

    context = merge_exclusion(UserContext(), "income", {"low": None, "high": 250000}, seq=1)
    assert evaluate_program(sample_catalog.get("nat_health"), context).verdict == "ineligible"


@pytest.mark.unit
def test_oracle_output_validated_against_prefilter(sample_catalog):
    """Unknown ids are dropped, scores clamped, bad verdicts become unknown."""
    context = _context(region="karnataka")

    def _reason(ctx, programs):
        return {
            "candidates": [
                {"program_id": "ghost_scheme", "relevance": 99, "verdict": "eligible"},
                {"program_id": "reg_kl_disability", "relevance": 80, "verdict": "eligible"},
                {"program_id": "nat_farmer", "relevance": 250, "verdict": "maybe", "missing": ["occupation"]},
                {"program_id": "nat_farmer", "relevance": 10, "verdict": "eligible"},
                "not-a-dict",
            ]
        }

    result = EligibilityMatcher().match(context, sample_catalog, reason=_reason)
    ids = [candidate.program_id for candidate in result.candidates]
    assert "ghost_scheme" not in ids
    assert "reg_kl_disability" not in ids
    assert ids.count("nat_farmer") == 1
    farmer = result.candidates[0]
    assert farmer.program_id == "nat_farmer"
    assert farmer.relevance == 100
    assert farmer.verdict == "unknown"
    # programs the oracle skipped are backfilled from the rules
    assert set(ids) == {"nat_farmer", "nat_health", "reg_ka_farmer"}
    assert not result.degraded


@pytest.mark.unit
def test_eligible_with_missing_constraints_downgraded(sample_catalog):
    def _reason(ctx, programs):
        return [{"program_id": "reg_kl_disability", "relevance": 90, "verdict": "eligible", "satisfied": ["region"]}]

    result = EligibilityMatcher().match(UserContext(), sample_catalog, reason=_reason)
    candidate = next(c for c in result.candidates if c.program_id == "reg_kl_disability")
    assert candidate.verdict == "likely"
    assert "region" in candidate.missing
    assert "region" not in candidate.satisfied


@pytest.mark.unit
def test_oracle_unavailable_falls_back_to_full_rule_list(sample_catalog):
    def _reason(ctx, programs):
        raise OracleUnavailable("timed out")

    result = EligibilityMatcher().match(_context(occupation="farmer"), sample_catalog, reason=_reason)
    assert result.degraded
    assert result.uncertain
    assert len(result.candidates) == 5


@pytest.mark.unit
def test_empty_oracle_output_falls_back(sample_catalog):
    result = EligibilityMatcher().match(_context(occupation="farmer"), sample_catalog, reason=lambda c, p: [])
    assert result.degraded
    assert len(result.candidates) == 5


@pytest.mark.unit
def test_confident_result_not_uncertain(sample_catalog):
    def _reason(ctx, programs):
        return [{"program_id": "nat_farmer", "relevance": 92, "verdict": "eligible", "satisfied": ["occupation"]}]

    result = EligibilityMatcher().match(_context(occupation="farmer", region="kerala"), sample_catalog, reason=_reason)
    assert result.overall_confidence == 92
    assert not result.uncertain

    low = EligibilityMatcher().match(
        _context(occupation="farmer", region="kerala"),
        sample_catalog,
        reason=lambda c, p: [{"program_id": "nat_farmer", "relevance": 65, "verdict": "eligible"}],
    )
    assert low.uncertain


@pytest.mark.unit
def test_ranking_order_under_random_inputs(sample_catalog):
    """Descending relevance, then fewer missing, then catalog order, for any input order."""
    rng = random.Random(1234)
    ids = [program.program_id for program in sample_catalog]
    for _ in range(50):
        candidates = [
            MatchCandidate(
                program_id=program_id,
                relevance=rng.choice([0, 50, 50, 100]),
                missing=["x"] * rng.randint(0, 2),
            )
            for program_id in ids
        ]
        rng.shuffle(candidates)
        ranked = rank_candidates(candidates, sample_catalog)
        keys = [
            (-c.relevance, len(c.missing), sample_catalog.order_of(c.program_id))
            for c in ranked
        ]
        assert keys == sorted(keys)
