"""
Eligibility matching: catalog pre-filtering, oracle output validation, ranking,
and the rule-based pass used whenever the oracle cannot be trusted or reached.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

try:
    from src.scheme_finder.catalog import ProgramCatalog
    from src.scheme_finder.errors import OracleUnavailable
    from src.scheme_finder.merger import coerce_flag
    from src.scheme_finder.models import (
        CONFIDENCE_THRESHOLD,
        ELIGIBLE,
        INELIGIBLE,
        LIKELY,
        UNKNOWN,
        VERDICTS,
        EligibilityConstraint,
        MatchCandidate,
        MatchResult,
        NumericBand,
        Program,
        UserContext,
        unique_in_order,
    )
except ImportError:
    from .catalog import ProgramCatalog
    from .errors import OracleUnavailable
    from .merger import coerce_flag
    from .models import (
        CONFIDENCE_THRESHOLD,
        ELIGIBLE,
        INELIGIBLE,
        LIKELY,
        UNKNOWN,
        VERDICTS,
        EligibilityConstraint,
        MatchCandidate,
        MatchResult,
        NumericBand,
        Program,
        UserContext,
        unique_in_order,
    )

logger = logging.getLogger(__name__)

SATISFIED = "satisfied"
FAILED = "failed"
MISSING = "missing"

ReasonFn = Callable[[UserContext, Sequence[Program]], Any]


# ---------------------------------------------------------------------------
# Rule evaluation
# ---------------------------------------------------------------------------


def evaluate_constraint(constraint: EligibilityConstraint, context: UserContext) -> str:
    """Classify one constraint as satisfied, failed or missing for ``context``."""
    entry = context.entry(constraint.attribute)
    if entry is None:
        excluded = context.excluded_values(constraint.attribute)
        if constraint.kind == "one_of" and constraint.values:
            if all(value in excluded for value in constraint.values):
                return FAILED
        elif constraint.kind == "range" and excluded:
            if NumericBand(constraint.minimum, constraint.maximum).to_dict() in excluded:
                return FAILED
        return MISSING

    value = entry.value
    if constraint.kind == "range":
        band = NumericBand.coerce(value)
        if band is None:
            return MISSING
        if band.inside(constraint.minimum, constraint.maximum):
            return SATISFIED
        if band.disjoint_from(constraint.minimum, constraint.maximum):
            return FAILED
        # band straddles a bound; still unresolved
        return MISSING
    if constraint.kind == "one_of":
        return SATISFIED if value in constraint.values else FAILED
    flag = coerce_flag(value)
    if flag is None:
        return MISSING
    return SATISFIED if flag == bool(constraint.required) else FAILED


def evaluate_region(program: Program, context: UserContext) -> Optional[str]:
    if not program.is_regional:
        return None
    region = context.value_of("region")
    if region is None:
        excluded = context.excluded_values("region")
        if program.regions and all(name in excluded for name in program.regions):
            return FAILED
        return MISSING
    return SATISFIED if region in program.regions else FAILED


def evaluate_program(program: Program, context: UserContext) -> MatchCandidate:
    """
    Rule-based verdict for one program.

    eligible iff every constraint is satisfied by present values; unknown when any
    is missing; ineligible only when a present value contradicts a constraint.
    """
    outcomes: Dict[str, str] = {}
    region_outcome = evaluate_region(program, context)
    if region_outcome is not None:
        outcomes["region"] = region_outcome
    for constraint in program.constraints:
        outcomes[constraint.name] = evaluate_constraint(constraint, context)

    satisfied = [name for name, outcome in outcomes.items() if outcome == SATISFIED]
    missing = [name for name, outcome in outcomes.items() if outcome == MISSING]
    failed = any(outcome == FAILED for outcome in outcomes.values())

    if failed:
        verdict, relevance = INELIGIBLE, 0
    else:
        verdict = UNKNOWN if missing else ELIGIBLE
        relevance = round(100 * len(satisfied) / len(outcomes)) if outcomes else 100
    return MatchCandidate(
        program_id=program.program_id,
        relevance=int(relevance),
        satisfied=satisfied,
        missing=missing,
        verdict=verdict,
    )


def prefilter(context: UserContext, catalog: ProgramCatalog) -> List[Program]:
    """
    National programs always pass; regional programs pass when the region matches
    or the region is still unknown.
    """
    region = context.value_of("region")
    return [
        program
        for program in catalog
        if not program.is_regional or region is None or region in program.regions
    ]


def rank_candidates(candidates: Sequence[MatchCandidate], catalog: ProgramCatalog) -> List[MatchCandidate]:
    """Descending relevance, then fewer missing constraints, then catalog order."""
    return sorted(
        candidates,
        key=lambda candidate: (
            -candidate.relevance,
            len(candidate.missing),
            catalog.order_of(candidate.program_id),
        ),
    )


# ---------------------------------------------------------------------------
# Matcher
# ---------------------------------------------------------------------------


class EligibilityMatcher:
    """
    Turns context + catalog into a ranked, validated MatchResult.
    """

    def __init__(self, confidence_threshold: int = CONFIDENCE_THRESHOLD) -> None:
        self.confidence_threshold = confidence_threshold

    def match(
        self,
        context: UserContext,
        catalog: ProgramCatalog,
        reason: Optional[ReasonFn] = None,
    ) -> MatchResult:
        programs = prefilter(context, catalog)
        rule_candidates = {program.program_id: evaluate_program(program, context) for program in programs}

        degraded = reason is None
        candidates: Optional[List[MatchCandidate]] = None
        if reason is not None and programs:
            try:
                raw = reason(context, programs)
            except OracleUnavailable as exc:
                logger.warning("[Matcher] Oracle unavailable (%s); using rule-based matching.", exc)
                degraded = True
            else:
                candidates = self.validate_oracle_output(raw, programs, context)
                if programs and not candidates:
                    logger.warning("[Matcher] Oracle returned no usable candidates; using rule-based matching.")
                    degraded = True
                    candidates = None

        if candidates is None:
            candidates = list(rule_candidates.values())
        else:
            seen = {candidate.program_id for candidate in candidates}
            candidates.extend(
                candidate for program_id, candidate in rule_candidates.items() if program_id not in seen
            )

        return self._summarize(rank_candidates(candidates, catalog), degraded)

    def validate_oracle_output(
        self,
        raw: Any,
        programs: Sequence[Program],
        context: UserContext,
    ) -> List[MatchCandidate]:
        """
        Keep only well-formed candidates that reference pre-filtered programs.

        Scores are clamped to [0, 100] and a missing verdict becomes ``unknown``.
        """
        if isinstance(raw, dict):
            raw = raw.get("candidates")
        if not isinstance(raw, list):
            logger.warning("[Matcher] Oracle candidates were not a list: %r", type(raw).__name__)
            return []

        allowed = {program.program_id: program for program in programs}
        region_unknown = context.value_of("region") is None
        validated: List[MatchCandidate] = []
        seen = set()
        for item in raw:
            if not isinstance(item, dict):
                continue
            program_id = str(item.get("program_id") or "")
            if program_id not in allowed:
                logger.info("[Matcher] Dropping candidate for unknown program %r", program_id)
                continue
            if program_id in seen:
                continue
            seen.add(program_id)

            verdict = str(item.get("verdict") or "").strip().lower()
            if verdict not in VERDICTS:
                verdict = UNKNOWN
            satisfied = _names(item.get("satisfied"))
            missing = _names(item.get("missing"))
            if allowed[program_id].is_regional and region_unknown:
                satisfied = [name for name in satisfied if name != "region"]
                if "region" not in missing:
                    missing.append("region")
            if verdict == ELIGIBLE and missing:
                verdict = LIKELY
            validated.append(
                MatchCandidate(
                    program_id=program_id,
                    relevance=_clamp_score(item.get("relevance")),
                    satisfied=satisfied,
                    missing=missing,
                    verdict=verdict,
                )
            )
        return validated

    def _summarize(self, ranked: List[MatchCandidate], degraded: bool) -> MatchResult:
        top = ranked[0] if ranked else None
        confidence = top.relevance if top else 0
        uncertain = (
            top is None
            or confidence < self.confidence_threshold
            or top.verdict in (UNKNOWN, INELIGIBLE)
            or degraded
        )
        return MatchResult(
            candidates=ranked,
            overall_confidence=confidence,
            degraded=degraded,
            uncertain=uncertain,
        )


def _clamp_score(raw: Any) -> int:
    try:
        score = int(round(float(raw)))
    except (TypeError, ValueError, OverflowError):
        return 0
    return max(0, min(100, score))


def _names(raw: Any) -> List[str]:
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, (list, tuple)):
        return []
    return unique_in_order([str(name) for name in raw if isinstance(name, str) and name])
