"""
Clarification selector: picks the single most useful yes/no question, or decides to stop asking.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

try:
    from src.scheme_finder.catalog import ProgramCatalog
    from src.scheme_finder.models import (
        INELIGIBLE,
        INFERRED,
        LIKELY,
        MAX_ROUNDS,
        UNKNOWN,
        ClarificationQuestion,
        MatchCandidate,
        NumericBand,
        UserContext,
        serialize_value,
    )
    from src.scheme_finder.oracle import template_question
except ImportError:
    from .catalog import ProgramCatalog
    from .models import (
        INELIGIBLE,
        INFERRED,
        LIKELY,
        MAX_ROUNDS,
        UNKNOWN,
        ClarificationQuestion,
        MatchCandidate,
        NumericBand,
        UserContext,
        serialize_value,
    )
    from .oracle import template_question

PhraseFn = Callable[[str, str, Any], str]


def question_id(attribute: str, proposed_value: Any) -> str:
    if isinstance(proposed_value, NumericBand):
        low = "" if proposed_value.low is None else _token(proposed_value.low)
        high = "" if proposed_value.high is None else _token(proposed_value.high)
        token = f"{low}-{high}"
    elif isinstance(proposed_value, bool):
        token = "yes" if proposed_value else "no"
    else:
        token = str(proposed_value)
    return f"{attribute}:{token}"


def _token(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


@dataclass
class _Gap:
    attribute: str
    proposed_value: Any
    flip_weight: int = 0
    frequency: int = 0

    def sort_key(self):
        # equal flip priority goes to the attribute constrained by more programs
        return (-self.flip_weight, -self.frequency, self.attribute)


class ClarificationSelector:
    """
    Ranks unresolved attribute gaps by how many candidate verdicts they would settle.
    """

    def __init__(self, max_rounds: int = MAX_ROUNDS) -> None:
        self.max_rounds = max_rounds

    def next_question(
        self,
        context: UserContext,
        candidates: Sequence[MatchCandidate],
        asked_ids: List[str],
        round_number: int,
        catalog: ProgramCatalog,
        phrase: Optional[PhraseFn] = None,
        language: str = "en",
    ) -> Optional[ClarificationQuestion]:
        """
        Return the next question or None when asking more would not help.

        The chosen id is appended to ``asked_ids`` as soon as it is generated.
        """
        if round_number >= self.max_rounds:
            return None

        viable = [candidate for candidate in candidates if candidate.verdict != INELIGIBLE]
        frequency = catalog.attribute_frequency()
        if viable:
            if all(not candidate.missing for candidate in viable):
                return None
            gap = self._best_candidate_gap(context, viable, asked_ids, catalog, frequency)
        else:
            gap = self._catalog_wide_gap(context, asked_ids, catalog, frequency)
        if gap is None:
            return None

        qid = question_id(gap.attribute, gap.proposed_value)
        phrase = phrase or template_question
        asked_ids.append(qid)
        return ClarificationQuestion(
            question_id=qid,
            attribute=gap.attribute,
            proposed_value=gap.proposed_value,
            text=phrase(gap.attribute, language, gap.proposed_value),
            priority=float(gap.flip_weight),
            round=round_number + 1,
        )

    def _best_candidate_gap(
        self,
        context: UserContext,
        viable: Sequence[MatchCandidate],
        asked_ids: Sequence[str],
        catalog: ProgramCatalog,
        frequency: Dict[str, int],
    ) -> Optional[_Gap]:
        asked = set(asked_ids)
        gaps: Dict[str, Optional[_Gap]] = {}
        for candidate in viable:
            for attribute in candidate.missing:
                if attribute in gaps and gaps[attribute] is None:
                    continue
                gap = gaps.get(attribute)
                if gap is None:
                    # viable is ranked, so the first candidate to raise a gap proposes its value
                    proposed = self._proposal_from_candidates(context, attribute, viable, asked, catalog)
                    if proposed is None:
                        gaps[attribute] = None  # every proposal for this attribute was already asked
                        continue
                    gap = gaps[attribute] = _Gap(
                        attribute=attribute,
                        proposed_value=proposed,
                        frequency=frequency.get(attribute, 0),
                    )
                if candidate.verdict in (UNKNOWN, LIKELY) and set(candidate.missing) == {attribute}:
                    gap.flip_weight += candidate.relevance

        ranked = sorted((gap for gap in gaps.values() if gap is not None), key=_Gap.sort_key)
        return ranked[0] if ranked else None

    def _proposal_from_candidates(
        self,
        context: UserContext,
        attribute: str,
        viable: Sequence[MatchCandidate],
        asked: set,
        catalog: ProgramCatalog,
    ) -> Any:
        for candidate in viable:
            if attribute not in candidate.missing:
                continue
            program = catalog.get(candidate.program_id)
            if program is None:
                continue
            for proposed in self._program_proposals(context, attribute, program):
                if question_id(attribute, proposed) not in asked:
                    return proposed
        return None

    @staticmethod
    def _program_proposals(context: UserContext, attribute: str, program) -> List[Any]:
        excluded = context.excluded_values(attribute)
        if attribute == "region":
            return [region for region in program.regions if region not in excluded]
        constraint = program.constraint_for(attribute)
        if constraint is None:
            return []
        if constraint.kind == "range":
            band = NumericBand(constraint.minimum, constraint.maximum)
            return [] if band.to_dict() in excluded else [band]
        if constraint.kind == "one_of":
            return [value for value in constraint.values if value not in excluded]
        return [bool(constraint.required)]

    def _catalog_wide_gap(
        self,
        context: UserContext,
        asked_ids: Sequence[str],
        catalog: ProgramCatalog,
        frequency: Dict[str, int],
    ) -> Optional[_Gap]:
        """
        Used when no viable candidate exists: ask about the most broadly used attribute.

        Unknown attributes are tried first, then inferred ones (asking confirms them).
        """
        asked = set(asked_ids)
        ordered = sorted(frequency.items(), key=lambda item: (-item[1], item[0]))
        unknown = [name for name, _ in ordered if not context.is_set(name)]
        unconfirmed = [
            name
            for name, _ in ordered
            if context.is_set(name) and context.entry(name).provenance == INFERRED
        ]
        for attribute in unknown + unconfirmed:
            proposed = catalog.most_common_value(attribute)
            if proposed is None:
                continue
            if isinstance(proposed, tuple):
                proposed = NumericBand(*proposed)
            if serialize_value(proposed) in context.excluded_values(attribute):
                continue
            if question_id(attribute, proposed) in asked:
                continue
            return _Gap(attribute=attribute, proposed_value=proposed, frequency=frequency.get(attribute, 0))
        return None
