"""
Dataclasses shared across the scheme_finder package.

Every record that ends up inside a persisted session knows how to turn itself
into plain JSON-compatible dicts (``to_dict``) and back (``from_dict``).
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

# ---------------------------------------------------------------------------
# Vocabulary
# ---------------------------------------------------------------------------

ATTRIBUTES: Tuple[str, ...] = (
    "region",
    "occupation",
    "age",
    "income",
    "social_category",
    "gender",
    "disability",
)
BAND_ATTRIBUTES = {"age", "income"}
FLAG_ATTRIBUTES = {"disability"}
EXTRAS_KEY = "extras"

USER_STATED = "user-stated"
CLARIFICATION_ANSWER = "clarification-answer"
INFERRED = "inferred"
PROVENANCE_RANK: Dict[str, int] = {
    USER_STATED: 3,
    CLARIFICATION_ANSWER: 2,
    INFERRED: 1,
}

ELIGIBLE = "eligible"
LIKELY = "likely"
INELIGIBLE = "ineligible"
UNKNOWN = "unknown"
VERDICTS = (ELIGIBLE, LIKELY, INELIGIBLE, UNKNOWN)

NATIONAL = "national"
REGIONAL = "regional"

AWAITING_INPUT = "AWAITING_INPUT"
EXTRACTING = "EXTRACTING"
MATCHING = "MATCHING"
CLARIFYING = "CLARIFYING"
CONCLUDED = "CONCLUDED"

MAX_ROUNDS = 5
CONFIDENCE_THRESHOLD = 70


def is_known_attribute(name: str) -> bool:
    return name in ATTRIBUTES


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NumericBand:
    """
    Closed numeric interval; ``None`` on either side means the band is open there.
    """

    low: Optional[float] = None
    high: Optional[float] = None

    @classmethod
    def exact(cls, value: float) -> "NumericBand":
        return cls(value, value)

    @classmethod
    def coerce(cls, raw: Any) -> Optional["NumericBand"]:
        """
        Accept a number, a ``[low, high]`` pair, a ``{"low", "high"}`` dict or a band.

        Returns None when the input cannot be read as a band.
        """
        if isinstance(raw, NumericBand):
            return raw
        if isinstance(raw, bool):
            return None
        if isinstance(raw, (int, float)):
            return cls.exact(raw)
        if isinstance(raw, dict):
            low, high = raw.get("low"), raw.get("high")
        elif isinstance(raw, (list, tuple)) and len(raw) == 2:
            low, high = raw
        elif isinstance(raw, str):
            text = raw.strip().replace(",", "")
            # a leading "-" is an open lower bound, never a negative number
            if not text.startswith("-"):
                try:
                    return cls.exact(_number(text))
                except ValueError:
                    pass
            if "-" not in text:
                return None
            low, _, high = text.partition("-")
            low, high = low.strip() or None, high.strip() or None
        else:
            return None
        try:
            low = None if low is None else _number(low)
            high = None if high is None else _number(high)
        except (TypeError, ValueError):
            return None
        if low is None and high is None:
            return None
        if low is not None and high is not None and low > high:
            low, high = high, low
        return cls(low, high)

    @property
    def is_exact(self) -> bool:
        return self.low is not None and self.low == self.high

    def intersect(self, other: "NumericBand") -> Optional["NumericBand"]:
        """Return the overlap of two bands, or None when they are disjoint."""
        low = _max_opt(self.low, other.low)
        high = _min_opt(self.high, other.high)
        if low is not None and high is not None and low > high:
            return None
        return NumericBand(low, high)

    def inside(self, minimum: Optional[float], maximum: Optional[float]) -> bool:
        if minimum is not None and (self.low is None or self.low < minimum):
            return False
        if maximum is not None and (self.high is None or self.high > maximum):
            return False
        return True

    def disjoint_from(self, minimum: Optional[float], maximum: Optional[float]) -> bool:
        if minimum is not None and self.high is not None and self.high < minimum:
            return True
        if maximum is not None and self.low is not None and self.low > maximum:
            return True
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {"low": self.low, "high": self.high}

    def describe(self) -> str:
        if self.is_exact:
            return _fmt(self.low)
        if self.low is None:
            return f"<= {_fmt(self.high)}"
        if self.high is None:
            return f">= {_fmt(self.low)}"
        return f"{_fmt(self.low)}-{_fmt(self.high)}"


def _number(raw: Any) -> float:
    value = float(raw)
    return int(value) if value.is_integer() else value


def _fmt(value: Optional[float]) -> str:
    if value is None:
        return "?"
    return str(int(value)) if float(value).is_integer() else str(value)


def _max_opt(a: Optional[float], b: Optional[float]) -> Optional[float]:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


def _min_opt(a: Optional[float], b: Optional[float]) -> Optional[float]:
    if a is None:
        return b
    if b is None:
        return a
    return min(a, b)


def serialize_value(value: Any) -> Any:
    if isinstance(value, NumericBand):
        return value.to_dict()
    return value


def deserialize_value(attribute: str, raw: Any) -> Any:
    if attribute in BAND_ATTRIBUTES:
        return NumericBand.coerce(raw)
    if isinstance(raw, dict) and set(raw) == {"low", "high"}:
        return NumericBand.coerce(raw)
    return raw


@dataclass
class AttributeValue:
    """
    One known fact about the user plus where it came from.
    """

    value: Any
    provenance: str
    seq: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": serialize_value(self.value),
            "provenance": self.provenance,
            "seq": self.seq,
        }

    @classmethod
    def from_dict(cls, attribute: str, data: Dict[str, Any]) -> "AttributeValue":
        return cls(
            value=deserialize_value(attribute, data.get("value")),
            provenance=data.get("provenance", INFERRED),
            seq=int(data.get("seq", 0)),
        )


@dataclass
class UserContext:
    """
    Structured facts known about one user in one session.
    """

    attributes: Dict[str, AttributeValue] = field(default_factory=dict)
    extras: Dict[str, AttributeValue] = field(default_factory=dict)
    excluded: Dict[str, List[Any]] = field(default_factory=dict)
    discarded_values: List[Dict[str, Any]] = field(default_factory=list)

    def entry(self, name: str) -> Optional[AttributeValue]:
        if name in ATTRIBUTES:
            return self.attributes.get(name)
        return self.extras.get(name)

    def value_of(self, name: str) -> Any:
        entry = self.entry(name)
        return entry.value if entry else None

    def is_set(self, name: str) -> bool:
        return self.entry(name) is not None

    def excluded_values(self, name: str) -> List[Any]:
        return list(self.excluded.get(name, []))

    def copy(self) -> "UserContext":
        return copy.deepcopy(self)

    def as_facts(self) -> Dict[str, Any]:
        """Flat ``name -> value`` view used in oracle payloads and responses."""
        facts: Dict[str, Any] = {
            name: serialize_value(self.attributes[name].value)
            for name in ATTRIBUTES
            if name in self.attributes
        }
        if self.extras:
            facts[EXTRAS_KEY] = {
                name: serialize_value(entry.value) for name, entry in sorted(self.extras.items())
            }
        return facts

    def to_dict(self, include_audit: bool = True) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "attributes": {name: entry.to_dict() for name, entry in self.attributes.items()},
            "extras": {name: entry.to_dict() for name, entry in self.extras.items()},
            "excluded": {name: list(values) for name, values in self.excluded.items()},
        }
        if include_audit:
            payload["discarded_values"] = copy.deepcopy(self.discarded_values)
        return payload

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "UserContext":
        data = data or {}
        return cls(
            attributes={
                name: AttributeValue.from_dict(name, raw)
                for name, raw in (data.get("attributes") or {}).items()
                if name in ATTRIBUTES
            },
            extras={
                name: AttributeValue.from_dict(name, raw)
                for name, raw in (data.get("extras") or {}).items()
            },
            excluded={name: list(values) for name, values in (data.get("excluded") or {}).items()},
            discarded_values=list(data.get("discarded_values") or []),
        )


@dataclass
class PartialContext:
    """
    Delta extracted from a single utterance.

    ``stated`` holds values the user said outright; ``inferred`` holds values the
    extractor guessed from indirect cues.
    """

    stated: Dict[str, Any] = field(default_factory=dict)
    inferred: Dict[str, Any] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not self.stated and not self.inferred


@dataclass
class ConversationTurn:
    role: str  # "user" or "assistant"
    text: str
    seq: int

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role, "text": self.text, "seq": self.seq}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationTurn":
        return cls(role=data["role"], text=data.get("text", ""), seq=int(data.get("seq", 0)))


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EligibilityConstraint:
    """
    A single structured condition in a program's eligibility predicate.

    kind is one of ``range`` (minimum/maximum), ``one_of`` (values) or ``flag``
    (required boolean).
    """

    attribute: str
    kind: str
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    values: Tuple[str, ...] = ()
    required: Optional[bool] = None

    @property
    def name(self) -> str:
        return self.attribute

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"attribute": self.attribute, "kind": self.kind}
        if self.kind == "range":
            payload["minimum"] = self.minimum
            payload["maximum"] = self.maximum
        elif self.kind == "one_of":
            payload["values"] = list(self.values)
        else:
            payload["required"] = self.required
        return payload


@dataclass(frozen=True)
class Program:
    """
    Read-only catalog entry for one benefit program.
    """

    program_id: str
    name: Dict[str, str]
    scope: str = NATIONAL
    regions: Tuple[str, ...] = ()
    constraints: Tuple[EligibilityConstraint, ...] = ()
    description: Dict[str, str] = field(default_factory=dict)
    benefits: str = ""
    process: str = ""

    @property
    def is_regional(self) -> bool:
        return self.scope == REGIONAL

    def display_name(self, language: str = "en") -> str:
        return self.name.get(language) or self.name.get("en") or self.program_id

    def constraint_for(self, attribute: str) -> Optional[EligibilityConstraint]:
        for constraint in self.constraints:
            if constraint.attribute == attribute:
                return constraint
        return None

    def to_oracle_dict(self, language: str = "en") -> Dict[str, Any]:
        return {
            "program_id": self.program_id,
            "name": self.display_name(language),
            "description": self.description.get(language) or self.description.get("en", ""),
            "scope": self.scope,
            "regions": list(self.regions),
            "constraints": [constraint.to_dict() for constraint in self.constraints],
            "benefits": self.benefits,
        }


# ---------------------------------------------------------------------------
# Matching + clarification
# ---------------------------------------------------------------------------


@dataclass
class MatchCandidate:
    program_id: str
    relevance: int
    satisfied: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    verdict: str = UNKNOWN

    @property
    def score_is_lower_bound(self) -> bool:
        return self.verdict == UNKNOWN

    def display_score(self) -> str:
        if self.score_is_lower_bound:
            return f">= {self.relevance}"
        return str(self.relevance)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "program_id": self.program_id,
            "relevance": self.relevance,
            "score_is_lower_bound": self.score_is_lower_bound,
            "satisfied": list(self.satisfied),
            "missing": list(self.missing),
            "verdict": self.verdict,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MatchCandidate":
        return cls(
            program_id=data["program_id"],
            relevance=int(data.get("relevance", 0)),
            satisfied=list(data.get("satisfied") or []),
            missing=list(data.get("missing") or []),
            verdict=data.get("verdict", UNKNOWN),
        )


@dataclass
class MatchResult:
    candidates: List[MatchCandidate] = field(default_factory=list)
    overall_confidence: int = 0
    degraded: bool = False
    uncertain: bool = True

    @property
    def top(self) -> Optional[MatchCandidate]:
        return self.candidates[0] if self.candidates else None

    @property
    def viable_candidates(self) -> List[MatchCandidate]:
        return [candidate for candidate in self.candidates if candidate.verdict != INELIGIBLE]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "candidates": [candidate.to_dict() for candidate in self.candidates],
            "overall_confidence": self.overall_confidence,
            "degraded": self.degraded,
            "uncertain": self.uncertain,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "MatchResult":
        data = data or {}
        return cls(
            candidates=[MatchCandidate.from_dict(item) for item in data.get("candidates") or []],
            overall_confidence=int(data.get("overall_confidence", 0)),
            degraded=bool(data.get("degraded", False)),
            uncertain=bool(data.get("uncertain", True)),
        )


@dataclass
class ClarificationQuestion:
    question_id: str
    attribute: str
    proposed_value: Any
    text: str
    priority: float = 0.0
    round: int = 0

    def to_dict(self) -> Dict[str, Any]:
        # priority is derived per selection and never persisted
        return {
            "question_id": self.question_id,
            "attribute": self.attribute,
            "proposed_value": serialize_value(self.proposed_value),
            "text": self.text,
            "round": self.round,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["ClarificationQuestion"]:
        if not data:
            return None
        attribute = data["attribute"]
        return cls(
            question_id=data["question_id"],
            attribute=attribute,
            proposed_value=deserialize_value(attribute, data.get("proposed_value")),
            text=data.get("text", ""),
            round=int(data.get("round", 0)),
        )


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@dataclass
class Session:
    """
    Everything the controller knows about one conversation.
    """

    session_id: str
    language: str = "en"
    context: UserContext = field(default_factory=UserContext)
    turns: List[ConversationTurn] = field(default_factory=list)
    asked_question_ids: List[str] = field(default_factory=list)
    round: int = 0
    latest_result: Optional[MatchResult] = None
    state: str = AWAITING_INPUT
    pending_question: Optional[ClarificationQuestion] = None
    answered: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    clock: int = 0

    def tick(self) -> int:
        """Advance the logical clock and return the new sequence number."""
        self.clock += 1
        return self.clock

    def append_turn(self, role: str, text: str, max_turns: int) -> None:
        self.turns.append(ConversationTurn(role=role, text=text, seq=self.tick()))
        if len(self.turns) > max_turns:
            self.turns = self.turns[-max_turns:]

    def copy(self) -> "Session":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "language": self.language,
            "context": self.context.to_dict(),
            "turns": [turn.to_dict() for turn in self.turns],
            "asked_question_ids": list(self.asked_question_ids),
            "round": self.round,
            "latest_result": self.latest_result.to_dict() if self.latest_result else None,
            "state": self.state,
            "pending_question": self.pending_question.to_dict() if self.pending_question else None,
            "answered": copy.deepcopy(self.answered),
            "clock": self.clock,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        latest = data.get("latest_result")
        return cls(
            session_id=data["session_id"],
            language=data.get("language", "en"),
            context=UserContext.from_dict(data.get("context")),
            turns=[ConversationTurn.from_dict(item) for item in data.get("turns") or []],
            asked_question_ids=list(data.get("asked_question_ids") or []),
            round=int(data.get("round", 0)),
            latest_result=MatchResult.from_dict(latest) if latest else None,
            state=data.get("state", AWAITING_INPUT),
            pending_question=ClarificationQuestion.from_dict(data.get("pending_question")),
            answered=copy.deepcopy(data.get("answered") or {}),
            clock=int(data.get("clock", 0)),
        )


def unique_in_order(items: Sequence[str]) -> List[str]:
    seen = set()
    ordered: List[str] = []
    for item in items:
        if item not in seen:
            seen.add(item)
            ordered.append(item)
    return ordered
