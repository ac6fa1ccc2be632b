"""
Offline action queue: buffers utterances and answers captured without connectivity
and replays them against the controller in sequence order once a link is back.
"""

from __future__ import annotations

import logging
from contextlib import ExitStack
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional, Set

try:
    from src.scheme_finder.errors import (
        InvalidAnswer,
        QueueDrained,
        SchemeFinderError,
        SequenceGap,
        SessionExpired,
    )
except ImportError:
    from .errors import InvalidAnswer, QueueDrained, SchemeFinderError, SequenceGap, SessionExpired

logger = logging.getLogger(__name__)

UTTERANCE = "utterance"
ANSWER = "answer"
ACTION_KINDS = (UTTERANCE, ANSWER)

APPLIED = "applied"
SEQUENCE_GAP = "sequence_gap"
SESSION_EXPIRED = "session_expired"
INVALID_ANSWER = "invalid_answer"
FAILED = "failed"


@dataclass(frozen=True)
class OfflineAction:
    """
    One buffered client action.

    ``payload`` holds ``text``/``language`` for utterances and
    ``question_id``/``answer`` for answers. A ``question_id`` of None answers
    whatever question is pending when the action is replayed.
    """

    seq: int
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)
    session_id: Optional[str] = None

    @classmethod
    def utterance(cls, seq: int, text: str, language: str = "en", session_id: Optional[str] = None) -> "OfflineAction":
        return cls(seq=seq, kind=UTTERANCE, payload={"text": text, "language": language}, session_id=session_id)

    @classmethod
    def answer(
        cls,
        seq: int,
        answer: Any,
        question_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> "OfflineAction":
        return cls(seq=seq, kind=ANSWER, payload={"question_id": question_id, "answer": answer}, session_id=session_id)


@dataclass
class ActionResult:
    seq: int
    outcome: str
    response: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    session_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome == APPLIED


class OfflineActionQueue:
    """
    Replays each action exactly once, strictly by ascending ``seq``.

    Missing sequence numbers (counting from ``start_seq``) are reported as
    ``sequence_gap`` results and the drain carries on. Actions without a session
    id bind to ``session_id`` or, failing that, to the session the first
    replayed utterance creates.
    """

    def __init__(self, controller: Any, session_id: Optional[str] = None, start_seq: int = 1) -> None:
        self.controller = controller
        self.session_id = session_id
        self.start_seq = start_seq
        self._actions: Dict[int, OfflineAction] = {}
        self._started = False
        self._drained = False

    def __len__(self) -> int:
        return len(self._actions)

    @property
    def drained(self) -> bool:
        return self._drained

    def enqueue(self, action: OfflineAction) -> None:
        if self._started:
            raise QueueDrained("Cannot enqueue into a queue that is being or has been drained.")
        if action.kind not in ACTION_KINDS:
            raise ValueError(f"Unknown offline action kind: {action.kind!r}")
        if isinstance(action.seq, bool) or not isinstance(action.seq, int) or action.seq < self.start_seq:
            raise ValueError(f"Sequence number must be an integer >= {self.start_seq}, got {action.seq!r}")
        if action.seq in self._actions:
            raise ValueError(f"Duplicate offline sequence number: {action.seq}")
        self._actions[action.seq] = action

    def drain(self) -> Iterator[ActionResult]:
        """
        Return a lazy iterator of results, one per action plus one per gap.

        Session leases are held by the consuming thread until the iterator is exhausted
        or closed, so consume it from a single thread.

        Raises:
            QueueDrained: the queue was already drained (or a drain is in progress).
        """
        if self._started:
            raise QueueDrained("Offline queue has already been drained.")
        self._started = True
        return self._replay()

    def _replay(self) -> Iterator[ActionResult]:
        # each session's lease is taken on its first replayed action and held until the drain ends
        with ExitStack() as held:
            leased: Set[str] = set()
            expected = self.start_seq
            for seq in sorted(self._actions):
                while expected < seq:
                    gap = SequenceGap(expected)
                    logger.warning("[OfflineQueue] %s", gap)
                    yield ActionResult(seq=expected, outcome=SEQUENCE_GAP, error=str(gap), session_id=self.session_id)
                    expected += 1
                yield self._replay_one(self._actions[seq], held, leased)
                expected = seq + 1
            self._actions.clear()
            self._drained = True
            logger.info("[OfflineQueue] Drain complete.")

    def _hold(self, held: ExitStack, leased: Set[str], session_id: Optional[str]) -> None:
        if session_id is None or session_id in leased:
            return
        held.enter_context(self.controller.leases.hold(session_id))
        leased.add(session_id)

    def _replay_one(self, action: OfflineAction, held: ExitStack, leased: Set[str]) -> ActionResult:
        session_id = action.session_id or self.session_id
        try:
            self._hold(held, leased, session_id)
            if action.kind == UTTERANCE:
                response = self._replay_utterance(action, session_id)
            else:
                response = self._replay_answer(action, session_id)
        except SessionExpired as exc:
            logger.info("[OfflineQueue] Action #%d skipped: %s", action.seq, exc)
            return ActionResult(seq=action.seq, outcome=SESSION_EXPIRED, error=str(exc), session_id=session_id)
        except InvalidAnswer as exc:
            logger.info("[OfflineQueue] Action #%d rejected: %s", action.seq, exc)
            return ActionResult(seq=action.seq, outcome=INVALID_ANSWER, error=str(exc), session_id=session_id)
        except SchemeFinderError as exc:
            logger.warning("[OfflineQueue] Action #%d failed: %s", action.seq, exc)
            return ActionResult(seq=action.seq, outcome=FAILED, error=str(exc), session_id=session_id)

        self._hold(held, leased, response["session_id"])
        if self.session_id is None:
            self.session_id = response["session_id"]
        return ActionResult(seq=action.seq, outcome=APPLIED, response=response, session_id=response["session_id"])

    def _replay_utterance(self, action: OfflineAction, session_id: Optional[str]) -> Dict[str, Any]:
        text = action.payload.get("text", "")
        language = action.payload.get("language") or "en"
        return self.controller.submit_utterance(session_id, text, language)

    def _replay_answer(self, action: OfflineAction, session_id: Optional[str]) -> Dict[str, Any]:
        if session_id is None:
            raise SessionExpired(None)
        question_id = action.payload.get("question_id")
        if question_id is None:
            question_id = self._pending_question_id(session_id)
        return self.controller.submit_answer(session_id, question_id, action.payload.get("answer"))

    def _pending_question_id(self, session_id: str) -> str:
        snapshot = self.controller.get_session(session_id)
        if snapshot is None:
            raise SessionExpired(session_id)
        pending = snapshot.get("pending_question")
        if not pending:
            raise InvalidAnswer("<pending>", "no question is pending for this session")
        return pending["question_id"]
