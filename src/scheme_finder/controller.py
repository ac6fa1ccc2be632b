"""
Conversation controller: the per-session state machine behind the transport boundary.

AWAITING_INPUT -> EXTRACTING -> MATCHING -> {CLARIFYING, CONCLUDED}

Every turn works on a copy of the stored session and ends with exactly one
persistence write, so a failed turn leaves the stored session untouched.
"""

from __future__ import annotations

import copy
import json
import logging
import secrets
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, Dict, List, Optional

try:
    from src.scheme_finder.catalog import ProgramCatalog, load_catalog
    from src.scheme_finder.clarification import ClarificationSelector
    from src.scheme_finder.config import Settings
    from src.scheme_finder.context_store import ContextStore, SessionLeases, SqliteKeyValueStore
    from src.scheme_finder.eligibility import EligibilityMatcher
    from src.scheme_finder.errors import InvalidAnswer, OracleUnavailable, PersistenceUnavailable, SessionExpired
    from src.scheme_finder.extractor import ContextExtractor
    from src.scheme_finder.merger import coerce_flag, merge, merge_exclusion, normalize_attribute, normalize_extra
    from src.scheme_finder.models import (
        AWAITING_INPUT,
        CLARIFICATION_ANSWER,
        CLARIFYING,
        CONCLUDED,
        EXTRACTING,
        INFERRED,
        MATCHING,
        MAX_ROUNDS,
        USER_STATED,
        ClarificationQuestion,
        MatchResult,
        NumericBand,
        Session,
        UserContext,
        is_known_attribute,
    )
    from src.scheme_finder.oracle import Oracle, RuleBasedOracle, build_oracles
except ImportError:
    from .catalog import ProgramCatalog, load_catalog
    from .clarification import ClarificationSelector
    from .config import Settings
    from .context_store import ContextStore, SessionLeases, SqliteKeyValueStore
    from .eligibility import EligibilityMatcher
    from .errors import InvalidAnswer, OracleUnavailable, PersistenceUnavailable, SessionExpired
    from .extractor import ContextExtractor
    from .merger import coerce_flag, merge, merge_exclusion, normalize_attribute, normalize_extra
    from .models import (
        AWAITING_INPUT,
        CLARIFICATION_ANSWER,
        CLARIFYING,
        CONCLUDED,
        EXTRACTING,
        INFERRED,
        MATCHING,
        MAX_ROUNDS,
        USER_STATED,
        ClarificationQuestion,
        MatchResult,
        NumericBand,
        Session,
        UserContext,
        is_known_attribute,
    )
    from .oracle import Oracle, RuleBasedOracle, build_oracles

logger = logging.getLogger(__name__)

MESSAGES: Dict[str, Dict[str, str]] = {
    "en": {
        "results": "Here are the schemes that best match what you told me:",
        "uncertain": "I'm not fully sure about these yet; please confirm eligibility with the official office.",
        "degraded": "(Matched with offline rules because the assistant service was unavailable.)",
        "no_matches": "I couldn't find any schemes that match what you've told me so far.",
    },
    "hi": {
        "results": "आपकी जानकारी के आधार पर ये योजनाएँ सबसे उपयुक्त हैं:",
        "uncertain": "मैं अभी पूरी तरह निश्चित नहीं हूँ; कृपया पात्रता की पुष्टि संबंधित कार्यालय से करें।",
        "degraded": "(सहायक सेवा उपलब्ध न होने के कारण ऑफ़लाइन नियमों से मिलान किया गया।)",
        "no_matches": "आपकी दी गई जानकारी से मेल खाने वाली कोई योजना नहीं मिली।",
    },
}


def new_session_id() -> str:
    return secrets.token_urlsafe(32)


def normalize_answer_text(answer: Any) -> str:
    return str(answer).strip().lower()


class ConversationController:
    """
    Ties store, extractor, merger, matcher and selector together for each request.
    """

    def __init__(
        self,
        catalog: ProgramCatalog,
        store: Optional[ContextStore] = None,
        live_oracle: Optional[Oracle] = None,
        fallback_oracle: Optional[Oracle] = None,
        settings: Optional[Settings] = None,
        leases: Optional[SessionLeases] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.catalog = catalog
        self.store = store if store is not None else ContextStore(ttl_seconds=self.settings.session_ttl)
        self.live_oracle = live_oracle
        self.fallback_oracle = fallback_oracle or RuleBasedOracle()
        self.leases = leases if leases is not None else SessionLeases(timeout=self.settings.lease_timeout)
        self.extractor = ContextExtractor()
        self.matcher = EligibilityMatcher()
        self.selector = ClarificationSelector(max_rounds=MAX_ROUNDS)
        # separate pools so a hung oracle call cannot starve persistence
        self._oracle_pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="scheme-finder-oracle")
        self._store_pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="scheme-finder-store")

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ConversationController":
        settings = settings or Settings.from_env()
        catalog = load_catalog(settings.catalog_dir)
        backend = SqliteKeyValueStore(settings.sqlite_path) if settings.sqlite_path else None
        store = ContextStore(backend=backend, ttl_seconds=settings.session_ttl)
        live, fallback = build_oracles(settings)
        logger.info(
            "[Controller] Loaded %d programs; oracle=%s",
            len(catalog),
            live.name if live else fallback.name,
        )
        return cls(catalog=catalog, store=store, live_oracle=live, fallback_oracle=fallback, settings=settings)

    def close(self) -> None:
        self._oracle_pool.shutdown(wait=False)
        self._store_pool.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Transport boundary
    # ------------------------------------------------------------------

    def submit_utterance(self, session_id: Optional[str], text: str, language: str = "en") -> Dict[str, Any]:
        """
        Handle a free-text message. A missing session id starts a new session.

        Raises:
            SessionExpired: the given session id is unknown or expired.
        """
        is_new = session_id is None
        if is_new:
            session_id = new_session_id()
        with self.leases.hold(session_id):
            if is_new:
                session = Session(session_id=session_id, language=language or "en")
                logger.info("[Controller] Started session %s…", session_id[:8])
            else:
                session = self._load(session_id)
            working = session.copy()
            response = self._handle_utterance(working, text, language or working.language)
            self._persist(working)
            return response

    def submit_answer(self, session_id: str, question_id: str, answer: Any) -> Dict[str, Any]:
        """
        Handle the answer to a clarification question.

        Re-sending an already accepted ``(question_id, answer)`` returns the stored
        response without a transition.

        Raises:
            SessionExpired: the session is unknown or expired.
            InvalidAnswer: unknown or superseded question, conflicting resubmission,
                or an answer that cannot be interpreted.
        """
        with self.leases.hold(session_id):
            session = self._load(session_id)
            normalized = normalize_answer_text(answer)
            pending = session.pending_question
            if pending is None or pending.question_id != question_id:
                record = session.answered.get(question_id)
                if record is None:
                    raise InvalidAnswer(question_id, "question is unknown or has been superseded")
                if record.get("answer") != normalized:
                    raise InvalidAnswer(question_id, "question was already answered with a different value")
                logger.info("[Controller] Duplicate answer for %s; replaying stored response.", question_id)
                return copy.deepcopy(record["response"])

            working = session.copy()
            response = self._handle_answer(working, pending, answer)
            working.answered[question_id] = {"answer": normalized, "response": copy.deepcopy(response)}
            self._persist(working)
            return response

    def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Full session snapshot (without the internal audit trail), or None when not found."""
        session = self._load_optional(session_id)
        if session is None:
            return None
        snapshot = session.to_dict()
        snapshot["context"] = session.context.to_dict(include_audit=False)
        return snapshot

    def end_session(self, session_id: str) -> None:
        with self.leases.hold(session_id):
            self._write(self.store.delete, session_id)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _handle_utterance(self, session: Session, text: str, language: str) -> Dict[str, Any]:
        reopening = session.state == CONCLUDED
        session.language = language
        if session.pending_question is not None:
            logger.debug("[Controller] New utterance supersedes question %s", session.pending_question.question_id)
            session.pending_question = None
        session.append_turn("user", text, self.settings.max_turns)

        session.state = EXTRACTING
        previous_region = session.context.value_of("region")
        delta = self.extractor.extract(text, language, session.context, self._extract)
        seq = session.tick()
        context = merge(session.context, delta.stated, USER_STATED, seq)
        context = merge(context, delta.inferred, INFERRED, seq)
        session.context = context

        region_changed = previous_region is not None and context.value_of("region") != previous_region
        if reopening or region_changed:
            logger.info(
                "[Controller] Re-evaluating session %s… from scratch (%s)",
                session.session_id[:8],
                "region changed" if region_changed else "reopened",
            )
            self._restart_rounds(session)
        return self._run_matching(session)

    def _handle_answer(self, session: Session, question: ClarificationQuestion, answer: Any) -> Dict[str, Any]:
        previous_region = session.context.value_of("region")
        seq = session.tick()
        session.context = self._apply_answer(session.context, question, answer, seq)
        session.pending_question = None
        session.append_turn("user", str(answer), self.settings.max_turns)

        region = session.context.value_of("region")
        if previous_region is not None and region != previous_region:
            self._restart_rounds(session)
        return self._run_matching(session)

    @staticmethod
    def _restart_rounds(session: Session) -> None:
        # recorded answers belong to questions retired by the restart
        session.round = 0
        session.asked_question_ids = []
        session.answered = {}

    def _apply_answer(
        self,
        context: UserContext,
        question: ClarificationQuestion,
        answer: Any,
        seq: int,
    ) -> UserContext:
        attribute = question.attribute
        proposed = question.proposed_value
        decision = coerce_flag(answer) if isinstance(answer, (bool, str)) else None

        if decision is True:
            return merge(context, _delta(attribute, proposed), CLARIFICATION_ANSWER, seq)
        if decision is False:
            if isinstance(proposed, bool):
                return merge(context, _delta(attribute, not proposed), CLARIFICATION_ANSWER, seq)
            if isinstance(proposed, NumericBand):
                complement = _band_complement(proposed)
                if complement is not None:
                    return merge(context, _delta(attribute, complement), CLARIFICATION_ANSWER, seq)
            return merge_exclusion(context, attribute, proposed, seq)

        value = normalize_attribute(attribute, answer) if is_known_attribute(attribute) else normalize_extra(answer)
        if value is None or isinstance(proposed, bool):
            raise InvalidAnswer(question.question_id, f"could not interpret answer {answer!r}")
        return merge(context, _delta(attribute, value), CLARIFICATION_ANSWER, seq)

    def _run_matching(self, session: Session) -> Dict[str, Any]:
        session.state = MATCHING
        result = self.matcher.match(session.context, self.catalog, reason=self._reason_fn())
        session.latest_result = result

        question = self.selector.next_question(
            session.context,
            result.candidates,
            session.asked_question_ids,
            session.round,
            self.catalog,
            phrase=self._phrase,
            language=session.language,
        )
        if question is not None and session.round < MAX_ROUNDS:
            session.state = CLARIFYING
            session.round += 1
            session.pending_question = question
            message = question.text
            outcome = CLARIFYING
            session.state = AWAITING_INPUT
        else:
            if not result.viable_candidates and not session.asked_question_ids:
                logger.info("[Controller] No matches and nothing left to ask; concluding without clarification.")
            question = None
            session.state = CONCLUDED
            session.pending_question = None
            message = self._summary_message(result, session.language)
            outcome = CONCLUDED

        session.append_turn("assistant", message, self.settings.max_turns)
        return self._response(session, result, question, message, outcome)

    # ------------------------------------------------------------------
    # Oracle + persistence calls (the only suspension points)
    # ------------------------------------------------------------------

    def _bounded(self, pool: ThreadPoolExecutor, timeout: float, fn: Callable[..., Any], *args: Any) -> Any:
        future = pool.submit(fn, *args)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            future.cancel()
            raise

    def _call_live(self, operation: str, *args: Any) -> Any:
        if self.live_oracle is None or not self.live_oracle.available:
            raise OracleUnavailable("no live oracle configured")
        try:
            return self._bounded(
                self._oracle_pool,
                self.settings.oracle_timeout,
                getattr(self.live_oracle, operation),
                *args,
            )
        except FutureTimeout as exc:
            raise OracleUnavailable(f"{operation} timed out after {self.settings.oracle_timeout}s") from exc

    def _extract(self, text: str, language: str, context: UserContext) -> Any:
        try:
            return self._call_live("extract", text, language, context)
        except OracleUnavailable as exc:
            if self.live_oracle is not None:
                logger.warning("[Controller] Extraction fell back to rules (%s)", exc)
            return self.fallback_oracle.extract(text, language, context)

    def _reason_fn(self) -> Optional[Callable[..., Any]]:
        if self.live_oracle is None or not self.live_oracle.available:
            return None
        return lambda context, programs: self._call_live("reason", context, programs)

    def _phrase(self, attribute: str, language: str, proposed_value: Any) -> str:
        try:
            return self._call_live("phrase_question", attribute, language, proposed_value)
        except OracleUnavailable:
            return self.fallback_oracle.phrase_question(attribute, language, proposed_value)

    def _run_store(self, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return self._bounded(self._store_pool, self.settings.persistence_timeout, fn, *args)
        except FutureTimeout as exc:
            raise PersistenceUnavailable(
                f"persistence call timed out after {self.settings.persistence_timeout}s"
            ) from exc

    def _load_optional(self, session_id: str) -> Optional[Session]:
        return self._run_store(self.store.load, session_id)

    def _load(self, session_id: str) -> Session:
        session = self._load_optional(session_id)
        if session is None:
            raise SessionExpired(session_id)
        return session

    def _persist(self, session: Session) -> None:
        self._write(self.store.save, session)

    def _write(self, fn: Callable[..., Any], *args: Any) -> None:
        """
        Run a mutating store call. A call that never started is abandoned after the
        timeout; one already running is waited for, so the turn reports what was stored.
        """
        future = self._store_pool.submit(fn, *args)
        try:
            future.result(timeout=self.settings.persistence_timeout)
        except FutureTimeout as exc:
            if future.cancel():
                raise PersistenceUnavailable(
                    f"persistence call timed out after {self.settings.persistence_timeout}s"
                ) from exc
            logger.warning(
                "[Controller] Write exceeded %ss and is already running; waiting for it to finish.",
                self.settings.persistence_timeout,
            )
            future.result()

    # ------------------------------------------------------------------
    # Response shaping
    # ------------------------------------------------------------------

    def _response(
        self,
        session: Session,
        result: MatchResult,
        question: Optional[ClarificationQuestion],
        message: str,
        outcome: str,
    ) -> Dict[str, Any]:
        matches: List[Dict[str, Any]] = []
        for candidate in result.viable_candidates:
            program = self.catalog.get(candidate.program_id)
            entry = candidate.to_dict()
            entry["name"] = program.display_name(session.language) if program else candidate.program_id
            entry["display_score"] = candidate.display_score()
            matches.append(entry)
        response = {
            "session_id": session.session_id,
            "state": outcome,
            "round": session.round,
            "context": session.context.as_facts(),
            "matches": matches,
            "question": question.to_dict() if question else None,
            "confidence": result.overall_confidence,
            "uncertain": result.uncertain,
            "degraded": result.degraded,
            "message": message,
        }
        # normalise through JSON so a replayed response is byte-identical to the first one
        return json.loads(json.dumps(response, ensure_ascii=False, sort_keys=True))

    def _summary_message(self, result: MatchResult, language: str) -> str:
        texts = MESSAGES.get(language, MESSAGES["en"])
        viable = result.viable_candidates
        if not viable:
            return texts["no_matches"]
        lines = [texts["results"]]
        for index, candidate in enumerate(viable[:5], start=1):
            program = self.catalog.get(candidate.program_id)
            name = program.display_name(language) if program else candidate.program_id
            lines.append(f"{index}. {name} ({candidate.display_score()})")
        if result.uncertain:
            lines.append(texts["uncertain"])
        if result.degraded:
            lines.append(texts["degraded"])
        return "\n".join(lines)


def _delta(attribute: str, value: Any) -> Dict[str, Any]:
    if is_known_attribute(attribute):
        return {attribute: value}
    return {"extras": {attribute: value}}


def _band_complement(band: NumericBand) -> Optional[NumericBand]:
    """Complement of a one-sided band on whole numbers; None for two-sided bands."""
    if band.low is not None and band.high is None:
        return NumericBand(None, band.low - 1)
    if band.high is not None and band.low is None:
        return NumericBand(band.high + 1, None)
    return None
