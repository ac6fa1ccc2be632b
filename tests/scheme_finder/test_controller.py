"""Integration tests for the conversation controller state machine."""

import json
import time

import pytest

from src.scheme_finder.catalog import ProgramCatalog
from src.scheme_finder.config import Settings
from src.scheme_finder.context_store import ContextStore, InMemoryKeyValueStore
from src.scheme_finder.controller import MESSAGES, ConversationController
from src.scheme_finder.errors import InvalidAnswer, PersistenceUnavailable, SessionExpired
from src.scheme_finder.oracle import RuleBasedOracle


class SlowOracle(RuleBasedOracle):
    """Extracts instantly but never finishes reasoning within the timeout."""

    name = "slow"

    def reason(self, context, programs):
        time.sleep(2)
        return super().reason(context, programs)


class SlowWrites(InMemoryKeyValueStore):
    def __init__(self, delay: float) -> None:
        super().__init__()
        self.delay = delay

    def put(self, key, value, ttl=None):
        time.sleep(self.delay)
        super().put(key, value, ttl=ttl)


class FlakyBackend(InMemoryKeyValueStore):
    def __init__(self) -> None:
        super().__init__()
        self.fail_writes = False

    def put(self, key, value, ttl=None):
        if self.fail_writes:
            raise ConnectionError("disk full")
        super().put(key, value, ttl=ttl)


def _ids(response):
    return [match["program_id"] for match in response["matches"]]


@pytest.mark.integration
def test_first_utterance_asks_most_useful_question(rules_controller):
    """The first turn ranks programs and asks the question that settles the most relevance."""
    response = rules_controller.submit_utterance(None, "I am a farmer")

    assert len(response["session_id"]) >= 43
    assert response["state"] == "CLARIFYING"
    assert response["round"] == 1
    assert response["question"]["question_id"] == "region:karnataka"
    assert response["message"] == "Do you live in Karnataka?"
    assert response["degraded"] is True
    assert response["uncertain"] is True
    assert response["context"] == {"occupation": "farmer"}
    assert _ids(response) == ["nat_farmer", "reg_ka_farmer", "nat_health", "reg_kl_disability", "reg_up_girls"]
    assert response["matches"][1]["display_score"] == ">= 50"
    assert response["matches"][1]["score_is_lower_bound"] is True


@pytest.mark.integration
def test_clarification_flow_concludes(rules_controller):
    """Yes/no answers narrow the list until every remaining program is eligible."""
    first = rules_controller.submit_utterance(None, "I am a farmer")
    sid = first["session_id"]

    second = rules_controller.submit_answer(sid, "region:karnataka", "no")
    assert second["question"]["question_id"] == "region:kerala"
    assert "reg_ka_farmer" not in _ids(second)

    third = rules_controller.submit_answer(sid, "region:kerala", "yes")
    assert third["question"]["question_id"] == "disability:yes"
    assert third["round"] == 3

    fourth = rules_controller.submit_answer(sid, "disability:yes", "yes")
    assert fourth["question"]["question_id"] == "income:-250000"
    assert fourth["message"] == "Is your annual household income Rs 250000 or less?"
    assert fourth["round"] == 4

    final = rules_controller.submit_answer(sid, "income:-250000", "yes")
    assert final["state"] == "CONCLUDED"
    assert final["question"] is None
    assert _ids(final) == ["nat_farmer", "nat_health", "reg_kl_disability"]
    assert all(match["verdict"] == "eligible" for match in final["matches"])
    assert final["message"].startswith(MESSAGES["en"]["results"])

    snapshot = rules_controller.get_session(sid)
    assert snapshot["state"] == "CONCLUDED"
    assert snapshot["context"]["attributes"]["region"]["provenance"] == "clarification-answer"
    assert "discarded_values" not in snapshot["context"]


@pytest.mark.integration
def test_round_cap_forces_conclusion(test_settings):
    """Five questions at most, then the session concludes with what it has."""
    catalog = ProgramCatalog.from_records(
        [
            {
                "program_id": "big",
                "name": "Everything Scheme",
                "constraints": [
                    {"attribute": "age", "kind": "range", "minimum": 18},
                    {"attribute": "income", "kind": "range", "maximum": 100000},
                    {"attribute": "gender", "kind": "one_of", "values": ["female"]},
                    {"attribute": "disability", "kind": "flag", "required": True},
                    {"attribute": "social_category", "kind": "one_of", "values": ["sc"]},
                    {"attribute": "occupation", "kind": "one_of", "values": ["artisan"]},
                    {"attribute": "bpl_card", "kind": "flag", "required": True},
                ],
            }
        ]
    )
    controller = ConversationController(catalog=catalog, store=ContextStore(), settings=test_settings)
    try:
        response = controller.submit_utterance(None, "hello")
        sid = response["session_id"]
        for _ in range(10):
            if response["state"] == "CONCLUDED":
                break
            assert response["round"] <= 5
            response = controller.submit_answer(sid, response["question"]["question_id"], "yes")
        assert response["state"] == "CONCLUDED"
        assert response["round"] == 5
        assert response["matches"][0]["verdict"] == "unknown"
        assert response["uncertain"] is True
        assert len(controller.get_session(sid)["asked_question_ids"]) == 5
    finally:
        controller.close()


@pytest.mark.integration
def test_idempotent_answer_returns_identical_bytes(rules_controller):
    """Re-sending an accepted answer replays the stored response without a transition."""
    sid = rules_controller.submit_utterance(None, "I am a farmer")["session_id"]

    first = rules_controller.submit_answer(sid, "region:karnataka", "No")
    before = rules_controller.get_session(sid)
    again = rules_controller.submit_answer(sid, "region:karnataka", " no ")

    assert json.dumps(first) == json.dumps(again)
    assert rules_controller.get_session(sid) == before

    with pytest.raises(InvalidAnswer):
        rules_controller.submit_answer(sid, "region:karnataka", "yes")


@pytest.mark.integration
def test_invalid_answers_leave_session_unchanged(rules_controller):
    """Answers to other questions, or answers that mean nothing, change nothing."""
    first = rules_controller.submit_utterance(None, "I am a farmer from Kerala")
    sid = first["session_id"]
    assert first["question"]["question_id"] == "disability:yes"
    before = rules_controller.get_session(sid)

    with pytest.raises(InvalidAnswer):
        rules_controller.submit_answer(sid, "occupation:farmer", "yes")
    with pytest.raises(InvalidAnswer):
        rules_controller.submit_answer(sid, "disability:yes", "maybe")

    assert rules_controller.get_session(sid) == before


@pytest.mark.integration
def test_concrete_value_answer(rules_controller):
    """A figure instead of yes/no is merged as the attribute's value."""
    sid = rules_controller.submit_utterance(None, "I am a farmer from Kerala")["session_id"]
    asked = rules_controller.submit_answer(sid, "disability:yes", "yes")
    assert asked["question"]["question_id"] == "income:-250000"
    response = rules_controller.submit_answer(sid, "income:-250000", "400000")
    assert response["context"]["income"] == {"low": 400000, "high": 400000}
    assert "nat_health" not in _ids(response)


@pytest.mark.integration
def test_new_utterance_supersedes_pending_question(rules_controller):
    """A new utterance replaces the pending question; the old one can no longer be answered."""
    sid = rules_controller.submit_utterance(None, "I am a farmer")["session_id"]
    response = rules_controller.submit_utterance(sid, "I live in Kerala")

    assert response["question"]["question_id"] == "disability:yes"
    assert response["round"] == 2
    with pytest.raises(InvalidAnswer):
        rules_controller.submit_answer(sid, "region:karnataka", "yes")


@pytest.mark.integration
def test_region_change_resets_rounds_and_asked_questions(rules_controller):
    """Moving to another region restarts the round counter and the asked-question list."""
    first = rules_controller.submit_utterance(None, "I am a farmer from Kerala")
    sid = first["session_id"]
    assert first["question"]["question_id"] == "disability:yes"

    moved = rules_controller.submit_utterance(sid, "Actually I moved to Bihar")
    assert moved["context"]["region"] == "bihar"
    assert moved["round"] == 1
    assert moved["question"]["question_id"] == "income:-250000"
    assert rules_controller.get_session(sid)["asked_question_ids"] == ["income:-250000"]


@pytest.mark.integration
def test_concluded_session_reopens_on_new_utterance(rules_controller):
    """A concluded session reopens when the user adds information."""
    sid = rules_controller.submit_utterance(None, "I am a student from Punjab, my income is 5 lakh")["session_id"]
    rules_controller.submit_answer(sid, "disability:yes", "no")
    concluded = rules_controller.submit_answer(sid, "gender:female", "no")
    assert concluded["state"] == "CONCLUDED"

    reopened = rules_controller.submit_utterance(sid, "I also do some farming")
    assert reopened["context"]["occupation"] == "farmer"
    assert reopened["round"] <= 1
    assert "nat_farmer" in _ids(reopened)


@pytest.mark.integration
def test_zero_matches_ask_before_concluding(rules_controller):
    """No matches after the first pass still triggers clarification before giving up."""
    response = rules_controller.submit_utterance(None, "I am a student from Punjab, my income is 5 lakh")

    assert response["matches"] == []
    assert response["state"] == "CLARIFYING"
    assert response["question"]["question_id"] == "disability:yes"

    sid = response["session_id"]
    second = rules_controller.submit_answer(sid, "disability:yes", "no")
    assert second["question"]["question_id"] == "gender:female"

    final = rules_controller.submit_answer(sid, "gender:female", "no")
    assert final["state"] == "CONCLUDED"
    assert final["message"] == MESSAGES["en"]["no_matches"]


@pytest.mark.integration
def test_oracle_timeout_falls_back_to_rules(sample_catalog, test_settings):
    """A slow live oracle is abandoned and the turn completes on rules, marked degraded."""
    controller = ConversationController(
        catalog=sample_catalog,
        store=ContextStore(),
        live_oracle=SlowOracle(),
        settings=test_settings,
    )
    try:
        started = time.monotonic()
        response = controller.submit_utterance(None, "I am a farmer")
        assert time.monotonic() - started < 2
        assert response["degraded"] is True
        assert response["uncertain"] is True
        assert len(response["matches"]) == 5
        # the lease was released, so the next turn goes through
        follow_up = controller.submit_answer(response["session_id"], "region:karnataka", "no")
        assert follow_up["degraded"] is True
    finally:
        controller.close()


@pytest.mark.integration
def test_live_oracle_turn_drops_hallucinated_programs(live_controller, mock_openai_client):
    """Unknown program ids from the model are dropped and omitted programs are backfilled."""
    mock_openai_client.queue_response({"stated": {"occupation": "farmer", "region": "Karnataka"}, "inferred": {}})
    mock_openai_client.queue_response(
        {
            "candidates": [
                {
                    "program_id": "reg_ka_farmer",
                    "relevance": 95,
                    "verdict": "eligible",
                    "satisfied": ["region", "occupation"],
                    "missing": [],
                },
                {"program_id": "ghost_scheme", "relevance": 99, "verdict": "eligible"},
                {
                    "program_id": "nat_farmer",
                    "relevance": 90,
                    "verdict": "eligible",
                    "satisfied": ["occupation"],
                    "missing": [],
                },
            ]
        }
    )
    mock_openai_client.queue_response({"question": "Is your family income under 2.5 lakh a year?"})

    response = live_controller.submit_utterance(None, "Main Karnataka mein kheti karta hoon")

    assert _ids(response) == ["reg_ka_farmer", "nat_farmer", "nat_health"]
    assert response["degraded"] is False
    assert response["uncertain"] is False
    assert response["confidence"] == 95
    assert response["question"]["question_id"] == "income:-250000"
    assert response["message"] == "Is your family income under 2.5 lakh a year?"
    assert len(mock_openai_client.calls) == 3


@pytest.mark.integration
def test_hindi_session_uses_hindi_templates(rules_controller):
    """Hindi sessions get Hindi questions and understand Hindi yes/no answers."""
    response = rules_controller.submit_utterance(None, "मैं किसान हूँ", language="hi")
    assert response["question"]["question_id"] == "region:karnataka"
    assert response["message"] == "क्या आप Karnataka में रहते हैं?"

    follow_up = rules_controller.submit_answer(response["session_id"], "region:karnataka", "नहीं")
    assert "reg_ka_farmer" not in _ids(follow_up)


@pytest.mark.integration
def test_unknown_session_is_expired(rules_controller):
    """Unknown session ids are reported as expired, never silently recreated."""
    with pytest.raises(SessionExpired):
        rules_controller.submit_utterance("no-such-session", "hello")
    with pytest.raises(SessionExpired):
        rules_controller.submit_answer("no-such-session", "region:kerala", "yes")
    assert rules_controller.get_session("no-such-session") is None


@pytest.mark.integration
def test_failed_write_leaves_stored_session_unchanged(sample_catalog, test_settings):
    """A rejected write leaves the stored session exactly as it was."""
    backend = FlakyBackend()
    controller = ConversationController(
        catalog=sample_catalog,
        store=ContextStore(backend=backend),
        settings=test_settings,
    )
    try:
        sid = controller.submit_utterance(None, "I am a farmer")["session_id"]
        before = controller.get_session(sid)
        backend.fail_writes = True
        with pytest.raises(PersistenceUnavailable):
            controller.submit_answer(sid, "region:karnataka", "no")
        backend.fail_writes = False
        assert controller.get_session(sid) == before
        # the question is still pending and can be answered once storage recovers
        assert controller.submit_answer(sid, "region:karnataka", "no")["round"] == 2
    finally:
        controller.close()


@pytest.mark.integration
def test_question_asked_again_after_reopen_takes_a_fresh_answer(rules_controller):
    """Reopening retires earlier answers, so a re-asked question is answered normally."""
    first = rules_controller.submit_utterance(None, "I am a farmer from Karnataka")
    sid = first["session_id"]
    assert first["question"]["question_id"] == "income:-250000"

    straddling = rules_controller.submit_answer(sid, "income:-250000", "100000-300000")
    assert straddling["state"] == "CONCLUDED"

    reopened = rules_controller.submit_utterance(sid, "hello again")
    assert reopened["question"]["question_id"] == "income:-250000"
    assert reopened["round"] == 1

    final = rules_controller.submit_answer(sid, "income:-250000", "yes")
    assert final["state"] == "CONCLUDED"
    verdicts = {match["program_id"]: match["verdict"] for match in final["matches"]}
    assert verdicts["nat_health"] == "eligible"


@pytest.mark.integration
def test_slow_write_is_waited_for_and_reported_as_applied(sample_catalog):
    """A write that outlives the timeout is awaited, so the response matches what was stored."""
    settings = Settings(
        openai_api_key=None,
        llm_model="mock-model",
        oracle_timeout=0.5,
        persistence_timeout=0.1,
        lease_timeout=2.0,
    )
    controller = ConversationController(
        catalog=sample_catalog,
        store=ContextStore(backend=SlowWrites(delay=0.3)),
        settings=settings,
    )
    try:
        sid = controller.submit_utterance(None, "I am a farmer")["session_id"]
        response = controller.submit_answer(sid, "region:karnataka", "no")

        stored = controller.get_session(sid)
        assert stored["round"] == response["round"] == 2
        assert stored["pending_question"]["question_id"] == response["question"]["question_id"]
    finally:
        controller.close()


@pytest.mark.unit
def test_injected_empty_backend_is_used(sample_catalog, test_settings):
    """An empty backend passed in is the one sessions are written to."""
    backend = InMemoryKeyValueStore()
    controller = ConversationController(
        catalog=sample_catalog,
        store=ContextStore(backend=backend),
        settings=test_settings,
    )
    try:
        assert controller.store.backend is backend
        controller.submit_utterance(None, "I am a farmer")
        assert len(backend) == 1
    finally:
        controller.close()
