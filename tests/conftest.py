"""Shared pytest fixtures for the scheme_finder test suite.

These fixtures provide:
* Mock OpenAI clients with controllable responses
* A small in-memory catalog (2 national + 3 regional programs)
* Settings with short timeouts
* Pre-wired controllers (rule-based and live-with-mock-client)
"""

from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Any, Dict, List

import pytest

from src.scheme_finder.catalog import ProgramCatalog
from src.scheme_finder.config import Settings
from src.scheme_finder.context_store import ContextStore
from src.scheme_finder.controller import ConversationController
from src.scheme_finder.oracle import OpenAIOracle


class DummyLLMClient:
    """Minimal OpenAI-compatible client for deterministic unit tests."""

    def __init__(self) -> None:
        self._queued: List[str] = []
        self.calls: List[Dict[str, Any]] = []
        self.chat = SimpleNamespace(
            completions=SimpleNamespace(create=self._create_completion)
        )

    def queue_response(self, payload: Any) -> None:
        """Add a JSON (or dict) response to the outgoing queue."""
        if not isinstance(payload, str):
            payload = json.dumps(payload)
        self._queued.append(payload)

    def _create_completion(self, **kwargs: Any) -> SimpleNamespace:
        if not self._queued:
            raise AssertionError("DummyLLMClient received a call with no queued responses.")
        content = self._queued.pop(0)
        self.calls.append(kwargs)
        return SimpleNamespace(
            choices=[
                SimpleNamespace(
                    message=SimpleNamespace(content=content)
                )
            ]
        )


# ---------------------------------------------------------------------------
# Mock LLM fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_openai_client():
    """Provide a queued-response OpenAI client stand-in."""
    return DummyLLMClient()


@pytest.fixture
def live_oracle(mock_openai_client) -> OpenAIOracle:
    """OpenAIOracle whose client is swapped for the queued mock."""
    oracle = OpenAIOracle(llm_model="mock-model", api_key="test-key")
    oracle.llm_client = mock_openai_client
    oracle.llm_model = "mock-model"
    return oracle


# ---------------------------------------------------------------------------
# Catalog + settings fixtures
# ---------------------------------------------------------------------------


SAMPLE_PROGRAMS: List[Dict[str, Any]] = [
    {
        "program_id": "nat_farmer",
        "name": {"en": "Farmer Income Support", "hi": "किसान आय सहायता"},
        "scope": "national",
        "constraints": [{"attribute": "occupation", "kind": "one_of", "values": ["farmer"]}],
        "benefits": "Rs 6,000 per year",
    },
    {
        "program_id": "nat_health",
        "name": {"en": "Family Health Cover"},
        "scope": "national",
        "constraints": [{"attribute": "income", "kind": "range", "maximum": 250000}],
    },
    {
        "program_id": "reg_ka_farmer",
        "name": {"en": "Karnataka Millet Bonus"},
        "scope": "regional",
        "regions": ["karnataka"],
        "constraints": [{"attribute": "occupation", "kind": "one_of", "values": ["farmer"]}],
    },
    {
        "program_id": "reg_kl_disability",
        "name": {"en": "Kerala Disability Pension"},
        "scope": "regional",
        "regions": ["kerala"],
        "constraints": [{"attribute": "disability", "kind": "flag", "required": True}],
    },
    {
        "program_id": "reg_up_girls",
        "name": {"en": "UP Girl Child Support"},
        "scope": "regional",
        "regions": ["uttar_pradesh"],
        "constraints": [{"attribute": "gender", "kind": "one_of", "values": ["female"]}],
    },
]


@pytest.fixture
def sample_programs() -> List[Dict[str, Any]]:
    return json.loads(json.dumps(SAMPLE_PROGRAMS, ensure_ascii=False))


@pytest.fixture
def sample_catalog(sample_programs) -> ProgramCatalog:
    """Two national and three regional programs."""
    return ProgramCatalog.from_records(sample_programs)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        openai_api_key=None,
        llm_model="mock-model",
        oracle_timeout=0.5,
        persistence_timeout=1.0,
        lease_timeout=1.0,
    )


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def rules_controller(sample_catalog, test_settings):
    """Controller without a live oracle: every turn uses rule-based matching."""
    controller = ConversationController(
        catalog=sample_catalog,
        store=ContextStore(),
        settings=test_settings,
    )
    yield controller
    controller.close()


@pytest.fixture
def live_controller(sample_catalog, test_settings, live_oracle):
    """
    Controller wired to the mock-backed OpenAIOracle.

    Tests enqueue extract/reason/phrase responses (in that order) before each turn.
    """
    controller = ConversationController(
        catalog=sample_catalog,
        store=ContextStore(),
        live_oracle=live_oracle,
        settings=test_settings,
    )
    yield controller
    controller.close()
