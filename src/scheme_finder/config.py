"""
Runtime settings read from the environment (and a local .env file when present).
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

DEFAULT_CATALOG_DIR = Path(__file__).resolve().parents[2] / "data" / "catalog"


@dataclass
class Settings:
    openai_api_key: Optional[str] = None
    llm_model: str = "gpt-4o-mini"
    oracle_timeout: float = 8.0
    persistence_timeout: float = 2.0
    session_ttl: float = 86400.0
    max_turns: int = 20
    lease_timeout: float = 10.0
    catalog_dir: Path = DEFAULT_CATALOG_DIR
    sqlite_path: Optional[str] = None

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        if dotenv:
            load_dotenv()
        return cls(
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            llm_model=os.getenv("SCHEME_FINDER_LLM_MODEL", "gpt-4o-mini"),
            oracle_timeout=_float_env("SCHEME_FINDER_ORACLE_TIMEOUT", 8.0),
            persistence_timeout=_float_env("SCHEME_FINDER_PERSISTENCE_TIMEOUT", 2.0),
            session_ttl=_float_env("SCHEME_FINDER_SESSION_TTL", 86400.0),
            max_turns=int(_float_env("SCHEME_FINDER_MAX_TURNS", 20)),
            lease_timeout=_float_env("SCHEME_FINDER_LEASE_TIMEOUT", 10.0),
            catalog_dir=Path(os.getenv("SCHEME_FINDER_CATALOG_DIR") or DEFAULT_CATALOG_DIR),
            sqlite_path=os.getenv("SCHEME_FINDER_SQLITE_PATH") or None,
        )


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
