"""
Context extractor: turns one free-text utterance into a typed PartialContext.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Mapping

try:
    from src.scheme_finder.merger import normalize_attribute, normalize_extra, slugify
    from src.scheme_finder.models import EXTRAS_KEY, PartialContext, UserContext, is_known_attribute
except ImportError:
    from .merger import normalize_attribute, normalize_extra, slugify
    from .models import EXTRAS_KEY, PartialContext, UserContext, is_known_attribute

logger = logging.getLogger(__name__)

ExtractFn = Callable[[str, str, UserContext], Any]


class ContextExtractor:
    """
    Delegates interpretation to an oracle ``extract`` call and cleans up what comes back.

    The oracle may answer ``{"stated": {...}, "inferred": {...}}`` or a flat
    attribute mapping (read as stated). Unknown attributes and values that
    cannot be coerced are dropped; a fact reported both ways counts as stated.
    """

    def extract(self, text: str, language: str, context: UserContext, extract_fn: ExtractFn) -> PartialContext:
        if not text or not text.strip():
            return PartialContext()
        raw = extract_fn(text, language, context)
        return self.to_partial_context(raw)

    def to_partial_context(self, raw: Any) -> PartialContext:
        if not isinstance(raw, Mapping):
            if raw:
                logger.warning("[Extractor] Ignoring non-mapping extraction result: %r", type(raw).__name__)
            return PartialContext()

        if "stated" in raw or "inferred" in raw:
            stated = self._clean(raw.get("stated"))
            inferred = self._clean(raw.get("inferred"))
        else:
            stated = self._clean(raw)
            inferred = {}

        for name in list(inferred):
            if name in stated:
                del inferred[name]
        if EXTRAS_KEY in inferred and EXTRAS_KEY in stated:
            inferred[EXTRAS_KEY] = {
                name: value for name, value in inferred[EXTRAS_KEY].items() if name not in stated[EXTRAS_KEY]
            }
            if not inferred[EXTRAS_KEY]:
                del inferred[EXTRAS_KEY]
        return PartialContext(stated=stated, inferred=inferred)

    @staticmethod
    def _clean(raw: Any) -> Dict[str, Any]:
        if not isinstance(raw, Mapping):
            return {}
        cleaned: Dict[str, Any] = {}
        for key, value in raw.items():
            name = str(key).strip().lower()
            if name == EXTRAS_KEY:
                extras = {}
                if isinstance(value, Mapping):
                    for extra_key, extra_value in value.items():
                        extra_name = slugify(str(extra_key))
                        normalized = normalize_extra(extra_value)
                        if extra_name and normalized is not None and not is_known_attribute(extra_name):
                            extras[extra_name] = normalized
                if extras:
                    cleaned[EXTRAS_KEY] = extras
                continue
            name = slugify(name)
            if not is_known_attribute(name):
                continue
            normalized = normalize_attribute(name, value)
            if normalized is not None:
                cleaned[name] = normalized
        return cleaned
