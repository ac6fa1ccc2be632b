"""
Deterministic reducer that folds a context delta into the current UserContext.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Mapping, Optional

try:
    from src.scheme_finder.models import (
        BAND_ATTRIBUTES,
        EXTRAS_KEY,
        FLAG_ATTRIBUTES,
        PROVENANCE_RANK,
        AttributeValue,
        NumericBand,
        UserContext,
        is_known_attribute,
        serialize_value,
    )
except ImportError:
    from .models import (
        BAND_ATTRIBUTES,
        EXTRAS_KEY,
        FLAG_ATTRIBUTES,
        PROVENANCE_RANK,
        AttributeValue,
        NumericBand,
        UserContext,
        is_known_attribute,
        serialize_value,
    )

logger = logging.getLogger(__name__)

TRUE_WORDS = {"true", "yes", "y", "1", "haan", "ha", "han", "हाँ", "हां"}
FALSE_WORDS = {"false", "no", "n", "0", "nahi", "nahin", "नहीं", "ना"}


def slugify(text: str) -> str:
    """Lowercase and collapse anything that is not a letter/digit into underscores."""
    return re.sub(r"[^\w]+", "_", text.strip().lower(), flags=re.UNICODE).strip("_")


def coerce_flag(raw: Any) -> Optional[bool]:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float)):
        return bool(raw)
    if isinstance(raw, str):
        word = raw.strip().lower()
        if word in TRUE_WORDS:
            return True
        if word in FALSE_WORDS:
            return False
    return None


def normalize_attribute(name: str, raw: Any) -> Any:
    """
    Coerce a raw delta value into the canonical type for ``name``.

    Returns None when the value cannot be interpreted; callers drop it.
    """
    if raw is None:
        return None
    if name in BAND_ATTRIBUTES:
        return NumericBand.coerce(raw)
    if name in FLAG_ATTRIBUTES:
        return coerce_flag(raw)
    if isinstance(raw, str):
        slug = slugify(raw)
        return slug or None
    return None


def normalize_extra(raw: Any) -> Any:
    if isinstance(raw, NumericBand):
        return raw
    if isinstance(raw, dict):
        return NumericBand.coerce(raw)
    if isinstance(raw, bool) or isinstance(raw, (int, float)):
        return raw
    if isinstance(raw, str):
        flag = coerce_flag(raw)
        if flag is not None:
            return flag
        return slugify(raw) or None
    return None


def merge(
    current: UserContext,
    delta: Optional[Mapping[str, Any]],
    provenance: str,
    seq: int = 0,
) -> UserContext:
    """
    Fold ``delta`` into a copy of ``current``.

    Precedence per attribute is user-stated > clarification-answer > inferred;
    at equal precedence the higher ``seq`` wins. Numeric bands narrow when they
    overlap and are replaced when they disagree, the superseded value going to
    ``discarded_values``. Unrecognised keys are dropped. ``current`` is never
    mutated.
    """
    merged = current.copy()
    if not delta:
        return merged
    if provenance not in PROVENANCE_RANK:
        raise ValueError(f"Unknown provenance: {provenance!r}")

    for key, raw in delta.items():
        if key == EXTRAS_KEY:
            if isinstance(raw, Mapping):
                for extra_name, extra_raw in raw.items():
                    name = slugify(str(extra_name))
                    value = normalize_extra(extra_raw)
                    if not name or is_known_attribute(name) or value is None:
                        continue
                    _apply(merged, merged.extras, name, value, provenance, seq)
            continue
        if not is_known_attribute(key):
            logger.debug("[Merger] Dropping unrecognised attribute %r", key)
            continue
        value = normalize_attribute(key, raw)
        if value is None:
            logger.debug("[Merger] Dropping uninterpretable value for %s: %r", key, raw)
            continue
        _apply(merged, merged.attributes, key, value, provenance, seq)
    return merged


def merge_exclusion(current: UserContext, attribute: str, value: Any, seq: int = 0) -> UserContext:
    """
    Record that the user denied ``value`` for ``attribute`` (a "no" to a categorical question).
    """
    merged = current.copy()
    if is_known_attribute(attribute):
        normalized = normalize_attribute(attribute, value)
    else:
        normalized = normalize_extra(value)
    if normalized is None:
        return merged
    stored = serialize_value(normalized)
    values = merged.excluded.setdefault(attribute, [])
    if stored not in values:
        values.append(stored)
    return merged


def _apply(
    context: UserContext,
    bucket: Dict[str, AttributeValue],
    name: str,
    value: Any,
    provenance: str,
    seq: int,
) -> None:
    existing = bucket.get(name)
    if existing is None:
        bucket[name] = AttributeValue(value=value, provenance=provenance, seq=seq)
        _lift_exclusion(context, name, serialize_value(value))
        return

    new_rank = PROVENANCE_RANK[provenance]
    old_rank = PROVENANCE_RANK.get(existing.provenance, 0)
    if new_rank < old_rank:
        return
    if new_rank == old_rank and seq < existing.seq:
        return

    merged_value = value
    if isinstance(value, NumericBand) and isinstance(existing.value, NumericBand):
        overlap = existing.value.intersect(value)
        if overlap is not None:
            merged_value = overlap
        else:
            _discard(context, name, existing, seq)
    elif value != existing.value:
        _discard(context, name, existing, seq)

    bucket[name] = AttributeValue(value=merged_value, provenance=provenance, seq=seq)
    _lift_exclusion(context, name, serialize_value(merged_value))


def _discard(context: UserContext, name: str, existing: AttributeValue, seq: int) -> None:
    context.discarded_values.append(
        {
            "attribute": name,
            "value": serialize_value(existing.value),
            "provenance": existing.provenance,
            "seq": existing.seq,
            "superseded_at": seq,
        }
    )


def _lift_exclusion(context: UserContext, name: str, value: Any) -> None:
    values = context.excluded.get(name)
    if values and value in values:
        values.remove(value)
        if not values:
            del context.excluded[name]
