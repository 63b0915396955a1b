"""
Filter canonicalization.

Turns a heterogeneous filter (an AnalysisFilter or a plain mapping) into a
stable, order-independent identity. Equal filters must hash identically
regardless of key order, surrounding whitespace, or explicitly absent fields.
"""
import hashlib
import json
import math
from enum import Enum
from typing import Any, Mapping

from pydantic import BaseModel

from auctionmind.core.errors import FilterCanonicalizationError

# List-valued filter fields whose order carries no meaning
SET_LIKE_FIELDS = frozenset({"makes", "models", "damage_types", "locations", "platforms"})


def _normalize(value: Any, key: str = "") -> Any:
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, BaseModel):
        value = value.model_dump(exclude_none=True)
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str):
        if key in SET_LIKE_FIELDS:
            return [value.strip()] if value.strip() else []
        return value.strip()
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise FilterCanonicalizationError(f"Non-finite number in field '{key}'")
        # 2020.0 and 2020 describe the same bound
        return int(value) if value.is_integer() else value
    if isinstance(value, Mapping):
        normalized = {}
        for k, v in value.items():
            if not isinstance(k, str):
                raise FilterCanonicalizationError(f"Non-string filter key: {k!r}")
            if k.startswith("_") or v is None:
                continue
            item = _normalize(v, k)
            if item in ("", [], {}):
                continue
            normalized[k.strip()] = item
        return normalized
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_normalize(v, f"{key}[]") for v in value]
        items = [v for v in items if v is not None and v != ""]
        if key in SET_LIKE_FIELDS or isinstance(value, (set, frozenset)):
            try:
                return sorted(set(items))
            except TypeError as e:
                raise FilterCanonicalizationError(f"Unsortable values in field '{key}': {e}") from e
        return items
    raise FilterCanonicalizationError(
        f"Unserializable value of type {type(value).__name__} in field '{key}'"
    )


def canonical_json(value: Any) -> str:
    """Canonical JSON text for an arbitrary filter or payload."""
    normalized = _normalize(value)
    try:
        return json.dumps(normalized, sort_keys=True, separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError) as e:
        raise FilterCanonicalizationError(f"Cannot serialize value: {e}") from e


def canonical_filter(filter_obj: Any) -> str:
    """Canonical JSON text of a filter. Only filter models and mappings are accepted."""
    if filter_obj is None:
        filter_obj = {}
    if not isinstance(filter_obj, (BaseModel, Mapping)):
        raise FilterCanonicalizationError(
            f"Filter must be a mapping or AnalysisFilter, got {type(filter_obj).__name__}"
        )
    return canonical_json(filter_obj)


def canonicalize(filter_obj: Any) -> str:
    """Return the sha256 identity of a filter."""
    return hashlib.sha256(canonical_filter(filter_obj).encode()).hexdigest()


def cache_identity(subject: str, analysis_type: Any, filter_obj: Any) -> str:
    """Deterministic cache key for (subject, analysis type, canonical filter)."""
    if isinstance(analysis_type, Enum):
        analysis_type = analysis_type.value
    raw = json.dumps(
        {"s": str(subject), "t": str(analysis_type), "f": json.loads(canonical_filter(filter_obj))},
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(raw.encode()).hexdigest()
