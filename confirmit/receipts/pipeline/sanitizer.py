"""
Sanitizer / splitter for raw analyzer responses.

``split(raw)`` turns the analyzer's nested result into two JSON-native
payloads:

* the **summary** stored on the receipt row, always at most
  ``MAX_SUMMARY_BYTES`` once serialized;
* the **sidecar** stored in ``receipt_forensics`` with the heavy artifacts.

Visualization data (heatmaps, pixel diffs, ELA maps) is routed only to the
sidecar. Bulky structured data (technical details, findings, agent trace) is
kept in full in the sidecar and as a short excerpt in the summary. Arrays of
arrays are flattened into a single JSON string token.
"""
from __future__ import annotations

import json
import math
from collections.abc import Mapping
from itertools import islice
from typing import Any, Optional

from pydantic_core import PydanticUndefined, to_jsonable_python

from confirmit.receipts.errors import PayloadTooLarge

MAX_SUMMARY_BYTES = 1024 * 1024
EXCERPT_LIMIT = 5
EXCERPT_CHARS = 2000

# Hundreds of KB each, only the forensics viewer needs them.
SIDECAR_ONLY_FIELDS = frozenset({"heatmap", "pixel_diff", "ela_analysis"})

# Full copy in the sidecar, excerpt in the summary.
EXCERPTED_FIELDS = frozenset(
    {"technical_details", "forensic_findings", "agent_logs", "forensic_progress"}
)

SUMMARY_DEFAULTS: dict[str, Any] = {
    "ocr_text": "",
    "trust_score": 0,
    "verdict": "unknown",
    "issues": [],
    "recommendation": "",
    "merchant": None,
}

MISSING = PydanticUndefined


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _is_absent(value: Any) -> bool:
    return value is MISSING


def _is_matrix(items: list) -> bool:
    return any(isinstance(item, (list, tuple)) for item in items)


def _dump(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def size_bytes(payload: Any) -> int:
    """Serialized size of ``payload`` as stored (compact UTF-8 JSON)."""
    return len(_dump(payload).encode("utf-8"))


def decode_maybe_serialized(value: Any, default: Any = None, expected: Optional[type] = None) -> Any:
    """Decode ``value`` if the analyzer sent it as a JSON string.

    Total: returns ``default`` for absent/empty values, undecodable strings,
    and (when ``expected`` is given) decoded values of the wrong type.
    """
    if value is None or _is_absent(value):
        return default
    if isinstance(value, (bytes, bytearray)):
        try:
            value = value.decode("utf-8")
        except UnicodeDecodeError:
            return default
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return default
        try:
            value = json.loads(text)
        except ValueError:
            return default
    if expected is not None and not isinstance(value, expected):
        return default
    return value


def _clean(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(key): _clean(item) for key, item in value.items() if not _is_absent(item)}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_clean(item) for item in value if not _is_absent(item)]
        if _is_matrix(items):
            return _dump(items)
        return items
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return _clean(to_jsonable_python(value, fallback=str))


def sanitize(value: Any) -> Any:
    """Drop absent values, flatten matrices, and force a JSON round-trip."""
    return json.loads(_dump(_clean(value)))


def _excerpt(value: Any, limit: int) -> Any:
    if isinstance(value, Mapping):
        kept = ((k, v) for k, v in value.items() if k not in SIDECAR_ONLY_FIELDS)
        return {k: _excerpt(v, limit) for k, v in islice(kept, limit)}
    if isinstance(value, (list, tuple)):
        return [_excerpt(item, limit) for item in list(value)[:limit]]
    if isinstance(value, str):
        return value[:EXCERPT_CHARS]
    return value


def _place(sidecar: dict, key: str, path: tuple, value: Any) -> None:
    # First occurrence keeps the bare name, later ones their dotted path
    # (list indices included), then a numeric suffix. Nothing is overwritten.
    name = key
    if name in sidecar:
        name = ".".join(path + (key,))
    base, n = name, 2
    while name in sidecar:
        name = f"{base}_{n}"
        n += 1
    sidecar[name] = value


def _project(value: Any, sidecar: dict, limit: int, path: tuple) -> Any:
    if isinstance(value, Mapping):
        light: dict[str, Any] = {}
        for key, item in value.items():
            if _is_absent(item):
                continue
            if key in SIDECAR_ONLY_FIELDS:
                _place(sidecar, key, path, decode_maybe_serialized(item, default=item))
                continue
            if key in EXCERPTED_FIELDS:
                full = decode_maybe_serialized(item, default=item)
                _place(sidecar, key, path, full)
                light[key] = _excerpt(full, limit)
                continue
            light[key] = _project(item, sidecar, limit, path + (str(key),))
        return light
    if isinstance(value, (list, tuple)):
        return [
            _project(item, sidecar, limit, path + (str(index),)) for index, item in enumerate(value)
        ]
    return value


def _normalize_trust_score(value: Any) -> int | float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(score) or isinstance(value, bool):
        return 0
    score = max(0.0, min(100.0, score))
    return int(score) if score.is_integer() else round(score, 2)


def _apply_defaults(summary: dict) -> dict:
    for key, default in SUMMARY_DEFAULTS.items():
        if summary.get(key) is None:
            summary[key] = default
    summary["trust_score"] = _normalize_trust_score(summary["trust_score"])
    return summary


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def split(
    raw: Any,
    max_summary_bytes: int = MAX_SUMMARY_BYTES,
    excerpt_limit: int = EXCERPT_LIMIT,
) -> tuple[dict, dict]:
    """Split a raw analyzer result into ``(summary, sidecar)``.

    Raises :class:`PayloadTooLarge` when the summary would exceed
    ``max_summary_bytes``; nothing is truncated to make it fit.
    """
    decoded = decode_maybe_serialized(raw, default={}, expected=Mapping)
    sidecar: dict[str, Any] = {}
    projected = _project(decoded, sidecar, excerpt_limit, ())

    summary = sanitize(_apply_defaults(projected))
    sidecar = sanitize(sidecar)

    size = size_bytes(summary)
    if size > max_summary_bytes:
        raise PayloadTooLarge(size, max_summary_bytes)
    return summary, sidecar
