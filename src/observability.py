from __future__ import annotations

import json
import logging
from collections import Counter
from datetime import datetime
from threading import Lock
from typing import Any

from pydantic import BaseModel

from src.domain.eca_errors import ECAError


logger = logging.getLogger("retail_eca")

_metrics_lock = Lock()
_metrics_counter: Counter[str] = Counter()

# Label values come straight from webhook payloads and must not break the key format.
_LABEL_RESERVED = str.maketrans({"|": "_", ",": "_", "=": "_"})


def _normalize(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, ECAError):
        return {"code": value.code, "message": value.message, "retryable": value.retryable}
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_normalize(v) for v in value]
    return str(value)


def _label_value(value: Any) -> str:
    if value is None:
        return "none"
    if isinstance(value, ECAError):
        return value.code
    return str(value).translate(_LABEL_RESERVED) or "none"


def metric_key(name: str, **labels: Any) -> str:
    if not labels:
        return name
    ordered = ",".join(f"{k}={_label_value(labels[k])}" for k in sorted(labels))
    return f"{name}|{ordered}"


def incr_metric(name: str, value: int = 1, **labels: Any) -> None:
    key = metric_key(name, **labels)
    with _metrics_lock:
        _metrics_counter[key] += value


def metrics_snapshot() -> dict[str, int]:
    with _metrics_lock:
        return dict(_metrics_counter)


def metric_total(snapshot: dict[str, int], prefix: str) -> int:
    return sum(value for key, value in snapshot.items() if key == prefix or key.startswith(f"{prefix}|"))


def metric_breakdown(snapshot: dict[str, int], name: str, label: str) -> dict[str, int]:
    """Sum the counters of ``name`` grouped by one label, e.g. failures by error code."""
    breakdown: Counter[str] = Counter()
    for key, value in snapshot.items():
        metric, _, labels = key.partition("|")
        if metric != name:
            continue
        parsed = dict(part.split("=", 1) for part in labels.split(",") if "=" in part)
        breakdown[parsed.get(label, "none")] += value
    return dict(breakdown)


def reset_metrics() -> None:
    with _metrics_lock:
        _metrics_counter.clear()


def log_event(
    event: str,
    *,
    level: int = logging.INFO,
    request_id: str | None = None,
    **fields: Any,
) -> None:
    payload = {"event": event}
    if request_id:
        payload["request_id"] = request_id
    for key, value in fields.items():
        payload[key] = _normalize(value)
    logger.log(level, json.dumps(payload, sort_keys=True))
