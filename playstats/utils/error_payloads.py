from __future__ import annotations

from playstats.utils.correlation import get_correlation_id


def failure_classification(code: str, classification: str) -> str:
    if classification in {"dependency", "transient"}:
        return "TRANSIENT"
    if code in {"db_error", "db_circuit_open", "timescale_locked"}:
        return "TRANSIENT"
    return "FATAL"


def error_payload(
    *,
    code: str,
    message: str,
    classification: str,
    extra: dict | None = None,
) -> dict:
    payload: dict[str, object] = {
        "code": code,
        "message": message,
        "classification": classification,
        "failure_classification": failure_classification(code, classification),
        "correlation_id": get_correlation_id(),
    }
    if extra:
        payload["extra"] = extra
    return {"error": payload}
