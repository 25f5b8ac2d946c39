from __future__ import annotations

import json
import time
from pathlib import Path

from open_llm_gateway.gateway.audit import JsonlAuditLogger


def _wait_for_lines(path: Path, count: int, timeout: float = 1.0) -> list[str]:
    deadline = time.time() + timeout
    lines: list[str] = []
    while time.time() < deadline:
        if path.exists():
            lines = path.read_text(encoding="utf-8").splitlines()
            if len(lines) >= count:
                break
        time.sleep(0.02)
    return lines


def test_audit_logger_writes_records_before_close(tmp_path: Path) -> None:
    log_path = tmp_path / "gateway_attempts.jsonl"
    logger = JsonlAuditLogger(path=str(log_path), enabled=True)
    try:
        logger.log({"event": "upstream_attempt", "request_id": "req-1", "http_status": 503})

        lines = _wait_for_lines(log_path, 1)

        assert lines
        payload = json.loads(lines[0])
        assert payload["event"] == "upstream_attempt"
        assert payload["request_id"] == "req-1"
        assert payload["http_status"] == 503
        assert isinstance(payload["ts"], int)
    finally:
        logger.close()


def test_audit_logger_redacts_credentials(tmp_path: Path) -> None:
    log_path = tmp_path / "gateway_attempts.jsonl"
    logger = JsonlAuditLogger(path=str(log_path), enabled=True)
    logger.log(
        {
            "event": "upstream_attempt",
            "Authorization": "Bearer secret",
            "x-auth-token": "abc.def",
            "candidate_id": "org/m",
        }
    )
    logger.close()

    payload = json.loads(log_path.read_text(encoding="utf-8").splitlines()[0])
    assert payload["Authorization"] == "[redacted]"
    assert payload["x-auth-token"] == "[redacted]"
    assert payload["candidate_id"] == "org/m"


def test_disabled_audit_logger_writes_nothing(tmp_path: Path) -> None:
    log_path = tmp_path / "nested" / "gateway_attempts.jsonl"
    logger = JsonlAuditLogger(path=str(log_path), enabled=False)
    logger.log({"event": "upstream_attempt"})
    logger.close()

    assert not log_path.exists()
    assert not log_path.parent.exists()


def test_full_queue_counts_dropped_records(tmp_path: Path) -> None:
    log_path = tmp_path / "gateway_attempts.jsonl"
    logger = JsonlAuditLogger(path=str(log_path), enabled=True, max_queue_size=1)
    for index in range(500):
        logger.log({"event": "upstream_attempt", "index": index})
    dropped = logger.dropped
    logger.close()

    lines = log_path.read_text(encoding="utf-8").splitlines()
    if dropped:
        assert json.loads(lines[-1])["event"] == "audit_records_dropped"
    assert len(lines) >= 1
