"""Audit trail for relay traffic: append-only JSON Lines with rotation and a hash chain."""

from __future__ import annotations

import fcntl
import hashlib
import json
import logging
from dataclasses import dataclass
from pathlib import Path

from wabridge.models import AuditEvent, AuditEventType, RiskLevel

logger = logging.getLogger(__name__)


@dataclass
class ChainValidationResult:
    valid: bool
    broken_at_line: int | None = None


def _line_hash(line: str) -> str:
    return hashlib.sha256(line.encode()).hexdigest()


def validate_audit_chain(log_path: Path) -> ChainValidationResult:
    """Check that every entry's prev_hash matches the line before it."""
    lines = [line for line in log_path.read_text().split("\n") if line]
    previous: str | None = None
    for number, line in enumerate(lines, start=1):
        expected = _line_hash(previous) if previous is not None else None
        if json.loads(line).get("prev_hash") != expected:
            return ChainValidationResult(valid=False, broken_at_line=number)
        previous = line
    return ChainValidationResult(valid=True)


class AuditLogger:
    """Records relay events (forwards, replies, session changes) to a JSONL file."""

    def __init__(
        self,
        log_path: str,
        max_bytes: int = 10_485_760,
        backup_count: int = 5,
    ) -> None:
        self.log_path = Path(log_path)
        self._max_bytes = max_bytes
        self._backup_count = backup_count
        self._last_line = self._read_last_line()

    def _read_last_line(self) -> str | None:
        # Chain continues across restarts
        if not self.log_path.exists():
            return None
        lines = self.log_path.read_text().strip().split("\n")
        return lines[-1] or None

    def _backup(self, index: int) -> Path:
        return self.log_path.with_name(f"{self.log_path.name}.{index}")

    def _maybe_rotate(self) -> None:
        if not self.log_path.exists() or self.log_path.stat().st_size < self._max_bytes:
            return

        self._backup(self._backup_count).unlink(missing_ok=True)
        for index in range(self._backup_count - 1, 0, -1):
            if self._backup(index).exists():
                self._backup(index).rename(self._backup(index + 1))
        self.log_path.rename(self._backup(1))

    def log(self, event: AuditEvent) -> None:
        self.log_path.parent.mkdir(parents=True, exist_ok=True)

        entry = json.loads(event.model_dump_json())
        entry["prev_hash"] = _line_hash(self._last_line) if self._last_line else None
        line = json.dumps(entry, separators=(",", ":"))

        lock_path = self.log_path.with_name(f".{self.log_path.name}.lock")
        with open(lock_path, "w") as lock:
            fcntl.flock(lock, fcntl.LOCK_EX)
            try:
                self._maybe_rotate()
                with open(self.log_path, "a") as f:
                    f.write(line + "\n")
            finally:
                fcntl.flock(lock, fcntl.LOCK_UN)

        self._last_line = line

    def record(
        self,
        event_type: AuditEventType,
        action: str,
        result: str,
        peer: str | None = None,
        risk_level: RiskLevel = RiskLevel.INFO,
        **details: object,
    ) -> None:
        """Shorthand for logging an AuditEvent built from keyword details."""
        self.log(AuditEvent(
            event_type=event_type,
            peer=peer,
            action=action,
            result=result,
            risk_level=risk_level,
            details=details or None,
        ))


def record_safely(
    audit_logger: AuditLogger | None,
    event_type: AuditEventType,
    action: str,
    result: str,
    peer: str | None = None,
    risk_level: RiskLevel = RiskLevel.INFO,
    **details: object,
) -> None:
    """Record an event if auditing is enabled; write failures are logged, not raised."""
    if audit_logger is None:
        return
    try:
        audit_logger.record(
            event_type, action, result, peer=peer, risk_level=risk_level, **details,
        )
    except Exception as e:
        logger.error("Audit write failed for %s: %s", event_type.value, e)
