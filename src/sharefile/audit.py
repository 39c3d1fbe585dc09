from __future__ import annotations

import csv
import io
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

from .config import DAILY_CHART_DAYS, LOG_FILE, LOG_QUERY_LIMIT, STATS_WINDOW_DAYS, get_log_dir

logger = logging.getLogger(__name__)

ACTION_ATTEMPT = "attempt"
ACTION_SUCCESS = "success"
ACTION_FAILED = "failed"
ACTION_BLOCKED = "blocked"
ACTIONS = (ACTION_ATTEMPT, ACTION_SUCCESS, ACTION_FAILED, ACTION_BLOCKED)

CSV_COLUMNS = ["timestamp", "ip", "fileId", "fileName", "action", "reason", "userAgent"]

_path_locks: dict[str, threading.Lock] = {}
_path_locks_guard = threading.Lock()


def _lock_for(path: Path) -> threading.Lock:
    key = str(path.resolve())
    with _path_locks_guard:
        lock = _path_locks.get(key)
        if lock is None:
            lock = _path_locks[key] = threading.Lock()
        return lock


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AuditEntry:
    timestamp: str
    ip: str
    file_id: str
    action: str
    file_name: Optional[str] = None
    reason: Optional[str] = None
    user_agent: Optional[str] = None

    def to_json(self) -> dict:
        payload = {"timestamp": self.timestamp, "ip": self.ip, "fileId": self.file_id}
        if self.file_name is not None:
            payload["fileName"] = self.file_name
        payload["action"] = self.action
        if self.reason is not None:
            payload["reason"] = self.reason
        if self.user_agent is not None:
            payload["userAgent"] = self.user_agent
        return payload

    @classmethod
    def from_json(cls, payload: object) -> "AuditEntry":
        if not isinstance(payload, dict):
            raise ValueError("audit line is not an object")
        for field in ("timestamp", "ip", "fileId", "action"):
            if not isinstance(payload.get(field), str):
                raise ValueError(f"audit line missing {field}")
        if payload["action"] not in ACTIONS:
            raise ValueError("unknown audit action")
        return cls(
            timestamp=payload["timestamp"],
            ip=payload["ip"],
            file_id=payload["fileId"],
            action=payload["action"],
            file_name=payload.get("fileName"),
            reason=payload.get("reason"),
            user_agent=payload.get("userAgent"),
        )

    def console_line(self) -> str:
        reason = f" - {self.reason}" if self.reason else ""
        return f"[{self.timestamp}] {self.action.upper():<7} | IP: {self.ip} | File: {self.file_id}{reason}"


class AuditLog:
    """Append-only JSON-lines record of download attempts.

    One object per line, appended in timestamp order. Readers parse each line
    on its own and skip anything unparseable.
    """

    def __init__(
        self,
        log_dir: str | Path | None = None,
        file_name: str = LOG_FILE,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._log_dir = log_dir
        self.file_name = file_name
        self._clock = clock

    @property
    def path(self) -> Path:
        base = self._log_dir if self._log_dir is not None else get_log_dir()
        return Path(base) / self.file_name

    def record(
        self,
        ip: str,
        file_id: str,
        action: str,
        reason: str | None = None,
        file_name: str | None = None,
        user_agent: str | None = None,
    ) -> AuditEntry | None:
        if action not in ACTIONS:
            raise ValueError(f"Unknown audit action: {action}")

        path = self.path
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with _lock_for(path):
                entry = AuditEntry(
                    timestamp=self._clock().isoformat(),
                    ip=ip,
                    file_id=file_id,
                    action=action,
                    file_name=file_name,
                    reason=reason,
                    user_agent=user_agent,
                )
                line = json.dumps(entry.to_json()) + "\n"
                with open(path, "a", encoding="utf-8") as handle:
                    handle.write(line)
        except (OSError, TypeError, ValueError):
            logger.exception("failed to write audit entry file_id=%s action=%s", file_id, action)
            return None

        logger.info(entry.console_line())
        return entry

    def entries(self) -> list[AuditEntry]:
        """All readable entries, oldest first."""
        path = self.path
        if not path.exists():
            return []

        with open(path, "r", encoding="utf-8", errors="replace") as handle:
            lines = handle.read().splitlines()

        entries = []
        for line in lines:
            if not line.strip():
                continue
            try:
                entries.append(AuditEntry.from_json(json.loads(line)))
            except ValueError:
                continue
        return entries

    def query(self, file_id: str | None = None, limit: int = LOG_QUERY_LIMIT) -> list[AuditEntry]:
        """Most recent entries first, optionally for one file, at most ``limit``."""
        if limit <= 0:
            return []
        entries = self.entries()
        if file_id:
            entries = [entry for entry in entries if entry.file_id == file_id]
        entries.reverse()
        return entries[:limit]

    def export_csv(self, file_id: str | None = None) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(CSV_COLUMNS)
        for entry in self.entries():
            if file_id and entry.file_id != file_id:
                continue
            payload = entry.to_json()
            writer.writerow([payload.get(column, "") for column in CSV_COLUMNS])
        return buffer.getvalue()

    def summarize(self, now: datetime | None = None) -> dict:
        now = now or self._clock()
        recent_cutoff = now - timedelta(days=STATS_WINDOW_DAYS)
        first_chart_day = (now - timedelta(days=DAILY_CHART_DAYS - 1)).date()

        successes = 0
        failures = 0
        downloads_by_day: dict[str, int] = {}
        for entry in self.entries():
            try:
                stamp = datetime.fromisoformat(entry.timestamp)
            except ValueError:
                continue
            if stamp.tzinfo is None:
                stamp = stamp.replace(tzinfo=timezone.utc)
            if stamp >= recent_cutoff:
                if entry.action == ACTION_SUCCESS:
                    successes += 1
                elif entry.action == ACTION_FAILED:
                    failures += 1
            if entry.action == ACTION_SUCCESS and stamp.date() >= first_chart_day:
                day = stamp.date().isoformat()
                downloads_by_day[day] = downloads_by_day.get(day, 0) + 1

        daily = []
        for offset in range(DAILY_CHART_DAYS - 1, -1, -1):
            day = (now - timedelta(days=offset)).date()
            daily.append(
                {
                    "date": day.isoformat(),
                    "label": day.strftime("%a"),
                    "downloads": downloads_by_day.get(day.isoformat(), 0),
                }
            )

        total = successes + failures
        return {
            "dailyDownloads": daily,
            "successRate": round(successes / total * 100) if total else 100,
            "totalAttempts": total,
        }
