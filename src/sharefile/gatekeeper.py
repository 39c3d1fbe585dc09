from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Callable, Optional

from .audit import ACTION_BLOCKED, ACTION_FAILED, ACTION_SUCCESS, AuditLog
from .crypto import dummy_verifier, verify_password
from .db import get_connection
from .files import FileRecord, get_file, increment_download_count, is_valid_file_id
from .throttle import AccessThrottle

logger = logging.getLogger(__name__)

OUTCOME_BAD_REQUEST = "bad_request"
OUTCOME_TOO_MANY_ATTEMPTS = "too_many_attempts"
OUTCOME_INVALID_CREDENTIALS = "invalid_credentials"
OUTCOME_DISABLED = "disabled"
OUTCOME_QUOTA_REACHED = "quota_reached"
OUTCOME_SUCCESS = "success"

MSG_INVALID_REQUEST = "Invalid request"
MSG_PASSWORD_REQUIRED = "Password is required"
MSG_INVALID_CREDENTIALS = "Invalid file or password"
MSG_NOW_BLOCKED = "Too many failed attempts. Please try again later."
MSG_DISABLED = "This file has been disabled by the administrator"
MSG_QUOTA_REACHED = "Download limit reached. This file is no longer available for download."


@dataclass
class DownloadDecision:
    outcome: str
    status: int
    message: str
    retry_after: Optional[int] = None
    record: Optional[FileRecord] = None
    stream: Optional[BinaryIO] = None

    @property
    def granted(self) -> bool:
        return self.outcome == OUTCOME_SUCCESS


def _blocked_message(remaining_seconds: int) -> str:
    minutes = max(1, math.ceil(remaining_seconds / 60))
    return f"Too many failed attempts. Please try again in {minutes} minutes."


class DownloadGatekeeper:
    """Decides every download attempt and records the decision.

    Missing files, wrong passwords and missing bytes on disk all end in the
    same throttled 401 response so callers cannot tell them apart.
    """

    def __init__(
        self,
        throttle: AccessThrottle,
        audit: AuditLog,
        connect: Callable = get_connection,
        upload_dir: str | Path | None = None,
    ) -> None:
        self.throttle = throttle
        self.audit = audit
        self._connect = connect
        self.upload_dir = upload_dir
        # built up front so the first lookup miss does not pay for hashing it
        dummy_verifier()

    def attempt(
        self,
        file_id: str | None,
        password: object,
        client_ip: str,
        user_agent: str | None = None,
    ) -> DownloadDecision:
        if not is_valid_file_id(file_id):
            return DownloadDecision(OUTCOME_BAD_REQUEST, 400, MSG_INVALID_REQUEST)

        check = self.throttle.check(client_ip, file_id)
        if not check.allowed:
            remaining = check.remaining_seconds or 0
            self.audit.record(
                client_ip,
                file_id,
                ACTION_BLOCKED,
                reason=f"Rate limited ({remaining}s remaining)",
                user_agent=user_agent,
            )
            return DownloadDecision(
                OUTCOME_TOO_MANY_ATTEMPTS,
                429,
                _blocked_message(remaining),
                retry_after=remaining,
            )

        if not isinstance(password, str) or not password:
            return DownloadDecision(OUTCOME_BAD_REQUEST, 400, MSG_PASSWORD_REQUIRED)

        with self._connect() as conn:
            record = get_file(conn, file_id)

        if record is None:
            verify_password(password, dummy_verifier())
            return self._credential_failure(file_id, client_ip, user_agent)
        if not verify_password(password, record.password_hash):
            return self._credential_failure(file_id, client_ip, user_agent)

        if not record.is_enabled:
            self.audit.record(
                client_ip,
                file_id,
                ACTION_BLOCKED,
                reason="File is disabled",
                file_name=record.original_name,
                user_agent=user_agent,
            )
            return DownloadDecision(OUTCOME_DISABLED, 403, MSG_DISABLED, record=record)

        if record.limit_reached:
            return self._quota_reached(record, client_ip, user_agent)

        try:
            stream = open(record.storage_path(self.upload_dir), "rb")
        except FileNotFoundError:
            logger.warning("stored bytes missing file_id=%s", file_id)
            return self._credential_failure(file_id, client_ip, user_agent)

        try:
            with self._connect() as conn:
                counted = increment_download_count(conn, file_id)
        except BaseException:
            stream.close()
            raise

        if not counted:
            stream.close()
            return self._quota_reached(record, client_ip, user_agent, count=record.download_limit)

        self.throttle.clear(client_ip, file_id)
        self.audit.record(
            client_ip,
            file_id,
            ACTION_SUCCESS,
            file_name=record.original_name,
            user_agent=user_agent,
        )
        return DownloadDecision(OUTCOME_SUCCESS, 200, "OK", record=record, stream=stream)

    def _credential_failure(self, file_id: str, client_ip: str, user_agent: str | None) -> DownloadDecision:
        result = self.throttle.record_failure(client_ip, file_id)
        if result.blocked:
            reason = "Invalid credentials - IP now blocked"
        else:
            reason = f"Invalid credentials ({result.remaining_attempts} attempts remaining)"
        self.audit.record(client_ip, file_id, ACTION_FAILED, reason=reason, user_agent=user_agent)
        return DownloadDecision(
            OUTCOME_INVALID_CREDENTIALS,
            401,
            MSG_NOW_BLOCKED if result.blocked else MSG_INVALID_CREDENTIALS,
        )

    def _quota_reached(
        self,
        record: FileRecord,
        client_ip: str,
        user_agent: str | None,
        count: int | None = None,
    ) -> DownloadDecision:
        count = record.download_count if count is None else count
        self.audit.record(
            client_ip,
            record.id,
            ACTION_BLOCKED,
            reason=f"Download limit reached ({count}/{record.download_limit})",
            file_name=record.original_name,
            user_agent=user_agent,
        )
        return DownloadDecision(OUTCOME_QUOTA_REACHED, 403, MSG_QUOTA_REACHED, record=record)
