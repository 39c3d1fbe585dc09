from __future__ import annotations

import re
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from .config import DAILY_CHART_DAYS, get_upload_dir
from .crypto import hash_password

FILE_ID_PATTERN = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}")
DEFAULT_MIME_TYPE = "application/octet-stream"

_FILE_COLUMNS = (
    "id, original_name, stored_name, password_hash, file_size, mime_type, "
    "download_count, download_limit, is_enabled, created_at"
)

_UNSET = object()


@dataclass
class FileRecord:
    id: str
    original_name: str
    stored_name: str
    password_hash: str
    file_size: int
    mime_type: str
    download_count: int
    download_limit: Optional[int]
    is_enabled: bool
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "FileRecord":
        return cls(
            id=row["id"],
            original_name=row["original_name"],
            stored_name=row["stored_name"],
            password_hash=row["password_hash"],
            file_size=int(row["file_size"]),
            mime_type=row["mime_type"] or DEFAULT_MIME_TYPE,
            download_count=int(row["download_count"] or 0),
            download_limit=None if row["download_limit"] is None else int(row["download_limit"]),
            is_enabled=bool(row["is_enabled"]),
            created_at=row["created_at"],
        )

    @property
    def limit_reached(self) -> bool:
        return self.download_limit is not None and self.download_count >= self.download_limit

    def storage_path(self, upload_dir: str | Path | None = None) -> Path:
        base = Path(upload_dir if upload_dir is not None else get_upload_dir())
        return base / Path(self.stored_name).name

    def public_info(self) -> dict:
        return {
            "id": self.id,
            "fileName": self.original_name,
            "fileSize": self.file_size,
            "mimeType": self.mime_type,
            "downloadCount": self.download_count,
            "downloadLimit": self.download_limit,
            "limitReached": self.limit_reached,
            "createdAt": self.created_at,
        }

    def admin_info(self) -> dict:
        info = self.public_info()
        info.pop("limitReached")
        info["isEnabled"] = self.is_enabled
        return info


def is_valid_file_id(value: str | None) -> bool:
    return bool(value) and FILE_ID_PATTERN.fullmatch(value) is not None


def new_stored_name() -> str:
    stamp = int(datetime.now(timezone.utc).timestamp() * 1000)
    return f"{uuid.uuid4()}-{stamp}"


def create_file(
    conn: sqlite3.Connection,
    original_name: str,
    stored_name: str,
    password: str,
    file_size: int,
    mime_type: str | None = None,
    download_limit: int | None = None,
) -> FileRecord:
    if download_limit is not None and download_limit <= 0:
        raise ValueError("download_limit must be positive")
    record = FileRecord(
        id=str(uuid.uuid4()),
        original_name=original_name,
        stored_name=stored_name,
        password_hash=hash_password(password),
        file_size=int(file_size),
        mime_type=mime_type or DEFAULT_MIME_TYPE,
        download_count=0,
        download_limit=download_limit,
        is_enabled=True,
        created_at=datetime.now(timezone.utc).isoformat(),
    )
    conn.execute(
        "INSERT INTO files (id, original_name, stored_name, password_hash, file_size, mime_type, "
        "download_count, download_limit, is_enabled, created_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            record.id,
            record.original_name,
            record.stored_name,
            record.password_hash,
            record.file_size,
            record.mime_type,
            record.download_count,
            record.download_limit,
            1,
            record.created_at,
        ),
    )
    return record


def get_file(conn: sqlite3.Connection, file_id: str) -> FileRecord | None:
    row = conn.execute(f"SELECT {_FILE_COLUMNS} FROM files WHERE id = ?", (file_id,)).fetchone()
    if not row:
        return None
    return FileRecord.from_row(row)


def list_files(conn: sqlite3.Connection) -> list[FileRecord]:
    rows = conn.execute(f"SELECT {_FILE_COLUMNS} FROM files ORDER BY created_at DESC").fetchall()
    return [FileRecord.from_row(row) for row in rows]


def update_file(
    conn: sqlite3.Connection,
    file_id: str,
    is_enabled=_UNSET,
    download_limit=_UNSET,
    new_password: str | None = None,
) -> FileRecord | None:
    updates = []
    values: list = []
    if is_enabled is not _UNSET:
        updates.append("is_enabled = ?")
        values.append(1 if is_enabled else 0)
    if download_limit is not _UNSET:
        if download_limit is not None and int(download_limit) <= 0:
            raise ValueError("download_limit must be positive")
        updates.append("download_limit = ?")
        values.append(None if download_limit is None else int(download_limit))
    if new_password:
        updates.append("password_hash = ?")
        values.append(hash_password(new_password))
    if not updates:
        raise ValueError("No fields to update")

    values.append(file_id)
    cur = conn.execute(f"UPDATE files SET {', '.join(updates)} WHERE id = ?", values)
    if not cur.rowcount:
        return None
    return get_file(conn, file_id)


def delete_file(conn: sqlite3.Connection, file_id: str, upload_dir: str | Path | None = None) -> bool:
    record = get_file(conn, file_id)
    if record is None:
        return False
    conn.execute("DELETE FROM files WHERE id = ?", (file_id,))
    record.storage_path(upload_dir).unlink(missing_ok=True)
    return True


def increment_download_count(conn: sqlite3.Connection, file_id: str) -> bool:
    """Count one download unless the quota is already exhausted.

    Returns False when no row was updated, which callers treat as the quota
    having been reached by a concurrent download.
    """
    if not conn.in_transaction:
        # take the write lock before reading download_count
        conn.execute("BEGIN IMMEDIATE")
    cur = conn.execute(
        "UPDATE files SET download_count = download_count + 1 "
        "WHERE id = ? AND (download_limit IS NULL OR download_count < download_limit)",
        (file_id,),
    )
    return bool(cur.rowcount)


def count_files(conn: sqlite3.Connection) -> int:
    return int(conn.execute("SELECT COUNT(*) AS total FROM files").fetchone()["total"])


def file_stats(conn: sqlite3.Connection, now: datetime | None = None) -> dict:
    now = now or datetime.now(timezone.utc)
    totals = conn.execute(
        "SELECT COUNT(*) AS total_files, COALESCE(SUM(download_count), 0) AS total_downloads, "
        "COALESCE(SUM(file_size), 0) AS total_size, "
        "SUM(CASE WHEN is_enabled = 1 THEN 1 ELSE 0 END) AS active_files, "
        "SUM(CASE WHEN is_enabled = 0 THEN 1 ELSE 0 END) AS disabled_files "
        "FROM files"
    ).fetchone()

    file_types = conn.execute(
        "SELECT CASE "
        "WHEN mime_type LIKE 'image/%' THEN 'Images' "
        "WHEN mime_type LIKE 'video/%' THEN 'Videos' "
        "WHEN mime_type LIKE 'audio/%' THEN 'Audio' "
        "WHEN mime_type = 'application/pdf' THEN 'PDF' "
        "WHEN mime_type = 'application/zip' OR mime_type LIKE 'application/x-rar%' "
        "OR mime_type LIKE 'application/x-7z%' THEN 'Archives' "
        "WHEN mime_type LIKE 'text/%' OR mime_type = 'application/json' THEN 'Text' "
        "ELSE 'Other' END AS type, COUNT(*) AS count, COALESCE(SUM(file_size), 0) AS size "
        "FROM files GROUP BY type ORDER BY count DESC"
    ).fetchall()

    top_files = conn.execute(
        "SELECT id, original_name, download_count, file_size FROM files "
        "WHERE download_count > 0 ORDER BY download_count DESC LIMIT 5"
    ).fetchall()

    start = (now - timedelta(days=DAILY_CHART_DAYS - 1)).date()
    uploads = conn.execute(
        "SELECT substr(created_at, 1, 10) AS day, COUNT(*) AS total FROM files "
        "WHERE created_at >= ? GROUP BY day",
        (start.isoformat(),),
    ).fetchall()
    uploads_by_day = {row["day"]: int(row["total"]) for row in uploads}

    daily_uploads = []
    for offset in range(DAILY_CHART_DAYS - 1, -1, -1):
        day = (now - timedelta(days=offset)).date()
        daily_uploads.append(
            {
                "date": day.isoformat(),
                "label": day.strftime("%a"),
                "uploads": uploads_by_day.get(day.isoformat(), 0),
            }
        )

    return {
        "overview": {
            "totalFiles": int(totals["total_files"] or 0),
            "totalDownloads": int(totals["total_downloads"] or 0),
            "totalSize": int(totals["total_size"] or 0),
            "activeFiles": int(totals["active_files"] or 0),
            "disabledFiles": int(totals["disabled_files"] or 0),
        },
        "fileTypes": [
            {"type": row["type"], "count": int(row["count"]), "size": int(row["size"])} for row in file_types
        ],
        "dailyUploads": daily_uploads,
        "topFiles": [
            {
                "id": row["id"],
                "fileName": row["original_name"],
                "downloads": int(row["download_count"]),
                "size": int(row["file_size"]),
            }
            for row in top_files
        ],
    }
