from __future__ import annotations

import atexit
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Optional
from urllib.parse import quote

from flask import Flask, Response, jsonify, request

from .audit import AuditLog
from .config import (
    CHUNK_SIZE,
    LOG_QUERY_LIMIT,
    MAX_UPLOAD_BYTES,
    SWEEP_INTERVAL_SECONDS,
    get_admin_token,
    get_upload_dir,
)
from .crypto import constant_time_compare
from .db import get_connection, init_db
from .files import (
    FileRecord,
    count_files,
    create_file,
    delete_file,
    file_stats,
    get_file,
    is_valid_file_id,
    list_files,
    new_stored_name,
    update_file,
)
from .gatekeeper import DownloadGatekeeper
from .throttle import AccessThrottle, ThrottleSweeper

logger = logging.getLogger(__name__)

_UNSET = object()


def create_app(
    throttle: Optional[AccessThrottle] = None,
    audit: Optional[AuditLog] = None,
    start_sweeper: bool = True,
) -> Flask:
    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = MAX_UPLOAD_BYTES

    init_db()

    throttle = throttle if throttle is not None else AccessThrottle()
    audit = audit if audit is not None else AuditLog()
    gatekeeper = DownloadGatekeeper(throttle, audit)

    app.extensions["sharefile.throttle"] = throttle
    app.extensions["sharefile.audit"] = audit
    app.extensions["sharefile.gatekeeper"] = gatekeeper

    if start_sweeper:
        sweeper = ThrottleSweeper(throttle, SWEEP_INTERVAL_SECONDS)
        sweeper.start()
        atexit.register(sweeper.stop, False)
        app.extensions["sharefile.sweeper"] = sweeper

    @app.errorhandler(413)
    def _too_large(_exc):
        return jsonify({"error": "File too large"}), 413

    @app.route("/api/download/<file_id>", methods=["POST"])
    def download(file_id: str):
        payload = request.get_json(silent=True)
        password = payload.get("password") if isinstance(payload, dict) else None
        if password is None:
            password = request.form.get("password")

        try:
            decision = gatekeeper.attempt(
                file_id,
                password,
                client_ip=_get_client_ip(request),
                user_agent=_get_user_agent(request),
            )
        except (sqlite3.Error, OSError):
            logger.exception("download failed file_id=%s", file_id)
            return jsonify({"error": "Download failed"}), 500

        if not decision.granted:
            response = jsonify({"error": decision.message})
            response.status_code = decision.status
            if decision.retry_after is not None:
                response.headers["Retry-After"] = str(decision.retry_after)
            return response

        return _stream_response(decision.record, decision.stream)

    @app.route("/api/files/<file_id>")
    def file_info(file_id: str):
        if not is_valid_file_id(file_id):
            return jsonify({"error": "Invalid file ID format"}), 400

        with get_connection() as conn:
            record = get_file(conn, file_id)
        if record is None:
            return jsonify({"error": "File not found"}), 404
        if not record.is_enabled:
            return jsonify({"error": "This file has been disabled"}), 403
        return jsonify(record.public_info())

    @app.route("/api/upload", methods=["POST"])
    def upload():
        storage = request.files.get("file")
        if storage is None or not storage.filename:
            return jsonify({"error": "No file provided"}), 400

        password = request.form.get("password", "")
        if not password:
            return jsonify({"error": "No password provided"}), 400

        download_limit = None
        raw_limit = request.form.get("downloadLimit", "").strip()
        if raw_limit:
            try:
                parsed = int(raw_limit)
            except ValueError:
                parsed = 0
            download_limit = parsed if parsed > 0 else None

        upload_dir = Path(get_upload_dir())
        upload_dir.mkdir(parents=True, exist_ok=True)
        stored_name = new_stored_name()
        stored_path = upload_dir / stored_name

        try:
            storage.save(stored_path)
            with get_connection() as conn:
                record = create_file(
                    conn,
                    original_name=Path(storage.filename).name,
                    stored_name=stored_name,
                    password=password,
                    file_size=stored_path.stat().st_size,
                    mime_type=storage.mimetype,
                    download_limit=download_limit,
                )
        except (sqlite3.Error, OSError):
            logger.exception("upload failed name=%s", storage.filename)
            stored_path.unlink(missing_ok=True)
            return jsonify({"error": "Failed to upload file"}), 500

        download_url = f"{request.host_url.rstrip('/')}/download/{record.id}"
        logger.info("file uploaded id=%s size=%s", record.id, record.file_size)
        return jsonify(
            {
                "success": True,
                "id": record.id,
                "fileName": record.original_name,
                "fileSize": record.file_size,
                "downloadLimit": record.download_limit,
                "downloadUrl": download_url,
                "downloadUrlWithPassword": f"{download_url}?pwd={quote(password, safe='')}",
                "password": password,
            }
        )

    @app.route("/api/admin/files")
    def admin_files():
        denied = _require_admin()
        if denied is not None:
            return denied
        with get_connection() as conn:
            records = list_files(conn)
        return jsonify({"files": [record.admin_info() for record in records]})

    @app.route("/api/admin/files/<file_id>", methods=["PATCH"])
    def admin_update_file(file_id: str):
        denied = _require_admin()
        if denied is not None:
            return denied
        if not is_valid_file_id(file_id):
            return jsonify({"error": "Invalid file ID format"}), 400

        body = request.get_json(silent=True)
        if not isinstance(body, dict):
            body = {}

        is_enabled = body["isEnabled"] if isinstance(body.get("isEnabled"), bool) else _UNSET
        download_limit = _UNSET
        if "downloadLimit" in body:
            raw_limit = body["downloadLimit"]
            try:
                download_limit = None if raw_limit is None else int(raw_limit)
            except (TypeError, ValueError):
                return jsonify({"error": "Invalid download limit"}), 400
        new_password = body.get("newPassword")
        if new_password is not None and not isinstance(new_password, str):
            return jsonify({"error": "Invalid password"}), 400

        kwargs = {}
        if is_enabled is not _UNSET:
            kwargs["is_enabled"] = is_enabled
        if download_limit is not _UNSET:
            kwargs["download_limit"] = download_limit

        try:
            with get_connection() as conn:
                record = update_file(conn, file_id, new_password=new_password or None, **kwargs)
        except ValueError as exc:
            return jsonify({"error": str(exc)}), 400

        if record is None:
            return jsonify({"error": "File not found"}), 404

        logger.info("file updated id=%s fields=%s", file_id, sorted(kwargs) + (["password"] if new_password else []))
        response = {
            "success": True,
            "file": {
                "id": record.id,
                "isEnabled": record.is_enabled,
                "downloadLimit": record.download_limit,
            },
        }
        if new_password:
            response["newPassword"] = new_password
        return jsonify(response)

    @app.route("/api/admin/files/<file_id>", methods=["DELETE"])
    def admin_delete_file(file_id: str):
        denied = _require_admin()
        if denied is not None:
            return denied
        if not is_valid_file_id(file_id):
            return jsonify({"error": "Invalid file ID format"}), 400

        with get_connection() as conn:
            deleted = delete_file(conn, file_id)
        if not deleted:
            return jsonify({"error": "File not found"}), 404
        logger.info("file deleted id=%s", file_id)
        return jsonify({"success": True, "message": "File deleted"})

    @app.route("/api/admin/logs")
    def admin_logs():
        denied = _require_admin()
        if denied is not None:
            return denied
        try:
            limit = int(request.args.get("limit", LOG_QUERY_LIMIT))
        except ValueError:
            limit = 0
        if limit <= 0:
            limit = LOG_QUERY_LIMIT
        file_id = request.args.get("fileId") or None
        entries = audit.query(file_id=file_id, limit=limit)
        return jsonify({"logs": [entry.to_json() for entry in entries]})

    @app.route("/api/admin/logs/export")
    def admin_export_logs():
        denied = _require_admin()
        if denied is not None:
            return denied
        csv_data = audit.export_csv(file_id=request.args.get("fileId") or None)
        return Response(
            csv_data,
            mimetype="text/csv",
            headers={"Content-Disposition": "attachment; filename=download_log.csv"},
        )

    @app.route("/api/admin/stats")
    def admin_stats():
        denied = _require_admin()
        if denied is not None:
            return denied
        now = datetime.now(timezone.utc)
        with get_connection() as conn:
            stats = file_stats(conn, now)
        attempts = audit.summarize(now)
        return jsonify(
            {
                "overview": stats["overview"],
                "charts": {
                    "dailyDownloads": attempts["dailyDownloads"],
                    "dailyUploads": stats["dailyUploads"],
                    "fileTypes": stats["fileTypes"],
                    "successRate": attempts["successRate"],
                    "totalAttempts": attempts["totalAttempts"],
                },
                "topFiles": stats["topFiles"],
            }
        )

    @app.route("/api/admin/throttle", methods=["GET", "DELETE"])
    def admin_throttle():
        denied = _require_admin()
        if denied is not None:
            return denied
        ip_address = request.args.get("ip", "").strip()
        file_id = request.args.get("fileId", "").strip()
        if not ip_address or not is_valid_file_id(file_id):
            return jsonify({"error": "ip and fileId are required"}), 400

        if request.method == "DELETE":
            throttle.clear(ip_address, file_id)
            logger.info("throttle cleared ip=%s file_id=%s", ip_address, file_id)
        return jsonify(throttle.inspect(ip_address, file_id).as_dict())

    @app.route("/health")
    def health():
        with get_connection() as conn:
            total = count_files(conn)
        return jsonify(
            {
                "status": "ok",
                "time": datetime.now(timezone.utc).isoformat(),
                "files": total,
                "throttleEntries": len(throttle),
            }
        )

    return app


def _stream_response(record: FileRecord, stream: BinaryIO) -> Response:
    response = Response(_iter_file(stream), status=200, content_type=record.mime_type)
    response.headers["Content-Disposition"] = f'attachment; filename="{quote(record.original_name, safe="")}"'
    response.headers["Content-Length"] = str(record.file_size)
    response.headers["Cache-Control"] = "no-store"
    # covers a client that disconnects before the first chunk is pulled
    response.call_on_close(stream.close)
    return response


def _iter_file(stream: BinaryIO):
    try:
        while True:
            chunk = stream.read(CHUNK_SIZE)
            if not chunk:
                break
            yield chunk
    finally:
        stream.close()


def _require_admin():
    expected = get_admin_token()
    if not expected:
        return jsonify({"error": "Admin API disabled"}), 403
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not constant_time_compare(
        token.strip().encode("utf-8"), expected.encode("utf-8")
    ):
        return jsonify({"error": "Unauthorized"}), 401
    return None


def _get_client_ip(req) -> str:
    forwarded = req.headers.get("X-Forwarded-For", "")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return req.headers.get("X-Real-IP") or req.remote_addr or "unknown"


def _get_user_agent(req) -> str | None:
    agent = req.headers.get("User-Agent")
    return agent[:255] if agent else None


if __name__ == "__main__":
    create_app().run(debug=True)
