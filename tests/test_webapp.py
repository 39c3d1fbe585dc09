import io

import pytest

from sharefile.db import get_connection
from sharefile.files import get_file
from sharefile.webapp import _stream_response, create_app

ADMIN_TOKEN = "admin-test-token"
UNKNOWN_ID = "7c9e6679-7425-40de-944b-e07fc1f90ae7"


@pytest.fixture
def app(sharefile_env, monkeypatch):
    monkeypatch.setenv("SHAREFILE_ADMIN_TOKEN", ADMIN_TOKEN)
    app = create_app(start_sweeper=False)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}


def _upload(client, data=b"hello from sharefile", name="hello.txt", password="Password!12345", limit=None):
    form = {"file": (io.BytesIO(data), name), "password": password}
    if limit is not None:
        form["downloadLimit"] = str(limit)
    response = client.post("/api/upload", data=form, content_type="multipart/form-data")
    assert response.status_code == 200
    return response.get_json()


def test_upload_then_download(client):
    uploaded = _upload(client)
    assert uploaded["success"] is True
    assert uploaded["fileSize"] == len(b"hello from sharefile")
    assert uploaded["downloadUrl"].endswith(f"/download/{uploaded['id']}")

    response = client.post(f"/api/download/{uploaded['id']}", json={"password": "Password!12345"})

    assert response.status_code == 200
    assert response.data == b"hello from sharefile"
    assert response.headers["Content-Disposition"] == 'attachment; filename="hello.txt"'
    assert response.headers["Content-Length"] == str(len(b"hello from sharefile"))
    assert response.headers["Cache-Control"] == "no-store"


def test_download_accepts_form_password(client):
    uploaded = _upload(client)

    response = client.post(f"/api/download/{uploaded['id']}", data={"password": "Password!12345"})

    assert response.status_code == 200


def test_attachment_name_is_percent_encoded(client):
    uploaded = _upload(client, name="quarterly report.txt")

    response = client.post(f"/api/download/{uploaded['id']}", json={"password": "Password!12345"})

    assert response.headers["Content-Disposition"] == 'attachment; filename="quarterly%20report.txt"'


def test_upload_requires_file_and_password(client):
    assert client.post("/api/upload", data={"password": "x"}, content_type="multipart/form-data").status_code == 400
    response = client.post(
        "/api/upload",
        data={"file": (io.BytesIO(b"x"), "x.txt")},
        content_type="multipart/form-data",
    )
    assert response.status_code == 400


def test_bad_id_and_missing_password(client):
    assert client.post("/api/download/not-a-uuid", json={"password": "x"}).status_code == 400
    uploaded = _upload(client)
    response = client.post(f"/api/download/{uploaded['id']}", json={})
    assert response.status_code == 400
    assert response.get_json() == {"error": "Password is required"}


def test_wrong_password_and_unknown_file_share_one_response(client):
    uploaded = _upload(client)

    wrong = client.post(f"/api/download/{uploaded['id']}", json={"password": "nope"})
    unknown = client.post(f"/api/download/{UNKNOWN_ID}", json={"password": "Password!12345"})

    assert wrong.status_code == unknown.status_code == 401
    assert wrong.get_json() == unknown.get_json() == {"error": "Invalid file or password"}


def test_blocked_client_gets_retry_after(client):
    uploaded = _upload(client)
    for _ in range(5):
        client.post(f"/api/download/{uploaded['id']}", json={"password": "nope"})

    response = client.post(f"/api/download/{uploaded['id']}", json={"password": "Password!12345"})

    assert response.status_code == 429
    assert 0 < int(response.headers["Retry-After"]) <= 900


def test_forwarded_for_sets_client_identity(client, app, admin_headers):
    uploaded = _upload(client)
    client.post(
        f"/api/download/{uploaded['id']}",
        json={"password": "nope"},
        headers={"X-Forwarded-For": "198.51.100.4, 10.0.0.1"},
    )

    response = client.get(
        "/api/admin/throttle",
        query_string={"ip": "198.51.100.4", "fileId": uploaded["id"]},
        headers=admin_headers,
    )

    assert response.get_json()["attempts"] == 1


def test_disconnect_mid_stream_releases_file_and_keeps_count(app, store_file):
    record = store_file(data=b"x" * 300_000)
    decision = app.extensions["sharefile.gatekeeper"].attempt(record.id, "Password!12345", "203.0.113.7")
    response = _stream_response(decision.record, decision.stream)

    chunks = response.iter_encoded()
    assert len(next(chunks)) == 64 * 1024
    response.close()

    assert decision.stream.closed
    with get_connection() as conn:
        assert get_file(conn, record.id).download_count == 1


def test_disconnect_before_first_chunk_releases_file(app, store_file):
    record = store_file()
    decision = app.extensions["sharefile.gatekeeper"].attempt(record.id, "Password!12345", "203.0.113.7")
    response = _stream_response(decision.record, decision.stream)

    response.close()

    assert decision.stream.closed
    with get_connection() as conn:
        assert get_file(conn, record.id).download_count == 1


def test_quota_reached_is_forbidden(client):
    uploaded = _upload(client, limit=1)
    url = f"/api/download/{uploaded['id']}"

    assert client.post(url, json={"password": "Password!12345"}).status_code == 200
    response = client.post(url, json={"password": "Password!12345"})

    assert response.status_code == 403
    assert "Download limit reached" in response.get_json()["error"]


def test_file_info(client):
    uploaded = _upload(client, limit=2)

    info = client.get(f"/api/files/{uploaded['id']}").get_json()

    assert info["fileName"] == "hello.txt"
    assert info["downloadLimit"] == 2
    assert info["limitReached"] is False
    assert "password_hash" not in info
    assert client.get("/api/files/nope").status_code == 400
    assert client.get(f"/api/files/{UNKNOWN_ID}").status_code == 404


def test_admin_requires_token(client, admin_headers):
    assert client.get("/api/admin/files").status_code == 401
    assert client.get("/api/admin/files", headers={"Authorization": "Bearer wrong"}).status_code == 401
    assert client.get("/api/admin/files", headers=admin_headers).status_code == 200


def test_admin_disabled_without_configured_token(client, monkeypatch):
    monkeypatch.setenv("SHAREFILE_ADMIN_TOKEN", "")

    assert client.get("/api/admin/files", headers={"Authorization": "Bearer "}).status_code == 403


def test_admin_disable_then_download_is_forbidden(client, admin_headers):
    uploaded = _upload(client)

    patched = client.patch(
        f"/api/admin/files/{uploaded['id']}",
        json={"isEnabled": False},
        headers=admin_headers,
    )
    assert patched.get_json()["file"]["isEnabled"] is False

    response = client.post(f"/api/download/{uploaded['id']}", json={"password": "Password!12345"})
    assert response.status_code == 403
    assert response.get_json()["error"] == "This file has been disabled by the administrator"

    logs = client.get("/api/admin/logs", query_string={"fileId": uploaded["id"]}, headers=admin_headers)
    [entry] = logs.get_json()["logs"]
    assert entry["action"] == "blocked"
    assert entry["fileName"] == "hello.txt"


def test_admin_password_reset(client, admin_headers):
    uploaded = _upload(client)

    response = client.patch(
        f"/api/admin/files/{uploaded['id']}",
        json={"newPassword": "Fresh-Secret-1"},
        headers=admin_headers,
    )
    assert response.get_json()["newPassword"] == "Fresh-Secret-1"

    url = f"/api/download/{uploaded['id']}"
    assert client.post(url, json={"password": "Password!12345"}).status_code == 401
    assert client.post(url, json={"password": "Fresh-Secret-1"}).status_code == 200


def test_admin_patch_validation(client, admin_headers):
    uploaded = _upload(client)
    url = f"/api/admin/files/{uploaded['id']}"

    assert client.patch(url, json={}, headers=admin_headers).status_code == 400
    assert client.patch(url, json={"downloadLimit": "many"}, headers=admin_headers).status_code == 400
    assert client.patch(f"/api/admin/files/{UNKNOWN_ID}", json={"isEnabled": True}, headers=admin_headers).status_code == 404


def test_admin_delete(client, admin_headers):
    uploaded = _upload(client)

    assert client.delete(f"/api/admin/files/{uploaded['id']}", headers=admin_headers).status_code == 200
    assert client.delete(f"/api/admin/files/{uploaded['id']}", headers=admin_headers).status_code == 404
    assert client.get(f"/api/files/{uploaded['id']}").status_code == 404


def test_admin_throttle_clear_unblocks(client, admin_headers):
    uploaded = _upload(client)
    url = f"/api/download/{uploaded['id']}"
    for _ in range(5):
        client.post(url, json={"password": "nope"})

    response = client.delete(
        "/api/admin/throttle",
        query_string={"ip": "127.0.0.1", "fileId": uploaded["id"]},
        headers=admin_headers,
    )

    assert response.get_json() == {"attempts": 0, "isBlocked": False, "blockedUntil": None}
    assert client.post(url, json={"password": "Password!12345"}).status_code == 200


def test_admin_logs_non_positive_limit_uses_default(client, admin_headers):
    uploaded = _upload(client)
    client.post(f"/api/download/{uploaded['id']}", json={"password": "nope"})

    for limit in ("0", "-3", "many"):
        response = client.get("/api/admin/logs", query_string={"limit": limit}, headers=admin_headers)
        assert len(response.get_json()["logs"]) == 1


def test_admin_stats_and_export(client, admin_headers):
    uploaded = _upload(client)
    url = f"/api/download/{uploaded['id']}"
    client.post(url, json={"password": "nope"})
    client.post(url, json={"password": "Password!12345"})

    stats = client.get("/api/admin/stats", headers=admin_headers).get_json()
    assert stats["overview"]["totalFiles"] == 1
    assert stats["overview"]["totalDownloads"] == 1
    assert stats["charts"]["totalAttempts"] == 2
    assert stats["charts"]["successRate"] == 50
    assert stats["charts"]["dailyDownloads"][-1]["downloads"] == 1

    export = client.get("/api/admin/logs/export", headers=admin_headers)
    assert export.mimetype == "text/csv"
    assert len(export.data.decode("utf-8").strip().splitlines()) == 3


def test_app_keeps_no_session_secret(app):
    assert app.secret_key is None


def test_health(client):
    _upload(client)

    payload = client.get("/health").get_json()

    assert payload["status"] == "ok"
    assert payload["files"] == 1
    assert payload["throttleEntries"] == 0
