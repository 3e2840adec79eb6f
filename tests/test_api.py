import sqlite3
from datetime import timedelta

from botocore.stub import Stubber
from fastapi.testclient import TestClient

from filedrop.config import get_settings
from filedrop.main import create_app
from filedrop.repository import to_db_time, utc_now
from filedrop.storage import S3Storage

PASSWORD = "correct-horse"
MIB = 1024 * 1024
CREDENTIALS = {
    "endpoint": "https://account.r2.example.com",
    "access_key_id": "test-access-key",
    "secret_access_key": "test-secret-key",
    "bucket_name": "drops",
}


def build_client(tmp_path, monkeypatch, **env):
    db_path = tmp_path / "filedrop.db"

    monkeypatch.setenv("FILEDROP_APP_SECRET_KEY", "test-secret")
    monkeypatch.setenv("FILEDROP_DATABASE_PATH", str(db_path))
    monkeypatch.setenv("FILEDROP_STORAGE_BACKEND", "memory")
    monkeypatch.setenv("FILEDROP_SWEEPER_ENABLED", "false")
    for name, value in env.items():
        monkeypatch.setenv(f"FILEDROP_{name.upper()}", str(value))
    get_settings.cache_clear()

    app = create_app()
    return TestClient(app), db_path


def sign_in(client):
    response = client.post("/api/auth/setup-password", json={"password": PASSWORD})
    assert response.status_code == 200
    assert client.cookies.get("auth_token")
    return response


def upload_file(client, filename="hello.txt", size=11, expires_in=7):
    presign = client.post(
        "/api/upload/presign",
        json={"filename": filename, "content_type": "text/plain", "size": size, "expires_in": expires_in},
    )
    assert presign.status_code == 200
    file_id = presign.json()["file_id"]
    confirm = client.post("/api/upload/confirm", json={"file_id": file_id})
    assert confirm.status_code == 200
    return presign.json(), confirm.json()


def test_health(tmp_path, monkeypatch):
    client, _ = build_client(tmp_path, monkeypatch)
    with client:
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


def test_upload_share_and_expire(tmp_path, monkeypatch):
    client, db_path = build_client(tmp_path, monkeypatch)
    with client:
        sign_in(client)
        presign, confirm = upload_file(client, expires_in=1)
        file_id = presign["file_id"]

        assert presign["upload_url"].startswith("memory://")
        assert presign["download_url"] == f"/api/files/{file_id}/download"
        assert confirm["success"] is True
        assert confirm["short_url"] == presign["short_url"]

        listing = client.get("/api/files")
        assert listing.status_code == 200
        body = listing.json()
        assert body["total"] == 1
        assert body["files"][0]["id"] == file_id
        assert body["files"][0]["upload_status"] == "completed"

        short = client.get(presign["short_url"], follow_redirects=False)
        assert short.status_code == 302
        assert short.headers["location"] == f"/api/files/{file_id}/download"

        download = client.get(f"/api/files/{file_id}/download", follow_redirects=False)
        assert download.status_code == 302
        assert download.headers["location"].startswith("memory://")

        conn = sqlite3.connect(db_path)
        conn.execute(
            "UPDATE files SET expires_at = ? WHERE id = ?",
            (to_db_time(utc_now() - timedelta(seconds=1)), file_id),
        )
        conn.commit()
        conn.close()
        report = client.app.state.sweeper.run_once()
        assert report.expired == [file_id]

        expired = client.get(f"/api/files/{file_id}/download", follow_redirects=False)
        assert expired.status_code == 410
        assert expired.json()["error"]["code"] == "expired"

        listing = client.get("/api/files").json()
        assert listing["files"][0]["upload_status"] == "deleted"
        assert listing["files"][0]["download_url"] == ""


def test_multipart_upload(tmp_path, monkeypatch):
    client, _ = build_client(tmp_path, monkeypatch)
    with client:
        sign_in(client)
        init = client.post(
            "/api/upload/multipart/init",
            json={"filename": "movie.mkv", "content_type": "video/x-matroska", "size": 45 * MIB},
        )
        assert init.status_code == 200
        session = init.json()
        assert session["total_parts"] == 3
        assert session["part_size"] == 20 * MIB

        part = client.post(
            "/api/upload/multipart/presign",
            json={"file_id": session["file_id"], "upload_id": session["upload_id"], "part_number": 1},
        )
        assert part.status_code == 200
        assert part.json()["part_number"] == 1

        bad_part = client.post(
            "/api/upload/multipart/presign",
            json={"file_id": session["file_id"], "upload_id": session["upload_id"], "part_number": 0},
        )
        assert bad_part.status_code == 400

        storage = client.app.state.storage.current()
        key = client.app.state.coordinator.repository.get_file(session["file_id"]).storage_key
        for number in (1, 2, 3):
            storage.upload_part(key, session["upload_id"], number, b"chunk-%d" % number)

        complete = client.post(
            "/api/upload/multipart/complete",
            json={"file_id": session["file_id"], "upload_id": session["upload_id"], "parts": []},
        )
        assert complete.status_code == 200
        assert complete.json()["download_url"].startswith("memory://")
        assert storage.objects[key] == b"chunk-1chunk-2chunk-3"


def test_cancel_upload(tmp_path, monkeypatch):
    client, _ = build_client(tmp_path, monkeypatch)
    with client:
        sign_in(client)
        init = client.post(
            "/api/upload/multipart/init",
            json={"filename": "movie.mkv", "size": 30 * MIB},
        ).json()

        cancel = client.post(
            "/api/upload/cancel", json={"file_id": init["file_id"], "upload_id": init["upload_id"]}
        )
        assert cancel.status_code == 200

        again = client.post("/api/upload/cancel", json={"file_id": init["file_id"]})
        assert again.status_code == 404


def test_delete_file(tmp_path, monkeypatch):
    client, _ = build_client(tmp_path, monkeypatch)
    with client:
        sign_in(client)
        presign, _ = upload_file(client)
        file_id = presign["file_id"]

        deleted = client.delete(f"/api/files/{file_id}")
        assert deleted.status_code == 200
        assert deleted.json()["success"] is True

        missing = client.get(f"/api/files/{file_id}/download", follow_redirects=False)
        assert missing.status_code == 404
        assert client.get("/api/files").json()["total"] == 0


def test_stats(tmp_path, monkeypatch):
    client, _ = build_client(tmp_path, monkeypatch, total_storage=4096)
    with client:
        sign_in(client)
        upload_file(client, size=1024)

        stats = client.get("/api/stats")
        assert stats.status_code == 200
        body = stats.json()
        assert body["file_count"] == 1
        assert body["used_space_formatted"] == "1.00 KB"
        assert body["usage_percent"] == 25.0


def test_upload_rejects_oversized_file(tmp_path, monkeypatch):
    client, _ = build_client(tmp_path, monkeypatch, max_file_size=1000)
    with client:
        sign_in(client)
        response = client.post(
            "/api/upload/presign",
            json={"filename": "huge.bin", "size": 1001},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "bad_request"


def test_missing_required_parameter_returns_bad_request(tmp_path, monkeypatch):
    client, _ = build_client(tmp_path, monkeypatch)
    with client:
        sign_in(client)
        missing = client.post("/api/upload/presign", json={"content_type": "text/plain"})
        assert missing.status_code == 400
        body = missing.json()
        assert body["error"]["code"] == "bad_request"
        assert "missing parameters" in body["error"]["message"]
        assert "filename" in body["error"]["message"]


def test_protected_routes_require_login(tmp_path, monkeypatch):
    client, _ = build_client(tmp_path, monkeypatch)
    with client:
        assert client.get("/api/auth/password-status").json() == {"password_set": False}

        response = client.get("/api/files")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

        sign_in(client)
        token = client.cookies.get("auth_token")
        client.cookies.clear()

        assert client.get("/api/files").status_code == 401
        assert client.get("/api/files", headers={"Authorization": "Bearer wrong"}).status_code == 401
        assert client.get("/api/files", headers={"Authorization": f"Bearer {token}"}).status_code == 200


def test_password_can_only_be_set_once(tmp_path, monkeypatch):
    client, _ = build_client(tmp_path, monkeypatch)
    with client:
        sign_in(client)
        again = client.post("/api/auth/setup-password", json={"password": "another-one"})
        assert again.status_code == 400

        login = client.post("/api/auth/login", json={"password": PASSWORD})
        assert login.status_code == 200
        assert login.json()["need_setup"] is False


def test_failed_logins_lock_out_the_client(tmp_path, monkeypatch):
    client, _ = build_client(tmp_path, monkeypatch, max_failed_attempts=3)
    with client:
        sign_in(client)
        for _ in range(3):
            response = client.post("/api/auth/login", json={"password": "wrong-password"})
            assert response.status_code == 401

        locked = client.post("/api/auth/login", json={"password": PASSWORD})
        assert locked.status_code == 429
        assert locked.json()["error"]["code"] == "locked_out"
        assert client.get("/health").status_code == 429


def test_successful_login_keeps_failure_count(tmp_path, monkeypatch):
    client, _ = build_client(tmp_path, monkeypatch, max_failed_attempts=3)
    with client:
        sign_in(client)
        assert client.post("/api/auth/login", json={"password": "wrong-password"}).status_code == 401
        assert client.post("/api/auth/login", json={"password": "wrong-password"}).status_code == 401
        assert client.post("/api/auth/login", json={"password": PASSWORD}).status_code == 200
        assert client.post("/api/auth/login", json={"password": "wrong-password"}).status_code == 401

        assert client.get("/health").json()["error"]["code"] == "locked_out"


def test_requests_over_the_window_limit_are_rejected(tmp_path, monkeypatch):
    client, _ = build_client(tmp_path, monkeypatch, rate_limit_max_requests=3)
    with client:
        for _ in range(3):
            assert client.get("/health").status_code == 200

        limited = client.get("/health")
        assert limited.status_code == 429
        assert limited.json()["error"]["code"] == "rate_limited"

        other = client.get("/health", headers={"X-Forwarded-For": "203.0.113.9"})
        assert other.status_code == 200


def test_unconfigured_storage_returns_service_unavailable(tmp_path, monkeypatch):
    client, _ = build_client(tmp_path, monkeypatch, storage_backend="s3")
    with client:
        login = sign_in(client)
        assert login.json()["need_setup"] is True
        assert client.get("/api/setup/status").json()["configured"] is False

        response = client.post("/api/upload/presign", json={"filename": "a.txt", "size": 1})
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "backend_unavailable"


def test_saving_storage_credentials_enables_uploads(tmp_path, monkeypatch):
    client, _ = build_client(tmp_path, monkeypatch, storage_backend="s3")
    with client:
        sign_in(client)
        saved = client.post(
            "/api/setup/config",
            json={
                "endpoint": "https://account.r2.example.com",
                "access_key_id": "test-access-key",
                "secret_access_key": "test-secret-key",
                "bucket_name": "drops",
            },
        )
        assert saved.status_code == 200
        assert saved.json() == {
            "configured": True,
            "endpoint": "https://account.r2.example.com",
            "bucket_name": "drops",
        }

        presign = client.post("/api/upload/presign", json={"filename": "a.txt", "size": 1})
        assert presign.status_code == 200
        assert "X-Amz-Signature=" in presign.json()["upload_url"]


def test_stored_password_hash_is_not_accepted_as_token(tmp_path, monkeypatch):
    client, db_path = build_client(tmp_path, monkeypatch)
    with client:
        sign_in(client)
        cookie = client.cookies.get("auth_token")
        client.cookies.clear()

        conn = sqlite3.connect(db_path)
        stored = conn.execute("SELECT value FROM system_config WHERE key = 'password_hash'").fetchone()[0]
        conn.close()
        assert stored != cookie

        response = client.get("/api/files", headers={"Authorization": f"Bearer {stored}"})
        assert response.status_code == 401


def test_login_before_setup_does_not_count_as_failure(tmp_path, monkeypatch):
    client, _ = build_client(tmp_path, monkeypatch, max_failed_attempts=3)
    with client:
        for _ in range(3):
            response = client.post("/api/auth/login", json={"password": "anything"})
            assert response.status_code == 401

        assert client.get("/health").status_code == 200
        sign_in(client)


def test_storage_credentials_are_rejected_for_memory_backend(tmp_path, monkeypatch):
    client, _ = build_client(tmp_path, monkeypatch)
    with client:
        sign_in(client)
        presign, _ = upload_file(client)
        storage = client.app.state.storage.current()
        key = client.app.state.coordinator.repository.get_file(presign["file_id"]).storage_key
        storage.put_object(key, b"hello world")

        saved = client.post(
            "/api/setup/config",
            json={
                "endpoint": "https://account.r2.example.com",
                "access_key_id": "test-access-key",
                "secret_access_key": "test-secret-key",
                "bucket_name": "drops",
            },
        )
        assert saved.status_code == 400
        assert client.app.state.storage.current() is storage
        assert storage.objects[key] == b"hello world"


def stubbed_s3(error_code=None):
    def factory(credentials):
        storage = S3Storage(credentials)
        stubber = Stubber(storage.client)
        if error_code:
            stubber.add_client_error("list_objects_v2", service_error_code=error_code, http_status_code=404)
        else:
            stubber.add_response("list_objects_v2", {"KeyCount": 0})
        stubber.activate()
        return storage

    return factory


def test_connection_test_reports_failure(tmp_path, monkeypatch):
    client, _ = build_client(tmp_path, monkeypatch, storage_backend="s3")
    monkeypatch.setattr("filedrop.setup_wizard.S3Storage", stubbed_s3("NoSuchBucket"))
    with client:
        sign_in(client)
        response = client.post("/api/setup/test", json=CREDENTIALS)
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is False
        assert "connection test failed" in body["message"]
        # Testing never changes the live backend.
        assert client.app.state.storage.current() is None


def test_connection_test_reports_success(tmp_path, monkeypatch):
    client, _ = build_client(tmp_path, monkeypatch, storage_backend="s3")
    monkeypatch.setattr("filedrop.setup_wizard.S3Storage", stubbed_s3())
    with client:
        sign_in(client)
        response = client.post("/api/setup/test", json=CREDENTIALS)
        assert response.status_code == 200
        assert response.json()["success"] is True
