from __future__ import annotations

import base64
import hashlib
import json
import os
from pathlib import Path

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from habitdata.api.app import create_app
from habitdata.core.config import get_settings
from habitdata.db.session import reset_engine
from habitdata.worker import PipelineRuntime

OWNER_HEADERS = {"X-Owner-Id": "owner-1"}
OTHER_HEADERS = {"X-Owner-Id": "owner-2"}


def make_app(tmp_path: Path) -> FastAPI:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["HABITDATA_STATE_ROOT"] = state_root.as_posix()

    get_settings.cache_clear()
    reset_engine()
    return create_app()


def runtime_of(app: FastAPI) -> PipelineRuntime:
    return app.state.runtime


def settle(app: FastAPI) -> None:
    assert runtime_of(app).pool.wait_idle(timeout=15)


def seed(app: FastAPI) -> None:
    runtime_of(app).records.replace_records(
        "owner-1",
        {"habits": [{"id": "h1", "name": "Read"}], "garden": [{"id": "g1", "name": "Fern"}]},
    )


def test_health_reports_runtime(tmp_path: Path) -> None:
    app = make_app(tmp_path)
    with TestClient(app) as client:
        response = client.get("/api/v1/health")
        assert response.status_code == 200
        payload = response.json()
        assert payload["status"] == "ok"
        assert payload["worker_id"].startswith("worker-")


def test_owner_header_is_required(tmp_path: Path) -> None:
    app = make_app(tmp_path)
    with TestClient(app) as client:
        assert client.get("/api/v1/exports").status_code == 422
        assert client.post("/api/v1/exports", json={}).status_code == 422


def test_export_lifecycle_over_http(tmp_path: Path) -> None:
    app = make_app(tmp_path)
    with TestClient(app) as client:
        seed(app)
        created = client.post("/api/v1/exports", json={"options": {"format": "JSON"}}, headers=OWNER_HEADERS)
        assert created.status_code == 201
        job_id = created.json()["id"]
        assert created.json()["kind"] == "export"
        settle(app)

        progress = client.get(f"/api/v1/exports/{job_id}/progress", headers=OWNER_HEADERS)
        assert progress.status_code == 200
        assert progress.json()["status"] == "completed"
        assert progress.json()["progress"]["percentage"] == 100.0

        download = client.get(f"/api/v1/exports/{job_id}/download", headers=OWNER_HEADERS)
        assert download.status_code == 200
        assert download.headers["X-Checksum-Algorithm"] == "sha256"
        assert download.headers["X-Checksum"] == hashlib.sha256(download.content).hexdigest()
        assert "attachment" in download.headers["content-disposition"]
        assert json.loads(download.content)["data"]["habits"][0]["id"] == "h1"

        listed = client.get("/api/v1/exports", params={"status": "completed"}, headers=OWNER_HEADERS)
        assert [item["id"] for item in listed.json()["items"]] == [job_id]

        assert client.get(f"/api/v1/exports/{job_id}", headers=OTHER_HEADERS).status_code == 404
        assert client.get(f"/api/v1/backups/{job_id}", headers=OWNER_HEADERS).status_code == 404
        assert client.post(f"/api/v1/exports/{job_id}/cancel", headers=OWNER_HEADERS).status_code == 409
        assert client.post(f"/api/v1/exports/{job_id}/retry", headers=OWNER_HEADERS).status_code == 409
        assert (
            client.patch(f"/api/v1/exports/{job_id}", json={"options": {"format": "csv"}}, headers=OWNER_HEADERS)
        ).status_code == 409

        dashboard = client.get("/api/v1/jobs/dashboard", headers=OWNER_HEADERS).json()
        assert dashboard["counts"]["export"] == {"completed": 1}
        assert dashboard["total_downloads"] == 1

        deleted = client.delete(f"/api/v1/exports/{job_id}", headers=OWNER_HEADERS)
        assert deleted.status_code == 200
        assert client.get(f"/api/v1/exports/{job_id}", headers=OWNER_HEADERS).status_code == 404


def test_invalid_requests_map_to_client_errors(tmp_path: Path) -> None:
    app = make_app(tmp_path)
    with TestClient(app) as client:
        bad_options = client.post("/api/v1/exports", json={"options": {"format": "xml"}}, headers=OWNER_HEADERS)
        assert bad_options.status_code == 422

        bad_cursor = client.get("/api/v1/exports", params={"cursor": "missing"}, headers=OWNER_HEADERS)
        assert bad_cursor.status_code == 400

        unknown = client.get("/api/v1/imports/not-a-job", headers=OWNER_HEADERS)
        assert unknown.status_code == 404

        bad_encoding = client.post(
            "/api/v1/imports",
            json={"content": "@@not-base64@@", "encoding": "base64"},
            headers=OWNER_HEADERS,
        )
        assert bad_encoding.status_code == 422


def test_base64_import_over_http(tmp_path: Path) -> None:
    app = make_app(tmp_path)
    with TestClient(app) as client:
        document = {"data": {"habits": [{"id": "h1", "name": "Read"}, {"id": "h2", "name": "Walk"}]}}
        body = {
            "options": {"auto_start": False},
            "content": base64.b64encode(json.dumps(document).encode("utf-8")).decode("ascii"),
            "encoding": "base64",
            "file_name": "habits.json",
        }
        created = client.post("/api/v1/imports", json=body, headers=OWNER_HEADERS)
        assert created.status_code == 201
        job_id = created.json()["id"]
        settle(app)

        validated = client.get(f"/api/v1/imports/{job_id}", headers=OWNER_HEADERS).json()
        assert validated["status"] == "validated"
        assert validated["validation_status"] == "passed"
        assert client.post(f"/api/v1/imports/{job_id}/cancel", headers=OWNER_HEADERS).status_code == 409

        started = client.post(f"/api/v1/imports/{job_id}/start", headers=OWNER_HEADERS)
        assert started.status_code == 200
        settle(app)

        done = client.get(f"/api/v1/imports/{job_id}", headers=OWNER_HEADERS).json()
        assert done["status"] == "completed"
        assert done["result"]["created"] == 2


def test_backup_verify_and_restore_over_http(tmp_path: Path) -> None:
    app = make_app(tmp_path)
    with TestClient(app) as client:
        seed(app)
        created = client.post("/api/v1/backups", json={}, headers=OWNER_HEADERS)
        assert created.status_code == 201
        job_id = created.json()["id"]
        settle(app)

        verified = client.post(f"/api/v1/backups/{job_id}/verify", headers=OWNER_HEADERS)
        assert verified.status_code == 200
        assert verified.json()["verification"]["verified"] is True

        download = client.get(f"/api/v1/backups/{job_id}/download", headers=OWNER_HEADERS)
        assert download.status_code == 200
        assert download.headers["X-Checksum"] == hashlib.sha256(download.content).hexdigest()

        runtime_of(app).records.replace_records("owner-1", {"garden": []})
        restored = client.post(
            f"/api/v1/backups/{job_id}/restore",
            json={"data_types": ["garden"]},
            headers=OWNER_HEADERS,
        )
        assert restored.status_code == 200
        assert restored.json()["records_restored"] == 1
        assert restored.json()["data_types"] == ["garden"]

        encrypted = client.post(
            "/api/v1/backups",
            json={"options": {"encryption_enabled": True}},
            headers=OWNER_HEADERS,
        )
        assert encrypted.status_code == 422


def test_main_serves_the_app_with_configured_address(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    import habitdata.main as main_module

    make_app(tmp_path)
    calls: list[dict[str, object]] = []
    monkeypatch.setattr(main_module.uvicorn, "run", lambda app, **kwargs: calls.append({"app": app, **kwargs}))

    main_module.main()

    assert len(calls) == 1
    assert isinstance(calls[0]["app"], FastAPI)
    assert calls[0]["host"] == "0.0.0.0"
    assert calls[0]["port"] == 8080
    assert calls[0]["log_level"] == "info"
