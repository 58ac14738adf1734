import json
import sys
from contextlib import asynccontextmanager
from pathlib import Path

import anyio
import httpx
import pytest

from script_utils import deploy_payload, write_deploy_script


pytestmark = pytest.mark.anyio

TOKEN = "test-deploy-token"


def _load_main(tmp_path: Path, monkeypatch, allowlist=None):
    receiver_dir = Path(__file__).resolve().parents[1]
    monkeypatch.syspath_prepend(str(receiver_dir))
    apps_root = tmp_path / "apps"
    apps_root.mkdir(exist_ok=True)
    allowlist_path = tmp_path / "allowlist.json"
    if allowlist is not None:
        allowlist_path.write_text(json.dumps(allowlist), encoding="utf-8")
    monkeypatch.delenv("CREDENTIALS_DIRECTORY", raising=False)
    monkeypatch.delenv("DEPLOY_RECEIVER_SSM_PREFIX", raising=False)
    monkeypatch.setenv("DEPLOY_APPS_ROOT", str(apps_root))
    monkeypatch.setenv("DEPLOY_ALLOWLIST_PATH", str(allowlist_path))
    monkeypatch.setenv("DEPLOY_RECEIVER_TOKEN", TOKEN)
    monkeypatch.setenv("DEPLOY_GHCR_PAT", "ghcr-secret")
    monkeypatch.setenv("DEPLOY_VAULTWARDEN_MASTER_PASSWORD", "vault-secret")
    monkeypatch.setenv("DEPLOY_TIMEOUT_MS", "5000")
    monkeypatch.setenv("DEPLOY_KILL_GRACE_MS", "500")
    monkeypatch.setenv("DEPLOY_MAX_BODY_BYTES", "1024")

    for module in ["main", "config"]:
        monkeypatch.delitem(sys.modules, module, raising=False)

    import importlib

    main = importlib.import_module("main")
    return main


@asynccontextmanager
async def _client_and_state(tmp_path: Path, monkeypatch, allowlist=None):
    main = _load_main(tmp_path, monkeypatch, allowlist)
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=main.app),
        base_url="http://testserver",
    ) as client:
        yield client, main


def _auth() -> dict:
    return {"X-Deploy-Token": TOKEN}


async def test_health(tmp_path: Path, monkeypatch):
    async with _client_and_state(tmp_path, monkeypatch) as (client, _):
        response = await client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["uptime"] >= 0


async def test_deploy_success_end_to_end(tmp_path: Path, monkeypatch):
    async with _client_and_state(tmp_path, monkeypatch) as (client, main):
        write_deploy_script(Path(main.SETTINGS.apps_root), "sporty", 'echo -n "OK"')
        response = await client.post("/deploy", headers=_auth(), json=deploy_payload(deliveryId="delivery-1"))
    assert response.status_code == 200
    assert response.json() == {
        "ok": True,
        "code": "DEPLOYED",
        "repo": "sporty",
        "image": "ghcr.io/tihlde/sporty",
        "tag": "latest",
        "deliveryId": "delivery-1",
        "output": "OK",
    }
    assert response.headers.get("X-Request-Id")


async def test_missing_and_wrong_token_are_rejected_identically(tmp_path: Path, monkeypatch):
    async with _client_and_state(tmp_path, monkeypatch) as (client, main):
        write_deploy_script(Path(main.SETTINGS.apps_root), "sporty", "echo OK")
        missing = await client.post("/deploy", json=deploy_payload(), headers={"X-Request-Id": "req-1"})
        wrong = await client.post(
            "/deploy",
            json=deploy_payload(),
            headers={"X-Deploy-Token": TOKEN[:-1] + "X", "X-Request-Id": "req-1"},
        )
    assert missing.status_code == wrong.status_code == 401
    assert missing.json() == wrong.json() == {
        "ok": False,
        "code": "UNAUTHORIZED",
        "error": "Unauthorized",
        "request_id": "req-1",
    }


async def test_auth_is_checked_before_body(tmp_path: Path, monkeypatch):
    async with _client_and_state(tmp_path, monkeypatch) as (client, _):
        response = await client.post("/deploy", content=b"{not json")
    assert response.status_code == 401


async def test_invalid_json_is_bad_request(tmp_path: Path, monkeypatch):
    async with _client_and_state(tmp_path, monkeypatch) as (client, _):
        response = await client.post("/deploy", headers=_auth(), content=b"{not json")
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_REQUEST"


async def test_oversized_body_is_rejected(tmp_path: Path, monkeypatch):
    async with _client_and_state(tmp_path, monkeypatch) as (client, _):
        response = await client.post("/deploy", headers=_auth(), json=deploy_payload(padding="x" * 2048))
    assert response.status_code == 413
    assert response.json()["code"] == "PAYLOAD_TOO_LARGE"


async def test_streamed_body_over_limit_is_rejected(tmp_path: Path, monkeypatch):
    async def _chunks():
        for _ in range(64):
            yield b"x" * 512

    async with _client_and_state(tmp_path, monkeypatch) as (client, _):
        response = await client.post("/deploy", headers=_auth(), content=_chunks())
    assert "content-length" not in response.request.headers
    assert response.status_code == 413
    assert response.json()["code"] == "PAYLOAD_TOO_LARGE"


class _StreamingRequest:
    def __init__(self, headers: dict, chunks: list) -> None:
        self.headers = headers
        self.chunks = chunks
        self.pulled = 0

    async def stream(self):
        for chunk in self.chunks:
            self.pulled += 1
            yield chunk


async def test_read_limited_body_stops_at_limit(tmp_path: Path, monkeypatch):
    main = _load_main(tmp_path, monkeypatch)
    request = _StreamingRequest({}, [b"x" * 512] * 64)
    assert await main.read_limited_body(request, 1024) is None
    assert request.pulled == 3


async def test_read_limited_body_trusts_declared_length(tmp_path: Path, monkeypatch):
    main = _load_main(tmp_path, monkeypatch)
    request = _StreamingRequest({"content-length": "4096"}, [b"{}"])
    assert await main.read_limited_body(request, 1024) is None
    assert request.pulled == 0

    small = _StreamingRequest({"content-length": "2"}, [b"{}"])
    assert await main.read_limited_body(small, 1024) == b"{}"


async def test_deeply_nested_json_is_bad_request(tmp_path: Path, monkeypatch):
    async with _client_and_state(tmp_path, monkeypatch) as (client, main):
        monkeypatch.setattr(main.SETTINGS, "max_body_bytes", 16 * 1024)
        response = await client.post("/deploy", headers=_auth(), content=b"[" * 5000 + b"]" * 5000)
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_REQUEST"


async def test_missing_fields(tmp_path: Path, monkeypatch):
    async with _client_and_state(tmp_path, monkeypatch) as (client, _):
        response = await client.post("/deploy", headers=_auth(), json={"repo": "sporty"})
    assert response.status_code == 400
    assert response.json() == {
        "ok": False,
        "code": "MISSING_FIELDS",
        "error": "Missing required fields: repo, image, tag",
    }


async def test_invalid_image_is_bad_request(tmp_path: Path, monkeypatch):
    async with _client_and_state(tmp_path, monkeypatch) as (client, _):
        response = await client.post(
            "/deploy",
            headers=_auth(),
            json=deploy_payload(image="docker.io/tihlde/sporty"),
        )
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_IMAGE"


async def test_allowlist_denied(tmp_path: Path, monkeypatch):
    async with _client_and_state(tmp_path, monkeypatch, allowlist=["blitzed"]) as (client, _):
        response = await client.post("/deploy", headers=_auth(), json=deploy_payload())
    assert response.status_code == 403
    assert response.json()["code"] == "REPO_NOT_ALLOWLISTED"


async def test_missing_script_and_not_executable(tmp_path: Path, monkeypatch):
    async with _client_and_state(tmp_path, monkeypatch) as (client, main):
        apps_root = Path(main.SETTINGS.apps_root)
        (apps_root / "sporty").mkdir()
        missing = await client.post("/deploy", headers=_auth(), json=deploy_payload())
        write_deploy_script(apps_root, "sporty", "echo OK", executable=False)
        not_executable = await client.post("/deploy", headers=_auth(), json=deploy_payload())
    assert missing.status_code == 404
    assert missing.json()["code"] == "DEPLOY_SCRIPT_NOT_FOUND"
    assert not_executable.status_code == 412
    assert not_executable.json()["code"] == "DEPLOY_SCRIPT_NOT_EXECUTABLE"


async def test_failed_deploy_returns_error_tail(tmp_path: Path, monkeypatch):
    async with _client_and_state(tmp_path, monkeypatch) as (client, main):
        write_deploy_script(Path(main.SETTINGS.apps_root), "sporty", "echo 'pull denied' >&2\nexit 1")
        response = await client.post("/deploy", headers=_auth(), json=deploy_payload())
    assert response.status_code == 500
    body = response.json()
    assert body["ok"] is False
    assert body["code"] == "DEPLOY_FAILED"
    assert body["error"] == "pull denied\n"
    assert "output" not in body


async def test_concurrent_deploy_returns_conflict(tmp_path: Path, monkeypatch):
    async with _client_and_state(tmp_path, monkeypatch) as (client, main):
        write_deploy_script(Path(main.SETTINGS.apps_root), "sporty", "sleep 1\necho done")
        responses = {}

        async def _first():
            responses["first"] = await client.post("/deploy", headers=_auth(), json=deploy_payload())

        async with anyio.create_task_group() as tg:
            tg.start_soon(_first)
            with anyio.fail_after(5):
                while not main.locks.is_locked("sporty"):
                    await anyio.sleep(0.01)
            responses["second"] = await client.post("/deploy", headers=_auth(), json=deploy_payload())

    assert responses["second"].status_code == 409
    assert responses["second"].json()["code"] == "DEPLOY_IN_PROGRESS"
    assert responses["first"].status_code == 200
    assert responses["first"].json()["output"] == "done\n"
    assert main.locks.held() == []


async def test_request_id_echoes_when_provided(tmp_path: Path, monkeypatch):
    async with _client_and_state(tmp_path, monkeypatch) as (client, _):
        response = await client.get("/health", headers={"X-Request-Id": "req-123"})
    assert response.headers.get("X-Request-Id") == "req-123"


async def test_deploy_logs_request_without_secrets(tmp_path: Path, monkeypatch, caplog):
    caplog.set_level("INFO")
    async with _client_and_state(tmp_path, monkeypatch) as (client, main):
        write_deploy_script(Path(main.SETTINGS.apps_root), "sporty", 'echo "$GHCR_PAT" > /dev/null\necho OK')
        await client.post("/deploy", headers=_auth(), json=deploy_payload())
    combined = "\n".join(record.getMessage() for record in caplog.records)
    assert "event=http_request" in combined
    assert "event=deploy_finished" in combined
    assert TOKEN not in combined
    assert "ghcr-secret" not in combined


def test_run_refuses_to_start_without_secrets(tmp_path: Path, monkeypatch):
    main = _load_main(tmp_path, monkeypatch)
    monkeypatch.setattr(main.SETTINGS, "ghcr_pat", "")
    started = []
    monkeypatch.setattr(main.uvicorn, "run", lambda *args, **kwargs: started.append(kwargs))
    assert main.run() == 1
    assert started == []


def test_run_serves_on_configured_address(tmp_path: Path, monkeypatch):
    main = _load_main(tmp_path, monkeypatch)
    started = []
    monkeypatch.setattr(main.uvicorn, "run", lambda app, **kwargs: started.append(kwargs))
    assert main.run() == 0
    assert started[0]["host"] == main.SETTINGS.host
    assert started[0]["port"] == main.SETTINGS.port
