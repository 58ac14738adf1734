import json
import logging
import time
import uuid
from typing import Optional, Sequence

import uvicorn
from fastapi import FastAPI, Header, Request
from fastapi.exceptions import HTTPException as FastAPIHTTPException
from fastapi.responses import JSONResponse

from auth import TOKEN_HEADER, require_deploy_token
from config import SETTINGS, ConfigError, Settings, load_allowlist
from dispatcher import Dispatcher
from locks import DeployLockTable
from models import ErrorCode
from observability import configure_logging, log_event, request_id_ctx
from policy import Guardrails
from runner import ProcessRunner


START_TIME = time.monotonic()
logger = logging.getLogger("deploy_receiver.api")


def _load_allowlist_or_exit(path: str) -> Optional[list[str]]:
    try:
        return load_allowlist(path)
    except ConfigError as exc:
        logger.critical("config.allowlist invalid error=%s", exc)
        raise SystemExit(1) from exc


def build_dispatcher(settings: Settings, allowlist: Optional[Sequence[str]], locks: DeployLockTable) -> Dispatcher:
    return Dispatcher(
        Guardrails(settings.apps_root, allowlist),
        locks,
        ProcessRunner(kill_grace_seconds=settings.kill_grace_seconds),
        secrets=settings.deploy_secrets(),
        timeout_seconds=settings.deploy_timeout_seconds,
        max_output_chars=settings.max_output_chars,
    )


app = FastAPI(title="Deploy Receiver", version="1.0.0")
locks = DeployLockTable()
dispatcher = build_dispatcher(SETTINGS, _load_allowlist_or_exit(SETTINGS.allowlist_path), locks)


def error_response(status_code: int, code: str, message: str) -> JSONResponse:
    payload = {
        "ok": False,
        "code": code,
        "error": message,
        "request_id": request_id_ctx.get() or str(uuid.uuid4()),
    }
    return JSONResponse(status_code=status_code, content=payload)


@app.exception_handler(FastAPIHTTPException)
async def http_exception_handler(request: Request, exc: FastAPIHTTPException):
    if isinstance(exc.detail, dict) and "code" in exc.detail:
        return error_response(exc.status_code, exc.detail["code"], exc.detail.get("message", ""))
    return error_response(exc.status_code, "HTTP_ERROR", str(exc.detail))


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
    token = request_id_ctx.set(request_id)
    try:
        log_event("http_request", method=request.method, path=request.url.path)
        response = await call_next(request)
    finally:
        request_id_ctx.reset(token)
    response.headers["X-Request-Id"] = request_id
    return response


@app.get("/health")
def health():
    return {"ok": True, "uptime": round(time.monotonic() - START_TIME, 3)}


async def read_limited_body(request: Request, limit: int) -> Optional[bytes]:
    """Read the request body, giving up as soon as it exceeds ``limit`` bytes."""
    declared = request.headers.get("content-length", "")
    if declared.isdigit() and int(declared) > limit:
        return None
    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > limit:
            return None
    return bytes(body)


@app.post("/deploy")
async def deploy(request: Request, deploy_token: Optional[str] = Header(None, alias=TOKEN_HEADER)):
    require_deploy_token(deploy_token, SETTINGS.deploy_token)
    body = await read_limited_body(request, SETTINGS.max_body_bytes)
    if body is None:
        return error_response(413, ErrorCode.PAYLOAD_TOO_LARGE.value, "Request body too large")
    try:
        payload = json.loads(body) if body else {}
    except (ValueError, RecursionError):
        return error_response(400, ErrorCode.INVALID_REQUEST.value, "Request body must be valid JSON")
    outcome = await dispatcher.dispatch(payload)
    return JSONResponse(status_code=outcome.status_code, content=outcome.to_payload())


def run() -> int:
    configure_logging(SETTINGS.log_level)
    missing = SETTINGS.missing_secrets()
    if missing:
        logger.critical(
            "config.secrets missing=%s are you running under the systemd unit with LoadCredential?",
            ",".join(missing),
        )
        return 1
    logger.info("deploy_receiver.listening host=%s port=%s", SETTINGS.host, SETTINGS.port)
    uvicorn.run(app, host=SETTINGS.host, port=SETTINGS.port, log_level=SETTINGS.log_level.lower())
    return 0


if __name__ == "__main__":
    raise SystemExit(run())
