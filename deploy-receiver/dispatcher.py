import logging
from typing import Any, Mapping, Optional

from locks import DeployLockTable
from models import DEPLOYED, DeployOutcome, DeployRequest, ErrorCode, RunResult
from observability import log_event
from policy import Guardrails, PolicyError
from redaction import redact_secrets
from runner import ProcessRunner, build_deploy_env, tail


logger = logging.getLogger("deploy_receiver.dispatcher")


class Dispatcher:
    """Runs one deploy request from validation through to a shaped outcome.

    received -> validated -> locked -> running -> completed, with exits to
    rejected (validation, allowlist, filesystem), busy (repo lock held) and
    internal error (spawn failure or unexpected fault). The repo lock is
    released on every path out of ``running``.
    """

    def __init__(
        self,
        guardrails: Guardrails,
        locks: DeployLockTable,
        runner: ProcessRunner,
        secrets: Optional[Mapping[str, str]] = None,
        timeout_seconds: float = 180.0,
        max_output_chars: int = 4000,
    ) -> None:
        self.guardrails = guardrails
        self.locks = locks
        self.runner = runner
        self.secrets = dict(secrets or {})
        self.timeout_seconds = timeout_seconds
        self.max_output_chars = max_output_chars

    async def dispatch(self, payload: Any) -> DeployOutcome:
        request: Optional[DeployRequest] = None
        try:
            request = self.guardrails.parse_request(payload)
            log_event(
                "deploy_received",
                delivery_id=request.deliveryId,
                repo=request.repo,
                image=request.image,
                tag=request.tag,
                environment=request.environment.value,
            )
            target = self.guardrails.resolve_deploy_target(request.repo)
            with self.locks.hold(request.repo):
                log_event("deploy_started", delivery_id=request.deliveryId, repo=request.repo)
                env = build_deploy_env(request, target, self.secrets)
                result = await self.runner.run(target.script, target.repo_dir, env, self.timeout_seconds)
            return self._completed(request, result)
        except PolicyError as exc:
            log_event(
                "deploy_rejected",
                delivery_id=request.deliveryId if request else None,
                repo=request.repo if request else None,
                error_code=exc.code,
                status_code=exc.status_code,
            )
            return self._failure(request, exc.status_code, exc.code, exc.message)
        except Exception:
            logger.exception(
                "deploy.internal_error delivery_id=%s repo=%s",
                request.deliveryId if request else None,
                request.repo if request else None,
            )
            return self._failure(request, 500, ErrorCode.INTERNAL_ERROR.value, "Internal error while running deploy")

    def _completed(self, request: DeployRequest, result: RunResult) -> DeployOutcome:
        log_event(
            "deploy_finished",
            level=logging.INFO if result.succeeded else logging.WARNING,
            delivery_id=request.deliveryId,
            repo=request.repo,
            image=request.image,
            tag=request.tag,
            exit_code=result.exit_code,
            timed_out=result.timed_out,
            spawn_failed=result.spawn_error is not None,
            duration_seconds=round(result.duration_seconds, 3),
        )
        if result.spawn_error is not None:
            return self._failure(
                request,
                500,
                ErrorCode.SPAWN_FAILED.value,
                f"Failed to start deploy.sh: {result.spawn_error}",
            )
        if result.succeeded:
            return DeployOutcome(
                ok=True,
                status_code=200,
                code=DEPLOYED,
                repo=request.repo,
                image=request.image,
                tag=request.tag,
                delivery_id=request.deliveryId,
                output=self._bounded(result.stdout),
            )
        if result.timed_out:
            code = ErrorCode.DEPLOY_TIMED_OUT
            fallback = f"deploy.sh timed out after {self.timeout_seconds:g}s"
        else:
            code = ErrorCode.DEPLOY_FAILED
            fallback = f"deploy.sh exited with code {result.exit_code}"
        return self._failure(request, 500, code.value, result.stderr or result.stdout or fallback)

    def _failure(self, request: Optional[DeployRequest], status_code: int, code: str, message: str) -> DeployOutcome:
        return DeployOutcome(
            ok=False,
            status_code=status_code,
            code=code,
            repo=request.repo if request else None,
            image=request.image if request else None,
            tag=request.tag if request else None,
            delivery_id=request.deliveryId if request else None,
            error=self._bounded(message),
        )

    def _bounded(self, text: str) -> str:
        return tail(redact_secrets(text, self.secrets.values()), self.max_output_chars)
