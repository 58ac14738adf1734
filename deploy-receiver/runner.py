import asyncio
import contextlib
import logging
import os
import signal
import time
from typing import Mapping, Optional

from models import DeployRequest, DeployTarget, RunResult


SAFE_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"
READ_CHUNK_BYTES = 64 * 1024
DRAIN_TIMEOUT_SECONDS = 1.0

logger = logging.getLogger("deploy_receiver.runner")


def tail(text: Optional[str], max_chars: int) -> str:
    if not text or max_chars <= 0:
        return ""
    if len(text) > max_chars:
        return text[-max_chars:]
    return text


def build_deploy_env(request: DeployRequest, target: DeployTarget, secrets: Mapping[str, str]) -> dict[str, str]:
    """Build the complete environment for deploy.sh. Nothing is inherited from this process."""
    env = {
        "PATH": SAFE_PATH,
        "HOME": target.repo_dir,
        "DEPLOY_REPO": request.repo,
        "DEPLOY_IMAGE": request.image,
        "DEPLOY_TAG": request.tag,
        "DEPLOY_ENV": request.environment.value,
    }
    for name, value in secrets.items():
        env[name] = value or ""
    return env


async def _pump(stream: asyncio.StreamReader, buffer: bytearray) -> None:
    while True:
        chunk = await stream.read(READ_CHUNK_BYTES)
        if not chunk:
            return
        buffer.extend(chunk)


def _signal_group(proc: asyncio.subprocess.Process, sig: int) -> None:
    # The child leads its own session, so its pid is also the group id.
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        return
    except PermissionError:
        with contextlib.suppress(ProcessLookupError):
            proc.send_signal(sig)


class ProcessRunner:
    def __init__(
        self,
        kill_grace_seconds: float = 5.0,
        reap_timeout_seconds: float = 5.0,
        interpreter: Optional[str] = "/bin/bash",
    ) -> None:
        self.kill_grace_seconds = kill_grace_seconds
        self.reap_timeout_seconds = reap_timeout_seconds
        self.interpreter = interpreter

    async def run(
        self,
        executable: str,
        cwd: str,
        env: Mapping[str, str],
        timeout_seconds: float,
    ) -> RunResult:
        command = [self.interpreter, executable] if self.interpreter else [executable]
        started = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                cwd=cwd,
                env=dict(env),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            return RunResult(
                exit_code=None,
                spawn_error=str(exc) or exc.__class__.__name__,
                duration_seconds=time.monotonic() - started,
            )

        stdout = bytearray()
        stderr = bytearray()
        readers = [
            asyncio.create_task(_pump(proc.stdout, stdout)),
            asyncio.create_task(_pump(proc.stderr, stderr)),
        ]
        timed_out = False
        exit_code: Optional[int] = None
        try:
            try:
                exit_code = await asyncio.wait_for(proc.wait(), timeout=timeout_seconds)
            except asyncio.TimeoutError:
                timed_out = True
                exit_code = await self._terminate(proc, timeout_seconds)
            await self._drain(readers)
        finally:
            for reader in readers:
                if not reader.done():
                    reader.cancel()
            if proc.returncode is None:
                _signal_group(proc, signal.SIGKILL)

        return RunResult(
            exit_code=exit_code,
            stdout=bytes(stdout).decode("utf-8", errors="replace"),
            stderr=bytes(stderr).decode("utf-8", errors="replace"),
            timed_out=timed_out,
            duration_seconds=time.monotonic() - started,
        )

    async def _terminate(self, proc: asyncio.subprocess.Process, timeout_seconds: float) -> Optional[int]:
        logger.warning("runner.timeout pid=%s timeout_seconds=%s signal=SIGTERM", proc.pid, timeout_seconds)
        _signal_group(proc, signal.SIGTERM)
        try:
            exit_code = await asyncio.wait_for(proc.wait(), timeout=self.kill_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning("runner.timeout pid=%s grace_seconds=%s signal=SIGKILL", proc.pid, self.kill_grace_seconds)
            _signal_group(proc, signal.SIGKILL)
            try:
                return await asyncio.wait_for(proc.wait(), timeout=self.reap_timeout_seconds)
            except asyncio.TimeoutError:
                logger.error("runner.unreaped pid=%s", proc.pid)
                return None
        # Stragglers left in the group would keep the pipes open.
        _signal_group(proc, signal.SIGKILL)
        return exit_code

    async def _drain(self, readers: list[asyncio.Task]) -> None:
        _done, pending = await asyncio.wait(readers, timeout=DRAIN_TIMEOUT_SECONDS)
        for reader in pending:
            reader.cancel()
        await asyncio.gather(*readers, return_exceptions=True)
