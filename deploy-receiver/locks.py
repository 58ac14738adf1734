import threading
from contextlib import contextmanager
from typing import Iterator

from models import ErrorCode
from policy import PolicyError


class DeployLockTable:
    """Per-repo busy markers for in-flight deploys.

    Scope is this process only. Several service instances do not see each
    other's locks.
    """

    def __init__(self) -> None:
        self._mutex = threading.Lock()
        self._busy: dict[str, bool] = {}

    def try_acquire(self, repo: str) -> bool:
        with self._mutex:
            if self._busy.get(repo):
                return False
            self._busy[repo] = True
            return True

    def release(self, repo: str) -> None:
        with self._mutex:
            self._busy.pop(repo, None)

    def is_locked(self, repo: str) -> bool:
        with self._mutex:
            return bool(self._busy.get(repo))

    def held(self) -> list[str]:
        with self._mutex:
            return sorted(self._busy.keys())

    @contextmanager
    def hold(self, repo: str) -> Iterator[None]:
        if not self.try_acquire(repo):
            raise PolicyError(409, ErrorCode.DEPLOY_IN_PROGRESS, f"Deploy already in progress for {repo}")
        try:
            yield
        finally:
            self.release(repo)
