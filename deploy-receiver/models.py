from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class DeployEnvironment(str, Enum):
    PROD = "prod"
    DEV = "dev"
    UNSET = ""


class ErrorCode(str, Enum):
    UNAUTHORIZED = "UNAUTHORIZED"
    INVALID_REQUEST = "INVALID_REQUEST"
    MISSING_FIELDS = "MISSING_FIELDS"
    INVALID_REPO = "INVALID_REPO"
    INVALID_IMAGE = "INVALID_IMAGE"
    INVALID_TAG = "INVALID_TAG"
    INVALID_ENVIRONMENT = "INVALID_ENVIRONMENT"
    PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"
    REPO_NOT_ALLOWLISTED = "REPO_NOT_ALLOWLISTED"
    REPO_DIR_NOT_FOUND = "REPO_DIR_NOT_FOUND"
    DEPLOY_SCRIPT_NOT_FOUND = "DEPLOY_SCRIPT_NOT_FOUND"
    DEPLOY_SCRIPT_NOT_EXECUTABLE = "DEPLOY_SCRIPT_NOT_EXECUTABLE"
    DEPLOY_IN_PROGRESS = "DEPLOY_IN_PROGRESS"
    SPAWN_FAILED = "SPAWN_FAILED"
    DEPLOY_FAILED = "DEPLOY_FAILED"
    DEPLOY_TIMED_OUT = "DEPLOY_TIMED_OUT"
    INTERNAL_ERROR = "INTERNAL_ERROR"


DEPLOYED = "DEPLOYED"


class DeployRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    repo: str
    image: str
    tag: str
    environment: DeployEnvironment = DeployEnvironment.UNSET
    deliveryId: str


@dataclass(frozen=True)
class DeployTarget:
    repo_dir: str
    script: str


@dataclass(frozen=True)
class RunResult:
    exit_code: Optional[int]
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    spawn_error: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and self.spawn_error is None


@dataclass(frozen=True)
class DeployOutcome:
    """Response view of a single deploy request.

    Exactly one of ``output`` (success) or ``error`` (failure) is set.
    """

    ok: bool
    status_code: int
    code: str
    repo: Optional[str] = None
    image: Optional[str] = None
    tag: Optional[str] = None
    delivery_id: Optional[str] = None
    output: Optional[str] = None
    error: Optional[str] = None

    def to_payload(self) -> dict:
        payload = {"ok": self.ok, "code": self.code}
        for key, value in (
            ("repo", self.repo),
            ("image", self.image),
            ("tag", self.tag),
            ("deliveryId", self.delivery_id),
        ):
            if value is not None:
                payload[key] = value
        if self.ok:
            payload["output"] = self.output or ""
        else:
            payload["error"] = self.error or ""
        return payload
