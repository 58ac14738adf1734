import os
import re
import uuid
from typing import Optional, Sequence

from models import DeployEnvironment, DeployRequest, DeployTarget, ErrorCode


REPO_SLUG_PATTERN = re.compile(r"[A-Za-z0-9._-]{1,128}")
IMAGE_PATTERN = re.compile(r"ghcr\.io/[a-z0-9._/-]{1,256}")
TAG_PATTERN = re.compile(r"[A-Za-z0-9._-]{1,128}")
ENVIRONMENTS = {env.value for env in DeployEnvironment}
REQUIRED_FIELDS = ("repo", "image", "tag")
DEPLOY_SCRIPT_NAME = "deploy.sh"


class PolicyError(Exception):
    def __init__(self, status_code: int, code: str, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code.value if isinstance(code, ErrorCode) else code
        self.message = message


def require_fields(payload: dict) -> None:
    missing = [name for name in REQUIRED_FIELDS if not payload.get(name)]
    if missing:
        raise PolicyError(400, ErrorCode.MISSING_FIELDS, "Missing required fields: repo, image, tag")
    for name in REQUIRED_FIELDS + ("environment", "deliveryId"):
        value = payload.get(name)
        if value is not None and not isinstance(value, str):
            raise PolicyError(400, ErrorCode.INVALID_REQUEST, f"Field {name} must be a string")


def validate_repository_id(value: str) -> None:
    if not isinstance(value, str) or not REPO_SLUG_PATTERN.fullmatch(value):
        raise PolicyError(400, ErrorCode.INVALID_REPO, "Invalid repo slug format")
    # The charset admits dots, so traversal forms are checked separately.
    if value == "." or ".." in value:
        raise PolicyError(400, ErrorCode.INVALID_REPO, "Invalid repo slug format")


def validate_image_ref(value: str) -> None:
    if not isinstance(value, str) or not IMAGE_PATTERN.fullmatch(value):
        raise PolicyError(400, ErrorCode.INVALID_IMAGE, "Invalid image format (must be ghcr.io/...)")


def validate_tag(value: str) -> None:
    if not isinstance(value, str) or not TAG_PATTERN.fullmatch(value):
        raise PolicyError(400, ErrorCode.INVALID_TAG, "Invalid tag format")


def validate_environment(value: str) -> None:
    if value not in ENVIRONMENTS:
        raise PolicyError(400, ErrorCode.INVALID_ENVIRONMENT, "Invalid environment value")


def check_allowlist(repo: str, allowlist: Optional[Sequence[str]]) -> None:
    # No allowlist configured means every valid slug is accepted.
    if allowlist is None:
        return
    if repo not in allowlist:
        raise PolicyError(403, ErrorCode.REPO_NOT_ALLOWLISTED, "Repo not in allowlist")


class Guardrails:
    """Applies request checks in a fixed order: existence, syntax, policy, filesystem."""

    def __init__(self, apps_root: str, allowlist: Optional[Sequence[str]] = None) -> None:
        self.apps_root = apps_root
        self.allowlist = list(allowlist) if allowlist is not None else None

    def parse_request(self, payload: dict) -> DeployRequest:
        if not isinstance(payload, dict):
            raise PolicyError(400, ErrorCode.INVALID_REQUEST, "Request body must be a JSON object")
        require_fields(payload)
        repo = payload["repo"]
        image = payload["image"]
        tag = payload["tag"]
        environment = payload.get("environment") or ""
        validate_repository_id(repo)
        validate_image_ref(image)
        validate_tag(tag)
        validate_environment(environment)
        check_allowlist(repo, self.allowlist)
        return DeployRequest(
            repo=repo,
            image=image,
            tag=tag,
            environment=DeployEnvironment(environment),
            deliveryId=payload.get("deliveryId") or str(uuid.uuid4()),
        )

    def resolve_deploy_target(self, repo: str) -> DeployTarget:
        repo_dir = os.path.join(self.apps_root, repo)
        if not os.path.isdir(repo_dir):
            raise PolicyError(404, ErrorCode.REPO_DIR_NOT_FOUND, f"Repo directory not found: {repo_dir}")
        script = os.path.join(repo_dir, DEPLOY_SCRIPT_NAME)
        if not os.path.isfile(script):
            raise PolicyError(404, ErrorCode.DEPLOY_SCRIPT_NOT_FOUND, f"{DEPLOY_SCRIPT_NAME} not found in {repo_dir}")
        if not os.access(script, os.X_OK):
            raise PolicyError(412, ErrorCode.DEPLOY_SCRIPT_NOT_EXECUTABLE, f"{DEPLOY_SCRIPT_NAME} is not executable")
        return DeployTarget(repo_dir=repo_dir, script=script)
