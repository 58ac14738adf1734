import json
import logging
import os
from typing import Callable, Optional


_logger = logging.getLogger("deploy_receiver.config")

DEFAULT_PORT = 4040
DEFAULT_HOST = "127.0.0.1"
DEFAULT_APPS_ROOT = "/home/apps"
DEFAULT_ALLOWLIST_PATH = "/etc/deploy-receiver/allowlist.json"
DEFAULT_DEPLOY_TIMEOUT_MS = 180_000
DEFAULT_KILL_GRACE_MS = 5_000
DEFAULT_MAX_OUTPUT_CHARS = 4000
DEFAULT_MAX_BODY_BYTES = 16 * 1024

# Credential file name -> (env fallback, attribute on Settings)
SECRET_SOURCES = {
    "deploy-receiver-token": ("DEPLOY_RECEIVER_TOKEN", "deploy_token"),
    "ghcr-pat": ("DEPLOY_GHCR_PAT", "ghcr_pat"),
    "vaultwarden-master-password": ("DEPLOY_VAULTWARDEN_MASTER_PASSWORD", "vaultwarden_master_password"),
}


class ConfigError(Exception):
    pass


class Settings:
    def __init__(self) -> None:
        self.ssm_prefix = os.getenv("DEPLOY_RECEIVER_SSM_PREFIX", "")
        self.port = self._get("port", "DEPLOY_RECEIVER_PORT", DEFAULT_PORT, int)
        self.host = self._get("host", "DEPLOY_RECEIVER_HOST", DEFAULT_HOST, str)
        self.apps_root = self._get("apps_root", "DEPLOY_APPS_ROOT", DEFAULT_APPS_ROOT, str)
        self.allowlist_path = self._get("allowlist_path", "DEPLOY_ALLOWLIST_PATH", DEFAULT_ALLOWLIST_PATH, str)
        self.deploy_timeout_ms = self._get("deploy_timeout_ms", "DEPLOY_TIMEOUT_MS", DEFAULT_DEPLOY_TIMEOUT_MS, int)
        self.kill_grace_ms = self._get("kill_grace_ms", "DEPLOY_KILL_GRACE_MS", DEFAULT_KILL_GRACE_MS, int)
        self.max_output_chars = self._get(
            "max_output_chars", "DEPLOY_MAX_OUTPUT_CHARS", DEFAULT_MAX_OUTPUT_CHARS, int
        )
        self.max_body_bytes = self._get("max_body_bytes", "DEPLOY_MAX_BODY_BYTES", DEFAULT_MAX_BODY_BYTES, int)
        self.log_level = self._get("log_level", "DEPLOY_RECEIVER_LOG_LEVEL", "INFO", str)
        if self.deploy_timeout_ms <= 0:
            self.deploy_timeout_ms = DEFAULT_DEPLOY_TIMEOUT_MS
        if self.kill_grace_ms < 0:
            self.kill_grace_ms = DEFAULT_KILL_GRACE_MS

        self.deploy_token = ""
        self.ghcr_pat = ""
        self.vaultwarden_master_password = ""
        for credential, (env_key, attr) in SECRET_SOURCES.items():
            setattr(self, attr, self._resolve_secret(self._read_credential(credential, env_key)))

    @property
    def deploy_timeout_seconds(self) -> float:
        return self.deploy_timeout_ms / 1000.0

    @property
    def kill_grace_seconds(self) -> float:
        return self.kill_grace_ms / 1000.0

    def deploy_secrets(self) -> dict[str, str]:
        # Names match the existing deploy.sh conventions.
        return {
            "VAULTWARDEN_MASTER_PASSWORD": self.vaultwarden_master_password,
            "GHCR_PAT": self.ghcr_pat,
        }

    def missing_secrets(self) -> list[str]:
        return [
            credential
            for credential, (_env_key, attr) in SECRET_SOURCES.items()
            if not getattr(self, attr)
        ]

    def _get(self, ssm_key: str, env_key: str, default, parser: Callable) -> Optional[object]:
        if env_key in os.environ:
            try:
                return parser(os.environ[env_key])
            except ValueError:
                return default
        if self.ssm_prefix:
            value = self._read_ssm(f"{self.ssm_prefix}/{ssm_key}")
            if value is not None:
                try:
                    return parser(value)
                except ValueError:
                    return default
        return default

    def _read_credential(self, name: str, env_key: str) -> str:
        """Read a systemd LoadCredential file, falling back to the environment."""
        cred_dir = os.getenv("CREDENTIALS_DIRECTORY", "")
        if cred_dir:
            path = os.path.join(cred_dir, name)
            if os.path.isfile(path):
                with open(path, "r", encoding="utf-8") as handle:
                    return handle.read().strip()
        return os.getenv(env_key, "").strip()

    def _read_ssm(self, name: str) -> Optional[str]:
        try:
            import boto3
            from botocore.exceptions import BotoCoreError, ClientError
        except Exception:
            return None
        try:
            client = boto3.client("ssm")
            response = client.get_parameter(Name=name, WithDecryption=True)
            return response.get("Parameter", {}).get("Value")
        except (BotoCoreError, ClientError):
            return None

    def _resolve_secret(self, value: Optional[str]) -> Optional[str]:
        if not isinstance(value, str):
            return value
        if not value.startswith("arn:aws:secretsmanager:"):
            return value
        try:
            import boto3
        except Exception:
            return value
        try:
            client = boto3.client("secretsmanager")
            response = client.get_secret_value(SecretId=value)
            return response.get("SecretString", value)
        except Exception:
            _logger.warning("config.secret unresolved source=secretsmanager")
            return value


def load_allowlist(path: str) -> Optional[list[str]]:
    """Load the repo allowlist.

    A missing file disables the allowlist: every syntactically valid slug is
    accepted. Anything other than a JSON array of strings is a ConfigError.
    """
    if not path or not os.path.exists(path):
        _logger.warning("config.allowlist missing path=%s all repo slugs will be accepted", path)
        return None
    try:
        with open(path, "r", encoding="utf-8") as handle:
            parsed = json.load(handle)
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Failed to parse allowlist {path}: {exc}") from exc
    if not isinstance(parsed, list) or not all(isinstance(item, str) for item in parsed):
        raise ConfigError("Allowlist must be a JSON array of repo slugs")
    _logger.info("config.allowlist loaded count=%s path=%s", len(parsed), path)
    return parsed


SETTINGS = Settings()
