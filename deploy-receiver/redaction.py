import re
from urllib.parse import urlsplit


_TOKEN_PATTERNS = [
    re.compile(r"(X-Deploy-Token\s*:\s*)([^\n\r]+)", re.IGNORECASE),
    re.compile(r"(Authorization\s*:\s*)([^\n\r]+)", re.IGNORECASE),
    re.compile(r"(Bearer\s+)\S+", re.IGNORECASE),
    re.compile(r"((?:GHCR_PAT|VAULTWARDEN_MASTER_PASSWORD|BW_SESSION)=)\S+"),
    re.compile(r"((?:password|passwd|token|secret)=)[^&\s]+", re.IGNORECASE),
    re.compile(r"()\b(?:ghp|gho|ghs|ghu)_[A-Za-z0-9]{20,}"),
    re.compile(r"()\bgithub_pat_[A-Za-z0-9_]{20,}"),
]


def redact_url(value: str) -> str:
    if not value:
        return ""
    try:
        parsed = urlsplit(value)
    except ValueError:
        return "<redacted-url>"
    if not parsed.scheme or not parsed.netloc:
        return "<redacted-url>"
    host = parsed.hostname or ""
    if parsed.port:
        host = f"{host}:{parsed.port}"
    return f"{parsed.scheme}://{host}/..."


def redact_text(value: str) -> str:
    if not value:
        return value
    redacted = value
    for pattern in _TOKEN_PATTERNS:
        redacted = pattern.sub(r"\1[REDACTED]", redacted)
    redacted = re.sub(r"https?://[^\s]+", lambda match: redact_url(match.group(0)), redacted)
    return redacted


def redact_secrets(value: str, secrets) -> str:
    """Mask every literal occurrence of the given secret values."""
    if not value:
        return value
    redacted = value
    for secret in secrets:
        if secret:
            redacted = redacted.replace(secret, "[REDACTED]")
    return redacted
