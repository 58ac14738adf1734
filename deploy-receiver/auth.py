import hmac
from typing import Optional

from fastapi import HTTPException

from models import ErrorCode


TOKEN_HEADER = "X-Deploy-Token"


def _auth_error(status_code: int, code: str, message: str) -> None:
    raise HTTPException(status_code=status_code, detail={"code": code, "message": message})


def tokens_match(provided: Optional[str], expected: Optional[str]) -> bool:
    if not isinstance(provided, str) or not isinstance(expected, str):
        return False
    if not expected:
        return False
    # compare_digest does not short-circuit on the first differing byte.
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def require_deploy_token(provided: Optional[str], expected: Optional[str]) -> None:
    """Reject missing and wrong tokens with the same 401 response."""
    if not tokens_match(provided, expected):
        _auth_error(401, ErrorCode.UNAUTHORIZED.value, "Unauthorized")
