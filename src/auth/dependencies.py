import hashlib
import hmac
from fastapi import Header, HTTPException, status
from src.auth.context import WebhookCallerContext
from src.config import settings


def _fingerprint(token: str) -> str:
    """Short SHA-256 prefix, safe to log."""
    return hashlib.sha256(token.encode()).hexdigest()[:12]


def _extract_bearer_token(authorization: str | None) -> str | None:
    """Extract token from 'Bearer <token>' header."""
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


async def require_webhook_caller(
    authorization: str | None = Header(None, alias="Authorization"),
) -> WebhookCallerContext:
    """
    Check the shared webhook secret when one is configured.

    Open when ECA_WEBHOOK_SECRET is unset (local development and tests).
    """
    secret = settings.eca_webhook_secret
    if not secret:
        return WebhookCallerContext()

    token = _extract_bearer_token(authorization)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not hmac.compare_digest(token.encode(), secret.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return WebhookCallerContext(auth_method="shared_secret", token_fingerprint=_fingerprint(token))
