"""FastAPI authentication dependencies for route protection."""

from dataclasses import dataclass

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from subsync.auth.jwt import decode_token
from subsync.billing.errors import Unauthorized

# Optional bearer: missing credentials become our 401, not a 403
_bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class CallerIdentity:
    """A verified caller, as vouched for by the identity provider."""

    user_id: str
    email: str
    display_name: str | None = None


def identity_from_claims(payload: dict) -> CallerIdentity:
    """Build a CallerIdentity from verified token claims.

    Raises:
        Unauthorized: If the subject or email claim is missing.
    """
    sub = payload.get("sub")
    email = payload.get("email")
    if not sub or not isinstance(sub, str) or not email:
        raise Unauthorized("Could not validate credentials")

    metadata = payload.get("user_metadata") or {}
    display_name = payload.get("name") or metadata.get("full_name") or None
    return CallerIdentity(user_id=sub, email=email, display_name=display_name)


async def get_current_identity(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> CallerIdentity:
    """Extract and validate the Bearer token, then return the caller identity.

    Raises:
        Unauthorized: If the token is missing, invalid, expired, or incomplete.
    """
    if credentials is None:
        raise Unauthorized("Not authenticated")

    try:
        payload = decode_token(credentials.credentials)
    except JWTError:
        raise Unauthorized("Could not validate credentials") from None

    return identity_from_claims(payload)
