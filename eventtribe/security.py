import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from fastapi import Header, HTTPException, Request
from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError

from . import config
from .errors import CallbackAuthError


@dataclass(frozen=True)
class Session:
    user_id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def verify_session_token(token: str, secret: str) -> Session:
    try:
        payload = jwt.decode(token, secret, algorithms=["HS256"])
    except ExpiredSignatureError:
        raise ValueError("EXPIRED")
    except JWTError:
        raise ValueError("INVALID_TOKEN")

    now = datetime.now(timezone.utc).timestamp()
    exp = payload.get("exp")
    if exp is None or now > float(exp):
        raise ValueError("EXPIRED")

    if not payload.get("sub"):
        raise ValueError("INVALID_TOKEN")

    return Session(user_id=payload["sub"], role=payload.get("role", "user"))


async def current_session(authorization: Optional[str] = Header(default=None)) -> Session:
    """FastAPI dependency: the caller's session from a bearer token."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="MISSING_TOKEN")
    try:
        return verify_session_token(authorization[7:].strip(), config.SESSION_SIGNING_SECRET)
    except ValueError as e:
        raise HTTPException(status_code=401, detail=str(e))


def verify_callback_request(request: Request) -> None:
    """Reject callbacks that do not carry our shared token or come from an unlisted IP.

    Daraja does not sign callbacks, so the token travels in the callback URL
    we hand it at STK push time.
    """
    supplied = request.query_params.get("token") or request.headers.get("x-callback-token") or ""
    if not config.MPESA_CALLBACK_TOKEN or not hmac.compare_digest(supplied, config.MPESA_CALLBACK_TOKEN):
        raise CallbackAuthError("BAD_CALLBACK_TOKEN")

    if config.MPESA_CALLBACK_ALLOWED_IPS:
        ip = request.client.host if request.client else ""
        if ip not in config.MPESA_CALLBACK_ALLOWED_IPS:
            raise CallbackAuthError("CALLBACK_IP_NOT_ALLOWED")
