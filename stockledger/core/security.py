from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

import bcrypt
from jose import JWTError, jwt

from stockledger.core.config import settings

ALGORITHM = "HS256"
ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


class TokenValidationError(ValueError):
    pass


@dataclass(frozen=True)
class TokenMetadata:
    subject: str
    token_type: str
    jti: str
    expires_at: datetime
    role: str | None = None


def hash_password(password: str) -> str:
    # bcrypt hard limit is 72 bytes.
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))


def create_token(
    subject: str,
    expires_delta: timedelta,
    token_type: str,
    *,
    jti: str | None = None,
    extra_claims: dict[str, Any] | None = None,
) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        **(extra_claims or {}),
        "sub": subject,
        "type": token_type,
        "jti": jti or str(uuid4()),
        "iat": int(now.timestamp()),
        "exp": int((now + expires_delta).timestamp()),
    }
    return jwt.encode(payload, settings.secret_key, algorithm=ALGORITHM)


def decode_token(token: str, *, expected_type: str | None = None) -> dict:
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError as exc:
        raise TokenValidationError("Invalid token") from exc

    if not payload.get("sub"):
        raise TokenValidationError("Invalid token subject")
    if expected_type and payload.get("type") != expected_type:
        raise TokenValidationError("Invalid token type")
    if not payload.get("jti"):
        raise TokenValidationError("Invalid token id")
    if not payload.get("exp"):
        raise TokenValidationError("Invalid token expiration")
    return payload


def get_token_metadata(token: str, *, expected_type: str | None = None) -> TokenMetadata:
    payload = decode_token(token, expected_type=expected_type)
    return TokenMetadata(
        subject=str(payload["sub"]),
        token_type=str(payload["type"]),
        jti=str(payload["jti"]),
        expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
        role=payload.get("role"),
    )


def create_access_token(user_id: str, *, role: str | None = None) -> str:
    # The role claim is informational for clients; authorization re-reads users.role.
    return create_token(
        subject=user_id,
        expires_delta=timedelta(minutes=settings.access_token_expire_minutes),
        token_type=ACCESS_TOKEN_TYPE,
        extra_claims={"role": role} if role else None,
    )


def create_refresh_token(user_id: str) -> str:
    return create_token(
        subject=user_id,
        expires_delta=timedelta(days=settings.refresh_token_expire_days),
        token_type=REFRESH_TOKEN_TYPE,
    )
