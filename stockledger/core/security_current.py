from fastapi import Depends, HTTPException
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from stockledger.core.deps import get_db
from stockledger.core.security import ACCESS_TOKEN_TYPE, TokenValidationError, decode_token
from stockledger.models.user import User

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=401, detail=detail, headers={"WWW-Authenticate": "Bearer"})


def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> User:
    """Resolves the bearer access token to an active user; every ledger write is attributed to it."""
    try:
        payload = decode_token(token, expected_type=ACCESS_TOKEN_TYPE)
    except TokenValidationError as exc:
        raise _unauthorized(str(exc)) from exc

    user_id = payload.get("sub")
    user = db.get(User, user_id) if user_id else None
    if user is None:
        raise _unauthorized("User not found")
    if not user.is_active:
        raise _unauthorized("User is inactive")
    return user
