from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session, joinedload

from ..api.dependencies import get_db
from ..config import settings
from ..models.models import User

bearer_scheme = HTTPBearer(auto_error=False)


def create_access_token(data: dict, expires_minutes: Optional[int] = None) -> str:
    payload = data.copy()
    payload.setdefault("type", "access")
    if "sub" in payload:
        payload["sub"] = str(payload["sub"])
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes or settings.access_token_expire_minutes)
    payload.update({"exp": expire})
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])


def resolve_user_from_token(db: Session, token: str, require_active: bool = True) -> Optional[User]:
    """Return the user a token belongs to, or None when the token is unusable."""
    try:
        payload = decode_token(token)
    except JWTError:
        return None
    user_id: Optional[str] = payload.get("sub")
    if user_id is None or payload.get("type") not in (None, "access"):
        return None
    try:
        user_pk = int(user_id)
    except (TypeError, ValueError):
        return None

    user = (
        db.query(User)
        .options(joinedload(User.primary_role), joinedload(User.roles))
        .filter(User.id == user_pk)
        .first()
    )
    if user is None or (require_active and not user.is_active):
        return None
    return user


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if not credentials:
        raise credentials_exception
    user = resolve_user_from_token(db, credentials.credentials)
    if user is None:
        raise credentials_exception
    return user


def require_roles(*allowed_roles: str):
    allowed = set(allowed_roles)

    def role_checker(user: User = Depends(get_current_user)) -> User:
        if not allowed:
            return user
        if user.has_any_role(*allowed):
            return user
        raise HTTPException(status_code=403, detail="Operation not permitted for your role")

    return role_checker
