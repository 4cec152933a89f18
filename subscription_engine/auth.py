from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from subscription_engine.config import Settings, get_settings
from subscription_engine.utils.dates import utcnow

ACCESS_TOKEN_EXPIRE_MINUTES = 30

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/auth/login", auto_error=False)


@dataclass(frozen=True)
class AuthenticatedCaller:
    uid: str
    email: str
    display_name: Optional[str] = None


def create_access_token(data: dict, settings: Settings, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def decode_caller(token: str, settings: Settings) -> Optional[AuthenticatedCaller]:
    payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    uid = str(payload.get("sub") or "").strip()
    email = str(payload.get("email") or "").strip()
    if not uid or not email:
        return None
    return AuthenticatedCaller(uid=uid, email=email, display_name=payload.get("name"))


def get_current_caller(
    token: Optional[str] = Depends(oauth2_scheme),
    settings: Settings = Depends(get_settings),
) -> AuthenticatedCaller:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if not settings.secret_key:
        raise HTTPException(status_code=503, detail="Authentication is not configured.")

    candidate_token = (token or "").strip()
    if not candidate_token:
        raise credentials_exception

    try:
        caller = decode_caller(candidate_token, settings)
    except JWTError:
        raise credentials_exception
    if caller is None:
        raise credentials_exception
    return caller


def get_admin_caller(
    caller: AuthenticatedCaller = Depends(get_current_caller),
    settings: Settings = Depends(get_settings),
) -> AuthenticatedCaller:
    """Require a caller listed in ADMIN_USER_IDS"""
    if caller.uid not in settings.admin_user_ids:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return caller
