"""
Caller identity for the billing API.

Tokens are issued by the account service and carry the user's email as the
subject. Browser sessions send the token in an HttpOnly cookie; server-side
callers and tests use the Authorization header.
"""
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from dotenv import load_dotenv
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from sqlalchemy import func
from sqlalchemy.orm import Session

from app import models
from app.database import get_db

load_dotenv()

logger = logging.getLogger(__name__)

SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    raise RuntimeError("SECRET_KEY environment variable must be set.")
if SECRET_KEY == "your-secret-key-change-in-production":
    raise RuntimeError("Insecure SECRET_KEY detected. Set a strong unique SECRET_KEY.")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))

AUTH_COOKIE_NAME = os.getenv("AUTH_COOKIE_NAME", "examprep_access_token").strip() or "examprep_access_token"

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/auth/login", auto_error=False)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    lifetime = expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": datetime.now(timezone.utc) + lifetime})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token_email(token: str) -> Optional[str]:
    """Return the lower-cased subject email, or None for a bad or subject-less token."""
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None
    email = str(payload.get("sub") or "").strip().lower()
    return email or None


def _credentials_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_user(
    request: Request,
    token: Optional[str] = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> models.User:
    # Cookie first: a stale header from an old tab must not override the session.
    candidate_token = (request.cookies.get(AUTH_COOKIE_NAME) or "").strip() or (token or "").strip()
    if not candidate_token:
        raise _credentials_exception()

    email = decode_token_email(candidate_token)
    if email is None:
        raise _credentials_exception()

    user = db.query(models.User).filter(func.lower(models.User.email) == email).first()
    if user is None:
        raise _credentials_exception()
    return user


def get_current_active_user(current_user: models.User = Depends(get_current_user)) -> models.User:
    if not current_user.is_active:
        raise HTTPException(status_code=400, detail="Inactive user")
    return current_user


def get_current_admin_user(current_user: models.User = Depends(get_current_active_user)) -> models.User:
    """Gate for plan management, manual grants and billing reports."""
    if not current_user.is_admin:
        logger.warning("admin_access_denied user_id=%s", current_user.id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return current_user
