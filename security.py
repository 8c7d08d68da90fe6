import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from pymongo.database import Database

import config
from database import get_db, to_object_id
from errors import AppError

security = HTTPBearer(auto_error=False)
password_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=config.BCRYPT_ROUNDS)


def hash_password(password: str) -> str:
    return password_ctx.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    if not hashed:
        return False
    return password_ctx.verify(password, hashed)


def _claims(user: dict) -> dict:
    return {
        "sub": str(user["_id"]),
        "email": user.get("email"),
        "is_admin": user.get("is_admin", False),
        "ver": user.get("token_version", 0),
        "iat": datetime.utcnow(),
    }


def create_access_token(user: dict) -> str:
    payload = _claims(user)
    payload["exp"] = datetime.utcnow() + timedelta(minutes=config.JWT_EXPIRES_MIN)
    return jwt.encode(payload, config.JWT_SECRET, algorithm="HS256")


def create_refresh_token(user: dict) -> str:
    payload = _claims(user)
    payload["exp"] = datetime.utcnow() + timedelta(days=config.JWT_REFRESH_EXPIRES_DAYS)
    return jwt.encode(payload, config.JWT_REFRESH_SECRET, algorithm="HS256")


def decode_access_token(token: str) -> dict:
    try:
        return jwt.decode(token, config.JWT_SECRET, algorithms=["HS256"])
    except jwt.InvalidTokenError:
        raise AppError("Invalid or expired token", 401)


def decode_refresh_token(token: str) -> dict:
    try:
        return jwt.decode(token, config.JWT_REFRESH_SECRET, algorithms=["HS256"])
    except jwt.InvalidTokenError:
        raise AppError("Invalid or expired refresh token", 401)


@dataclass
class AuthSession:
    """The authenticated caller of a request."""
    user: dict
    token: str
    claims: dict

    @property
    def user_id(self):
        return self.user["_id"]

    @property
    def is_admin(self) -> bool:
        return bool(self.user.get("is_admin", False))


def _extract_token(request: Request, credentials: Optional[HTTPAuthorizationCredentials]) -> Optional[str]:
    if credentials and credentials.credentials:
        return credentials.credentials
    return request.cookies.get("access_token")


def _resolve_session(db: Database, token: str) -> AuthSession:
    payload = decode_access_token(token)
    user = db["user"].find_one({"_id": to_object_id(payload["sub"])})
    if not user:
        raise AppError("User no longer exists", 401)
    # Tokens minted before the last logout are stale.
    if payload.get("ver", 0) != user.get("token_version", 0):
        raise AppError("Invalid or expired token", 401)
    return AuthSession(user=user, token=token, claims=payload)


async def get_session(request: Request,
                      credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
                      db: Database = Depends(get_db)) -> AuthSession:
    token = _extract_token(request, credentials)
    if not token:
        raise AppError("Access token is required", 401)
    return _resolve_session(db, token)


async def get_optional_session(request: Request,
                               credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
                               db: Database = Depends(get_db)) -> Optional[AuthSession]:
    token = _extract_token(request, credentials)
    if not token:
        return None
    try:
        return _resolve_session(db, token)
    except AppError:
        return None


async def require_admin(session: AuthSession = Depends(get_session)) -> AuthSession:
    if not session.is_admin:
        raise AppError("Admin access required", 403)
    return session


class RateLimiter:
    """Fixed-window request counter keyed by client address."""

    def __init__(self, max_requests: int, window_seconds: int, message: str):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.message = message
        self._hits: Dict[str, Tuple[float, int]] = {}
        self._pruned_at: Optional[float] = None
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        # At most once per window, drop keys whose window has run out.
        if self._pruned_at is not None and now - self._pruned_at < self.window_seconds:
            return
        self._pruned_at = now
        expired = [k for k, (started, _) in self._hits.items() if now - started >= self.window_seconds]
        for k in expired:
            del self._hits[k]

    def hit(self, key: str, now: Optional[float] = None) -> bool:
        """Record a request; return False once the key is over its limit."""
        if self.max_requests <= 0:
            return True
        now = time.monotonic() if now is None else now
        with self._lock:
            self._prune(now)
            started, count = self._hits.get(key, (now, 0))
            if now - started >= self.window_seconds:
                started, count = now, 0
            count += 1
            self._hits[key] = (started, count)
            return count <= self.max_requests

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
            self._pruned_at = None

    async def __call__(self, request: Request) -> None:
        key = request.client.host if request.client else "unknown"
        if not self.hit(key):
            raise AppError(self.message, 429)


general_limiter = RateLimiter(config.RATE_LIMIT_MAX, config.RATE_LIMIT_WINDOW_SEC,
                              "Too many requests from this IP, please try again later.")
auth_limiter = RateLimiter(config.AUTH_RATE_LIMIT_MAX, config.RATE_LIMIT_WINDOW_SEC,
                           "Too many authentication attempts, please try again later.")
