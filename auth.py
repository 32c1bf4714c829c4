from datetime import datetime, timedelta, timezone
from typing import List, Optional

import jwt
from fastapi import Depends, Header, HTTPException
from passlib.hash import bcrypt

import config
from database import DataStore, get_store
from errors import AppError, AuthenticationError, ForbiddenError, ValidationError


def hash_password(password: str) -> str:
    return bcrypt.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    return bcrypt.verify(password, password_hash)


def create_token(user: dict) -> str:
    payload = {
        "sub": str(user["_id"]),
        "role": user.get("role", "student"),
        "exp": datetime.now(timezone.utc) + timedelta(minutes=config.JWT_EXP_MIN),
    }
    return jwt.encode(payload, config.SECRET_KEY, algorithm="HS256")


def user_from_token(store: DataStore, token: Optional[str]) -> dict:
    """Resolve a bearer token to an active user; shared by HTTP and the websocket handshake."""
    if not token:
        raise AuthenticationError("Missing token")
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid token")
    user_id = payload.get("sub")
    try:
        user = store.get("user", user_id) if user_id else None
    except ValidationError:
        user = None
    if not user:
        raise AuthenticationError("Invalid token")
    if not user.get("is_active", True):
        raise ForbiddenError("Account is deactivated")
    return user


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


def get_current_user(authorization: Optional[str] = Header(None), store: DataStore = Depends(get_store)) -> dict:
    if not authorization:
        raise AuthenticationError("Missing Authorization header")
    token = bearer_token(authorization)
    if token is None:
        raise AuthenticationError("Invalid token")
    return user_from_token(store, token)


def require_role(user: dict, roles: List[str]):
    if user.get("role") not in roles and user.get("role") != "superadmin":
        raise HTTPException(status_code=403, detail="Forbidden")


def get_optional_user(authorization: Optional[str] = Header(None), store: DataStore = Depends(get_store)) -> Optional[dict]:
    """Like ``get_current_user`` but anonymous (``None``) instead of 401 for public routes."""
    token = bearer_token(authorization)
    if not token:
        return None
    try:
        return user_from_token(store, token)
    except AppError:
        return None
