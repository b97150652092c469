import hashlib
import os
import secrets
from datetime import datetime, timedelta, timezone
from typing import Iterator, Optional

import jwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from models import User
from schemas import AdminPermissionName
from storage import Storage

JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")
EXTERNAL_JWT_SECRET = os.getenv("EXTERNAL_JWT_SECRET", JWT_SECRET)
JWT_ALGO = "HS256"
TOKEN_TTL = timedelta(days=7)

security = HTTPBearer(auto_error=False)


# ----------------------- Passwords -----------------------
def hash_password(password: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(8)
    return salt + "$" + hashlib.sha256((salt + password).encode()).hexdigest()


def verify_password(password: str, stored: Optional[str]) -> bool:
    if not stored or "$" not in stored:
        return False
    salt, _ = stored.split("$", 1)
    return secrets.compare_digest(hash_password(password, salt), stored)


# ----------------------- Tokens -----------------------
def create_token(user_id: str) -> str:
    exp = datetime.now(timezone.utc) + TOKEN_TTL
    return jwt.encode({"sub": user_id, "exp": exp}, JWT_SECRET, algorithm=JWT_ALGO)


def decode_token(token: str, secret: str = JWT_SECRET) -> dict:
    try:
        return jwt.decode(token, secret, algorithms=[JWT_ALGO])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def decode_external_token(token: str) -> dict:
    """Claims of a token issued by the external identity provider."""
    claims = decode_token(token, EXTERNAL_JWT_SECRET)
    if not claims.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token payload")
    return claims


# ----------------------- Dependencies -----------------------
def get_storage(request: Request) -> Iterator[Storage]:
    with request.app.state.database.session() as session:
        yield Storage(session)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    storage: Storage = Depends(get_storage),
) -> User:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    payload = decode_token(credentials.credentials)
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token payload")
    user = storage.get_user(user_id)
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


def require_permission(permission: AdminPermissionName):
    def checker(admin: User = Depends(require_admin), storage: Storage = Depends(get_storage)) -> User:
        if not storage.has_admin_permission(admin.id, permission.value):
            raise HTTPException(status_code=403, detail=f"Permission '{permission.value}' required")
        return admin

    return checker
