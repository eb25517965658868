# Identity: password hashing, JWT bearer tokens and the explicit Session
# context threaded into every core operation.

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext

from . import config
from .config import now_utc
from .database import get_users
from .models import UserResponse, UserRole

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)


@dataclass(frozen=True)
class Session:
    user_id: str
    email: Optional[str]
    role: str
    full_name: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value

    @property
    def display_name(self) -> str:
        if self.full_name:
            return self.full_name
        return (self.email or "").split("@")[0] or "User"

    @classmethod
    def from_user(cls, user: dict) -> "Session":
        return cls(user_id=str(user["_id"]), email=user.get("email"),
                   role=user.get("role", UserRole.CITIZEN.value),
                   full_name=user.get("full_name", ""))


def hash_password(password: str) -> str:
    if len(password.encode("utf-8")) > 72:
        raise ValueError("Password cannot exceed 72 bytes")
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)


def create_access_token(data: dict) -> str:
    to_encode = data.copy()
    to_encode["exp"] = now_utc() + timedelta(hours=config.JWT_EXPIRE_HOURS)
    return jwt.encode(to_encode, config.require_jwt_secret(), algorithm=config.JWT_ALGORITHM)


_token_blacklist: set = set()


def revoke_token(token: str) -> None:
    _token_blacklist.add(token)
    # Expired tokens don't matter, so an oversized blacklist can simply be reset
    if len(_token_blacklist) > 10000:
        _token_blacklist.clear()


async def get_current_user(token: Optional[str] = Depends(oauth2_scheme), users=Depends(get_users)) -> Session:
    if token is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    if token in _token_blacklist:
        raise HTTPException(status_code=401, detail="Token has been revoked")
    try:
        payload = jwt.decode(token, config.require_jwt_secret(), algorithms=[config.JWT_ALGORITHM])
        username: str = payload.get("sub")
        if username is None:
            raise HTTPException(status_code=401, detail="Invalid token")
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    user = await users.find_by_username(username)
    if user is None:
        raise HTTPException(status_code=401, detail="User not found")
    return Session.from_user(user)


def require_role(*roles):
    async def role_checker(session: Session = Depends(get_current_user)) -> Session:
        if session.role not in roles:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return session
    return role_checker


require_admin = require_role(UserRole.ADMIN.value)


def user_to_response(user: dict) -> UserResponse:
    return UserResponse(
        id=str(user["_id"]), username=user["username"], full_name=user["full_name"],
        email=user["email"], role=user["role"], created_at=user["created_at"])
