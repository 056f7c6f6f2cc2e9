"""Bearer token verification."""

from datetime import datetime, timedelta, timezone
from typing import Protocol

from jose import JWTError, jwt
from pydantic import BaseModel

from errors import AuthError

JWT_ALG = "HS256"


class Identity(BaseModel):
    external_user_id: str


class IdentityProvider(Protocol):
    def verify(self, credential: str) -> Identity: ...


class JWTIdentityProvider:
    def __init__(self, secret: str, expires_minutes: int = 60 * 24):
        self.secret = secret
        self.expires_minutes = expires_minutes

    def create_token(self, external_user_id: str) -> str:
        expire = datetime.now(timezone.utc) + timedelta(minutes=self.expires_minutes)
        return jwt.encode({"sub": external_user_id, "exp": expire}, self.secret, algorithm=JWT_ALG)

    def verify(self, credential: str) -> Identity:
        try:
            payload = jwt.decode(credential, self.secret, algorithms=[JWT_ALG])
        except JWTError:
            raise AuthError("Invalid or expired token", "INVALID_TOKEN")
        subject = payload.get("sub")
        if not subject:
            raise AuthError("Invalid or expired token", "INVALID_TOKEN")
        return Identity(external_user_id=subject)
