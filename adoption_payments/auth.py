from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt

from adoption_payments.config import settings

STAFF_ROLES = ("ADMIN", "MODERATOR")


@dataclass(frozen=True)
class Identity:
    id: str
    role: str = "USER"
    email: Optional[str] = None

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


def verify_token(authorization: str = Header(None)) -> Identity:
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("not a bearer token")
        claims = jwt.decode(token, settings.jwt_secret, algorithms=["HS256"])
    except (AttributeError, ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")

    user_id = claims.get("id") or claims.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token payload")

    return Identity(id=str(user_id), role=claims.get("role") or "USER", email=claims.get("email"))


def require_admin(identity: Identity = Depends(verify_token)) -> Identity:
    if identity.role != "ADMIN":
        raise HTTPException(status_code=403, detail="Forbidden")
    return identity
