import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt

from storefront_payments.config import get_settings
from storefront_payments.ledger import LedgerScope

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    user_id: Optional[str] = None
    is_admin: bool = False

    @property
    def is_guest(self) -> bool:
        return self.user_id is None

    @property
    def scope(self) -> LedgerScope:
        if self.is_admin:
            return LedgerScope(user_id=self.user_id, elevated=True)
        if self.user_id is None:
            return LedgerScope.guest()
        return LedgerScope.user(self.user_id)


GUEST = Identity()


def get_identity(authorization: Optional[str] = Header(None)) -> Identity:
    """Resolve the caller; no Authorization header means guest checkout."""
    if not authorization:
        return GUEST
    secret = get_settings().jwt_secret
    if not secret:
        logger.error("JWT_SECRET is not configured; rejecting bearer token")
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported scheme")
        claims = jwt.decode(token, secret, algorithms=["HS256"])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")

    user_id = claims.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return Identity(user_id=str(user_id), is_admin=claims.get("role") == "admin")


def require_user(identity: Identity = Depends(get_identity)) -> Identity:
    if identity.is_guest:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return identity


def require_admin(identity: Identity = Depends(get_identity)) -> Identity:
    if not identity.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return identity
