"""
Bearer token verification.

Tokens are issued by the external auth service; the engine only verifies the
signature and reads the ``sub`` and ``role`` claims.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from hemolink.config import settings
from hemolink.exceptions import AccessDenied
from hemolink.utils.logging_config import log_security_event

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login")

ACCESS_TOKEN_EXPIRE_MINUTES = 180


@dataclass(frozen=True)
class CallerIdentity:
    subject: UUID
    role: Optional[str] = None

    def has_role(self, *roles: str) -> bool:
        return self.role is not None and self.role.lower() in {r.lower() for r in roles}


class TokenManager:
    @staticmethod
    def create_access_token(
        data: dict, expires_delta: Optional[timedelta] = None
    ) -> str:
        """Mint an access token; used by tests and local tooling."""
        to_encode = data.copy()
        expire = datetime.now(timezone.utc) + (
            expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
        )
        to_encode.update({"exp": expire, "type": "access"})
        return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)

    @staticmethod
    def decode_token(token: str) -> dict:
        try:
            return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        except JWTError as e:
            raise ValueError("Invalid or expired token") from e


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_identity(token: str = Depends(oauth2_scheme)) -> CallerIdentity:
    try:
        payload = TokenManager.decode_token(token)
    except ValueError as e:
        logger.warning(f"Invalid authentication credentials: {e}")
        log_security_event("invalid_token")
        raise _unauthorized("Invalid authentication credentials")

    if payload.get("type", "access") != "access":
        raise _unauthorized("Invalid token type")

    subject = payload.get("sub")
    if subject is None:
        raise _unauthorized("Token does not contain user ID")

    try:
        subject_id = UUID(str(subject))
    except ValueError:
        raise _unauthorized("Token subject is not a valid identifier")

    return CallerIdentity(subject=subject_id, role=payload.get("role"))


def ensure_patient_scope(
    identity: CallerIdentity, patient_id: UUID, request: Optional[Request] = None
) -> None:
    """Patient-scoped operations only act on the caller's own records."""
    if identity.subject == patient_id:
        return

    log_security_event(
        event_type="patient_scope_violation",
        subject=str(identity.subject),
        ip_address=request.client.host if request and request.client else None,
        details={"patient_id": str(patient_id)},
    )
    raise AccessDenied("You can only access your own patient records")


def ensure_owner_scope(
    identity: CallerIdentity,
    owner_id: UUID,
    owner_kind: str,
    request: Optional[Request] = None,
) -> None:
    """Donor and hospital records are visible to their owner and to admins."""
    if identity.has_role("admin"):
        return
    if identity.subject == owner_id and (owner_kind != "hospital" or identity.has_role("hospital")):
        return

    log_security_event(
        event_type=f"{owner_kind}_scope_violation",
        subject=str(identity.subject),
        ip_address=request.client.host if request and request.client else None,
        details={f"{owner_kind}_id": str(owner_id), "role": identity.role},
    )
    raise AccessDenied(f"You can only access your own {owner_kind} records")


def require_role(*roles: str):
    """
    Dependency factory restricting a route to the given roles.

    Usage:
        identity: CallerIdentity = Depends(require_role("hospital", "admin"))
    """

    async def checker(
        request: Request, identity: CallerIdentity = Depends(get_current_identity)
    ) -> CallerIdentity:
        if not identity.has_role(*roles):
            log_security_event(
                event_type="unauthorized_access_attempt",
                subject=str(identity.subject),
                ip_address=request.client.host if request.client else None,
                details={"required_roles": list(roles), "role": identity.role},
            )
            raise AccessDenied(f"Requires one of roles: {', '.join(roles)}")
        return identity

    return checker
