"""Authentication and authorization utilities."""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import UUID
from jose import JWTError, jwt
from fastapi import Depends, Header, HTTPException, Query, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
import secrets
import logging

from app.config import settings
from app.database import get_db
from app.models import Client

logger = logging.getLogger(__name__)
security = HTTPBearer(auto_error=False)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token with specified expiration."""
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))

    to_encode.update({
        "exp": expire,
        "iat": now,
        "type": "access"
    })
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def secrets_match(provided: Optional[str], expected: Optional[str]) -> bool:
    """Constant-time comparison; an unset expected secret never matches."""
    if not expected or not provided:
        return False
    return secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


async def get_current_client_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> UUID:
    """Verify the JWT bearer token and return its client_id claim."""

    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None:
        raise credentials_exception

    try:
        payload = jwt.decode(credentials.credentials, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as e:
        logger.warning(f"JWT validation failed: {e}")
        raise credentials_exception

    client_id = payload.get("client_id")
    if not client_id:
        raise credentials_exception

    try:
        return UUID(str(client_id))
    except ValueError:
        logger.warning(f"JWT carried a malformed client_id: {client_id!r}")
        raise credentials_exception


async def require_active_subscription(
    client_id: UUID = Depends(get_current_client_id),
    db: AsyncSession = Depends(get_db)
) -> UUID:
    """LinkedIn features are reserved to clients on the full plan with an active subscription."""
    result = await db.execute(
        select(Client.plan, Client.subscription_status).where(Client.id == client_id)
    )
    row = result.first()

    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="client_not_found")

    if row.plan != "full" or row.subscription_status != "active":
        logger.info(f"LinkedIn feature denied for client {client_id} ({row.plan}/{row.subscription_status})")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="subscription_required")

    return client_id


async def verify_webhook_secret(
    x_unipile_secret: Optional[str] = Header(None),
    secret: Optional[str] = Query(None)
) -> None:
    """Shared secret sent by Unipile as a header (or ?secret= on the webhook URL)."""
    if not secrets_match(x_unipile_secret or secret, settings.UNIPILE_WEBHOOK_SECRET):
        logger.warning("Webhook rejected: bad or missing secret")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthorized")


async def verify_cron_secret(
    x_cron_secret: Optional[str] = Header(None),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> None:
    """Cron trigger secret, as x-cron-secret header or bearer token."""
    provided: Any = x_cron_secret or (credentials.credentials if credentials else None)
    if not secrets_match(provided, settings.CRON_SECRET):
        logger.warning("Cron trigger rejected: bad or missing secret")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthorized")
