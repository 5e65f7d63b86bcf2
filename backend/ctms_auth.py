# ctms_auth.py - Exchange CTMS credentials for a session token
# The configuration must already exist for (caller, URL, username); a successful
# login stores a new 8h session and makes that configuration the active one.

import logging
from typing import Optional

from pydantic import BaseModel, Field, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser
from configuration_store import ConfigurationStore
from ctms_client import CtmsClient, normalize_base_url
from errors import StorageFailure
from logging_system import get_logger, LogCategory, current_request_id
from models import AuditLog, AuditEventType, isoformat, utcnow

logger = logging.getLogger("trial-sync.ctms-auth")


class AuthenticateRequest(BaseModel):
    veevaUrl: str
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)
    configurationId: Optional[str] = None

    @field_validator("veevaUrl")
    @classmethod
    def validate_url(cls, v: str) -> str:
        v = normalize_base_url(v)
        scheme, sep, host = v.partition("://")
        if not sep or scheme.lower() not in ("http", "https") or not host.strip("/"):
            raise ValueError("veevaUrl must be an http(s) URL")
        return v

    @field_validator("username", "password")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v


class CtmsAuthenticator:
    """Credential exchange against the CTMS auth endpoint"""

    def __init__(self, client_factory=CtmsClient):
        self.client_factory = client_factory

    async def authenticate(self, db: AsyncSession, user: CurrentUser, request: AuthenticateRequest) -> dict:
        async with self.client_factory(request.veevaUrl) as client:
            session_token = await client.authenticate(request.username, request.password)

        config = await ConfigurationStore.find_for_credentials(
            db, user.id, request.veevaUrl, request.username, request.configurationId,
        )
        configuration_id = config.id
        issued_at = utcnow()

        try:
            session = ConfigurationStore.record_session(db, configuration_id, session_token, issued_at)
            expires_at = session.expires_at
            await ConfigurationStore.activate(db, configuration_id, user.id, touch_sync=True, commit=False)
            db.add(AuditLog(
                event_type=AuditEventType.CTMS_AUTHENTICATED,
                user_id=user.id,
                configuration_id=configuration_id,
                request_id=current_request_id(),
                details={"veeva_url": request.veevaUrl, "expires_at": isoformat(expires_at)},
            ))
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(f"Failed to store CTMS session for {configuration_id}: {e}")
            raise StorageFailure(f"Failed to store session: {e}") from e

        get_logger().info(
            "CTMS session established",
            category=LogCategory.AUTH,
            configuration_id=configuration_id,
            metadata={"expires_at": isoformat(expires_at)},
        )
        return {
            "success": True,
            "sessionId": session_token,
            "expiresAt": isoformat(expires_at),
            "message": "Successfully authenticated with CTMS",
        }
