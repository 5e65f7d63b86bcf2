# configuration_store.py - Owner-scoped access to CTMS configurations and sessions
# - Every lookup filters on the owning user id
# - Activation clears the owner's other configurations in the same transaction
# - Sessions are append-only; the newest active, unexpired one is authoritative

import os
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update, delete
from sqlalchemy.ext.asyncio import AsyncSession

from errors import ConfigurationNotFound, SessionExpired
from models import CtmsConfiguration, CtmsSession, StudyRecord, MilestoneRecord, utcnow

logger = logging.getLogger("trial-sync.store")

SESSION_TTL_HOURS = int(os.getenv("CTMS_SESSION_TTL_HOURS", "8"))


class ConfigurationStore:
    """Data access for configurations and their CTMS sessions"""

    @staticmethod
    async def get_owned(db: AsyncSession, configuration_id: str, user_id: str) -> CtmsConfiguration:
        result = await db.execute(
            select(CtmsConfiguration).where(
                CtmsConfiguration.id == configuration_id,
                CtmsConfiguration.user_id == user_id,
            )
        )
        config = result.scalar_one_or_none()
        if not config:
            raise ConfigurationNotFound()
        return config

    @staticmethod
    async def find_for_credentials(
        db: AsyncSession,
        user_id: str,
        base_url: str,
        username: str,
        configuration_id: Optional[str] = None,
    ) -> CtmsConfiguration:
        """Match a configuration on owner + URL + username, newest first."""
        stmt = select(CtmsConfiguration).where(
            CtmsConfiguration.user_id == user_id,
            CtmsConfiguration.username == username,
            CtmsConfiguration.veeva_url.in_([base_url, base_url + "/"]),
        )
        if configuration_id:
            stmt = stmt.where(CtmsConfiguration.id == configuration_id)
        stmt = stmt.order_by(CtmsConfiguration.created_at.desc()).limit(1)

        result = await db.execute(stmt)
        config = result.scalar_one_or_none()
        if not config:
            raise ConfigurationNotFound(
                "Configuration not found. Please save the configuration before authenticating."
            )
        return config

    @staticmethod
    async def get_active(db: AsyncSession, user_id: str) -> Optional[CtmsConfiguration]:
        result = await db.execute(
            select(CtmsConfiguration)
            .where(CtmsConfiguration.user_id == user_id, CtmsConfiguration.is_active == True)  # noqa: E712
            .order_by(CtmsConfiguration.updated_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def activate(
        db: AsyncSession,
        configuration_id: str,
        user_id: str,
        touch_sync: bool = False,
        commit: bool = True,
    ) -> None:
        """Make one configuration the owner's only active configuration."""
        now = utcnow()
        await db.execute(
            update(CtmsConfiguration)
            .where(CtmsConfiguration.user_id == user_id, CtmsConfiguration.id != configuration_id)
            .values(is_active=False, updated_at=now)
        )
        values = {"is_active": True, "updated_at": now}
        if touch_sync:
            values["last_sync"] = now
        await db.execute(
            update(CtmsConfiguration)
            .where(CtmsConfiguration.user_id == user_id, CtmsConfiguration.id == configuration_id)
            .values(**values)
        )
        if commit:
            await db.commit()
        logger.info(f"Configuration {configuration_id} activated for user {user_id}")

    @staticmethod
    async def deactivate(db: AsyncSession, configuration_id: str, user_id: str) -> None:
        await db.execute(
            update(CtmsConfiguration)
            .where(CtmsConfiguration.user_id == user_id, CtmsConfiguration.id == configuration_id)
            .values(is_active=False, updated_at=utcnow())
        )
        await db.commit()

    @staticmethod
    async def latest_valid_session(
        db: AsyncSession, configuration_id: str, now: Optional[datetime] = None,
    ) -> CtmsSession:
        now = now or utcnow()
        result = await db.execute(
            select(CtmsSession)
            .where(
                CtmsSession.configuration_id == configuration_id,
                CtmsSession.is_active == True,  # noqa: E712
                CtmsSession.expires_at > now,
            )
            .order_by(CtmsSession.created_at.desc())
            .limit(1)
        )
        session = result.scalar_one_or_none()
        if not session:
            raise SessionExpired()
        return session

    @staticmethod
    async def revoke_sessions(db: AsyncSession, configuration_id: str) -> None:
        """Mark every stored session of a configuration inactive (caller commits)."""
        await db.execute(
            update(CtmsSession)
            .where(CtmsSession.configuration_id == configuration_id, CtmsSession.is_active == True)  # noqa: E712
            .values(is_active=False)
        )
        logger.info(f"Sessions revoked for configuration {configuration_id}")

    @staticmethod
    def record_session(
        db: AsyncSession, configuration_id: str, token: str, issued_at: Optional[datetime] = None,
    ) -> CtmsSession:
        issued_at = issued_at or utcnow()
        session = CtmsSession(
            configuration_id=configuration_id,
            session_id=token,
            expires_at=issued_at + timedelta(hours=SESSION_TTL_HOURS),
            is_active=True,
            created_at=issued_at,
        )
        db.add(session)
        return session

    @staticmethod
    async def touch_last_sync(db: AsyncSession, configuration_id: str, at: Optional[datetime] = None) -> None:
        at = at or utcnow()
        await db.execute(
            update(CtmsConfiguration)
            .where(CtmsConfiguration.id == configuration_id)
            .values(last_sync=at, updated_at=at)
        )

    @staticmethod
    async def delete(db: AsyncSession, configuration_id: str, user_id: str) -> None:
        """Delete a configuration together with its sessions and cached data."""
        await ConfigurationStore.get_owned(db, configuration_id, user_id)
        for model in (MilestoneRecord, StudyRecord, CtmsSession):
            await db.execute(delete(model).where(model.configuration_id == configuration_id))
        await db.execute(
            delete(CtmsConfiguration).where(
                CtmsConfiguration.id == configuration_id,
                CtmsConfiguration.user_id == user_id,
            )
        )
        await db.commit()
        logger.info(f"Configuration {configuration_id} deleted with cached data")
