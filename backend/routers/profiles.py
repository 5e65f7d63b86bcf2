# routers/profiles.py - The caller's own profile record
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from database import get_db_session
from logging_system import current_request_id
from models import Profile, AuditLog, AuditEventType, isoformat

router = APIRouter(prefix="/api/v1/profile", tags=["Profile"])


class ProfileOut(BaseModel):
    user_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    role: str
    organization: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ProfileUpdate(BaseModel):
    display_name: Optional[str] = Field(None, min_length=1, max_length=200)
    organization: Optional[str] = Field(None, max_length=200)


def _profile_to_out(p: Profile) -> ProfileOut:
    return ProfileOut(
        user_id=p.user_id,
        email=p.email,
        display_name=p.display_name,
        role=p.role or "user",
        organization=p.organization,
        created_at=isoformat(p.created_at),
        updated_at=isoformat(p.updated_at),
    )


async def _load_profile(db: AsyncSession, user: CurrentUser) -> Profile:
    result = await db.execute(select(Profile).where(Profile.user_id == user.id))
    profile = result.scalar_one_or_none()
    if not profile:
        raise HTTPException(status_code=404, detail="Profile not found")
    return profile


@router.get("", response_model=ProfileOut)
async def get_profile(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    return _profile_to_out(await _load_profile(db, user))


@router.patch("", response_model=ProfileOut)
async def update_profile(
    body: ProfileUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Update display name and organization; role and email are not self-editable"""
    profile = await _load_profile(db, user)
    changes = body.model_dump(exclude_unset=True)
    for name, value in changes.items():
        setattr(profile, name, value)
    db.add(AuditLog(
        event_type=AuditEventType.PROFILE_UPDATED,
        user_id=user.id,
        request_id=current_request_id(),
        details={"fields": sorted(changes)},
    ))
    await db.commit()
    await db.refresh(profile)
    return _profile_to_out(profile)
