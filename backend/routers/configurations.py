# routers/configurations.py - CTMS connection profiles and their cached data
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from configuration_store import ConfigurationStore
from ctms_client import normalize_base_url
from database import get_db_session
from errors import ConfigurationNotFound
from logging_system import current_request_id
from models import (
    CtmsConfiguration, StudyRecord, MilestoneRecord, MilestoneKind,
    AuditLog, AuditEventType, isoformat,
)


router = APIRouter(prefix="/api/v1/configurations", tags=["Configurations"])


# --- Schemas ---

def _check_url(v: str) -> str:
    v = normalize_base_url(v)
    if not v.lower().startswith(("http://", "https://")):
        raise ValueError("veeva_url must be an http(s) URL")
    return v


class ConfigurationCreate(BaseModel):
    configuration_name: str = Field(..., min_length=1, max_length=200)
    environment_name: str = Field(..., min_length=1, max_length=100)
    veeva_url: str
    username: str = Field(..., min_length=1)

    @field_validator("veeva_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        return _check_url(v)


class ConfigurationUpdate(BaseModel):
    configuration_name: Optional[str] = Field(None, min_length=1, max_length=200)
    environment_name: Optional[str] = Field(None, min_length=1, max_length=100)
    veeva_url: Optional[str] = None
    username: Optional[str] = Field(None, min_length=1)

    @field_validator("veeva_url")
    @classmethod
    def validate_url(cls, v: Optional[str]) -> Optional[str]:
        return _check_url(v) if v is not None else v


class ConfigurationOut(BaseModel):
    id: str
    configuration_name: str
    environment_name: str
    veeva_url: str
    username: str
    is_active: bool
    last_sync: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class StudyOut(BaseModel):
    id: str
    study_id: str
    study_name: str
    phase: Optional[str] = None
    status: Optional[str] = None
    data: Optional[dict] = None
    last_updated: Optional[str] = None


class MilestoneOut(BaseModel):
    id: str
    study_id: str
    site_id: Optional[str] = None
    milestone_type: str
    title: str
    status: str
    due_date: Optional[str] = None
    planned_finish_date: Optional[str] = None
    baseline_finish_date: Optional[str] = None
    actual_finish_date: Optional[str] = None
    progress: int
    assigned_to: Optional[str] = None
    priority: str
    last_updated: Optional[str] = None


# --- Helpers ---

def _config_to_out(c: CtmsConfiguration) -> ConfigurationOut:
    return ConfigurationOut(
        id=c.id,
        configuration_name=c.configuration_name,
        environment_name=c.environment_name,
        veeva_url=c.veeva_url,
        username=c.username,
        is_active=bool(c.is_active),
        last_sync=isoformat(c.last_sync),
        created_at=isoformat(c.created_at),
        updated_at=isoformat(c.updated_at),
    )


def _date(value) -> Optional[str]:
    return value.isoformat() if value else None


def _milestone_to_out(m: MilestoneRecord) -> MilestoneOut:
    return MilestoneOut(
        id=m.id,
        study_id=m.study_id,
        site_id=m.site_id,
        milestone_type=m.milestone_type.value if isinstance(m.milestone_type, MilestoneKind) else m.milestone_type,
        title=m.title,
        status=m.status,
        due_date=_date(m.due_date),
        planned_finish_date=_date(m.planned_finish_date),
        baseline_finish_date=_date(m.baseline_finish_date),
        actual_finish_date=_date(m.actual_finish_date),
        progress=m.progress or 0,
        assigned_to=m.assigned_to,
        priority=m.priority,
        last_updated=isoformat(m.last_updated),
    )


async def _get_owned(db: AsyncSession, configuration_id: str, user_id: str) -> CtmsConfiguration:
    try:
        return await ConfigurationStore.get_owned(db, configuration_id, user_id)
    except ConfigurationNotFound:
        raise HTTPException(status_code=404, detail="Configuration not found")


async def _ensure_unique(
    db: AsyncSession, user_id: str, environment_name: str, veeva_url: str, username: str,
    exclude_id: Optional[str] = None,
) -> None:
    query = select(CtmsConfiguration.id).where(
        CtmsConfiguration.user_id == user_id,
        CtmsConfiguration.environment_name == environment_name,
        CtmsConfiguration.veeva_url == veeva_url,
        CtmsConfiguration.username == username,
    )
    if exclude_id:
        query = query.where(CtmsConfiguration.id != exclude_id)
    if (await db.execute(query)).first():
        raise HTTPException(status_code=409, detail="A configuration for this environment, URL and username already exists")


def _audit(db: AsyncSession, event: AuditEventType, user: CurrentUser, configuration_id: str, **details):
    db.add(AuditLog(
        event_type=event,
        user_id=user.id,
        configuration_id=configuration_id,
        request_id=current_request_id(),
        details=details,
    ))


# --- Endpoints ---

@router.get("", response_model=List[ConfigurationOut])
async def list_configurations(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    result = await db.execute(
        select(CtmsConfiguration)
        .where(CtmsConfiguration.user_id == user.id)
        .order_by(CtmsConfiguration.created_at.desc())
    )
    return [_config_to_out(c) for c in result.scalars().all()]


@router.post("", response_model=ConfigurationOut, status_code=201)
async def create_configuration(
    body: ConfigurationCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Save a connection profile. New configurations start inactive."""
    await _ensure_unique(db, user.id, body.environment_name, body.veeva_url, body.username)

    config = CtmsConfiguration(user_id=user.id, is_active=False, **body.model_dump())
    db.add(config)
    await db.flush()
    _audit(db, AuditEventType.CONFIG_CREATED, user, config.id, environment=body.environment_name)
    await db.commit()
    await db.refresh(config)
    return _config_to_out(config)


@router.get("/active", response_model=Optional[ConfigurationOut])
async def get_active_configuration(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    config = await ConfigurationStore.get_active(db, user.id)
    return _config_to_out(config) if config else None


@router.get("/{configuration_id}", response_model=ConfigurationOut)
async def get_configuration(
    configuration_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    return _config_to_out(await _get_owned(db, configuration_id, user.id))


@router.patch("/{configuration_id}", response_model=ConfigurationOut)
async def update_configuration(
    configuration_id: str,
    body: ConfigurationUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    config = await _get_owned(db, configuration_id, user.id)
    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    await _ensure_unique(
        db, user.id,
        changes.get("environment_name", config.environment_name),
        changes.get("veeva_url", config.veeva_url),
        changes.get("username", config.username),
        exclude_id=configuration_id,
    )
    # sessions were issued for the old tenant/account
    if any(name in changes and changes[name] != getattr(config, name) for name in ("veeva_url", "username")):
        await ConfigurationStore.revoke_sessions(db, configuration_id)
    for name, value in changes.items():
        setattr(config, name, value)
    _audit(db, AuditEventType.CONFIG_UPDATED, user, configuration_id, fields=sorted(changes))
    await db.commit()
    await db.refresh(config)
    return _config_to_out(config)


@router.delete("/{configuration_id}")
async def delete_configuration(
    configuration_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Delete a configuration with its sessions and cached studies/milestones"""
    try:
        await ConfigurationStore.delete(db, configuration_id, user.id)
    except ConfigurationNotFound:
        raise HTTPException(status_code=404, detail="Configuration not found")
    _audit(db, AuditEventType.CONFIG_DELETED, user, configuration_id)
    await db.commit()
    return {"status": "deleted", "id": configuration_id}


@router.post("/{configuration_id}/activate", response_model=ConfigurationOut)
async def activate_configuration(
    configuration_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Make this the caller's only active configuration"""
    await _get_owned(db, configuration_id, user.id)
    _audit(db, AuditEventType.CONFIG_ACTIVATED, user, configuration_id)
    await ConfigurationStore.activate(db, configuration_id, user.id)
    return _config_to_out(await _reload(db, configuration_id, user.id))


@router.post("/{configuration_id}/deactivate", response_model=ConfigurationOut)
async def deactivate_configuration(
    configuration_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await _get_owned(db, configuration_id, user.id)
    _audit(db, AuditEventType.CONFIG_DEACTIVATED, user, configuration_id)
    await ConfigurationStore.deactivate(db, configuration_id, user.id)
    return _config_to_out(await _reload(db, configuration_id, user.id))


async def _reload(db: AsyncSession, configuration_id: str, user_id: str) -> CtmsConfiguration:
    config = await _get_owned(db, configuration_id, user_id)
    await db.refresh(config)
    return config


# --- Cached CTMS data ---

@router.get("/{configuration_id}/studies", response_model=List[StudyOut])
async def list_studies(
    configuration_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await _get_owned(db, configuration_id, user.id)
    result = await db.execute(
        select(StudyRecord)
        .where(StudyRecord.configuration_id == configuration_id)
        .order_by(StudyRecord.study_name)
    )
    return [
        StudyOut(
            id=s.id,
            study_id=s.study_id,
            study_name=s.study_name,
            phase=s.phase,
            status=s.status,
            data=s.data,
            last_updated=isoformat(s.last_updated),
        )
        for s in result.scalars().all()
    ]


@router.get("/{configuration_id}/milestones")
async def list_milestones(
    configuration_id: str,
    kind: Optional[MilestoneKind] = Query(None, description="study or site"),
    study_id: Optional[str] = Query(None),
    limit: int = Query(default=500, ge=1, le=5000),
    offset: int = Query(default=0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await _get_owned(db, configuration_id, user.id)

    filters = [MilestoneRecord.configuration_id == configuration_id]
    if kind:
        filters.append(MilestoneRecord.milestone_type == kind)
    if study_id:
        filters.append(MilestoneRecord.study_id == study_id)

    total = (await db.execute(select(func.count(MilestoneRecord.id)).where(*filters))).scalar() or 0
    result = await db.execute(
        select(MilestoneRecord)
        .where(*filters)
        .order_by(MilestoneRecord.study_id, MilestoneRecord.planned_finish_date, MilestoneRecord.title)
        .offset(offset)
        .limit(limit)
    )
    return {
        "items": [_milestone_to_out(m) for m in result.scalars().all()],
        "total": total,
    }
