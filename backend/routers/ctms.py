# routers/ctms.py - Authenticate and SyncData
# Both answer {"success": true, ...} or, through the CtmsError handler in
# main.py, {"success": false, "error": "..."} with a 4xx status.
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_ctms_caller, CurrentUser
from ctms_auth import CtmsAuthenticator, AuthenticateRequest
from database import get_db_session
from sync_service import SyncOrchestrator

router = APIRouter(prefix="/api/v1/ctms", tags=["CTMS"])

authenticator = CtmsAuthenticator()
orchestrator = SyncOrchestrator()


class SyncRequest(BaseModel):
    configurationId: str = Field(..., min_length=1)


@router.post("/authenticate")
async def authenticate(
    body: AuthenticateRequest,
    user: CurrentUser = Depends(get_ctms_caller),
    db: AsyncSession = Depends(get_db_session),
):
    """Log in to the CTMS and store the session for the matching configuration"""
    return await authenticator.authenticate(db, user, body)


@router.post("/sync")
async def sync_data(
    body: SyncRequest,
    user: CurrentUser = Depends(get_ctms_caller),
    db: AsyncSession = Depends(get_db_session),
):
    """Refresh cached studies and milestones for one configuration"""
    summary = await orchestrator.run(db, body.configurationId, user)
    return summary.to_response()
