"""
Diagnostics Router
Exposes the caller's own structured log entries: CTMS calls, auth events and
soft sync failures (skipped milestone fetches, failed upserts).
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, HTTPException

from auth import get_current_user, CurrentUser
from logging_system import get_logger, LogLevel, LogCategory

router = APIRouter(prefix="/api/v1/diagnostics", tags=["Diagnostics"])


@router.get("/logs")
async def get_logs(
    level: Optional[str] = Query(None, description="Minimum log level"),
    category: Optional[str] = Query(None, description="Log category filter"),
    configuration_id: Optional[str] = Query(None),
    search: Optional[str] = Query(None, description="Search in message"),
    correlation_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    user: CurrentUser = Depends(get_current_user),
):
    """Get the caller's structured log entries, newest first."""
    level_enum = None
    if level:
        try:
            level_enum = LogLevel(level.lower())
        except ValueError:
            raise HTTPException(400, f"Invalid log level: {level}")

    category_enum = None
    if category:
        try:
            category_enum = LogCategory(category.lower())
        except ValueError:
            raise HTTPException(400, f"Invalid category: {category}")

    logs = get_logger().get_logs(
        level=level_enum,
        category=category_enum,
        user_id=user.id,
        configuration_id=configuration_id,
        correlation_id=correlation_id,
        search=search,
        limit=limit,
    )

    return {
        "logs": [log.to_dict() for log in logs],
        "count": len(logs),
        "filters": {
            "level": level,
            "category": category,
            "configuration_id": configuration_id,
            "search": search,
            "correlation_id": correlation_id,
        },
    }


@router.get("/logs/stats")
async def get_log_stats(user: CurrentUser = Depends(get_current_user)):
    return get_logger().get_stats(user_id=user.id)
