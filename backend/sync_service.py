# sync_service.py - Refresh cached studies and milestones for one configuration
#
# Hard preconditions (configuration, session, study endpoint, study listing)
# abort the run. Upsert failures and individual milestone fetch failures are
# soft: they are logged, reported as warnings and the run carries on.

import os
import time
import logging
from contextlib import nullcontext
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser
from configuration_store import ConfigurationStore
from ctms_client import CtmsClient, where_equals
from endpoint_resolver import StudyEndpointResolver
from errors import StorageFailure, UpstreamError
from logging_system import get_logger, LogCategory, current_request_id
from models import (
    StudyRecord, MilestoneRecord, MilestoneKind, AuditLog, AuditEventType, utcnow,
)
from normalize import normalize_study, normalize_milestone, milestone_key
from telemetry import get_tracer

logger = logging.getLogger("trial-sync.sync")

STUDY_MILESTONE_OBJECT = os.getenv("CTMS_STUDY_MILESTONE_OBJECT", "study_milestone__v")
SITE_MILESTONE_OBJECT = os.getenv("CTMS_SITE_MILESTONE_OBJECT", "site_milestone__v")
MILESTONE_STUDY_FIELD = os.getenv("CTMS_MILESTONE_STUDY_FIELD", "study__v")

# keeps multi-row inserts under SQLite's bound parameter limit
UPSERT_CHUNK_SIZE = 200

STUDY_KEY = ("configuration_id", "study_id")
MILESTONE_KEY = ("configuration_id", "study_id", "site_key", "title")

SYNC_COMPLETED_MESSAGE = "Data synchronization completed successfully"


@dataclass
class SyncSummary:
    studies_count: int
    milestones_count: int
    study_object: str
    warnings: List[str] = field(default_factory=list)

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": True,
            "studiesCount": self.studies_count,
            "milestonesCount": self.milestones_count,
            "message": SYNC_COMPLETED_MESSAGE,
            "studyObject": self.study_object,
            "warnings": self.warnings,
        }


def upsert_statement(db: AsyncSession, model, rows: List[Dict[str, Any]], key: Sequence[str]):
    """INSERT .. ON CONFLICT DO UPDATE for PostgreSQL or SQLite, replacing every non-key column."""
    insert = sqlite_insert if db.bind.dialect.name == "sqlite" else pg_insert
    stmt = insert(model).values(rows)
    replaced = {
        column: stmt.excluded[column]
        for column in rows[0]
        if column not in key and column != "id"
    }
    return stmt.on_conflict_do_update(index_elements=list(key), set_=replaced)


class SyncOrchestrator:
    """One sequential, non-resumable pass over every study of a configuration"""

    def __init__(self, client_factory=CtmsClient):
        self.client_factory = client_factory

    async def run(self, db: AsyncSession, configuration_id: str, user: CurrentUser) -> SyncSummary:
        config = await ConfigurationStore.get_owned(db, configuration_id, user.id)
        base_url = config.veeva_url
        session = await ConfigurationStore.latest_valid_session(db, configuration_id)
        token = session.session_id

        tracer = get_tracer("trial-sync.sync")
        span = tracer.start_as_current_span("ctms.sync") if tracer else nullcontext()
        start = time.perf_counter()

        with span:
            summary = await self._run(db, configuration_id, user, base_url, token)

        duration_ms = (time.perf_counter() - start) * 1000
        get_logger().info(
            f"Sync completed: {summary.studies_count} studies, {summary.milestones_count} milestones",
            category=LogCategory.SYNC,
            configuration_id=configuration_id,
            duration_ms=duration_ms,
            metadata={"study_object": summary.study_object, "warnings": len(summary.warnings)},
        )
        return summary

    async def _run(
        self, db: AsyncSession, configuration_id: str, user: CurrentUser, base_url: str, token: str,
    ) -> SyncSummary:
        warnings: List[str] = []

        async with self.client_factory(base_url, session_token=token) as client:
            resolved = await StudyEndpointResolver(client).resolve()
            raw_studies = await client.fetch_records(resolved.object_name, first_page=resolved.payload)

            refreshed_at = utcnow()
            studies = []
            for record in raw_studies:
                if record.get("id") in (None, ""):
                    logger.warning(f"Skipping {resolved.object_name} record without an id")
                    continue
                studies.append(normalize_study(record, configuration_id, refreshed_at))

            studies = _dedupe(studies, lambda row: (row["configuration_id"], row["study_id"]))
            await self._upsert(db, StudyRecord, studies, STUDY_KEY, configuration_id, "studies", warnings)

            milestones: List[Dict[str, Any]] = []
            for study in studies:
                study_id = study["study_id"]
                for kind, object_name in (
                    (MilestoneKind.STUDY, STUDY_MILESTONE_OBJECT),
                    (MilestoneKind.SITE, SITE_MILESTONE_OBJECT),
                ):
                    records = await self._fetch_milestones(client, object_name, study_id, configuration_id, warnings)
                    milestones.extend(
                        normalize_milestone(record, configuration_id, study_id, kind, refreshed_at)
                        for record in records
                    )

        await self._upsert(
            db, MilestoneRecord, _dedupe(milestones, milestone_key),
            MILESTONE_KEY, configuration_id, "milestones", warnings,
        )

        try:
            await ConfigurationStore.touch_last_sync(db, configuration_id)
            db.add(AuditLog(
                event_type=AuditEventType.SYNC_COMPLETED,
                user_id=user.id,
                configuration_id=configuration_id,
                request_id=current_request_id(),
                details={
                    "study_object": resolved.object_name,
                    "studies": len(studies),
                    "milestones": len(milestones),
                    "warnings": warnings,
                },
            ))
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            raise StorageFailure(f"Failed to update last sync time: {e}") from e

        return SyncSummary(
            studies_count=len(studies),
            milestones_count=len(milestones),
            study_object=resolved.object_name,
            warnings=warnings,
        )

    async def _fetch_milestones(
        self, client: CtmsClient, object_name: str, study_id: str, configuration_id: str, warnings: List[str],
    ) -> List[Dict[str, Any]]:
        try:
            return await client.fetch_records(object_name, where=where_equals(MILESTONE_STUDY_FIELD, study_id))
        except UpstreamError as e:
            message = f"Skipped {object_name} for study {study_id}: {e.message}"
            warnings.append(message)
            get_logger().soft_failure(
                message, configuration_id,
                metadata={"object": object_name, "study_id": study_id, "status_code": e.status_code},
            )
            return []

    async def _upsert(
        self,
        db: AsyncSession,
        model,
        rows: List[Dict[str, Any]],
        key: Sequence[str],
        configuration_id: str,
        label: str,
        warnings: List[str],
    ) -> None:
        if not rows:
            return
        try:
            for offset in range(0, len(rows), UPSERT_CHUNK_SIZE):
                await db.execute(upsert_statement(db, model, rows[offset:offset + UPSERT_CHUNK_SIZE], key))
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            message = f"Failed to upsert {len(rows)} {label}: {e}"
            warnings.append(message)
            logger.error(message)
            get_logger().soft_failure(message, configuration_id, error=e)


def _dedupe(rows: List[Dict[str, Any]], key) -> List[Dict[str, Any]]:
    """Collapse rows sharing an upsert key; the last occurrence wins."""
    latest: Dict[Any, Dict[str, Any]] = {}
    for row in rows:
        latest.pop(key(row), None)
        latest[key(row)] = row
    return list(latest.values())
