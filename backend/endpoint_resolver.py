# endpoint_resolver.py - Locate the CTMS object that serves study records
# Object naming differs across CTMS deployments and API versions, so the study
# listing is probed through a fixed, ordered candidate list; first success wins.

import os
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from ctms_client import CtmsClient, is_success, parse_body, failure_detail
from errors import EndpointNotFound, UpstreamError

logger = logging.getLogger("trial-sync.resolver")

DEFAULT_STUDY_OBJECTS = ("study__v", "study__c", "clinical_study__v", "ctms_study__v")

STUDY_OBJECT_CANDIDATES: List[str] = [
    name.strip()
    for name in os.getenv("CTMS_STUDY_OBJECTS", ",".join(DEFAULT_STUDY_OBJECTS)).split(",")
    if name.strip()
]

MAX_DIAGNOSTIC_NAMES = 25


@dataclass
class ProbeAttempt:
    object_name: str
    status_code: Optional[int]
    detail: Optional[str] = None

    def describe(self) -> str:
        status = self.status_code if self.status_code is not None else "no response"
        return f"{self.object_name} ({status}{': ' + self.detail if self.detail else ''})"


@dataclass
class ResolvedEndpoint:
    object_name: str
    payload: Dict[str, Any]
    attempts: List[ProbeAttempt] = field(default_factory=list)


class StudyEndpointResolver:
    """Probe study object candidates in order against one CTMS tenant."""

    def __init__(self, client: CtmsClient, candidates: Optional[Sequence[str]] = None):
        self.client = client
        self.candidates = list(candidates) if candidates else list(STUDY_OBJECT_CANDIDATES)

    async def resolve(self) -> ResolvedEndpoint:
        attempts: List[ProbeAttempt] = []

        for name in self.candidates:
            try:
                response = await self.client.get_object(name)
            except UpstreamError as e:
                attempts.append(ProbeAttempt(name, None, e.message))
                continue

            if is_success(response):
                logger.info(f"Study object resolved to {name}")
                return ResolvedEndpoint(object_name=name, payload=parse_body(response), attempts=attempts)

            attempts.append(ProbeAttempt(name, response.status_code, failure_detail(parse_body(response))))

        diagnostics = await self.describe_available_objects()
        logger.warning(f"No study object candidate succeeded; available objects: {diagnostics}")
        tried = ", ".join(a.describe() for a in attempts)
        raise EndpointNotFound(
            f"Failed to fetch studies from {self.client.api_root}/objects. "
            f"Tried: {tried}. Available objects: {diagnostics}",
            details={"attempts": [a.__dict__ for a in attempts], "available_objects": diagnostics},
        )

    async def describe_available_objects(self) -> str:
        """Diagnostic only: summarise what GET /objects reports. Never raises."""
        try:
            response = await self.client.list_objects()
        except UpstreamError as e:
            return f"objects listing unavailable ({e.message})"

        if not is_success(response):
            return f"objects listing failed ({response.status_code}): {response.text[:500]}"

        names = _object_names(parse_body(response))
        if not names:
            return "none reported"
        shown = ", ".join(names[:MAX_DIAGNOSTIC_NAMES])
        if len(names) > MAX_DIAGNOSTIC_NAMES:
            shown += f" (+{len(names) - MAX_DIAGNOSTIC_NAMES} more)"
        return shown


def _object_names(body: Any) -> List[str]:
    if not isinstance(body, dict):
        return []
    entries = body.get("objects") or body.get("data") or []
    names = []
    for entry in entries:
        if isinstance(entry, dict):
            name = entry.get("name") or entry.get("name__v")
            if name:
                names.append(str(name))
        elif isinstance(entry, str):
            names.append(entry)
    return names
