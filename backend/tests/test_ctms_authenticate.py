# tests/test_ctms_authenticate.py - POST /api/v1/ctms/authenticate
from datetime import datetime, timedelta, timezone

import pytest
import respx
from httpx import AsyncClient
from sqlalchemy import select

from models import CtmsConfiguration, CtmsSession, AuditLog, AuditEventType
from tests.conftest import (
    CTMS_URL, API_ROOT, CTMS_USERNAME, SESSION_TOKEN,
    create_configuration, get_auth_headers,
)

AUTH_URL = f"{API_ROOT}/auth"


def _body(**overrides):
    body = {"veevaUrl": CTMS_URL, "username": CTMS_USERNAME, "password": "ctms-password"}
    body.update(overrides)
    return body


@pytest.mark.asyncio
class TestAuthenticate:
    async def test_success_stores_session_and_activates(self, client: AsyncClient, db_session, test_user, configuration):
        other = await create_configuration(
            db_session, test_user, environment_name="production", veeva_url="https://prod.test", is_active=True,
        )

        with respx.mock(assert_all_called=True) as router:
            router.post(AUTH_URL).respond(200, json={"responseStatus": "SUCCESS", "sessionId": SESSION_TOKEN})
            res = await client.post("/api/v1/ctms/authenticate", json=_body(), headers=get_auth_headers(test_user))

        assert res.status_code == 200
        data = res.json()
        assert data["success"] is True
        assert data["sessionId"] == SESSION_TOKEN
        assert data["message"] == "Successfully authenticated with CTMS"
        expires_at = datetime.fromisoformat(data["expiresAt"])
        remaining = expires_at - datetime.now(timezone.utc)
        assert timedelta(hours=7, minutes=59) < remaining <= timedelta(hours=8)

        sessions = (await db_session.execute(
            select(CtmsSession).where(CtmsSession.configuration_id == configuration.id)
        )).scalars().all()
        assert len(sessions) == 1
        assert sessions[0].session_id == SESSION_TOKEN
        assert sessions[0].is_active is True

        rows = (await db_session.execute(
            select(CtmsConfiguration.id, CtmsConfiguration.is_active, CtmsConfiguration.last_sync)
            .where(CtmsConfiguration.user_id == test_user.id)
        )).all()
        state = {row.id: row for row in rows}
        assert state[configuration.id].is_active is True
        assert state[configuration.id].last_sync is not None
        assert state[other.id].is_active is False

        audit = (await db_session.execute(
            select(AuditLog).where(AuditLog.event_type == AuditEventType.CTMS_AUTHENTICATED)
        )).scalar_one()
        assert audit.configuration_id == configuration.id

    async def test_trailing_slash_url_matches_configuration(self, client: AsyncClient, test_user, configuration):
        with respx.mock(assert_all_called=True) as router:
            router.post(AUTH_URL).respond(200, json={"sessionId": SESSION_TOKEN})
            res = await client.post(
                "/api/v1/ctms/authenticate", json=_body(veevaUrl=CTMS_URL + "/"), headers=get_auth_headers(test_user),
            )
        assert res.status_code == 200
        assert res.json()["success"] is True

    async def test_upstream_rejection(self, client: AsyncClient, db_session, test_user, configuration):
        with respx.mock(assert_all_called=True) as router:
            router.post(AUTH_URL).respond(401)
            res = await client.post("/api/v1/ctms/authenticate", json=_body(), headers=get_auth_headers(test_user))

        assert res.status_code == 400
        assert res.json() == {"success": False, "error": "CTMS authentication failed: 401 Unauthorized"}
        sessions = (await db_session.execute(select(CtmsSession))).scalars().all()
        assert sessions == []

    async def test_missing_session_id(self, client: AsyncClient, test_user, configuration):
        with respx.mock(assert_all_called=True) as router:
            router.post(AUTH_URL).respond(200, json={"responseStatus": "FAILURE", "responseMessage": "Invalid credentials"})
            res = await client.post("/api/v1/ctms/authenticate", json=_body(), headers=get_auth_headers(test_user))

        assert res.status_code == 400
        assert res.json()["error"] == "No session ID received from CTMS: Invalid credentials"

    async def test_configuration_must_exist(self, client: AsyncClient, test_user):
        with respx.mock(assert_all_called=True) as router:
            router.post(AUTH_URL).respond(200, json={"sessionId": SESSION_TOKEN})
            res = await client.post("/api/v1/ctms/authenticate", json=_body(), headers=get_auth_headers(test_user))

        assert res.status_code == 404
        body = res.json()
        assert body["success"] is False
        assert body["error"].startswith("Configuration not found")

    async def test_other_users_configuration_is_not_matched(self, client: AsyncClient, other_user, configuration):
        with respx.mock(assert_all_called=True) as router:
            router.post(AUTH_URL).respond(200, json={"sessionId": SESSION_TOKEN})
            res = await client.post("/api/v1/ctms/authenticate", json=_body(), headers=get_auth_headers(other_user))
        assert res.status_code == 404

    async def test_configuration_id_disambiguates(self, client: AsyncClient, db_session, test_user, configuration):
        newer = await create_configuration(db_session, test_user, environment_name="uat")

        with respx.mock(assert_all_called=True) as router:
            router.post(AUTH_URL).respond(200, json={"sessionId": SESSION_TOKEN})
            res = await client.post(
                "/api/v1/ctms/authenticate",
                json=_body(configurationId=configuration.id),
                headers=get_auth_headers(test_user),
            )

        assert res.status_code == 200
        owner = (await db_session.execute(select(CtmsSession.configuration_id))).scalar_one()
        assert owner == configuration.id
        assert owner != newer.id

    async def test_requires_bearer(self, client: AsyncClient):
        res = await client.post("/api/v1/ctms/authenticate", json=_body())
        assert res.status_code == 401
        assert res.json() == {"success": False, "error": "Authorization header required"}

    async def test_invalid_bearer(self, client: AsyncClient):
        res = await client.post(
            "/api/v1/ctms/authenticate", json=_body(), headers={"Authorization": "Bearer garbage"},
        )
        assert res.status_code == 401
        assert res.json() == {"success": False, "error": "Invalid user token"}

    async def test_invalid_url_uses_envelope(self, client: AsyncClient, test_user):
        res = await client.post(
            "/api/v1/ctms/authenticate", json=_body(veevaUrl="ftp://ctms.test"), headers=get_auth_headers(test_user),
        )
        assert res.status_code == 400
        body = res.json()
        assert body["success"] is False
        assert "veevaUrl" in body["error"]

    async def test_blank_password_rejected(self, client: AsyncClient, test_user):
        res = await client.post(
            "/api/v1/ctms/authenticate", json=_body(password="   "), headers=get_auth_headers(test_user),
        )
        assert res.status_code == 400
        assert res.json()["success"] is False

    async def test_preflight(self, client: AsyncClient):
        res = await client.options(
            "/api/v1/ctms/authenticate",
            headers={
                "Origin": "https://dashboard.example",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "authorization, content-type",
            },
        )
        assert res.status_code == 200
        assert res.headers["access-control-allow-origin"] == "*"
