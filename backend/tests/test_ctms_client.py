# tests/test_ctms_client.py - CTMS REST client against a mocked upstream
import httpx
import pytest
import respx

from ctms_client import CtmsClient, where_equals, is_success
from errors import AuthenticationError, UpstreamError
from tests.conftest import CTMS_URL, API_ROOT, SESSION_TOKEN, listing


def test_api_root_strips_trailing_slash():
    client = CtmsClient(CTMS_URL + "/", api_version="v23.1")
    assert client.api_root == "https://ctms.test/api/v23.1"


def test_where_equals_escapes_quotes():
    assert where_equals("study__v", "S1") == "study__v='S1'"
    assert where_equals("study__v", "O'Brien") == "study__v='O\\'Brien'"


def test_failure_body_is_not_success():
    request = httpx.Request("GET", f"{API_ROOT}/objects/study__v")
    assert is_success(httpx.Response(200, json=listing([]), request=request))
    assert not is_success(httpx.Response(200, json={"responseStatus": "FAILURE"}, request=request))
    assert not is_success(httpx.Response(200, text="<html>", request=request))
    assert not is_success(httpx.Response(503, json=listing([]), request=request))


@pytest.mark.asyncio
async def test_authenticate_posts_form_and_returns_session():
    with respx.mock(assert_all_called=True) as router:
        route = router.post(f"{API_ROOT}/auth").respond(
            200, json={"responseStatus": "SUCCESS", "sessionId": SESSION_TOKEN}
        )
        async with CtmsClient(CTMS_URL) as client:
            token = await client.authenticate("ctms.user", "s3cret")

    assert token == SESSION_TOKEN
    assert client.session_token == SESSION_TOKEN
    request = route.calls[0].request
    assert request.headers["Content-Type"] == "application/x-www-form-urlencoded"
    assert b"username=ctms.user" in request.content
    assert b"password=s3cret" in request.content
    assert "Authorization" not in request.headers


@pytest.mark.asyncio
async def test_authenticate_http_failure():
    with respx.mock(assert_all_called=True) as router:
        router.post(f"{API_ROOT}/auth").respond(401)
        async with CtmsClient(CTMS_URL) as client:
            with pytest.raises(AuthenticationError, match="CTMS authentication failed: 401 Unauthorized") as exc:
                await client.authenticate("ctms.user", "wrong")
    assert exc.value.status_code == 401


@pytest.mark.asyncio
async def test_authenticate_missing_session_id_carries_upstream_message():
    body = {
        "responseStatus": "FAILURE",
        "errors": [{"type": "USERNAME_OR_PASSWORD_INCORRECT", "message": "Authentication failed for user"}],
    }
    with respx.mock(assert_all_called=True) as router:
        router.post(f"{API_ROOT}/auth").respond(200, json=body)
        async with CtmsClient(CTMS_URL) as client:
            with pytest.raises(AuthenticationError) as exc:
                await client.authenticate("ctms.user", "wrong")
    assert exc.value.message == (
        "No session ID received from CTMS: USERNAME_OR_PASSWORD_INCORRECT: Authentication failed for user"
    )


@pytest.mark.asyncio
async def test_session_token_sent_verbatim():
    with respx.mock(assert_all_called=True) as router:
        route = router.get(f"{API_ROOT}/objects/study__v").respond(200, json=listing([]))
        async with CtmsClient(CTMS_URL, session_token=SESSION_TOKEN) as client:
            await client.get_object("study__v")

    headers = route.calls[0].request.headers
    assert headers["Authorization"] == SESSION_TOKEN
    assert headers["Accept"] == "application/json"


@pytest.mark.asyncio
async def test_fetch_records_follows_next_page():
    def pages(request):
        if request.url.params.get("offset") == "2":
            return httpx.Response(200, json=listing([{"id": "S3"}]))
        return httpx.Response(200, json=listing(
            [{"id": "S1"}, {"id": "S2"}],
            next_page="/api/v24.3/objects/study__v?limit=2&offset=2",
        ))

    with respx.mock(assert_all_called=True) as router:
        route = router.get(f"{API_ROOT}/objects/study__v").mock(side_effect=pages)
        async with CtmsClient(CTMS_URL, session_token=SESSION_TOKEN) as client:
            records = await client.fetch_records("study__v")

    assert [r["id"] for r in records] == ["S1", "S2", "S3"]
    assert route.call_count == 2


@pytest.mark.asyncio
async def test_fetch_records_stops_at_page_limit():
    with respx.mock(assert_all_called=True) as router:
        route = router.get(f"{API_ROOT}/objects/study__v").respond(
            200, json=listing([{"id": "S1"}], next_page="/api/v24.3/objects/study__v?offset=1")
        )
        async with CtmsClient(CTMS_URL, session_token=SESSION_TOKEN) as client:
            records = await client.fetch_records("study__v", max_pages=3)

    assert len(records) == 3
    assert route.call_count == 3


@pytest.mark.asyncio
async def test_fetch_records_passes_where_filter():
    with respx.mock(assert_all_called=True) as router:
        route = router.get(f"{API_ROOT}/objects/study_milestone__v").respond(200, json=listing([{"id": "M1"}]))
        async with CtmsClient(CTMS_URL, session_token=SESSION_TOKEN) as client:
            await client.fetch_records("study_milestone__v", where=where_equals("study__v", "S1"))

    assert route.calls[0].request.url.params["where"] == "study__v='S1'"


@pytest.mark.asyncio
async def test_fetch_records_failure_raises_upstream_error():
    with respx.mock(assert_all_called=True) as router:
        router.get(f"{API_ROOT}/objects/study__v").respond(500, text="boom")
        async with CtmsClient(CTMS_URL, session_token=SESSION_TOKEN) as client:
            with pytest.raises(UpstreamError, match="Status: 500. Response: boom") as exc:
                await client.fetch_records("study__v")
    assert exc.value.status_code == 500


@pytest.mark.asyncio
async def test_transport_error_becomes_upstream_error():
    with respx.mock(assert_all_called=True) as router:
        router.get(f"{API_ROOT}/objects").mock(side_effect=httpx.ConnectError("connection refused"))
        async with CtmsClient(CTMS_URL, session_token=SESSION_TOKEN) as client:
            with pytest.raises(UpstreamError, match="connection refused"):
                await client.list_objects()


@pytest.mark.asyncio
async def test_client_requires_context_manager():
    client = CtmsClient(CTMS_URL)
    with pytest.raises(RuntimeError):
        await client.list_objects()
