# ctms_client.py - Async client for the Veeva-style CTMS object API
# - One httpx.AsyncClient per client context (one per Authenticate/SyncData call)
# - Session token sent verbatim in the Authorization header (no "Bearer " prefix)
# - Explicit transport timeout, no retries
# - Every call logged to the structured diagnostic log

import os
import time
import logging
from typing import Optional, Dict, Any, List

import httpx

from errors import AuthenticationError, UpstreamError
from logging_system import get_logger

logger = logging.getLogger("trial-sync.ctms")

CTMS_API_VERSION = os.getenv("CTMS_API_VERSION", "v24.3")
CTMS_TIMEOUT_SECONDS = float(os.getenv("CTMS_TIMEOUT_SECONDS", "30"))
CTMS_MAX_PAGES = int(os.getenv("CTMS_MAX_PAGES", "50"))


def normalize_base_url(url: str) -> str:
    return url.strip().rstrip("/")


def where_equals(field: str, value: str) -> str:
    """Build the `where` filter used for per-study object queries."""
    escaped = str(value).replace("\\", "\\\\").replace("'", "\\'")
    return f"{field}='{escaped}'"


def parse_body(response: httpx.Response) -> Optional[Any]:
    try:
        return response.json()
    except ValueError:
        return None


def is_success(response: httpx.Response) -> bool:
    """2xx with a JSON body whose responseStatus (if any) is not FAILURE."""
    if not response.is_success:
        return False
    body = parse_body(response)
    if body is None:
        return False
    if isinstance(body, dict) and str(body.get("responseStatus", "")).upper() == "FAILURE":
        return False
    return True


def failure_detail(body: Any) -> Optional[str]:
    """Pull a human readable reason out of a CTMS error body."""
    if not isinstance(body, dict):
        return None
    if body.get("responseMessage"):
        return str(body["responseMessage"])
    messages = []
    for err in body.get("errors") or []:
        if isinstance(err, dict):
            parts = [str(err[key]) for key in ("type", "message") if err.get(key)]
            messages.append(": ".join(parts))
        elif err:
            messages.append(str(err))
    return "; ".join(m for m in messages if m) or None


def extract_records(body: Any) -> List[Dict[str, Any]]:
    if not isinstance(body, dict):
        return []
    data = body.get("data") or []
    return [record for record in data if isinstance(record, dict)]


class CtmsClient:
    """Thin wrapper over the CTMS REST API.

    Usage:

        async with CtmsClient(config.veeva_url, session_token=token) as client:
            response = await client.get_object("study__v")
    """

    def __init__(
        self,
        base_url: str,
        session_token: Optional[str] = None,
        api_version: str = CTMS_API_VERSION,
        timeout: float = CTMS_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = normalize_base_url(base_url)
        self.api_root = f"{self.base_url}/api/{api_version}"
        self.session_token = session_token
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "CtmsClient":
        self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _headers(self, authorized: bool = True) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if authorized and self.session_token:
            headers["Authorization"] = self.session_token
        return headers

    async def _request(self, method: str, url, authorized: bool = True, **kwargs) -> httpx.Response:
        if self._client is None:
            raise RuntimeError("CtmsClient must be used as an async context manager")

        start = time.perf_counter()
        try:
            response = await self._client.request(method, url, headers=self._headers(authorized), **kwargs)
        except httpx.HTTPError as e:
            duration_ms = (time.perf_counter() - start) * 1000
            get_logger().upstream_call(method, str(url), None, duration_ms, error=e)
            raise UpstreamError(f"CTMS request to {url} failed: {e}") from e

        duration_ms = (time.perf_counter() - start) * 1000
        get_logger().upstream_call(method, str(response.request.url), response.status_code, duration_ms)
        return response

    # ============================================================
    # AUTH
    # ============================================================

    async def authenticate(self, username: str, password: str) -> str:
        """Exchange credentials for a CTMS session token."""
        url = f"{self.api_root}/auth"
        try:
            response = await self._request(
                "POST", url, authorized=False,
                data={"username": username, "password": password},
            )
        except UpstreamError as e:
            raise AuthenticationError(f"CTMS authentication failed: {e.message}") from e

        if not response.is_success:
            raise AuthenticationError(
                f"CTMS authentication failed: {response.status_code} {response.reason_phrase}".rstrip(),
                status_code=response.status_code,
            )

        body = parse_body(response)
        session_id = body.get("sessionId") if isinstance(body, dict) else None
        if not session_id:
            detail = failure_detail(body)
            message = "No session ID received from CTMS"
            raise AuthenticationError(
                f"{message}: {detail}" if detail else message,
                status_code=response.status_code,
            )

        self.session_token = session_id
        return session_id

    # ============================================================
    # OBJECTS
    # ============================================================

    async def list_objects(self) -> httpx.Response:
        return await self._request("GET", f"{self.api_root}/objects")

    async def get_object(self, name: str, where: Optional[str] = None) -> httpx.Response:
        params = {"where": where} if where else None
        return await self._request("GET", f"{self.api_root}/objects/{name}", params=params)

    async def fetch_records(
        self,
        name: str,
        where: Optional[str] = None,
        first_page: Optional[Dict[str, Any]] = None,
        max_pages: int = CTMS_MAX_PAGES,
    ) -> List[Dict[str, Any]]:
        """Collect every `data` record of an object listing, following next_page links.

        `first_page` lets a caller reuse a body it already fetched. Raises
        UpstreamError on the first unsuccessful page.
        """
        body = first_page
        if body is None:
            response = await self.get_object(name, where)
            body = self._ensure_success(name, response)

        records: List[Dict[str, Any]] = []
        pages = 1
        while True:
            records.extend(extract_records(body))
            next_page = (body.get("responseDetails") or {}).get("next_page") if isinstance(body, dict) else None
            if not next_page:
                break
            if pages >= max_pages:
                logger.warning(f"Stopped paging {name} after {pages} pages; more records remain")
                break
            response = await self._request("GET", self._resolve(next_page))
            body = self._ensure_success(name, response)
            pages += 1
        return records

    def _resolve(self, link: str) -> httpx.URL:
        return httpx.URL(self.base_url + "/").join(link)

    @staticmethod
    def _ensure_success(name: str, response: httpx.Response) -> Dict[str, Any]:
        if not is_success(response):
            raise UpstreamError(
                f"Failed to fetch {name} from {response.request.url}. "
                f"Status: {response.status_code}. Response: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )
        return parse_body(response)
