# api_client.py
import asyncio
import logging
from typing import List, Optional

import httpx

from config import settings

logger = logging.getLogger("privacy_bsky.client")


class ApiError(Exception):
    """Non-2xx answer from the API, or status 0 when the request never completed."""

    def __init__(self, status: int, detail: str):
        super().__init__(f"{status}: {detail}" if status else detail)
        self.status = status
        self.detail = detail

    @property
    def is_network(self) -> bool:
        return self.status == 0


class AuthenticationError(ApiError):
    pass


def _detail(r: httpx.Response) -> str:
    try:
        body = r.json()
    except ValueError:
        return r.text or r.reason_phrase
    if isinstance(body, dict):
        detail = body.get("detail") or body.get("error")
        if detail:
            return detail if isinstance(detail, str) else str(detail)
    return r.text


class ApiClient:
    """Cookie-carrying async client for the messenger API."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = (base_url or settings["api_url"]).rstrip("/")
        self.timeout = float(timeout or settings.get("request_timeout_secs", 10))
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=transport)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    async def aclose(self):
        await self._client.aclose()

    async def _send(self, method: str, path: str, timeout: Optional[float] = None, **kwargs) -> httpx.Response:
        try:
            return await asyncio.wait_for(self._client.request(method, path, **kwargs), timeout or self.timeout)
        except asyncio.TimeoutError as e:
            raise ApiError(0, f"{method} {path} timed out") from e
        except httpx.HTTPError as e:
            raise ApiError(0, f"{method} {path} failed: {e}") from e

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        r = await self._send(method, path, **kwargs)
        if r.status_code == 401:
            raise AuthenticationError(401, _detail(r))
        if r.status_code >= 400:
            raise ApiError(r.status_code, _detail(r))
        return r.json() if r.content else {}

    # -------------------- auth --------------------
    async def login(self, did: str, handle: str, access_jwt: Optional[str] = None,
                    refresh_jwt: Optional[str] = None) -> dict:
        body = {"did": did, "handle": handle}
        if access_jwt and refresh_jwt:
            body.update(accessJwt=access_jwt, refreshJwt=refresh_jwt)
        return await self._request("POST", "/auth/login", json=body)

    async def login_with_password(self, identifier: str, password: str) -> dict:
        return await self._request("POST", "/auth/login", json={"identifier": identifier, "password": password})

    async def logout(self) -> dict:
        return await self._request("POST", "/auth/logout")

    # -------------------- messages --------------------
    async def get_conversations(self) -> List[dict]:
        data = await self._request("GET", "/messages")
        return data.get("conversations", [])

    async def get_messages(self, conversation_id: str) -> List[dict]:
        data = await self._request("GET", f"/messages/conversations/{conversation_id}")
        return data.get("messages", [])

    async def send_message(self, receiver_id: str, content: str) -> dict:
        return await self._request("POST", "/messages/send", json={"receiverId": receiver_id, "content": content})

    async def mark_read(self, message_ids: List[str]) -> dict:
        return await self._request("POST", "/messages/mark-read", json={"messageIds": message_ids})

    async def delete_conversation(self, conversation_id: str) -> dict:
        return await self._request("DELETE", f"/messages/conversations/{conversation_id}")

    # -------------------- posts --------------------
    async def get_posts(self) -> List[dict]:
        data = await self._request("GET", "/posts")
        return data.get("posts", [])

    async def create_post(self, payload: dict) -> dict:
        return await self._request("POST", "/posts", json=payload)

    # -------------------- health --------------------
    async def health_check(self) -> bool:
        """True when /health answers 2xx.

        Only when /health cannot be reached at all is HEAD / tried, and there
        a 404 also counts as up.
        """
        try:
            r = await self._send("GET", "/health", timeout=float(settings.get("health_timeout_secs", 5)))
        except ApiError as e:
            logger.warning("Health check failed: %s", e.detail)
        else:
            if r.is_success:
                return True
            logger.warning("Health check returned %s", r.status_code)
            return False

        try:
            r = await self._send("HEAD", "/", timeout=float(settings.get("health_fallback_timeout_secs", 2)))
        except ApiError as e:
            logger.warning("Fallback health check failed: %s", e.detail)
            return False
        return r.is_success or r.status_code == 404
