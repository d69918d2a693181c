# bluesky.py
"""
Minimal AT Protocol (XRPC) client for Bluesky, built on `requests`.

Only what the API needs: password login, resuming a stored session,
publishing a post, reading a profile and walking follow lists.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

import requests

from config import settings

logger = logging.getLogger("privacy_bsky.bluesky")

POST_COLLECTION = "app.bsky.feed.post"


class BlueskyError(Exception):
    """Any failure talking to the Bluesky service."""

    def __init__(self, message: str, status: int = 0):
        super().__init__(message)
        self.status = status


@dataclass(frozen=True)
class FollowRelationship:
    is_following: bool
    is_followed_by: bool

    @property
    def is_mutual(self) -> bool:
        return self.is_following and self.is_followed_by


def build_post_text(title: str, content: str, limit: Optional[int] = None) -> str:
    """Title and content joined by a blank line, cut to the post limit."""
    limit = int(limit or settings.get("post_char_limit", 300))
    text = f"{title}\n\n{content}" if title else content
    if len(text) > limit:
        text = text[: limit - 3] + "..."
    return text


def post_url(handle: str, uri: str, app_url: Optional[str] = None) -> str:
    base = (app_url or settings.get("bluesky_app_url", "https://bsky.app")).rstrip("/")
    rkey = uri.rstrip("/").split("/")[-1]
    return f"{base}/profile/{handle}/post/{rkey}"


class BlueskyClient:
    def __init__(self, service: Optional[str] = None, timeout: Optional[float] = None,
                 http: Optional[requests.Session] = None):
        self.service = (service or settings.get("bluesky_service", "https://bsky.social")).rstrip("/")
        self.timeout = float(timeout or settings.get("bluesky_timeout_secs", 10))
        self.http = http or requests.Session()
        self.session: Optional[dict] = None

    # -------------------- transport --------------------
    def _url(self, nsid: str) -> str:
        return f"{self.service}/xrpc/{nsid}"

    def _headers(self, token: Optional[str] = None) -> dict:
        token = token or (self.session or {}).get("accessJwt")
        return {"Authorization": f"Bearer {token}"} if token else {}

    def _call(self, method: str, nsid: str, token: Optional[str] = None, **kwargs) -> dict:
        try:
            r = self.http.request(method, self._url(nsid), headers=self._headers(token), timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise BlueskyError(f"{nsid} failed: {e}") from e
        if r.status_code != 200:
            try:
                body = r.json()
                detail = body.get("message") or body.get("error") or r.text
            except ValueError:
                detail = r.text
            raise BlueskyError(f"{nsid} returned {r.status_code}: {detail}", status=r.status_code)
        if not r.content:
            return {}
        try:
            return r.json()
        except ValueError as e:
            raise BlueskyError(f"{nsid} returned a malformed body: {e}", status=r.status_code) from e

    def _require_session(self) -> dict:
        if not self.session or not self.session.get("accessJwt"):
            raise BlueskyError("No AT Protocol tokens available", status=401)
        return self.session

    # -------------------- sessions --------------------
    def login(self, identifier: str, password: str) -> dict:
        """Create a session with a handle (or email) and an app password."""
        data = self._call("POST", "com.atproto.server.createSession",
                          json={"identifier": identifier, "password": password})
        self.session = {
            "did": data["did"],
            "handle": data["handle"],
            "accessJwt": data["accessJwt"],
            "refreshJwt": data["refreshJwt"],
            "email": data.get("email"),
            "active": data.get("active", True),
        }
        logger.info("Logged in to Bluesky as %s", self.session["handle"])
        return self.session

    def resume_session(self, session: dict) -> dict:
        """Adopt stored tokens, refreshing them once if the access token expired."""
        if not session.get("accessJwt") or not session.get("refreshJwt"):
            raise BlueskyError("Session missing AT Protocol tokens", status=401)
        self.session = dict(session)
        try:
            self._call("GET", "com.atproto.server.getSession")
        except BlueskyError as e:
            if e.status not in (400, 401):
                raise
            refreshed = self._call("POST", "com.atproto.server.refreshSession", token=session["refreshJwt"])
            self.session.update(accessJwt=refreshed["accessJwt"], refreshJwt=refreshed["refreshJwt"])
            logger.info("Refreshed Bluesky tokens for %s", self.session.get("handle"))
        return self.session

    # -------------------- records --------------------
    def post(self, text: str, created_at: Optional[str] = None) -> dict:
        """Publish a text post; returns {uri, cid}."""
        session = self._require_session()
        record = {
            "$type": POST_COLLECTION,
            "text": text,
            "createdAt": created_at or datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
        }
        data = self._call("POST", "com.atproto.repo.createRecord",
                          json={"repo": session["did"], "collection": POST_COLLECTION, "record": record})
        if not isinstance(data, dict) or not data.get("uri"):
            raise BlueskyError("com.atproto.repo.createRecord returned no record uri")
        return {"uri": data["uri"], "cid": data.get("cid")}

    def get_profile(self, actor: str) -> dict:
        self._require_session()
        return self._call("GET", "app.bsky.actor.getProfile", params={"actor": actor})

    def get_follows(self, actor: str, max_pages: int = 10) -> List[str]:
        """DIDs that `actor` follows."""
        self._require_session()
        limit = int(settings.get("follows_page_limit", 100))
        dids: List[str] = []
        cursor = None
        for _ in range(max_pages):
            params = {"actor": actor, "limit": limit}
            if cursor:
                params["cursor"] = cursor
            data = self._call("GET", "app.bsky.graph.getFollows", params=params)
            dids.extend(f["did"] for f in data.get("follows", []))
            cursor = data.get("cursor")
            if not cursor:
                break
        return dids

    def check_follow_relationship(self, viewer: str, target: str) -> FollowRelationship:
        return FollowRelationship(
            is_following=target in self.get_follows(viewer),
            is_followed_by=viewer in self.get_follows(target),
        )
