import os

os.environ.setdefault("ENCRYPTION_KEY", "11" * 32)

import pytest
from fastapi.testclient import TestClient

from bluesky import BlueskyError, FollowRelationship
from main import app, get_bluesky_client, get_repositories
from repository import Repositories

TEST_KEY = bytes.fromhex("22" * 32)

ALICE = "did:plc:alice0000000000000000"
BOB = "did:plc:bob00000000000000000000"
CAROL = "did:plc:carol000000000000000000"


class FakeBluesky:
    """Stands in for BlueskyClient in API tests."""

    def __init__(self):
        self.follows = {}  # did -> set of followed dids
        self.fail_post = False
        self.fail_follows = False
        self.posted = []
        self.follow_calls = []
        self.resumed = []

    def login(self, identifier, password):
        if password != "app-password":
            raise BlueskyError("Invalid identifier or password", status=401)
        return {"did": "did:plc:" + identifier.split(".")[0], "handle": identifier,
                "accessJwt": "acc", "refreshJwt": "ref", "active": True}

    def resume_session(self, session):
        self.resumed.append(session["did"])
        return session

    def post(self, text, created_at=None):
        if self.fail_post:
            raise BlueskyError("Service unavailable", status=503)
        self.posted.append(text)
        return {"uri": f"at://did:plc:x/app.bsky.feed.post/rkey{len(self.posted)}", "cid": "bafy"}

    def get_profile(self, actor):
        return {"handle": "alice.test", "displayName": "Alice", "followersCount": 1,
                "followsCount": 2, "postsCount": 3}

    def check_follow_relationship(self, viewer, target):
        self.follow_calls.append((viewer, target))
        if self.fail_follows:
            raise BlueskyError("lookup failed")
        return FollowRelationship(
            is_following=target in self.follows.get(viewer, set()),
            is_followed_by=viewer in self.follows.get(target, set()),
        )


@pytest.fixture
def repos(tmp_path):
    return Repositories(str(tmp_path / "test.db"), key=TEST_KEY)


@pytest.fixture
def bluesky():
    return FakeBluesky()


@pytest.fixture
def make_client(repos, bluesky):
    app.dependency_overrides[get_repositories] = lambda: repos
    app.dependency_overrides[get_bluesky_client] = lambda: bluesky

    def _make(did=None, handle=None, tokens=True):
        client = TestClient(app)
        if did:
            body = {"did": did, "handle": handle or did.split(":")[-1][:5] + ".test"}
            if tokens:
                body.update(accessJwt="acc", refreshJwt="ref")
            r = client.post("/auth/login", json=body)
            assert r.status_code == 200
        return client

    yield _make
    app.dependency_overrides.clear()
