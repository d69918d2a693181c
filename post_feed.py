# post_feed.py
import logging
import random
import time
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Callable, Dict, List, Optional

from api_client import ApiClient, ApiError
from config import settings
from message_store import utc_now
from privacy import PrivacyResult, apply_privacy_mode
from scoring import calculate_privacy_score

logger = logging.getLogger("privacy_bsky.posts")

POSTS_COLLECTION = "privacy_posts"


@dataclass
class Post:
    id: str
    author_id: str
    title: str
    content: str
    access_level: str = "public"
    privacy_score: int = 0
    privacy_technique: str = "None"
    at_protocol_uri: Optional[str] = None
    is_own: bool = False
    created_at: str = ""

    @classmethod
    def from_api(cls, data: dict, me: Optional[str] = None) -> "Post":
        author = data.get("authorId") or data.get("author") or "unknown"
        return cls(
            id=str(data["id"]),
            author_id=author,
            title=data.get("title") or "",
            content=data.get("content", ""),
            access_level=data.get("accessLevel") or "public",
            privacy_score=int(data.get("privacyScore") or 0),
            privacy_technique=data.get("privacyTechnique") or "None",
            at_protocol_uri=data.get("atProtocolUri"),
            is_own=bool(data.get("isOwn")) or (me is not None and author == me),
            created_at=data.get("createdAt") or utc_now().isoformat(),
        )


def demo_posts(author: str) -> List[Post]:
    now = utc_now()
    return [
        Post(
            id="demo-1",
            author_id=author,
            title="Welcome to Privacy-Aware Posts",
            content="This demonstrates real access control with Bluesky integration. "
                    "Posts respect follower relationships and privacy settings.",
            access_level="public",
            privacy_score=72,
            privacy_technique="PII Masking",
            is_own=True,
            created_at=(now - timedelta(hours=1)).isoformat(),
        ),
        Post(
            id="demo-2",
            author_id=author,
            title="Followers Only Content",
            content="This post is only visible to your Bluesky followers, "
                    "demonstrating real access control through the AT Protocol.",
            access_level="followers",
            privacy_score=88,
            privacy_technique="Content Obfuscation",
            is_own=True,
            created_at=(now - timedelta(minutes=30)).isoformat(),
        ),
    ]


@dataclass
class SubmitResult:
    post: Post
    privacy: PrivacyResult
    message: str = ""
    warning: Optional[str] = None
    bluesky_url: Optional[str] = None


class PostFeed:
    def __init__(self, api: ApiClient, me: str, store, clock: Callable[[], float] = time.monotonic):
        self.api = api
        self.me = me
        self.store = store
        self.posts: List[Post] = []
        self.online = False
        self._clock = clock
        self._new_tags: Dict[str, float] = {}

    def _persist(self) -> None:
        self.store.save(POSTS_COLLECTION, [asdict(p) for p in self.posts])

    async def load(self) -> List[Post]:
        """Fetch visible posts; offline, fall back to the local copy or demo posts."""
        try:
            data = await self.api.get_posts()
        except ApiError as e:
            logger.warning("Error loading posts: %s", e)
            self.online = False
            records = self.store.load(POSTS_COLLECTION)
            if records:
                self.posts = [Post(**r) for r in records]
            else:
                self.posts = demo_posts(self.me)
                self._persist()
            return self.posts

        self.online = True
        self.posts = [Post.from_api(p, self.me) for p in data]
        self._persist()
        logger.info("Loaded %d posts", len(self.posts))
        return self.posts

    @staticmethod
    def preview(content: str, access_level: str = "public", mode: str = "none", pii_level: str = "medium",
                epsilon: float = 1.0, rng: Optional[random.Random] = None):
        """Transform `content` and score it without submitting; returns (result, score)."""
        result = apply_privacy_mode(mode, content.strip(), pii_level, epsilon, rng)
        return result, calculate_privacy_score(access_level, result, len(result.processed_content))

    async def submit(self, title: str, content: str, access_level: str = "public", mode: str = "none",
                     pii_level: str = "medium", epsilon: float = 1.0,
                     rng: Optional[random.Random] = None) -> SubmitResult:
        """Transform, score and create a post; API errors propagate to the caller."""
        if not content.strip():
            raise ValueError("post content is required")
        title = title.strip()
        result, score = self.preview(content, access_level, mode, pii_level, epsilon, rng)

        response = await self.api.create_post({
            "title": title,
            "content": result.processed_content,
            "accessLevel": access_level,
            "privacyTechnique": result.technique,
            "privacyScore": score,
        })

        post = Post(
            id=str(response["id"]),
            author_id=self.me,
            title=title,
            content=result.processed_content,
            access_level=access_level,
            privacy_score=score,
            privacy_technique=result.technique,
            at_protocol_uri=response.get("atProtocolUri"),
            is_own=True,
            created_at=utc_now().isoformat(),
        )
        self.posts.insert(0, post)
        self.tag_new(post.id)
        self._persist()
        if response.get("warning"):
            logger.warning("Post %s saved but not published: %s", post.id, response["warning"])
        return SubmitResult(
            post=post,
            privacy=result,
            message=response.get("message", ""),
            warning=response.get("warning"),
            bluesky_url=response.get("blueskyUrl"),
        )

    def tag_new(self, post_id: str) -> None:
        self._new_tags[post_id] = self._clock() + float(settings.get("new_tag_ttl_secs", 2))

    def is_new(self, post_id: str) -> bool:
        expiry = self._new_tags.get(post_id)
        if expiry is None:
            return False
        if self._clock() >= expiry:
            del self._new_tags[post_id]
            return False
        return True
