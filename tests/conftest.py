import io
import os
import tempfile

_tmp = tempfile.mkdtemp(prefix="snapkit-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_tmp}/app.db")
os.environ.setdefault("MEDIA_DIR", os.path.join(_tmp, "media"))
os.environ.setdefault("RETRY_BACKOFF_SECONDS", "0")
os.environ.setdefault("ADMIN_API_KEYS", "")

import httpx
import openai
import pytest
from PIL import Image as PILImage
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from snapkit.auth import hash_password
from snapkit.db import Base
from snapkit.errors import StorageUnavailable
from snapkit.models import Profile
from snapkit.schemas import GenerationConfig, SocialKitResult
from snapkit.services.pool import sync_pool
from snapkit.storage import StoredImage

KIT = {
    "analysis": {"summary": "A latte on a wooden table", "mood": "cozy", "keywords": ["coffee", "latte art", "morning"]},
    "captions": [
        {"platform": "Instagram", "hook": "Stop scrolling.", "text": "Your Monday needs this.", "cta": "Tag a friend"},
        {"platform": "Generic", "hook": "Coffee first.", "text": "Everything else later.", "cta": "Save this"},
        {"platform": "Story", "hook": "Morning ritual", "text": "Swipe for the recipe.", "cta": "Swipe up"},
    ],
    "hashtags": [
        {"category": "Reach (High Vol)", "tags": ["#coffee", "#latte"]},
        {"category": "Niche (Targeted)", "tags": ["#latteart"]},
        {"category": "Community (Low Vol)", "tags": ["#mondaybrew"]},
    ],
    "scripts": {
        "tiktok": {
            "title": "Latte in 15s",
            "hook": "Watch this pour",
            "scene_breakdown": [{"timestamp": "0:00", "visual": "Close-up pour", "audio": "Lo-fi beat"}],
            "cta": "Follow for more",
        },
        "shorts": {
            "title": "Perfect latte",
            "hook": "One trick",
            "scene_breakdown": [{"timestamp": "0:00", "visual": "Milk steaming", "audio": "Hiss"}],
            "cta": "Subscribe",
        },
    },
    "linkedin_post": "Small rituals build big habits.",
    "twitter_thread": ["1/ Coffee thread", "2/ Start with good beans", "3/ That's it"],
}


def rate_limit_error(message: str = "Resource has been exhausted (e.g. check quota).") -> openai.RateLimitError:
    response = httpx.Response(429, request=httpx.Request("POST", "https://example.test/chat/completions"))
    return openai.RateLimitError(message, response=response, body=None)


class ScriptedInvoker:
    """Stand-in for the generation call: plays back outcomes in order, repeating the last one."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def __call__(self, credential, image_bytes, mime_type, config):
        self.calls.append(credential)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class MemoryStorage:
    def __init__(self, fail_delete: bool = False):
        self.files = {}
        self.deleted = []
        self.fail_delete = fail_delete
        self._n = 0

    def upload(self, data, mime_type, filename=""):
        self._n += 1
        public_id = f"img-{self._n}"
        self.files[public_id] = data
        return StoredImage(url=f"https://media.test/{public_id}", public_id=public_id)

    def delete(self, public_id):
        if self.fail_delete:
            raise StorageUnavailable("storage offline")
        self.deleted.append(public_id)
        self.files.pop(public_id, None)


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path}/test.db", connect_args={"check_same_thread": False, "timeout": 30})
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(used=0, limit=3, api_key=None, username=None):
        counter["n"] += 1
        user = Profile(
            username=username or f"user{counter['n']}",
            password_hash=hash_password("secret"),
            gemini_api_key=api_key,
            generations_used=used,
            generations_limit=limit,
        )
        db.add(user)
        db.commit()
        return user.id

    return _make


@pytest.fixture
def pool_keys(db):
    keys = ["pool-key-aaaa", "pool-key-bbbb", "pool-key-cccc"]
    sync_pool(db, keys)
    return keys


@pytest.fixture
def kit():
    return SocialKitResult.model_validate(KIT)


@pytest.fixture
def gen_config():
    return GenerationConfig(tone="playful", platforms=["Instagram", "TikTok"], include_emoji=True, language="English")


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def png_bytes():
    buf = io.BytesIO()
    PILImage.new("RGB", (8, 8), (200, 120, 40)).save(buf, format="PNG")
    return buf.getvalue()
