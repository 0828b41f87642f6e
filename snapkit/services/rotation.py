"""
Drives one generation request to a terminal outcome.

    Deciding -> Attempting -> Succeeded
                           -> Retrying -> Attempting   (rate limited, pool path)
                           -> FailedFatal

Pool-path failures that look like rate limiting are retried with a freshly
leased credential up to ``max_attempts`` calls. The ledger increment and the
generation record are written in one transaction, and only after the
external call has returned a validated result.
"""

import enum
import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Optional

import httpx
import openai
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import config as settings
from ..errors import (
    GenerationFailed,
    InsufficientQuota,
    RateLimited,
    SnapKitError,
    StorageUnavailable,
)
from ..gemini_client import generate_social_kit
from ..schemas import GenerationConfig, SocialKitResult
from .admission import Decision, decide
from .ledger import UsageLedger
from .pool import CredentialPool, mask_credential
from .records import GenerationRecordStore

logger = logging.getLogger(__name__)

RATE_LIMIT_PATTERN = re.compile(
    r"\b429\b|quota|rate[\s_-]?limit|resource[\s_-]?exhausted|too many requests"
    r"|(?:requests?|tokens?|per[\s_-]?(?:minute|day)|rpm|tpm|rpd|daily)\s+limit"
    r"|limit\s+(?:reached|exceeded)",
    re.IGNORECASE,
)


class FailureKind(enum.Enum):
    RATE_LIMITED = "rate_limited"
    OTHER = "other"


def classify_failure(exc: BaseException) -> FailureKind:
    """
    Sorts an external-call error into the only two classes rotation cares about.
    Timeouts, connection problems and unusable output are never rate limits,
    whatever their message says.
    """
    if isinstance(exc, (GenerationFailed, openai.APITimeoutError, openai.APIConnectionError,
                        httpx.TimeoutException, TimeoutError)):
        return FailureKind.OTHER
    if isinstance(exc, (RateLimited, openai.RateLimitError)):
        return FailureKind.RATE_LIMITED
    if getattr(exc, "status_code", None) == 429:
        return FailureKind.RATE_LIMITED
    if RATE_LIMIT_PATTERN.search(str(exc)):
        return FailureKind.RATE_LIMITED
    return FailureKind.OTHER


@dataclass(frozen=True)
class SourceImage:
    data: bytes
    mime_type: str
    filename: str = ""

    def __repr__(self):
        return f"SourceImage({self.filename!r}, {self.mime_type}, {len(self.data)} bytes)"


@dataclass(frozen=True)
class GenerationOutcome:
    record_id: int
    payload: SocialKitResult
    source: str  # own|pool
    credential_id: Optional[str]
    attempts: int
    free_generations_remaining: int


Invoker = Callable[[str, bytes, str, GenerationConfig], SocialKitResult]


class RotationController:
    def __init__(
        self,
        db: Session,
        storage,
        invoke: Invoker = generate_social_kit,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.storage = storage
        self.invoke = invoke
        self.max_attempts = max_attempts if max_attempts is not None else settings.MAX_GENERATION_ATTEMPTS
        self.backoff_seconds = backoff_seconds if backoff_seconds is not None else settings.RETRY_BACKOFF_SECONDS
        self.sleep = sleep

        self.pool = CredentialPool(db)
        self.ledger = UsageLedger(db)
        self.records = GenerationRecordStore(db, storage)

    def generate(self, user_id: int, image: SourceImage, config: GenerationConfig) -> GenerationOutcome:
        snapshot = self.ledger.snapshot(user_id)
        decision = decide(snapshot)
        # release the read transaction before the long external call
        self.db.rollback()
        logger.info("User %s admitted via %s (%d/%d used)", user_id, decision.value, snapshot.used, snapshot.limit)

        if decision is Decision.DENY:
            raise InsufficientQuota(snapshot.used, snapshot.limit)

        if decision is Decision.USE_OWN:
            payload = self._call_once(snapshot.own_credential, image, config, label="own key")
            return self._commit(user_id, image, config, payload, "own", None, attempts=1)

        return self._generate_with_pool(user_id, image, config)

    def _call_once(self, credential: str, image: SourceImage, config: GenerationConfig, label: str) -> SocialKitResult:
        try:
            return self.invoke(credential, image.data, image.mime_type, config)
        except GenerationFailed:
            raise
        except Exception as e:
            kind = classify_failure(e)
            logger.warning("Generation with %s (%s) failed [%s]: %s", label, mask_credential(credential), kind.value, e)
            if kind is FailureKind.RATE_LIMITED:
                raise RateLimited(str(e)) from e
            raise GenerationFailed(str(e)) from e

    def _generate_with_pool(self, user_id: int, image: SourceImage, config: GenerationConfig) -> GenerationOutcome:
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.max_attempts + 1):
            leased = self.pool.lease()
            try:
                payload = self.invoke(leased.credential, image.data, image.mime_type, config)
            except GenerationFailed as e:
                logger.warning("Attempt %d with %s failed: %s", attempt, leased.credential_id, e)
                raise
            except Exception as e:
                kind = classify_failure(e)
                logger.warning(
                    "Attempt %d/%d with %s failed [%s]: %s",
                    attempt, self.max_attempts, leased.credential_id, kind.value, e,
                )
                if kind is not FailureKind.RATE_LIMITED:
                    raise GenerationFailed(str(e)) from e
                last_error = e
                if attempt < self.max_attempts:
                    self.sleep(self.backoff_seconds)
                continue

            return self._commit(user_id, image, config, payload, "pool", leased.credential_id, attempts=attempt)

        raise RateLimited(
            f"all {self.max_attempts} pool attempts were rate limited: {last_error}",
            attempts=self.max_attempts,
        ) from last_error

    def _commit(
        self,
        user_id: int,
        image: SourceImage,
        config: GenerationConfig,
        payload: SocialKitResult,
        source: str,
        credential_id: Optional[str],
        attempts: int,
    ) -> GenerationOutcome:
        try:
            stored = self.storage.upload(image.data, image.mime_type, image.filename)
        except SnapKitError:
            raise
        except Exception as e:
            raise StorageUnavailable(f"could not store source image: {e}") from e

        try:
            record_id = self.records.append(user_id, stored, config, payload, source, credential_id)
            if source == "pool":
                snap = self.ledger.increment(user_id)
            else:
                snap = self.ledger.snapshot(user_id)
            self.db.commit()
        except (SQLAlchemyError, SnapKitError) as e:
            self.db.rollback()
            self.records.delete_asset(stored.public_id)
            if isinstance(e, SnapKitError):
                raise
            raise StorageUnavailable(f"could not commit generation: {e}") from e

        logger.info(
            "Generation %s saved for user %s via %s%s after %d attempt(s)",
            record_id, user_id, source, f" ({credential_id})" if credential_id else "", attempts,
        )
        return GenerationOutcome(
            record_id=record_id,
            payload=payload,
            source=source,
            credential_id=credential_id,
            attempts=attempts,
            free_generations_remaining=snap.remaining,
        )
