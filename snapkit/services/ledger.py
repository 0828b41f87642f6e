import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import and_, case, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import NotFound, StorageUnavailable
from ..models import Profile, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerSnapshot:
    used: int
    limit: int
    own_credential: Optional[str] = field(default=None, repr=False)

    @property
    def has_own_credential(self) -> bool:
        return bool(self.own_credential and self.own_credential.strip())

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)


class UsageLedger:
    """
    Free-tier counters stored on the user's profile row.

    Reads go straight to the table (never the session identity map) and the
    increment is a single atomic UPDATE, so concurrent requests cannot lose
    an update. ``increment`` does not commit: it joins the caller's
    transaction so the charge lands together with the generation record.
    """

    def __init__(self, db: Session):
        self.db = db

    def snapshot(self, user_id: int) -> LedgerSnapshot:
        try:
            row = self.db.execute(
                select(Profile.generations_used, Profile.generations_limit, Profile.gemini_api_key)
                .where(Profile.id == user_id)
            ).one_or_none()
        except SQLAlchemyError as e:
            raise StorageUnavailable(f"could not read usage for user {user_id}: {e}") from e
        if row is None:
            raise NotFound(f"profile {user_id} not found")
        used, limit, own = row
        return LedgerSnapshot(used=used, limit=limit, own_credential=own)

    def increment(self, user_id: int) -> LedgerSnapshot:
        new_used = Profile.generations_used + 1
        stmt = (
            update(Profile)
            .where(Profile.id == user_id)
            .values(
                generations_used=new_used,
                quota_exhausted_at=case(
                    (and_(new_used >= Profile.generations_limit, Profile.quota_exhausted_at.is_(None)), utcnow()),
                    else_=Profile.quota_exhausted_at,
                ),
                updated_at=utcnow(),
            )
            .returning(Profile.generations_used, Profile.generations_limit, Profile.gemini_api_key)
            .execution_options(synchronize_session=False)
        )
        row = self.db.execute(stmt).one_or_none()
        if row is None:
            raise NotFound(f"profile {user_id} not found")
        used, limit, own = row
        if used >= limit:
            logger.info("User %s reached the free generation limit (%d/%d)", user_id, used, limit)
        return LedgerSnapshot(used=used, limit=limit, own_credential=own)

    def stats(self, user_id: int) -> dict:
        try:
            row = self.db.execute(
                select(
                    Profile.generations_used,
                    Profile.generations_limit,
                    Profile.quota_exhausted_at,
                    Profile.gemini_api_key,
                ).where(Profile.id == user_id)
            ).one_or_none()
        except SQLAlchemyError as e:
            raise StorageUnavailable(f"could not read usage for user {user_id}: {e}") from e
        if row is None:
            raise NotFound(f"profile {user_id} not found")

        snap = LedgerSnapshot(used=row[0], limit=row[1], own_credential=row[3])
        return {
            "used": snap.used,
            "limit": snap.limit,
            "remaining": snap.remaining,
            "exhausted_at": row[2].isoformat() if row[2] else None,
            "has_own_key": snap.has_own_credential,
            "can_use_free_tier": not snap.has_own_credential and snap.remaining > 0,
        }

    def set_own_credential(self, user_id: int, credential: Optional[str]) -> None:
        value = (credential or "").strip() or None
        try:
            result = self.db.execute(
                update(Profile)
                .where(Profile.id == user_id)
                .values(gemini_api_key=value, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                self.db.rollback()
                raise NotFound(f"profile {user_id} not found")
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageUnavailable(f"could not update API key: {e}") from e
