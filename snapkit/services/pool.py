"""
Admin credential pool with round-robin leasing.

The rotation cursor lives in the database so that every app instance shares
it. Each lease advances it with one ``UPDATE ... RETURNING`` statement and
commits straight away, so concurrent leases never read the same position.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import PoolExhausted, StorageUnavailable
from ..models import PoolCredential, PoolCursor

logger = logging.getLogger(__name__)

CURSOR_ID = 1


def mask_credential(credential: str) -> str:
    if not credential:
        return "<empty>"
    return f"...{credential[-4:]}" if len(credential) > 8 else "***"


@dataclass(frozen=True)
class LeasedCredential:
    credential_id: str
    credential: str = field(repr=False)


class CredentialPool:
    def __init__(self, db: Session):
        self.db = db

    def _advance_cursor(self) -> int:
        stmt = (
            update(PoolCursor)
            .where(PoolCursor.id == CURSOR_ID)
            .values(position=PoolCursor.position + 1)
            .returning(PoolCursor.position)
        )
        position = self.db.execute(stmt).scalar_one_or_none()
        if position is not None:
            return position

        # first lease ever: create the cursor row, losing the race is fine
        try:
            self.db.add(PoolCursor(id=CURSOR_ID, position=0))
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
        return self.db.execute(stmt).scalar_one()

    def lease(self) -> LeasedCredential:
        """Returns the next active credential in round-robin order."""
        try:
            count = self.db.scalar(
                select(func.count()).select_from(PoolCredential).where(PoolCredential.active.is_(True))
            )
            if not count:
                raise PoolExhausted("no admin API keys available")

            position = self._advance_cursor()
            entry = self.db.execute(
                select(PoolCredential)
                .where(PoolCredential.active.is_(True))
                .order_by(PoolCredential.id)
                .offset((position - 1) % count)
                .limit(1)
            ).scalar_one_or_none()
            self.db.commit()
        except PoolExhausted:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageUnavailable(f"credential pool unavailable: {e}") from e

        if entry is None:
            # a key was deactivated between the count and the fetch
            raise PoolExhausted("admin API key set changed during lease")

        logger.info("Leased pool credential %s (%s)", entry.key_id, mask_credential(entry.api_key))
        return LeasedCredential(credential_id=entry.key_id, credential=entry.api_key)

    def active_ids(self) -> List[str]:
        return list(self.db.scalars(
            select(PoolCredential.key_id).where(PoolCredential.active.is_(True)).order_by(PoolCredential.id)
        ))


def sync_pool(db: Session, api_keys: Iterable[str]) -> int:
    """
    Provisions the pool from configuration. Keys already stored keep their id,
    new keys are appended, and stored keys absent from ``api_keys`` are
    deactivated rather than deleted so past generation records still resolve.
    Returns the number of active keys.
    """
    wanted = []
    for key in api_keys:
        if key and key not in wanted:
            wanted.append(key)

    existing = {row.api_key: row for row in db.scalars(select(PoolCredential).order_by(PoolCredential.id))}
    next_num = len(existing) + 1

    for key in wanted:
        row = existing.get(key)
        if row is None:
            while db.scalar(select(PoolCredential.id).where(PoolCredential.key_id == f"admin-{next_num}")):
                next_num += 1
            db.add(PoolCredential(key_id=f"admin-{next_num}", api_key=key, active=True))
            next_num += 1
        elif not row.active:
            row.active = True

    for key, row in existing.items():
        if key not in wanted and row.active:
            logger.info("Deactivating pool credential %s", row.key_id)
            row.active = False

    if db.get(PoolCursor, CURSOR_ID) is None:
        db.add(PoolCursor(id=CURSOR_ID, position=0))

    db.commit()
    active = CredentialPool(db).active_ids()
    logger.info("Credential pool has %d active key(s): %s", len(active), ", ".join(active))
    return len(active)
