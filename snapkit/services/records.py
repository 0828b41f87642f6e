import logging
from typing import List, Optional

from sqlalchemy import desc, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from ..errors import Forbidden, NotFound, StorageUnavailable
from ..models import Generation, Image, Profile
from ..schemas import GenerationConfig, SocialKitResult
from ..storage import StoredImage

logger = logging.getLogger(__name__)


class GenerationRecordStore:
    def __init__(self, db: Session, storage=None):
        self.db = db
        self.storage = storage

    def append(
        self,
        user_id: int,
        image_ref: StoredImage,
        config: GenerationConfig,
        payload: SocialKitResult,
        source: str,
        credential_id: Optional[str] = None,
    ) -> int:
        """
        Adds the image and generation rows to the current transaction and
        returns the new record id. The caller commits.
        """
        try:
            image = Image(user_id=user_id, url=image_ref.url, public_id=image_ref.public_id)
            gen = Generation(
                user_id=user_id,
                image=image,
                inputs=config.model_dump(),
                results=payload.model_dump(),
                api_key_source=source,
                admin_key_id=credential_id if source == "pool" else None,
            )
            self.db.add_all([image, gen])
            self.db.flush()
        except SQLAlchemyError as e:
            raise StorageUnavailable(f"could not save generation: {e}") from e
        return gen.id

    def list(self, user_id: int) -> List[Generation]:
        try:
            return list(self.db.execute(
                select(Generation)
                .options(selectinload(Generation.image))
                .where(Generation.user_id == user_id)
                .order_by(desc(Generation.created_at), desc(Generation.id))
            ).scalars())
        except SQLAlchemyError as e:
            raise StorageUnavailable(f"could not load history: {e}") from e

    def get(self, record_id: int, user_id: int) -> Generation:
        try:
            gen = self.db.get(Generation, record_id)
        except SQLAlchemyError as e:
            raise StorageUnavailable(f"could not load generation {record_id}: {e}") from e
        if gen is None:
            raise NotFound(f"generation {record_id} not found")
        if gen.user_id != user_id:
            raise Forbidden(f"generation {record_id} belongs to another user")
        return gen

    def delete(self, record_id: int, user_id: int) -> None:
        gen = self.get(record_id, user_id)
        image = gen.image
        orphaned_public_id = None

        try:
            self.db.delete(gen)
            self.db.flush()
            if image is not None:
                still_used = self.db.scalar(
                    select(func.count()).select_from(Generation).where(Generation.image_id == image.id)
                )
                if not still_used:
                    orphaned_public_id = image.public_id
                    self.db.delete(image)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageUnavailable(f"could not delete generation: {e}") from e

        logger.info("Deleted generation %s for user %s", record_id, user_id)
        if orphaned_public_id:
            self.delete_asset(orphaned_public_id)

    def delete_account(self, user_id: int) -> int:
        """
        Removes the profile with all of its generations and images, then
        deletes the stored assets. Returns how many assets were removed.
        """
        try:
            profile = self.db.get(Profile, user_id)
            if profile is None:
                raise NotFound(f"user {user_id} not found")
            public_ids = [img.public_id for img in profile.images if img.public_id]
            self.db.delete(profile)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageUnavailable(f"could not delete account: {e}") from e

        removed = sum(1 for public_id in public_ids if self.delete_asset(public_id))
        logger.info("Deleted account %s (%d/%d stored image(s) removed)", user_id, removed, len(public_ids))
        return removed

    def delete_asset(self, public_id: str) -> bool:
        """
        Best-effort removal of the stored image. The database rows are already
        gone when this runs; a failure leaves an orphaned asset and is logged.
        """
        if self.storage is None:
            logger.warning("No media storage configured, skipping deletion of %s", public_id)
            return False
        try:
            self.storage.delete(public_id)
        except Exception as e:
            logger.warning("Could not delete stored image %s: %s", public_id, e)
            return False
        return True
