import logging

from app.config import settings
from app.models.measurement import Measurement
from app.services.measurement_store import UNSET, MeasurementStore
from app.utils.exceptions import ForbiddenError, NotFoundError, ValidationError
from app.utils.icons import normalize_icon_ids

logger = logging.getLogger(__name__)


class MetadataUpdater:
    """Attaches a memo and icons to a measurement the caller owns."""

    def __init__(self, store: MeasurementStore):
        self._store = store

    async def update_metadata(
        self,
        user_id: str,
        measurement_id: int,
        memo=UNSET,
        icon_ids=UNSET,
    ) -> Measurement:
        measurement = await self._store.get_by_id(measurement_id)
        if measurement is None:
            raise NotFoundError("Measurement not found")
        if measurement.user_id != user_id:
            logger.warning("User %s tried to update measurement %d of another user", user_id, measurement_id)
            raise ForbiddenError("Unauthorized")

        if memo is not UNSET and memo is not None and len(memo) > settings.memo_max_length:
            raise ValidationError(f"Memo must be at most {settings.memo_max_length} characters")
        if icon_ids is not UNSET:
            icon_ids = normalize_icon_ids(icon_ids)

        return await self._store.update_metadata(measurement_id, memo=memo, icon_ids=icon_ids)
