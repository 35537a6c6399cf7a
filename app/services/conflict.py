from datetime import date

from app.services.measurement_store import MeasurementStore


class ConflictResolver:
    """Answers "does this day already have a measurement?" before an upload.

    This is a UX check only: the answer can be stale by the time the upload
    lands. ``MeasurementStore.replace_for_date`` is what keeps one row per day.
    """

    def __init__(self, store: MeasurementStore):
        self._store = store

    async def has_conflict(self, user_id: str, day: date) -> bool:
        return bool(await self._store.find_by_user_and_date(user_id, day))
