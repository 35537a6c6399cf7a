from fastapi import APIRouter, Depends

from app.config import settings
from app.dependencies import get_current_user_id, get_store
from app.schemas.measurement import DailyMeasurementResponse
from app.services.measurement_store import MeasurementStore
from app.utils.dates import parse_day, trailing_window
from app.utils.exceptions import ValidationError
from app.utils.response import success_response

router = APIRouter(tags=["angle-data"])


@router.get("/angle-data")
async def get_angle_data(
    start: str | None = None,
    end: str | None = None,
    days: int | None = None,
    user_id: str = Depends(get_current_user_id),
    store: MeasurementStore = Depends(get_store),
):
    """One row per day, either for [start, end] or the trailing ``days``."""
    if start or end:
        if not (start and end):
            raise ValidationError("Both start and end are required for a date range")
        start_day, end_day = parse_day(start), parse_day(end)
        if start_day > end_day:
            raise ValidationError("start must not be after end")
    else:
        days = settings.default_range_days if days is None else days
        if days < 1:
            raise ValidationError("days must be a positive number")
        start_day, end_day = trailing_window(days)

    rows = await store.range_for_month(user_id, start_day, end_day)
    data = [DailyMeasurementResponse.from_row(r).model_dump(by_alias=True, exclude_none=True) for r in rows]
    return success_response(data=data)


@router.get("/latest-angle")
async def get_latest_angle(
    user_id: str = Depends(get_current_user_id),
    store: MeasurementStore = Depends(get_store),
):
    measurement = await store.latest_for_user(user_id)
    if measurement is None:
        return success_response(data={"angle": None, "angle2": None})
    return success_response(data={"angle": measurement.angle, "angle2": measurement.angle2})
