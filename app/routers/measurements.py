import logging

from fastapi import APIRouter, Depends

from app.dependencies import get_current_user_id, get_store
from app.models.measurement import Measurement
from app.schemas.measurement import ConflictResponse, MeasurementResponse, MetadataUpdate
from app.services.conflict import ConflictResolver
from app.services.measurement_store import UNSET, MeasurementStore
from app.services.metadata import MetadataUpdater
from app.utils.dates import format_day, parse_day
from app.utils.exceptions import ForbiddenError, NotFoundError
from app.utils.response import success_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/measurements", tags=["measurements"])


async def _get_owned(store: MeasurementStore, user_id: str, measurement_id: int) -> Measurement:
    measurement = await store.get_by_id(measurement_id)
    if measurement is None:
        raise NotFoundError("Measurement not found")
    if measurement.user_id != user_id:
        raise ForbiddenError("Unauthorized")
    return measurement


@router.get("/conflict")
async def check_conflict(
    date: str,
    user_id: str = Depends(get_current_user_id),
    store: MeasurementStore = Depends(get_store),
):
    day = parse_day(date)
    has_conflict = await ConflictResolver(store).has_conflict(user_id, day)
    data = ConflictResponse(date=format_day(day), has_conflict=has_conflict)
    return success_response(data=data)


@router.get("/{measurement_id}")
async def get_measurement(
    measurement_id: int,
    user_id: str = Depends(get_current_user_id),
    store: MeasurementStore = Depends(get_store),
):
    measurement = await _get_owned(store, user_id, measurement_id)
    return success_response(data=MeasurementResponse.from_model(measurement))


@router.patch("/{measurement_id}/metadata")
async def update_metadata(
    measurement_id: int,
    payload: MetadataUpdate,
    user_id: str = Depends(get_current_user_id),
    store: MeasurementStore = Depends(get_store),
):
    fields = payload.model_fields_set
    measurement = await MetadataUpdater(store).update_metadata(
        user_id,
        measurement_id,
        memo=payload.memo if "memo" in fields else UNSET,
        icon_ids=payload.icon_ids if "icon_ids" in fields else UNSET,
    )
    return success_response(data=MeasurementResponse.from_model(measurement))


@router.delete("/{measurement_id}")
async def delete_measurement(
    measurement_id: int,
    user_id: str = Depends(get_current_user_id),
    store: MeasurementStore = Depends(get_store),
):
    await _get_owned(store, user_id, measurement_id)
    await store.delete_by_id(measurement_id)
    return success_response(data={"id": measurement_id}, message="Measurement deleted successfully")
