from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from app.models.measurement import Measurement
from app.services.measurement_store import DailyMeasurement
from app.utils.icons import parse_icon_ids


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MetadataUpdate(CamelModel):
    """Partial update; a field left out of the body is not touched."""

    memo: str | None = None
    icon_ids: str | list[int] | None = None


class MeasurementResponse(CamelModel):
    id: int
    image_id: int
    angle: float
    angle2: float
    date: str
    timestamp: str
    memo: str | None = None
    icon_ids: list[int] = []

    @classmethod
    def from_model(cls, m: Measurement) -> "MeasurementResponse":
        return cls(
            id=m.id,
            image_id=m.image_id,
            angle=m.angle,
            angle2=m.angle2,
            date=m.measured_on,
            timestamp=m.timestamp,
            memo=m.memo,
            icon_ids=parse_icon_ids(m.icon_ids),
        )


class DailyMeasurementResponse(CamelModel):
    id: int | None = None
    date: str
    angle: float
    angle2: float
    image_id: int
    hash_key: str
    memo: str | None = None
    icon_ids: str | None = None

    @classmethod
    def from_row(cls, row: DailyMeasurement) -> "DailyMeasurementResponse":
        return cls(
            id=row.id,
            date=row.date,
            angle=row.angle,
            angle2=row.angle2,
            image_id=row.image_id,
            hash_key=row.hash_key,
            memo=row.memo,
            icon_ids=row.icon_ids,
        )


class ConflictResponse(CamelModel):
    date: str
    has_conflict: bool
