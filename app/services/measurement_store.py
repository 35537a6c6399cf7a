"""Persistence for measurements and their images.

Enforces one measurement per user per calendar day (UTC date of the
measurement timestamp). The rule lives here rather than in the schema:
``replace_for_date`` deletes whatever exists for the day and inserts the new
row inside one transaction, serialized per (user, day).
"""
import logging
import secrets
import zlib
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy import delete, func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import async_session
from app.models.image import Image
from app.models.measurement import Measurement
from app.utils.dates import format_day, to_utc, utc_now_iso
from app.utils.exceptions import ConflictReplacementError, NotFoundError, ValidationError
from app.utils.icons import serialize_icon_ids
from app.utils.locks import KeyedLock

logger = logging.getLogger(__name__)

UNSET = object()

_day_locks = KeyedLock()


@dataclass
class NewMeasurement:
    angle: float
    angle2: float
    timestamp: datetime
    memo: str | None = None
    icon_ids: list[int] | None = None


@dataclass
class DailyMeasurement:
    date: str
    angle: float
    angle2: float
    image_id: int
    hash_key: str
    memo: str | None = None
    icon_ids: str | None = None
    id: int | None = None


def generate_hash_key() -> str:
    return secrets.token_hex(16)


def _advisory_key(user_id: str, day: date) -> int:
    return zlib.crc32(f"{user_id}:{format_day(day)}".encode())


class MeasurementStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = async_session):
        self._session_factory = session_factory

    async def find_by_user_and_date(self, user_id: str, day: date) -> list[Measurement]:
        async with self._session_factory() as session:
            return await self._find(session, user_id, day)

    async def _find(self, session: AsyncSession, user_id: str, day: date) -> list[Measurement]:
        result = await session.execute(
            select(Measurement)
            .where(Measurement.user_id == user_id, Measurement.measured_on == format_day(day))
            .order_by(Measurement.id)
        )
        return list(result.scalars().all())

    async def replace_for_date(self, user_id: str, day: date, new: NewMeasurement) -> Measurement:
        """Atomically replace every measurement of (user_id, day) with ``new``.

        Safe when nothing exists for the day (zero deletes, one insert). On
        any database error the transaction is rolled back and the previous
        measurement stays in place.
        """
        timestamp = to_utc(new.timestamp)
        if timestamp.date() != day:
            raise ValidationError(f"Measurement timestamp {timestamp.isoformat()} does not fall on {day}")

        async with _day_locks.hold((user_id, day)):
            try:
                async with self._session_factory() as session, session.begin():
                    if session.bind.dialect.name == "postgresql":
                        await session.execute(
                            text("SELECT pg_advisory_xact_lock(:key)"),
                            {"key": _advisory_key(user_id, day)},
                        )

                    existing = await self._find(session, user_id, day)
                    if existing:
                        logger.info(
                            "Replacing %d measurement(s) for user %s on %s",
                            len(existing), user_id, day,
                        )
                        await self._delete_rows(session, existing)

                    image = Image(
                        user_id=user_id,
                        hash_key=generate_hash_key(),
                        created_at=utc_now_iso(),
                        processed_angle=new.angle,
                        processed_angle2=new.angle2,
                        is_processed=1,
                    )
                    session.add(image)
                    await session.flush()

                    measurement = Measurement(
                        image_id=image.id,
                        user_id=user_id,
                        angle=new.angle,
                        angle2=new.angle2,
                        timestamp=timestamp.isoformat(),
                        measured_on=format_day(day),
                        memo=new.memo or None,
                        icon_ids=serialize_icon_ids(new.icon_ids or []),
                    )
                    session.add(measurement)
                    await session.flush()
            except SQLAlchemyError as e:
                logger.exception("Replacing measurement for user %s on %s failed", user_id, day)
                raise ConflictReplacementError(
                    f"Could not save the measurement for {day}; the previous measurement was kept"
                ) from e

        logger.info("Stored measurement %d (image %d) for user %s on %s", measurement.id, image.id, user_id, day)
        return measurement

    async def _delete_rows(self, session: AsyncSession, measurements: list[Measurement]) -> None:
        measurement_ids = [m.id for m in measurements]
        image_ids = [m.image_id for m in measurements]
        await session.execute(delete(Measurement).where(Measurement.id.in_(measurement_ids)))
        await session.execute(delete(Image).where(Image.id.in_(image_ids)))

    async def get_by_id(self, measurement_id: int) -> Measurement | None:
        async with self._session_factory() as session:
            return await session.get(Measurement, measurement_id)

    async def get_image(self, image_id: int) -> Image | None:
        async with self._session_factory() as session:
            return await session.get(Image, image_id)

    async def delete_by_id(self, measurement_id: int) -> None:
        async with self._session_factory() as session, session.begin():
            measurement = await session.get(Measurement, measurement_id)
            if measurement is None:
                raise NotFoundError("Measurement not found")
            await self._delete_rows(session, [measurement])
        logger.info("Deleted measurement %d", measurement_id)

    async def update_metadata(self, measurement_id: int, memo=UNSET, icon_ids=UNSET) -> Measurement:
        """Partial update: only the fields passed are changed.

        ``icon_ids`` is an ordered list; an empty list clears the icons.
        """
        async with self._session_factory() as session, session.begin():
            measurement = await session.get(Measurement, measurement_id)
            if measurement is None:
                raise NotFoundError("Measurement not found")
            if memo is not UNSET:
                measurement.memo = memo or None
            if icon_ids is not UNSET:
                measurement.icon_ids = serialize_icon_ids(icon_ids or [])
        return measurement

    async def range_for_month(self, user_id: str, start: date, end: date) -> list[DailyMeasurement]:
        """One row per day in [start, end], the last inserted one winning."""
        rank = (
            func.row_number()
            .over(partition_by=Measurement.measured_on, order_by=Measurement.id.desc())
            .label("rn")
        )
        daily = (
            select(
                Measurement.id,
                Measurement.measured_on,
                Measurement.angle,
                Measurement.angle2,
                Measurement.image_id,
                Measurement.memo,
                Measurement.icon_ids,
                Image.hash_key,
                rank,
            )
            .join(Image, Image.id == Measurement.image_id)
            .where(
                Measurement.user_id == user_id,
                Measurement.measured_on >= format_day(start),
                Measurement.measured_on <= format_day(end),
            )
            .subquery()
        )
        async with self._session_factory() as session:
            result = await session.execute(
                select(daily).where(daily.c.rn == 1).order_by(daily.c.measured_on)
            )
            rows = result.all()

        return [
            DailyMeasurement(
                id=row.id,
                date=row.measured_on,
                angle=row.angle,
                angle2=row.angle2,
                image_id=row.image_id,
                hash_key=row.hash_key,
                memo=row.memo,
                icon_ids=row.icon_ids,
            )
            for row in rows
        ]

    async def latest_for_user(self, user_id: str) -> Measurement | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Measurement)
                .where(Measurement.user_id == user_id)
                .order_by(Measurement.id.desc())
                .limit(1)
            )
            return result.scalars().first()
