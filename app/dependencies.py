from fastapi import Header, HTTPException
from sqlalchemy import select

from app.config import settings
from app.database import async_session
from app.models.user import User
from app.services.analyzer import AngleAnalyzer, get_analyzer
from app.services.measurement_store import MeasurementStore


async def verify_api_key(x_api_key: str = Header(default="")) -> None:
    if not settings.api_key:
        return
    if x_api_key != settings.api_key:
        raise HTTPException(status_code=403, detail="Invalid or missing API key")


async def get_current_user_id(authorization: str = Header(default="")) -> str:
    """Resolve ``Authorization: Bearer <token>`` to a user id."""
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    async with async_session() as session:
        result = await session.execute(select(User.id).where(User.api_token == token))
        user_id = result.scalars().first()
    if user_id is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user_id


def get_store() -> MeasurementStore:
    return MeasurementStore()


def get_angle_analyzer() -> AngleAnalyzer:
    return get_analyzer()
