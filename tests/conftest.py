import io
import math
import os
import tempfile
import uuid
from dataclasses import dataclass

# The engine is created on import, so point it at a throwaway database first.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="angle-journal-tests-")
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///" + os.path.join(_TEST_DB_DIR, "test.sqlite3")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from PIL import Image, ImageDraw  # noqa: E402


@dataclass
class ApiUser:
    id: str
    token: str

    @property
    def headers(self) -> dict:
        return {"Authorization": f"Bearer {self.token}"}


async def create_user() -> ApiUser:
    from app.database import async_session
    from app.models.user import User

    user = ApiUser(id=str(uuid.uuid4()), token=uuid.uuid4().hex)
    async with async_session() as session:
        session.add(User(
            id=user.id,
            username=f"user-{user.id[:8]}",
            password_hash="not-a-real-hash",
            api_token=user.token,
        ))
        await session.commit()
    return user


@pytest.fixture(autouse=True, scope="session")
def setup_test_db():
    import asyncio

    # Disable API key auth for tests
    from app.config import settings
    settings.api_key = ""

    from app.database import create_tables, async_session, engine
    from app.seed import seed_data

    async def _setup():
        await create_tables()
        async with async_session() as session:
            await seed_data(session)
        await engine.dispose()

    asyncio.run(_setup())


@pytest_asyncio.fixture
async def user() -> ApiUser:
    return await create_user()


@pytest_asyncio.fixture
async def other_user() -> ApiUser:
    return await create_user()


def _striped_image(width: int, height: int, tilt: float, fmt: str) -> bytes:
    img = Image.new("RGB", (width, height), (235, 235, 235))
    draw = ImageDraw.Draw(img)
    dx = math.tan(math.radians(tilt)) * height
    for x in range(-width, 2 * width, 12):
        draw.line([(x, 0), (x + dx, height)], fill=(20, 20, 20), width=4)
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def make_image():
    """Factory for in-memory photos with tilted stripes."""
    def _make(width: int = 160, height: int = 120, tilt: float = 15.0, fmt: str = "JPEG") -> bytes:
        return _striped_image(width, height, tilt, fmt)
    return _make
