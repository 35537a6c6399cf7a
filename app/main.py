import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.database import create_tables, async_session
from app.dependencies import verify_api_key
from app.seed import seed_data
from app.services.analyzer import get_analyzer
from app.routers.auth import router as auth_router
from app.routers.images import router as images_router
from app.routers.measurements import router as measurements_router
from app.routers.angle_data import router as angle_data_router
from app.utils.exceptions import register_exception_handlers

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # fail fast on a misconfigured analyzer
    analyzer = get_analyzer()
    logger.info("Using analyzer %s", type(analyzer).__name__)
    await create_tables()
    async with async_session() as session:
        await seed_data(session)
    yield


app = FastAPI(
    title="AngleJournal API",
    description="Daily angle measurements derived from photos",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

_api_key_dep = [Depends(verify_api_key)]

app.include_router(auth_router, prefix="/api/v1", dependencies=_api_key_dep)
app.include_router(images_router, prefix="/api/v1", dependencies=_api_key_dep)
app.include_router(measurements_router, prefix="/api/v1", dependencies=_api_key_dep)
app.include_router(angle_data_router, prefix="/api/v1", dependencies=_api_key_dep)


@app.get("/health")
async def health_check():
    return {"status": "success", "data": {"service": "angle-journal-api", "version": "0.1.0"}, "message": None}
