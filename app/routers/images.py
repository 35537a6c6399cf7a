import asyncio
import base64
import logging

from fastapi import APIRouter, Depends, File, Form, UploadFile

from app.config import settings
from app.dependencies import get_angle_analyzer, get_current_user_id, get_store
from app.services.analyzer import AngleAnalyzer, run_analysis
from app.services.measurement_store import MeasurementStore, NewMeasurement
from app.services.preprocessor import preprocess
from app.services.upload_validator import parse_client_rotation, validate_image_upload
from app.utils.dates import parse_measurement_timestamp
from app.utils.exceptions import AnalysisError, ValidationError
from app.utils.icons import normalize_icon_ids
from app.utils.response import success_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/images", tags=["images"])


@router.post("/upload", status_code=201)
async def upload_image(
    image: UploadFile | None = File(default=None),
    custom_date: str | None = Form(default=None, alias="customDate"),
    client_rotation: str | None = Form(default=None, alias="clientRotation"),
    memo: str | None = Form(default=None),
    icon_ids: str | None = Form(default=None, alias="iconIds"),
    user_id: str = Depends(get_current_user_id),
    store: MeasurementStore = Depends(get_store),
    analyzer: AngleAnalyzer = Depends(get_angle_analyzer),
):
    """Analyze a photo and store it as the measurement for its day.

    An existing measurement for the same day is replaced without asking;
    confirming the replacement is up to the client.
    """
    if image is None:
        raise ValidationError("No image file provided")
    content = await image.read()
    validate_image_upload(content, image.content_type)

    timestamp = parse_measurement_timestamp(custom_date)
    rotation = parse_client_rotation(client_rotation)
    if memo and len(memo) > settings.memo_max_length:
        raise ValidationError(f"Memo must be at most {settings.memo_max_length} characters")
    icons = normalize_icon_ids(icon_ids)
    logger.info(
        "Upload from user %s: %d bytes, date=%s, clientRotation=%d",
        user_id, len(content), timestamp.date(), rotation,
    )

    if settings.normalize_on_server:
        try:
            content = await asyncio.to_thread(preprocess, content, 0)
        except ValidationError as e:
            logger.info("Server-side normalization failed: %s", e.message)
            raise AnalysisError()

    result = await run_analysis(analyzer, content)

    measurement = await store.replace_for_date(
        user_id,
        timestamp.date(),
        NewMeasurement(
            angle=result.angle,
            angle2=result.angle2,
            timestamp=timestamp,
            memo=memo,
            icon_ids=icons,
        ),
    )
    stored_image = await store.get_image(measurement.image_id)

    return success_response(data={
        "success": True,
        "measurement": {
            "id": measurement.id,
            "angle": measurement.angle,
            "angle2": measurement.angle2,
            "date": measurement.measured_on,
        },
        "image": {
            "id": stored_image.id,
            "hashKey": stored_image.hash_key,
        },
        "processedImage": {
            "base64": base64.b64encode(result.processed_image).decode("ascii"),
            "mimeType": result.mime_type,
        },
    })
