"""Async HTTP client for the AngleJournal API."""
import base64
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date

import httpx

from app.utils.dates import format_day, noon_utc

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"

_MALFORMED = "Unexpected response from the server, please retry"


class ApiError(Exception):
    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


@dataclass(frozen=True)
class UploadResult:
    measurement_id: int
    date: str
    angle: float
    angle2: float
    image_id: int
    hash_key: str
    processed_image: bytes
    mime_type: str


@contextmanager
def _payload(what: str):
    """Turn a response that lacks the expected fields into an ``ApiError``."""
    try:
        yield
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        logger.warning("Malformed %s response: %r", what, e)
        raise ApiError(_MALFORMED) from e


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"Request failed with status {response.status_code}"
    if isinstance(body, dict):
        return body.get("message") or str(body.get("detail") or f"Request failed with status {response.status_code}")
    return f"Request failed with status {response.status_code}"


class AngleJournalClient:
    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        api_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 60.0,
    ):
        headers = {"Accept": "application/json"}
        if api_key:
            headers["X-API-Key"] = api_key
        self._http = httpx.AsyncClient(base_url=base_url, headers=headers, transport=transport, timeout=timeout)
        self.token = token

    async def __aenter__(self) -> "AngleJournalClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(self, method: str, path: str, **kwargs):
        headers = kwargs.pop("headers", {})
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            response = await self._http.request(method, API_PREFIX + path, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("%s %s failed: %s", method, path, e)
            raise ApiError(f"Network error: {e}") from e
        if response.is_error:
            raise ApiError(_error_message(response), response.status_code)
        try:
            body = response.json()
        except ValueError as e:
            logger.warning("%s %s returned a non-JSON body (status %d)", method, path, response.status_code)
            raise ApiError(_MALFORMED, response.status_code) from e
        if not isinstance(body, dict) or "status" not in body:
            return body
        if body["status"] == "error":
            raise ApiError(body.get("message") or "Request failed", response.status_code)
        return body.get("data")

    async def login(self, username: str, password: str) -> str:
        data = await self._request("POST", "/auth/login", json={"username": username, "password": password})
        with _payload("login"):
            self.token = data["token"]
        return self.token

    async def has_conflict(self, day: date) -> bool:
        data = await self._request("GET", "/measurements/conflict", params={"date": format_day(day)})
        with _payload("conflict"):
            return bool(data["hasConflict"])

    async def upload(
        self,
        image: bytes,
        day: date,
        rotation: int = 0,
        filename: str = "photo.jpg",
    ) -> UploadResult | None:
        """Submit a canonical image for ``day``.

        Returns ``None`` when the server accepted the image without returning
        the stored measurement yet.
        """
        data = await self._request(
            "POST",
            "/images/upload",
            files={"image": (filename, image, "image/jpeg")},
            data={"customDate": noon_utc(day).isoformat(), "clientRotation": str(rotation)},
        )
        with _payload("upload"):
            measurement = (data or {}).get("measurement")
            if not measurement:
                return None
            processed = data.get("processedImage") or {}
            return UploadResult(
                measurement_id=measurement["id"],
                date=measurement["date"],
                angle=measurement["angle"],
                angle2=measurement["angle2"],
                image_id=data["image"]["id"],
                hash_key=data["image"]["hashKey"],
                processed_image=base64.b64decode(processed.get("base64", "")),
                mime_type=processed.get("mimeType", "image/jpeg"),
            )

    async def update_metadata(
        self,
        measurement_id: int,
        memo: str | None = None,
        icon_ids: list[int] | None = None,
    ) -> dict:
        """``None`` leaves a field unchanged; ``""`` or ``[]`` clears it."""
        body: dict = {}
        if memo is not None:
            body["memo"] = memo
        if icon_ids is not None:
            body["iconIds"] = ",".join(str(i) for i in icon_ids)
        return await self._request("PATCH", f"/measurements/{measurement_id}/metadata", json=body)

    async def get_measurement(self, measurement_id: int) -> dict:
        return await self._request("GET", f"/measurements/{measurement_id}")

    async def delete_measurement(self, measurement_id: int) -> None:
        await self._request("DELETE", f"/measurements/{measurement_id}")

    async def angle_data(
        self,
        start: date | None = None,
        end: date | None = None,
        days: int | None = None,
    ) -> list[dict]:
        params: dict = {}
        if start and end:
            params = {"start": format_day(start), "end": format_day(end)}
        elif days is not None:
            params = {"days": days}
        return await self._request("GET", "/angle-data", params=params)

    async def measurement_for_day(self, day: date) -> dict | None:
        rows = await self.angle_data(start=day, end=day)
        with _payload("angle data"):
            row = rows[0] if rows else None
            if row is not None and not isinstance(row.get("imageId"), int):
                raise KeyError("imageId")
        return row
