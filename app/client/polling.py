import asyncio
import logging
from datetime import date

from app.client.api import AngleJournalClient, ApiError

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 2.0
POLL_TIMEOUT_SECONDS = 30.0


def _image_id(row) -> int | None:
    if not row:
        return None
    try:
        return row["imageId"]
    except (KeyError, TypeError) as e:
        raise ApiError(f"Malformed measurement row: {row!r}") from e


class MeasurementPoller:
    """Read-side fallback that watches for a new measurement on ``day``.

    ``prime`` records the row already stored for the day (if any); the
    poller then only reports a row backed by a different image. Polling
    stops when ``cancel`` is called or, unconditionally, after ``timeout``.
    """

    def __init__(
        self,
        client: AngleJournalClient,
        day: date,
        interval: float = POLL_INTERVAL_SECONDS,
        timeout: float = POLL_TIMEOUT_SECONDS,
    ):
        self._client = client
        self._day = day
        self._interval = interval
        self._timeout = timeout
        self._baseline_image_id: int | None = None
        self._task: asyncio.Task | None = None
        self.attempts = 0

    async def prime(self) -> None:
        row = await self._client.measurement_for_day(self._day)
        self._baseline_image_id = _image_id(row)

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self._run_bounded())
        return self._task

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def cancel(self) -> None:
        if self.active:
            logger.debug("Cancelling poll for %s after %d attempts", self._day, self.attempts)
            self._task.cancel()
        elif self._task is not None and not self._task.cancelled() and self._task.exception() is not None:
            # retrieve the error so it is not reported as unhandled
            logger.warning("Poll for %s had failed: %r", self._day, self._task.exception())

    async def wait(self) -> dict | None:
        """Result of the poll: the new row, or ``None`` if it never showed up."""
        task = self.start()
        if task.cancelled():
            return None
        return await task

    async def _run_bounded(self) -> dict | None:
        try:
            return await asyncio.wait_for(self._poll(), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.info("No new measurement for %s within %.0fs", self._day, self._timeout)
            return None

    async def _poll(self) -> dict:
        while True:
            await asyncio.sleep(self._interval)
            self.attempts += 1
            try:
                row = await self._client.measurement_for_day(self._day)
                image_id = _image_id(row)
            except ApiError as e:
                logger.debug("Poll attempt %d failed: %s", self.attempts, e.message)
                continue
            except Exception:
                logger.warning("Poll attempt %d failed unexpectedly", self.attempts, exc_info=True)
                continue
            if image_id is not None and image_id != self._baseline_image_id:
                return row
