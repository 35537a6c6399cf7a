"""Client-side upload workflow.

Each state is its own immutable type carrying only the data valid in it::

    Initial --submit--> Uploading --ok--> Results --save--> Updating --ok--> Complete
       ^  \\                |                 ^  \\             |
       |   ConfirmingReplace|                 |   skip -> Complete
       +------ failure -----+                 +---- failure ----+

A conflict found before upload moves to ``ConfirmingReplace``; cancelling
there returns to ``Initial`` without side effects. The measurement exists as
soon as ``Results`` is reached, so abandoning the workflow afterwards keeps
it, only without memo or icons.
"""
import asyncio
import inspect
import logging
from dataclasses import dataclass, replace
from datetime import date
from typing import Awaitable, Callable, Union

from app.client.api import AngleJournalClient, ApiError
from app.client.polling import POLL_INTERVAL_SECONDS, POLL_TIMEOUT_SECONDS, MeasurementPoller
from app.services.preprocessor import preprocess
from app.utils.dates import utc_today
from app.utils.exceptions import ValidationError
from app.utils.icons import toggle_icon

logger = logging.getLogger(__name__)

MEMO_MAX_LENGTH = 100
COMPLETE_DELAY_SECONDS = 1.5
UNEXPECTED_ERROR = "Something went wrong, please retry"


class WorkflowStateError(Exception):
    """The action is not valid in the current state."""


class WorkflowBusyError(WorkflowStateError):
    """An upload or metadata update is already in flight."""


@dataclass(frozen=True)
class Initial:
    target_date: date | None = None
    image: bytes | None = None
    rotation: int = 0
    error: str | None = None


@dataclass(frozen=True)
class ConfirmingReplace:
    target_date: date
    canonical_image: bytes
    draft: Initial


@dataclass(frozen=True)
class Uploading:
    target_date: date
    draft: Initial


@dataclass(frozen=True)
class Results:
    measurement_id: int
    date: str
    angle: float
    angle2: float
    processed_image: bytes | None = None
    mime_type: str | None = None
    memo: str = ""
    icon_ids: tuple[int, ...] = ()
    error: str | None = None


@dataclass(frozen=True)
class Updating:
    results: Results


@dataclass(frozen=True)
class Complete:
    measurement_id: int
    annotated: bool


WorkflowState = Union[Initial, ConfirmingReplace, Uploading, Results, Updating, Complete]

CompleteCallback = Callable[[Complete], Union[None, Awaitable[None]]]


class UploadWorkflow:
    def __init__(
        self,
        client: AngleJournalClient,
        *,
        preprocess_image: Callable[[bytes, int], bytes] = preprocess,
        on_complete: CompleteCallback | None = None,
        complete_delay: float = COMPLETE_DELAY_SECONDS,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        poll_timeout: float = POLL_TIMEOUT_SECONDS,
        today: Callable[[], date] = utc_today,
    ):
        self._client = client
        self._preprocess = preprocess_image
        self._on_complete = on_complete
        self._complete_delay = complete_delay
        self._poll_interval = poll_interval
        self._poll_timeout = poll_timeout
        self._today = today
        self._state: WorkflowState = Initial()
        self.completion: asyncio.Task | None = None

    @property
    def state(self) -> WorkflowState:
        return self._state

    @property
    def busy(self) -> bool:
        return isinstance(self._state, (Uploading, Updating))

    def _expect(self, *types):
        if self.busy:
            raise WorkflowBusyError(f"Cannot do that while {type(self._state).__name__}")
        if not isinstance(self._state, types):
            raise WorkflowStateError(f"Cannot do that in state {type(self._state).__name__}")
        return self._state

    # Initial

    def select_date(self, day: date) -> None:
        state = self._expect(Initial)
        if day > self._today():
            raise ValidationError("Measurement date cannot be in the future")
        self._state = replace(state, target_date=day, error=None)

    def select_image(self, raw: bytes) -> None:
        state = self._expect(Initial)
        self._state = replace(state, image=raw, rotation=0, error=None)

    def rotate_left(self) -> None:
        state = self._expect(Initial)
        self._state = replace(state, rotation=(state.rotation - 90) % 360)

    def rotate_right(self) -> None:
        state = self._expect(Initial)
        self._state = replace(state, rotation=(state.rotation + 90) % 360)

    async def submit(self) -> WorkflowState:
        draft = self._expect(Initial)
        if draft.image is None:
            raise ValidationError("Please select an image file to upload")
        if draft.target_date is None:
            raise ValidationError("Please select a measurement date")

        day = draft.target_date
        self._state = Uploading(target_date=day, draft=draft)

        try:
            canonical = await asyncio.to_thread(self._preprocess, draft.image, draft.rotation)
        except ValidationError as e:
            logger.info("Preprocessing failed: %s", e.message)
            return self._fail_upload(draft, e.message)
        except Exception:
            logger.exception("Preprocessing failed unexpectedly")
            return self._fail_upload(draft, UNEXPECTED_ERROR)

        try:
            conflict = await self._client.has_conflict(day)
        except ApiError as e:
            return self._fail_upload(draft, e.message)
        except Exception:
            logger.exception("Conflict check for %s failed unexpectedly", day)
            return self._fail_upload(draft, UNEXPECTED_ERROR)

        if conflict:
            self._state = ConfirmingReplace(target_date=day, canonical_image=canonical, draft=draft)
            return self._state
        return await self._upload(day, canonical, draft)

    # ConfirmingReplace

    async def confirm_replace(self) -> WorkflowState:
        state = self._expect(ConfirmingReplace)
        self._state = Uploading(target_date=state.target_date, draft=state.draft)
        return await self._upload(state.target_date, state.canonical_image, state.draft)

    def cancel_replace(self) -> None:
        state = self._expect(ConfirmingReplace)
        self._state = state.draft

    # Uploading

    def _fail_upload(self, draft: Initial, message: str) -> WorkflowState:
        self._state = replace(draft, error=message)
        return self._state

    async def _upload(self, day: date, canonical: bytes, draft: Initial) -> WorkflowState:
        """Upload and move to ``Results``; any failure goes back to ``Initial``."""
        poller = MeasurementPoller(self._client, day, self._poll_interval, self._poll_timeout)
        try:
            self._state = await self._send(day, canonical, draft, poller)
        except ApiError as e:
            logger.info("Upload for %s failed: %s", day, e.message)
            return self._fail_upload(draft, e.message)
        except Exception:
            logger.exception("Upload for %s failed unexpectedly", day)
            return self._fail_upload(draft, UNEXPECTED_ERROR)
        finally:
            poller.cancel()
        return self._state

    async def _send(self, day: date, canonical: bytes, draft: Initial, poller: MeasurementPoller) -> WorkflowState:
        polling = False
        try:
            await poller.prime()
            poller.start()
            polling = True
        except ApiError as e:
            logger.debug("Polling fallback unavailable: %s", e.message)

        result = await self._client.upload(canonical, day, draft.rotation)
        if result is not None:
            return Results(
                measurement_id=result.measurement_id,
                date=result.date,
                angle=result.angle,
                angle2=result.angle2,
                processed_image=result.processed_image,
                mime_type=result.mime_type,
            )

        row = await poller.wait() if polling else None
        if row is None:
            raise ApiError("The measurement was not confirmed in time, please retry")
        return Results(
            measurement_id=row["id"],
            date=row["date"],
            angle=row["angle"],
            angle2=row["angle2"],
        )

    # Results

    def set_memo(self, memo: str) -> None:
        state = self._expect(Results)
        if len(memo) > MEMO_MAX_LENGTH:
            raise ValidationError(f"Memo must be at most {MEMO_MAX_LENGTH} characters")
        self._state = replace(state, memo=memo)

    def toggle_icon(self, icon_id: int) -> None:
        state = self._expect(Results)
        self._state = replace(state, icon_ids=tuple(toggle_icon(list(state.icon_ids), icon_id)))

    async def save_metadata(self) -> WorkflowState:
        results = self._expect(Results)
        self._state = Updating(results=results)
        try:
            await self._client.update_metadata(
                results.measurement_id,
                memo=results.memo or None,
                icon_ids=list(results.icon_ids) or None,
            )
        except ApiError as e:
            logger.info("Saving details for measurement %d failed: %s", results.measurement_id, e.message)
            self._state = replace(results, error=e.message)
            return self._state
        except Exception:
            logger.exception("Saving details for measurement %d failed unexpectedly", results.measurement_id)
            self._state = replace(results, error=UNEXPECTED_ERROR)
            return self._state
        return self._finish(Complete(measurement_id=results.measurement_id, annotated=True))

    def skip(self) -> WorkflowState:
        results = self._expect(Results)
        return self._finish(Complete(measurement_id=results.measurement_id, annotated=False))

    def _finish(self, complete: Complete) -> WorkflowState:
        self._state = complete
        if self._on_complete is not None:
            self.completion = asyncio.create_task(self._notify(complete))
        return complete

    async def _notify(self, complete: Complete) -> None:
        await asyncio.sleep(self._complete_delay)
        outcome = self._on_complete(complete)
        if inspect.isawaitable(outcome):
            await outcome

    def cancel(self) -> None:
        """Abandon the workflow; anything already stored stays stored."""
        self._expect(Initial, ConfirmingReplace, Results, Complete)
        self._state = Initial()
