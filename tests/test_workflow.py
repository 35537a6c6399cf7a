import asyncio
from datetime import date, timedelta

import pytest
import httpx
import pytest_asyncio
from httpx import ASGITransport

from app.client.api import AngleJournalClient, ApiError, UploadResult
from app.client.workflow import (
    UNEXPECTED_ERROR,
    Complete,
    ConfirmingReplace,
    Initial,
    Results,
    UploadWorkflow,
    Uploading,
    WorkflowBusyError,
    WorkflowStateError,
)
from app.main import app
from app.utils.dates import utc_today
from app.utils.exceptions import ValidationError

DAY = date(2025, 4, 1)


def _passthrough(raw, rotation):
    return raw


@pytest_asyncio.fixture
async def api(user):
    client = AngleJournalClient("http://test", token=user.token, transport=ASGITransport(app=app))
    yield client
    await client.aclose()


class FakeClient:
    """Stands in for the HTTP client where a test needs to steer the server."""

    def __init__(self, upload_result=None, conflict=False, rows=None):
        self.upload_result = upload_result
        self.conflict = conflict
        self.rows = list(rows or [None])
        self.upload_error: Exception | None = None
        self.metadata_error: Exception | None = None
        self.conflict_gate: asyncio.Event | None = None
        self.uploads = []
        self.metadata = []

    async def has_conflict(self, day):
        if self.conflict_gate is not None:
            await self.conflict_gate.wait()
        return self.conflict

    async def upload(self, image, day, rotation=0, filename="photo.jpg"):
        self.uploads.append((image, day, rotation))
        if self.upload_error is not None:
            raise self.upload_error
        return self.upload_result

    async def update_metadata(self, measurement_id, memo=None, icon_ids=None):
        if self.metadata_error is not None:
            raise self.metadata_error
        self.metadata.append((measurement_id, memo, icon_ids))
        return {}

    async def measurement_for_day(self, day):
        return self.rows[0] if len(self.rows) == 1 else self.rows.pop(0)


def _result(measurement_id=1):
    return UploadResult(
        measurement_id=measurement_id,
        date="2025-04-01",
        angle=12.5,
        angle2=3.25,
        image_id=measurement_id,
        hash_key="0" * 32,
        processed_image=b"processed",
        mime_type="image/jpeg",
    )


def _ready(client, **kwargs) -> UploadWorkflow:
    workflow = UploadWorkflow(client, preprocess_image=_passthrough, poll_interval=0.01, poll_timeout=0.2, **kwargs)
    workflow.select_date(DAY)
    workflow.select_image(b"raw")
    return workflow


@pytest.mark.asyncio
async def test_upload_annotate_and_complete(api, make_image):
    workflow = UploadWorkflow(api, poll_interval=0.05)
    workflow.select_date(DAY)
    workflow.select_image(make_image())

    state = await workflow.submit()

    assert isinstance(state, Results)
    assert state.date == "2025-04-01"
    assert state.processed_image.startswith(b"\xff\xd8")

    workflow.set_memo("after the walk")
    workflow.toggle_icon(1)
    workflow.toggle_icon(8)
    state = await workflow.save_metadata()

    assert isinstance(state, Complete)
    assert state.annotated
    stored = await api.get_measurement(state.measurement_id)
    assert stored["memo"] == "after the walk"
    assert stored["iconIds"] == [1, 8]


@pytest.mark.asyncio
async def test_existing_day_needs_confirmation(api, make_image):
    first = UploadWorkflow(api, poll_interval=0.05)
    first.select_date(DAY)
    first.select_image(make_image(tilt=5.0))
    original = await first.submit()

    workflow = UploadWorkflow(api, poll_interval=0.05)
    workflow.select_date(DAY)
    workflow.select_image(make_image(tilt=25.0))
    workflow.rotate_right()

    state = await workflow.submit()
    assert isinstance(state, ConfirmingReplace)

    workflow.cancel_replace()
    assert isinstance(workflow.state, Initial)
    assert workflow.state.rotation == 90
    assert (await api.get_measurement(original.measurement_id))["id"] == original.measurement_id

    assert isinstance(await workflow.submit(), ConfirmingReplace)
    replaced = await workflow.confirm_replace()

    assert isinstance(replaced, Results)
    assert replaced.measurement_id != original.measurement_id
    with pytest.raises(ApiError) as exc_info:
        await api.get_measurement(original.measurement_id)
    assert exc_info.value.status_code == 404
    rows = await api.angle_data(start=DAY, end=DAY)
    assert [r["id"] for r in rows] == [replaced.measurement_id]


@pytest.mark.asyncio
async def test_future_date_cannot_be_selected():
    workflow = UploadWorkflow(FakeClient())
    with pytest.raises(ValidationError):
        workflow.select_date(utc_today() + timedelta(days=1))
    assert workflow.state == Initial()

    workflow.select_date(utc_today())
    assert workflow.state.target_date == utc_today()


@pytest.mark.asyncio
async def test_submit_requires_image_and_date():
    workflow = UploadWorkflow(FakeClient(), preprocess_image=_passthrough)
    with pytest.raises(ValidationError):
        await workflow.submit()

    workflow.select_image(b"raw")
    with pytest.raises(ValidationError):
        await workflow.submit()


def test_rotation_wraps():
    workflow = UploadWorkflow(FakeClient())
    workflow.select_image(b"raw")
    workflow.rotate_left()
    assert workflow.state.rotation == 270
    workflow.rotate_right()
    workflow.rotate_right()
    assert workflow.state.rotation == 90

    workflow.select_image(b"other")
    assert workflow.state.rotation == 0


@pytest.mark.asyncio
async def test_unreadable_image_returns_to_initial_with_error():
    client = FakeClient(upload_result=_result())
    workflow = UploadWorkflow(client, poll_interval=0.01)
    workflow.select_date(DAY)
    workflow.select_image(b"definitely not a photo")

    state = await workflow.submit()

    assert isinstance(state, Initial)
    assert state.error
    assert state.image == b"definitely not a photo"
    assert client.uploads == []


@pytest.mark.asyncio
async def test_server_error_returns_to_initial_with_error():
    client = FakeClient()
    client.upload_error = ApiError("Image processing failed, please retry", 422)
    workflow = _ready(client)

    state = await workflow.submit()

    assert isinstance(state, Initial)
    assert state.error == "Image processing failed, please retry"
    assert state.target_date == DAY


@pytest.mark.asyncio
async def test_actions_rejected_while_uploading():
    client = FakeClient(upload_result=_result())
    client.conflict_gate = asyncio.Event()
    workflow = _ready(client)

    submit = asyncio.create_task(workflow.submit())
    await asyncio.sleep(0.01)

    assert isinstance(workflow.state, Uploading)
    assert workflow.busy
    with pytest.raises(WorkflowBusyError):
        workflow.select_date(DAY)
    with pytest.raises(WorkflowBusyError):
        await workflow.submit()

    client.conflict_gate.set()
    assert isinstance(await submit, Results)
    assert len(client.uploads) == 1


@pytest.mark.asyncio
async def test_actions_outside_their_state_are_rejected():
    workflow = UploadWorkflow(FakeClient())
    with pytest.raises(WorkflowStateError):
        await workflow.confirm_replace()
    with pytest.raises(WorkflowStateError):
        workflow.set_memo("x")
    with pytest.raises(WorkflowStateError):
        workflow.skip()


@pytest.mark.asyncio
async def test_memo_length_is_limited():
    workflow = _ready(FakeClient(upload_result=_result()))
    await workflow.submit()

    with pytest.raises(ValidationError):
        workflow.set_memo("x" * 101)
    workflow.set_memo("x" * 100)
    assert workflow.state.memo == "x" * 100


@pytest.mark.asyncio
async def test_icon_selection_keeps_three_most_recent():
    workflow = _ready(FakeClient(upload_result=_result()))
    await workflow.submit()

    for icon_id in (1, 2, 3, 4):
        workflow.toggle_icon(icon_id)
    assert workflow.state.icon_ids == (2, 3, 4)

    workflow.toggle_icon(3)
    assert workflow.state.icon_ids == (2, 4)


@pytest.mark.asyncio
async def test_metadata_failure_stays_on_results():
    client = FakeClient(upload_result=_result(7))
    client.metadata_error = ApiError("Unauthorized", 403)
    workflow = _ready(client)
    await workflow.submit()
    workflow.set_memo("note")

    state = await workflow.save_metadata()

    assert isinstance(state, Results)
    assert state.error == "Unauthorized"
    assert state.memo == "note"

    client.metadata_error = None
    assert isinstance(await workflow.save_metadata(), Complete)
    assert client.metadata == [(7, "note", None)]


@pytest.mark.asyncio
async def test_skip_completes_and_notifies():
    completed = []

    async def on_complete(complete):
        completed.append(complete)

    workflow = _ready(FakeClient(upload_result=_result(3)), on_complete=on_complete, complete_delay=0)
    await workflow.submit()

    state = workflow.skip()
    await workflow.completion

    assert state == Complete(measurement_id=3, annotated=False)
    assert completed == [state]


@pytest.mark.asyncio
async def test_polling_fallback_when_upload_returns_nothing():
    row = {"id": 11, "date": "2025-04-01", "angle": 8.0, "angle2": 9.0, "imageId": 21}
    client = FakeClient(upload_result=None, rows=[None, None, row])
    workflow = _ready(client)

    state = await workflow.submit()

    assert isinstance(state, Results)
    assert state.measurement_id == 11
    assert state.angle == 8.0
    assert state.processed_image is None


@pytest.mark.asyncio
async def test_polling_fallback_times_out():
    client = FakeClient(upload_result=None)
    workflow = _ready(client)

    state = await workflow.submit()

    assert isinstance(state, Initial)
    assert "not confirmed" in state.error


@pytest.mark.asyncio
async def test_cancel_after_results_keeps_measurement(api, make_image):
    workflow = UploadWorkflow(api, poll_interval=0.05)
    workflow.select_date(DAY)
    workflow.select_image(make_image())
    results = await workflow.submit()

    workflow.cancel()

    assert workflow.state == Initial()
    stored = await api.get_measurement(results.measurement_id)
    assert stored["memo"] is None
    assert stored["iconIds"] == []


def _gateway(upload=None, metadata=None):
    """A server that answers the read calls but returns ``upload``/``metadata`` for writes."""
    def handler(request):
        path = request.url.path
        if path.endswith("/measurements/conflict"):
            return httpx.Response(200, json={"status": "success", "data": {"hasConflict": False}, "message": None})
        if path.endswith("/angle-data"):
            return httpx.Response(200, json={"status": "success", "data": [], "message": None})
        if path.endswith("/images/upload") and upload is not None:
            return upload
        if path.endswith("/metadata") and metadata is not None:
            return metadata
        return httpx.Response(201, json={"status": "success", "data": {
            "success": True,
            "measurement": {"id": 5, "angle": 1.0, "angle2": 2.0, "date": "2025-04-01"},
            "image": {"id": 6, "hashKey": "0" * 32},
            "processedImage": {"base64": "", "mimeType": "image/jpeg"},
        }, "message": None})
    return AngleJournalClient("http://test", token="t", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_html_upload_response_returns_to_initial():
    client = _gateway(upload=httpx.Response(200, text="<html>gateway</html>"))
    workflow = _ready(client)

    state = await workflow.submit()

    assert isinstance(state, Initial)
    assert state.error == "Unexpected response from the server, please retry"
    assert not workflow.busy
    workflow.cancel()
    assert workflow.state == Initial()
    await client.aclose()


@pytest.mark.asyncio
async def test_unexpected_upload_failure_returns_to_initial():
    client = FakeClient()
    client.upload_error = RuntimeError("socket closed")
    workflow = _ready(client)

    state = await workflow.submit()

    assert isinstance(state, Initial)
    assert state.error == UNEXPECTED_ERROR
    assert state.image == b"raw"
    assert not workflow.busy


@pytest.mark.asyncio
async def test_unexpected_preprocess_failure_returns_to_initial():
    def explode(raw, rotation):
        raise RuntimeError("decoder crashed")

    workflow = UploadWorkflow(FakeClient(), preprocess_image=explode)
    workflow.select_date(DAY)
    workflow.select_image(b"raw")

    state = await workflow.submit()

    assert isinstance(state, Initial)
    assert state.error == UNEXPECTED_ERROR


@pytest.mark.asyncio
async def test_html_metadata_response_stays_on_results():
    client = _gateway(metadata=httpx.Response(200, text="<html>gateway</html>"))
    workflow = _ready(client)
    assert isinstance(await workflow.submit(), Results)
    workflow.set_memo("note")

    state = await workflow.save_metadata()

    assert isinstance(state, Results)
    assert state.error == "Unexpected response from the server, please retry"
    assert state.memo == "note"
    assert isinstance(workflow.skip(), Complete)
    await client.aclose()


@pytest.mark.asyncio
async def test_unexpected_metadata_failure_stays_on_results():
    client = FakeClient(upload_result=_result(9))
    client.metadata_error = RuntimeError("boom")
    workflow = _ready(client)
    await workflow.submit()

    state = await workflow.save_metadata()

    assert isinstance(state, Results)
    assert state.error == UNEXPECTED_ERROR
    assert not workflow.busy
