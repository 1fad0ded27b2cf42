"""Tests for the camera exposure state machine."""

import asyncio

from conftest import TELESCOPE_HOST, new_image_ready
from origin_bridge.clients.origin_client import CameraState, EventType
from origin_bridge.clients.origin_protocol import ChannelError, ImageDownloadError


class TestExposureLifecycle:
    """Test IDLE -> EXPOSING -> READING -> IDLE."""

    async def test_full_exposure(self, connected_client, channel, fetcher, recorder, settings):
        """Exposure, notification and download end with the image cached."""
        fetcher.responses["capture_0001.tiff"] = b"\x00" * 50000
        fetcher.gate = asyncio.Event()

        assert await connected_client.start_exposure(2.0, 400) is True
        assert connected_client.camera_state == CameraState.EXPOSING
        assert connected_client.is_exposing

        message = channel.sent[-1]
        assert message["Command"] == "RunSampleCapture"
        assert message["Destination"] == "TaskController"
        assert message["ExposureTime"] == 2.0
        assert message["ISO"] == 400

        await channel.deliver(new_image_ready("capture_0001.tiff"))
        assert connected_client.camera_state == CameraState.READING
        assert connected_client.last_image_path == "capture_0001.tiff"

        fetcher.gate.set()
        await connected_client.wait_for_downloads()

        assert connected_client.camera_state == CameraState.IDLE
        assert connected_client.is_image_ready
        assert len(connected_client.last_image_data) == 50000
        assert connected_client.last_image_format == "TIFF"
        assert not connected_client.snapshot_in_progress

        types = recorder.types()
        assert types.index(EventType.EXPOSURE_STARTED) < types.index(EventType.EXPOSURE_COMPLETE)
        assert types.index(EventType.EXPOSURE_COMPLETE) < types.index(EventType.IMAGE_READY)
        assert recorder.of_type(EventType.IMAGE_READY)[0].data["path"] == "capture_0001.tiff"

        saved = list(settings.image_dir.rglob("*.tiff"))
        assert len(saved) == 1
        assert "_exp2.00s" in saved[0].name

    async def test_exposure_records_settings(self, connected_client):
        assert await connected_client.start_exposure(3.5, 150)

        assert connected_client.last_exposure_duration == 3.5
        assert connected_client.current_gain == 150
        assert connected_client.last_exposure_start_time is not None
        assert not connected_client.is_image_ready
        assert connected_client.snapshot_in_progress

    async def test_second_exposure_rejected(self, connected_client, channel):
        """A new exposure cannot start while one is running."""
        assert await connected_client.start_exposure(2.0, 400)
        sent_before = len(channel.sent)

        assert await connected_client.start_exposure(1.0, 100) is False

        assert connected_client.camera_state == CameraState.EXPOSING
        assert connected_client.last_exposure_duration == 2.0
        assert len(channel.sent) == sent_before

    async def test_failed_send_leaves_idle(self, connected_client, channel):
        channel.send_error = ChannelError("broken pipe")

        assert await connected_client.start_exposure(1.0) is False
        assert connected_client.camera_state == CameraState.IDLE
        assert not connected_client.snapshot_in_progress

    async def test_live_frames_do_not_complete_exposure(self, connected_client, channel, fetcher):
        assert await connected_client.start_exposure(2.0)

        await channel.deliver(new_image_ready("Images/Temp/live.jpg"))

        assert connected_client.camera_state == CameraState.EXPOSING
        assert fetcher.calls == []


class TestAbortAndGain:
    """Test abort, gain and reset."""

    async def test_abort_exposure(self, connected_client, channel):
        assert await connected_client.start_exposure(10.0)

        assert await connected_client.abort_exposure() is True

        assert connected_client.camera_state == CameraState.IDLE
        assert channel.sent[-1]["Command"] == "AbortExposure"
        assert channel.sent[-1]["Destination"] == "Camera"

    async def test_live_frames_resume_after_abort(self, connected_client, channel, fetcher):
        """Aborting hands the stream back to live frames."""
        assert await connected_client.start_exposure(5.0)
        assert await connected_client.abort_exposure()
        assert not connected_client.snapshot_in_progress

        await channel.deliver(new_image_ready("Images/Temp/live_0.jpg"))
        await connected_client.wait_for_downloads()

        assert fetcher.calls == [(TELESCOPE_HOST, "Images/Temp/live_0.jpg")]
        assert connected_client.camera_state == CameraState.IDLE

    async def test_abort_keeps_earlier_snapshot_pending(self, connected_client, channel, fetcher):
        assert await connected_client.take_snapshot(1.0, 100)
        assert await connected_client.start_exposure(5.0)
        assert await connected_client.abort_exposure()

        assert connected_client.snapshot_in_progress
        await channel.deliver(new_image_ready("Images/Temp/live_1.jpg"))
        await connected_client.wait_for_downloads()
        assert fetcher.calls == []

    async def test_abort_when_idle(self, connected_client, channel):
        assert await connected_client.abort_exposure() is False
        assert channel.sent == []

    async def test_abort_does_not_cancel_download(self, connected_client, channel, fetcher):
        """A download already triggered still completes after an abort."""
        fetcher.gate = asyncio.Event()
        assert await connected_client.start_exposure(2.0)
        await channel.deliver(new_image_ready("capture_0002.tiff"))

        assert await connected_client.abort_exposure() is False  # already READING

        fetcher.gate.set()
        await connected_client.wait_for_downloads()
        assert connected_client.camera_state == CameraState.IDLE
        assert connected_client.is_image_ready

    async def test_set_gain(self, connected_client, channel):
        assert await connected_client.start_exposure(4.0)
        assert await connected_client.set_gain(600)

        message = channel.sent[-1]
        assert message["Command"] == "SetCaptureParameters"
        assert message["ISO"] == 600
        assert message["Exposure"] == 4.0
        assert connected_client.current_gain == 600
        assert connected_client.camera_state == CameraState.EXPOSING

    async def test_set_gain_requires_logical_connection(self, connected_client, channel):
        connected_client.set_connected(False)

        assert await connected_client.set_gain(600) is False
        assert channel.sent == []


class TestDownloadFailure:
    """Test ERROR state handling."""

    async def _fail_exposure(self, client, channel, fetcher):
        fetcher.responses["capture_0003.tiff"] = ImageDownloadError("HTTP 404")
        assert await client.start_exposure(2.0)
        await channel.deliver(new_image_ready("capture_0003.tiff"))
        await client.wait_for_downloads()

    async def test_failed_download_moves_to_error(self, connected_client, channel, fetcher, recorder):
        await self._fail_exposure(connected_client, channel, fetcher)

        assert connected_client.camera_state == CameraState.ERROR
        assert not connected_client.snapshot_in_progress
        assert not connected_client.is_image_ready
        states = [event.data["state"] for event in recorder.of_type(EventType.CAMERA_STATE_CHANGED)]
        assert states[-1] == int(CameraState.ERROR)

    async def test_unexpected_fetch_error_moves_to_error(self, connected_client, channel, fetcher):
        fetcher.responses["capture_0004.tiff"] = RuntimeError("socket exploded")
        assert await connected_client.start_exposure(2.0)
        await channel.deliver(new_image_ready("capture_0004.tiff"))
        await connected_client.wait_for_downloads()

        assert connected_client.camera_state == CameraState.ERROR

    async def test_error_blocks_new_exposure(self, connected_client, channel, fetcher):
        await self._fail_exposure(connected_client, channel, fetcher)

        assert await connected_client.start_exposure(1.0) is False
        assert connected_client.camera_state == CameraState.ERROR

    async def test_reset_camera(self, connected_client, channel, fetcher):
        await self._fail_exposure(connected_client, channel, fetcher)

        assert connected_client.reset_camera() is True
        assert connected_client.camera_state == CameraState.IDLE
        assert await connected_client.start_exposure(1.0) is True

    async def test_reset_outside_error(self, connected_client):
        assert connected_client.reset_camera() is False

        assert await connected_client.start_exposure(1.0)
        assert connected_client.reset_camera() is False
        assert connected_client.camera_state == CameraState.EXPOSING
