"""Tests for image notification handling and downloads."""

import asyncio

import cv2
import numpy as np
import pytest

from conftest import TELESCOPE_HOST, new_image_ready
from origin_bridge.clients.origin_client import CameraState, EventType, decode_image
from origin_bridge.clients.origin_protocol import ImageDownloadError


@pytest.fixture
def jpeg_bytes():
    """A small real JPEG."""
    image = np.full((8, 12, 3), 127, dtype=np.uint8)
    ok, buffer = cv2.imencode(".jpg", image)
    assert ok
    return buffer.tobytes()


class TestSnapshotFlag:
    """Live frames never displace a pending snapshot."""

    async def test_live_frame_ignored_while_snapshot_pending(self, connected_client, channel, fetcher):
        assert await connected_client.take_snapshot(1.0, 200)
        assert connected_client.snapshot_in_progress

        await channel.deliver(new_image_ready("Images/Temp/0.jpg"))
        await connected_client.wait_for_downloads()

        assert fetcher.calls == []
        assert connected_client.snapshot_in_progress

    async def test_snapshot_download_clears_flag(self, connected_client, channel, fetcher, recorder):
        fetcher.responses["Images/Astro/snap.tiff"] = b"II*\x00tiffdata"
        assert await connected_client.take_snapshot(2.0, 800)

        await channel.deliver(new_image_ready("Images/Astro/snap.tiff", Ra=1.0, Dec=0.5, ExposureTime=2.0))
        await connected_client.wait_for_downloads()

        assert fetcher.calls == [(TELESCOPE_HOST, "Images/Astro/snap.tiff")]
        assert not connected_client.snapshot_in_progress
        event = recorder.of_type(EventType.SNAPSHOT_DOWNLOADED)[0]
        assert event.data["data"] == b"II*\x00tiffdata"
        assert event.data["ra"] == 1.0
        assert event.data["dec"] == 0.5
        assert event.data["exposure"] == 2.0

    async def test_snapshot_clear_is_idempotent(self, connected_client, channel):
        """An unsolicited TIFF with no snapshot pending leaves the flag cleared."""
        await channel.deliver(new_image_ready("Images/Astro/extra.tif"))
        await connected_client.wait_for_downloads()

        assert not connected_client.snapshot_in_progress

    async def test_failed_snapshot_download_clears_flag(self, connected_client, channel, fetcher):
        fetcher.responses["Images/Astro/snap.tiff"] = ImageDownloadError("HTTP 500")
        assert await connected_client.take_snapshot(1.0, 200)

        await channel.deliver(new_image_ready("Images/Astro/snap.tiff"))
        await connected_client.wait_for_downloads()

        assert not connected_client.snapshot_in_progress
        assert connected_client.camera_state == CameraState.IDLE

    async def test_failed_live_frame_keeps_snapshot_pending(self, connected_client, channel, fetcher):
        """A live frame failing after a snapshot request does not release the snapshot."""
        fetcher.responses["Images/Temp/2.jpg"] = ImageDownloadError("HTTP 404")
        fetcher.gate = asyncio.Event()
        await channel.deliver(new_image_ready("Images/Temp/2.jpg"))

        assert await connected_client.take_snapshot(1.0, 200)
        fetcher.gate.set()
        await connected_client.wait_for_downloads()

        assert connected_client.snapshot_in_progress
        assert connected_client.camera_state == CameraState.IDLE

    async def test_live_frames_resume_after_snapshot(self, connected_client, channel, fetcher, jpeg_bytes):
        fetcher.default = jpeg_bytes
        assert await connected_client.take_single_snapshot()

        await channel.deliver(new_image_ready("Images/Astro/snap.tiff"))
        await connected_client.wait_for_downloads()
        await channel.deliver(new_image_ready("Images/Temp/1.jpg"))
        await connected_client.wait_for_downloads()

        assert [path for _, path in fetcher.calls] == ["Images/Astro/snap.tiff", "Images/Temp/1.jpg"]

    async def test_snapshot_requested_event(self, connected_client, channel, recorder):
        assert await connected_client.take_snapshot(0.5, 100)

        assert channel.sent[-1]["Command"] == "RunSampleCapture"
        assert recorder.of_type(EventType.SNAPSHOT_REQUESTED)[0].data == {"exposure": 0.5, "iso": 100}

    async def test_notification_without_location(self, connected_client, channel, fetcher):
        await channel.deliver({"Type": "Notification", "Command": "NewImageReady", "Source": "ImageServer"})
        await connected_client.wait_for_downloads()

        assert fetcher.calls == []


class TestLiveFrames:
    """Test live-view JPEG handling."""

    async def test_live_frame_decoded(self, connected_client, channel, fetcher, recorder, jpeg_bytes):
        fetcher.default = jpeg_bytes

        await channel.deliver(new_image_ready("Images/Temp/2.jpg", Ra=0.1, Dec=0.2, ExposureTime=0.05))
        await connected_client.wait_for_downloads()

        assert connected_client.last_image is not None
        assert connected_client.last_image.shape == (8, 12, 3)
        assert connected_client.is_image_ready
        assert connected_client.camera_state == CameraState.IDLE
        event = recorder.of_type(EventType.LIVE_IMAGE_DOWNLOADED)[0]
        assert event.data["data"] == jpeg_bytes
        assert event.data["exposure"] == 0.05

    async def test_undecodable_frame_not_cached(self, connected_client, channel, fetcher, recorder):
        fetcher.default = b"definitely not a jpeg"

        await channel.deliver(new_image_ready("Images/Temp/3.jpg"))
        await connected_client.wait_for_downloads()

        assert connected_client.last_image is None
        assert not connected_client.is_image_ready
        assert not recorder.of_type(EventType.LIVE_IMAGE_DOWNLOADED)

    async def test_overlapping_downloads(self, connected_client, channel, fetcher, jpeg_bytes):
        fetcher.default = jpeg_bytes

        for index in range(3):
            await channel.deliver(new_image_ready(f"Images/Temp/{index}.jpg"))
        await connected_client.wait_for_downloads()

        assert len(fetcher.calls) == 3

    def test_decode_image_empty(self):
        assert decode_image(b"") is None


class TestImageSaving:
    """Test archive integration."""

    async def test_image_saved_with_sidecar(self, connected_client, channel, settings, jpeg_bytes, fetcher):
        fetcher.default = jpeg_bytes

        await channel.deliver(new_image_ready("Images/Temp/4.jpg", Ra=0.0, Dec=0.0, ExposureTime=1.0))
        await connected_client.wait_for_downloads()

        images = list(settings.image_dir.rglob("*.jpg"))
        assert len(images) == 1
        sidecar = images[0].with_name(images[0].name + ".txt")
        assert "Original path: Images/Temp/4.jpg" in sidecar.read_text()

    async def test_saving_disabled(self, connected_client, channel, settings, jpeg_bytes, fetcher):
        fetcher.default = jpeg_bytes
        connected_client.enable_image_saving(False)

        await channel.deliver(new_image_ready("Images/Temp/5.jpg"))
        await connected_client.wait_for_downloads()

        assert not list(settings.image_dir.rglob("*.jpg"))

    async def test_custom_save_path(self, connected_client, channel, tmp_path, jpeg_bytes, fetcher):
        fetcher.default = jpeg_bytes
        target = tmp_path / "custom"

        assert connected_client.set_image_save_path(target)
        assert connected_client.image_save_path == target

        await channel.deliver(new_image_ready("Images/Temp/6.jpg"))
        await connected_client.wait_for_downloads()

        assert len(list(target.glob("*.jpg"))) == 1
