"""API routes for Origin telescope control."""

import logging
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response
from pydantic import BaseModel, Field

from origin_bridge.api.deps import get_connected_mount, get_mount
from origin_bridge.core.config import get_settings
from origin_bridge.telescope.origin_mount import OriginMount

logger = logging.getLogger(__name__)

router = APIRouter()

IMAGE_MEDIA_TYPES = {"JPEG": "image/jpeg", "TIFF": "image/tiff"}


# ==========================================
# Request Models
# ==========================================


class TelescopeConnectRequest(BaseModel):
    host: Optional[str] = None  # Falls back to ORIGIN_DEFAULT_HOST
    port: Optional[int] = None


class CoordinatesRequest(BaseModel):
    """Equatorial coordinates for goto and sync."""

    ra: float = Field(..., ge=0.0, lt=24.0, description="Right ascension in hours")
    dec: float = Field(..., ge=-90.0, le=90.0, description="Declination in degrees")


class TrackingRequest(BaseModel):
    enabled: bool


class ExposureRequest(BaseModel):
    """Request to start a camera exposure."""

    duration: float = Field(..., gt=0.0, description="Exposure time in seconds")
    gain: int = Field(default=200, ge=0)


class GainRequest(BaseModel):
    gain: int = Field(..., ge=0)


# ==========================================
# Connection
# ==========================================


@router.post("/connect")
async def connect_telescope(request: TelescopeConnectRequest, mount: OriginMount = Depends(get_mount)):
    """
    Connect to the Origin telescope.

    Args:
        request: Host and optional port

    Returns:
        Connection status
    """
    settings = get_settings()
    host = request.host or settings.default_host
    port = request.port or settings.default_port
    if not host:
        raise HTTPException(status_code=400, detail="Must provide host parameter")

    try:
        success = await mount.connect(host, port)
    except Exception as e:
        logger.error(f"Connect to {host}:{port} failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Connection failed: {str(e)}")

    if not success:
        raise HTTPException(status_code=500, detail="Connection failed")

    return {
        "success": True,
        "connected": True,
        "host": host,
        "port": port,
        "message": f"Connected to Origin at {host}:{port}",
    }


@router.post("/disconnect")
async def disconnect_telescope(mount: OriginMount = Depends(get_mount)):
    """Disconnect from the telescope."""
    await mount.disconnect()
    return {"success": True, "connected": False, "message": "Disconnected from telescope"}


@router.get("/status")
async def get_telescope_status(mount: OriginMount = Depends(get_mount)):
    """
    Get current telescope status.

    Returns:
        Mount position, motion flags and connection state
    """
    status = mount.status()
    return {
        **asdict(status),
        "connected": mount.is_connected(),
        "host": mount.connected_host(),
    }


# ==========================================
# Mount
# ==========================================


@router.post("/goto")
async def goto_coordinates(request: CoordinatesRequest, mount: OriginMount = Depends(get_connected_mount)):
    """Slew to RA (hours) / Dec (degrees)."""
    success = await mount.slew(request.ra, request.dec)
    return {"success": success}


@router.post("/sync")
async def sync_coordinates(request: CoordinatesRequest, mount: OriginMount = Depends(get_connected_mount)):
    success = await mount.sync(request.ra, request.dec)
    return {"success": success}


@router.post("/abort")
async def abort_motion(mount: OriginMount = Depends(get_connected_mount)):
    success = await mount.abort()
    return {"success": success}


@router.post("/park")
async def park_telescope(mount: OriginMount = Depends(get_connected_mount)):
    success = await mount.park()
    return {"success": success}


@router.post("/unpark")
async def unpark_telescope(mount: OriginMount = Depends(get_connected_mount)):
    success = await mount.unpark()
    return {"success": success}


@router.post("/tracking")
async def set_tracking(request: TrackingRequest, mount: OriginMount = Depends(get_connected_mount)):
    success = await mount.track(request.enabled)
    return {"success": success}


# ==========================================
# Camera
# ==========================================


@router.post("/camera/exposure")
async def start_exposure(request: ExposureRequest, mount: OriginMount = Depends(get_connected_mount)):
    """
    Start a camera exposure.

    Returns ``success: false`` when the camera is not idle.
    """
    success = await mount.start_exposure(request.duration, request.gain)
    return {"success": success}


@router.post("/camera/abort")
async def abort_exposure(mount: OriginMount = Depends(get_connected_mount)):
    success = await mount.abort_exposure()
    return {"success": success}


@router.post("/camera/gain")
async def set_gain(request: GainRequest, mount: OriginMount = Depends(get_connected_mount)):
    success = await mount.set_gain(request.gain)
    return {"success": success}


@router.post("/camera/reset")
async def reset_camera(mount: OriginMount = Depends(get_mount)):
    """Clear the camera ERROR state."""
    return {"success": mount.reset_camera()}


@router.get("/camera/status")
async def get_camera_status(mount: OriginMount = Depends(get_mount)):
    return mount.camera_status()


@router.get("/camera/image")
async def get_camera_image(mount: OriginMount = Depends(get_mount)):
    """
    Download the last exposure's image.

    Returns:
        Raw image bytes with a matching content type
    """
    data = mount.last_image_data()
    if not data:
        raise HTTPException(status_code=404, detail="No image available")

    media_type = IMAGE_MEDIA_TYPES.get(mount.last_image_format() or "", "application/octet-stream")
    return Response(content=data, media_type=media_type)
