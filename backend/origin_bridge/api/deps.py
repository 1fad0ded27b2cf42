"""Shared API dependencies."""

from typing import Optional

from fastapi import Depends, HTTPException

from origin_bridge.telescope.origin_mount import OriginMount

# Singleton mount adapter, created on first connect
origin_mount: Optional[OriginMount] = None


def get_mount() -> OriginMount:
    """Return the shared mount adapter, creating it if needed."""
    global origin_mount
    if origin_mount is None:
        origin_mount = OriginMount()
    return origin_mount


def get_connected_mount(mount: OriginMount = Depends(get_mount)) -> OriginMount:
    """Dependency for endpoints that need a connected telescope.

    Raises:
        HTTPException: 400 if the telescope is not connected
    """
    if not mount.is_connected():
        raise HTTPException(status_code=400, detail="Telescope not connected")
    return mount
