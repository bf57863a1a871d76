from __future__ import annotations

import logging

from fastapi import APIRouter
from pydantic import BaseModel

try:
    import sounddevice as sd
except Exception:
    sd = None  # Allow import on systems without PortAudio yet


logger = logging.getLogger("chunkscribe.api")

router = APIRouter(prefix="/devices", tags=["devices"])


class Device(BaseModel):
    id: str
    name: str
    channels: int
    is_default: bool = False


@router.get("")
def list_devices() -> dict[str, list[Device]]:
    inputs: list[Device] = []

    if sd is None:
        return {"inputs": inputs}

    try:
        devices = sd.query_devices()
        default_input = sd.default.device[0] if sd.default.device is not None else None
        for idx, dev in enumerate(devices):
            channels = int(dev.get("max_input_channels", 0))
            if channels > 0:
                inputs.append(
                    Device(
                        id=str(idx),
                        name=dev.get("name", f"Device {idx}"),
                        channels=channels,
                        is_default=(idx == default_input),
                    )
                )
    except Exception:
        # Fail softly; an empty list when PortAudio cannot enumerate
        logger.warning("Could not enumerate input devices", exc_info=True)

    return {"inputs": inputs}
