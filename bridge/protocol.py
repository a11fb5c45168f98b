"""
Simulator message framing and message models.

The simulator speaks socket.io style event frames over a websocket:
``42["telemetry", {...}]`` in, ``42["steer", {...}]`` or ``42["manual",{}]`` out.
The leading 4 marks a message packet and the 2 an event.
"""

import json
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field

EVENT_PREFIX = "42"
MANUAL_FRAME = '42["manual",{}]'


class FrameError(ValueError):
    """Frame carries data that cannot be decoded."""


class TelemetryMessage(BaseModel):
    """Telemetry from the simulator (world frame)."""
    ptsx: List[float]
    ptsy: List[float]
    x: float
    y: float
    psi: float
    speed: float
    steering_angle: float = Field(ge=-1.0, le=1.0)  # last command, normalized
    throttle: float = Field(ge=-1.0, le=1.0)        # last command, normalized


class SteerCommand(BaseModel):
    """Actuation response to the simulator."""
    steering_angle: float  # -1.0 to 1.0
    throttle: float        # -1.0 to 1.0
    mpc_x: List[float] = []   # predicted trajectory, vehicle frame (green line)
    mpc_y: List[float] = []
    next_x: List[float] = []  # reference curve at mpc_x (yellow line)
    next_y: List[float] = []


def is_event_frame(frame: str) -> bool:
    return len(frame) > 2 and frame.startswith(EVENT_PREFIX)


def extract_payload(frame: str) -> str:
    """
    Return the JSON array text of an event frame, or "" when it carries no data.

    A frame containing "null" anywhere, or lacking the ``[ ... }]`` envelope,
    has no data.
    """
    if "null" in frame:
        return ""
    start = frame.find("[")
    end = frame.rfind("}]")
    if start != -1 and end != -1:
        return frame[start:end + 2]
    return ""


def parse_event(frame: str) -> Optional[Tuple[str, dict]]:
    """
    Decode an event frame.

    Returns:
        (event, data) or None when the frame has no data

    Raises:
        FrameError: payload present but not a ["event", {...}] JSON array
    """
    payload = extract_payload(frame)
    if not payload:
        return None
    try:
        decoded = json.loads(payload)
    except json.JSONDecodeError as e:
        raise FrameError(f"Invalid JSON payload: {e}") from e
    if (not isinstance(decoded, list) or len(decoded) < 2
            or not isinstance(decoded[0], str) or not isinstance(decoded[1], dict)):
        raise FrameError("Payload is not an [event, object] array")
    return decoded[0], decoded[1]


def encode_event(event: str, data: dict) -> str:
    return EVENT_PREFIX + json.dumps([event, data], separators=(",", ":"))
