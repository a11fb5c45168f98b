"""
Tests for simulator event framing.
"""

import json

import pytest

from bridge.protocol import (
    MANUAL_FRAME,
    FrameError,
    encode_event,
    extract_payload,
    is_event_frame,
    parse_event,
)


def test_event_frame_detection():
    assert is_event_frame('42["telemetry",{}]')
    assert not is_event_frame("42")
    assert not is_event_frame('2["telemetry",{}]')
    assert not is_event_frame("")


def test_extract_payload_returns_json_array():
    frame = '42["telemetry",{"x":1.0}]'
    assert extract_payload(frame) == '["telemetry",{"x":1.0}]'


def test_null_payload_has_no_data():
    assert extract_payload('42["telemetry",null]') == ""
    assert parse_event('42["telemetry",null]') is None


def test_frame_without_envelope_has_no_data():
    assert extract_payload('42["telemetry"]') == ""
    assert parse_event('42["telemetry"]') is None


def test_parse_event():
    event, data = parse_event('42["telemetry",{"speed":12.5,"ptsx":[1,2]}]')
    assert event == "telemetry"
    assert data == {"speed": 12.5, "ptsx": [1, 2]}


def test_invalid_json_raises_frame_error():
    with pytest.raises(FrameError):
        parse_event('42["telemetry",{speed}]')


def test_non_object_payload_raises_frame_error():
    with pytest.raises(FrameError):
        parse_event('42[{"speed":1}]')


def test_encode_event():
    frame = encode_event("steer", {"steering_angle": 0.25, "mpc_x": [1.0]})
    assert frame.startswith('42["steer",')
    assert json.loads(frame[2:]) == ["steer", {"steering_angle": 0.25, "mpc_x": [1.0]}]


def test_manual_frame():
    assert MANUAL_FRAME == '42["manual",{}]'
