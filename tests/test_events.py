"""Tests for build event decoding."""

import json

import pytest

from buildstats.events import (
    BUILD_INFO_EVENT_TYPES,
    TASK_EVENT_TYPES,
    DecodeError,
    Event,
    EventType,
    ProtocolError,
    decode_event,
    decode_json,
)


class TestEventType:
    """Tests for the EventType enum."""

    def test_values_are_wire_names(self):
        assert EventType.TASK_STARTED == "TaskStarted"
        assert ",".join(TASK_EVENT_TYPES) == "TaskStarted,TaskFinished"

    def test_metadata_types(self):
        assert set(BUILD_INFO_EVENT_TYPES) == {
            "ProjectStructure",
            "UserTag",
            "BuildModes",
            "BuildRequestedTasks",
        }


class TestDecodeEvent:
    """Tests for decode_event."""

    def test_decode(self):
        """Test a complete event envelope is decoded."""
        payload = json.dumps(
            {
                "timestamp": 1700000000123,
                "type": {"majorVersion": 1, "eventType": "UserTag"},
                "data": {"tag": "CI"},
            }
        )

        event = decode_event(payload)

        assert event == Event("UserTag", 1700000000123, {"tag": "CI"})
        assert event.event_type == EventType.USER_TAG

    def test_missing_data_is_empty(self):
        event = decode_event(json.dumps({"timestamp": 5, "type": {"eventType": "BuildModes"}}))
        assert event.data == {}
        assert event.timestamp == 5

    @pytest.mark.parametrize(
        "payload",
        [
            "not json",
            "[1, 2]",
            json.dumps({"timestamp": 0, "data": {}}),
            json.dumps({"timestamp": 0, "type": "UserTag"}),
            json.dumps({"timestamp": 0, "type": {"eventType": 7}}),
            json.dumps({"timestamp": 0, "type": {"eventType": "UserTag"}, "data": [1]}),
        ],
    )
    def test_malformed(self, payload):
        """Test malformed envelopes raise DecodeError."""
        with pytest.raises(DecodeError):
            decode_event(payload)

    def test_missing_timestamp(self):
        """Test an event without a timestamp is rejected."""
        payload = json.dumps({"type": {"eventType": "TaskStarted"}, "data": {"id": 1}})
        with pytest.raises(DecodeError, match="TaskStarted event has no timestamp"):
            decode_event(payload)

    @pytest.mark.parametrize("timestamp", ["soon", "1700000000000", 1.5, True, None])
    def test_invalid_timestamp(self, timestamp):
        """Test timestamps must be integers."""
        payload = json.dumps({"timestamp": timestamp, "type": {"eventType": "TaskStarted"}})
        with pytest.raises(DecodeError, match="Invalid event timestamp"):
            decode_event(payload)

    def test_decode_error_is_value_error(self):
        with pytest.raises(ValueError):
            decode_json("{")


class TestEventGet:
    """Tests for required field access."""

    def test_present(self):
        assert Event("UserTag", data={"tag": "CI"}).get("tag") == "CI"

    def test_missing(self):
        """Test a missing field raises ProtocolError naming the field."""
        with pytest.raises(ProtocolError, match="UserTag event is missing field 'tag'"):
            Event("UserTag").get("tag")
