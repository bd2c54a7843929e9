"""Tests for the entity registry and the duration ticker."""

from __future__ import annotations

import asyncio

import pytest

from producer.fleet.models import (
    DeviceKind,
    DeviceStatus,
    DiscoverySource,
    MediaDevice,
    normalize_status,
)
from producer.fleet.registry import DurationTicker, EntityRegistry


class TestNormalizeStatus:
    def test_aliases(self):
        assert normalize_status("streaming") is DeviceStatus.ACTIVE
        assert normalize_status("Recording") is DeviceStatus.ACTIVE
        assert normalize_status("idle") is DeviceStatus.READY
        assert normalize_status("uploading") is DeviceStatus.STOPPED

    def test_unknown_is_offline(self):
        assert normalize_status("warming-up") is DeviceStatus.OFFLINE
        assert normalize_status(None) is DeviceStatus.OFFLINE

    def test_enum_passthrough(self):
        assert normalize_status(DeviceStatus.ERROR) is DeviceStatus.ERROR


class TestMediaDevice:
    def test_from_dict(self):
        device = MediaDevice.from_wire({"deviceId": "v1", "label": "FaceTime HD"})
        assert device == MediaDevice("v1", "FaceTime HD")

    def test_label_defaults_to_id(self):
        assert MediaDevice.from_wire({"id": "a1"}).label == "a1"

    def test_from_string(self):
        assert MediaDevice.from_wire("mic") == MediaDevice("mic", "mic")

    def test_invalid(self):
        assert MediaDevice.from_wire({"label": "no id"}) is None
        assert MediaDevice.from_wire(42) is None


class TestAddEntity:
    def test_defaults_streamer(self, streamers):
        entity = streamers.add_entity("cam1", {"name": "Cam 1"})
        assert entity.kind is DeviceKind.STREAMER
        assert entity.room == "studio"
        assert entity.status is DeviceStatus.READY
        assert entity.settings["bitrate"] == 3000
        assert entity.settings["codec"] == "VP9"
        assert entity.settings["publish_endpoint"] == "https://publish.example/studio/cam1/whip"
        assert entity.upload == {"progress": 0, "completed": 0, "total": 0}
        assert entity.authority is DiscoverySource.REGISTRATION

    def test_defaults_recorder(self, recorders):
        entity = recorders.add_entity("mac1")
        assert entity.settings["bitrate"] == 5
        assert entity.settings["dynamic_range"] == "SDR"
        assert "publish_endpoint" not in entity.settings

    def test_existing_is_noop(self, streamers):
        first = streamers.add_entity("cam1", {"name": "Cam 1"})
        second = streamers.add_entity("cam1", {"name": "Other"})
        assert second is first
        assert first.name == "Cam 1"
        assert len(streamers) == 1

    def test_active_sets_active_since(self, streamers, clock):
        entity = streamers.add_entity("cam1", {"status": "active"})
        assert entity.active_since == clock.now

    def test_initial_settings_merge_over_defaults(self, streamers):
        entity = streamers.add_entity("cam1", {"settings": {"bitrate": 1500}})
        assert entity.settings["bitrate"] == 1500
        assert entity.settings["codec"] == "VP9"


class TestUpdateEntity:
    def test_unknown_returns_none(self, streamers):
        assert streamers.update_entity("ghost", {"name": "x"}) is None
        assert "ghost" not in streamers

    def test_settings_merge_not_replace(self, streamers):
        streamers.add_entity("cam1")
        streamers.update_entity("cam1", {"settings": {"bitrate": 2500}})
        entity = streamers.get_entity("cam1")
        assert entity.settings["bitrate"] == 2500
        assert entity.settings["codec"] == "VP9"
        assert entity.settings["resolution"] == "1080p"

    def test_device_lists_merge_per_media(self, streamers):
        streamers.add_entity("cam1")
        streamers.update_entity("cam1", {
            "devices": {"video": {"current_id": "v1", "current_label": "Front"}},
        })
        streamers.update_entity("cam1", {
            "devices": {"audio": {"available": [{"deviceId": "a1", "label": "Mic"}]}},
        })
        entity = streamers.get_entity("cam1")
        assert entity.devices.video.current_id == "v1"
        assert entity.devices.video.current_label == "Front"
        assert entity.devices.audio.available == [MediaDevice("a1", "Mic")]

    def test_active_since_set_once(self, streamers, clock):
        streamers.add_entity("cam1")
        streamers.update_entity("cam1", {"status": "active"})
        started = streamers.get_entity("cam1").active_since
        clock.advance(5)
        streamers.update_entity("cam1", {"status": "streaming"})
        assert streamers.get_entity("cam1").active_since == started

    def test_leaving_active_clears_duration(self, streamers, clock):
        streamers.add_entity("cam1", {"status": "active"})
        clock.advance(12)
        streamers.tick()
        assert streamers.get_entity("cam1").elapsed == 12
        streamers.update_entity("cam1", {"status": "stopped"})
        entity = streamers.get_entity("cam1")
        assert entity.active_since is None
        assert entity.elapsed == 0

    def test_registration_then_bitrate_scenario(self, streamers):
        streamers.add_entity("cam1", {"name": "Cam 1", "status": "ready"})
        streamers.update_entity("cam1", {"settings": {"bitrate": 2500}})
        entity = streamers.get_entity("cam1")
        assert entity.name == "Cam 1"
        assert entity.status is DeviceStatus.READY
        assert entity.settings["bitrate"] == 2500
        assert entity.settings["codec"] == "VP9"

    def test_last_seen_refreshes(self, streamers, clock):
        streamers.add_entity("cam1")
        clock.advance(30)
        streamers.update_entity("cam1", {})
        assert streamers.get_entity("cam1").last_seen == clock.now


class TestFillEntity:
    def test_fills_only_unset(self, recorders):
        recorders.add_entity("mac1", {"name": "Studio Mac"})
        recorders.fill_entity("mac1", {"name": "mac1's Recorder", "platform": "macOS"})
        entity = recorders.get_entity("mac1")
        assert entity.name == "Studio Mac"
        assert entity.platform == "macOS"

    def test_keeps_current_selection(self, streamers):
        streamers.add_entity("cam1", {
            "devices": {"video": {"current_id": "v1", "current_label": "Front"}},
        })
        streamers.fill_entity("cam1", {
            "devices": {"video": {"current_id": "v2", "current_label": "Back"}},
        })
        assert streamers.get_entity("cam1").devices.video.current_id == "v1"


class TestRemoveAndClear:
    def test_remove(self, streamers):
        streamers.add_entity("cam1")
        assert streamers.remove_entity("cam1").id == "cam1"
        assert streamers.remove_entity("cam1") is None

    def test_change_events(self, streamers):
        events = []
        streamers.on_change(lambda event, entity: events.append((event, entity and entity.id)))
        streamers.add_entity("cam1")
        streamers.update_entity("cam1", {"name": "Cam"})
        streamers.remove_entity("cam1")
        streamers.clear()
        assert events == [
            ("added", "cam1"),
            ("updated", "cam1"),
            ("removed", "cam1"),
            ("cleared", None),
        ]

    def test_failing_callback_is_isolated(self, streamers):
        seen = []

        def broken(event, entity):
            raise RuntimeError("boom")

        streamers.on_change(broken)
        streamers.on_change(lambda event, entity: seen.append(event))
        streamers.add_entity("cam1")
        assert seen == ["added"]


class TestPending:
    def test_mark_and_clear(self, streamers):
        streamers.add_entity("cam1")
        assert streamers.mark_pending("cam1", "CHANGE_BITRATE") is True
        assert streamers.get_entity("cam1").pending_commands == {"CHANGE_BITRATE"}
        assert streamers.clear_pending("cam1", "CHANGE_BITRATE") is True
        assert streamers.clear_pending("cam1", "CHANGE_BITRATE") is False

    def test_unknown_device(self, streamers):
        assert streamers.mark_pending("ghost", "PING") is False


class TestStatistics:
    def test_empty(self, streamers):
        assert streamers.statistics() == {
            "total": 0,
            "active": 0,
            "ready": 0,
            "average_bitrate": 0,
            "most_common_resolution": None,
        }

    def test_counts(self, streamers):
        streamers.add_entity("a", {"status": "active", "settings": {"bitrate": 2000}})
        streamers.add_entity("b", {"settings": {"bitrate": 3000, "resolution": "720p"}})
        streamers.add_entity("c", {"settings": {"bitrate": 4000}})
        stats = streamers.statistics()
        assert stats["total"] == 3
        assert stats["active"] == 1
        assert stats["ready"] == 2
        assert stats["average_bitrate"] == 3000
        assert stats["most_common_resolution"] == "1080p"

    def test_upload_statistics(self, recorders):
        recorders.add_entity("m1", {"upload": {"completed": 3, "total": 4}})
        recorders.add_entity("m2", {"upload": {"completed": 5, "total": 5}})
        recorders.add_entity("m3")
        stats = recorders.upload_statistics()
        assert stats == {
            "active_uploads": 1,
            "overall_progress": 89,
            "total_completed": 8,
            "total_segments": 9,
        }


class TestDurationTicker:
    def test_tick_once(self, streamers, recorders, clock):
        streamers.add_entity("cam1", {"status": "active"})
        recorders.add_entity("mac1", {"status": "recording"})
        streamers.add_entity("cam2")
        clock.advance(3.7)
        ticker = DurationTicker([streamers, recorders])
        assert ticker.tick_once() == 2
        assert streamers.get_entity("cam1").elapsed == 3
        assert recorders.get_entity("mac1").elapsed == 3
        assert streamers.get_entity("cam2").elapsed == 0

    async def test_start_stop(self, streamers, clock):
        streamers.add_entity("cam1", {"status": "active"})
        clock.advance(2)
        ticker = DurationTicker([streamers], interval=0.01)
        await ticker.start()
        assert ticker.running is True
        await asyncio.sleep(0.03)
        await ticker.stop()
        assert ticker.running is False
        assert streamers.get_entity("cam1").elapsed == 2

    async def test_double_start_is_noop(self, streamers):
        ticker = DurationTicker([streamers], interval=0.01)
        await ticker.start()
        task = ticker._task
        await ticker.start()
        assert ticker._task is task
        await ticker.stop()


def test_to_dict_is_json_friendly(streamers):
    streamers.add_entity("cam1", {"status": "active"})
    streamers.mark_pending("cam1", "STOP_STREAM")
    streamers.mark_pending("cam1", "CHANGE_BITRATE")
    data = streamers.get_entity("cam1").to_dict()
    assert data["kind"] == "streamer"
    assert data["status"] == "active"
    assert data["authority"] == "registration"
    assert data["pending_commands"] == ["CHANGE_BITRATE", "STOP_STREAM"]
    assert data["devices"]["video"]["available"] == []


def test_registry_without_room_uses_data_room():
    registry = EntityRegistry(DeviceKind.STREAMER, "https://p")
    entity = registry.add_entity("cam1", {"room": "other"})
    assert entity.room == "other"
    assert entity.settings["publish_endpoint"] == "https://p/other/cam1/whip"


@pytest.mark.parametrize("status", ["active", "streaming", "recording"])
def test_active_aliases_start_timer(streamers, clock, status):
    entity = streamers.add_entity("cam1", {"status": status})
    assert entity.is_active
    assert entity.active_since == clock.now
