"""Tests for line configuration loading, validation and reload."""

import json
import logging
import os
import time
from unittest.mock import MagicMock

import pytest

from plc_fleet_sim.errors import ConfigurationError
from plc_fleet_sim.line_config import LineConfigLoader, validate_equipment_config
from plc_fleet_sim.models import EquipmentType, SinusoidalBehavior, TagOverride, Transition

from conftest import equipment_document, make_oven_config, write_line


def touch_later(path):
    """Bump the mtime so polling sees a change even on coarse filesystems."""
    stat = path.stat()
    os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 5_000_000_000))


class TestLineConfigLoader:
    """Tests for LineConfigLoader.load."""

    @pytest.fixture
    def loader(self, lines_dir):
        return LineConfigLoader(lines_dir, watch=False)

    def test_flattens_equipment_across_lines(self, loader):
        configs = loader.load()

        assert [c.id for c in configs] == ["oven1", "press3", "assembly2"]

    def test_derives_line_metadata(self, loader):
        press = {c.id: c for c in loader.load()}["press3"]

        assert press.line_id == "line2"
        assert press.line_number == 2
        assert press.site == "site2"
        assert press.product_type == "cookies"
        assert press.type == EquipmentType.PRESS
        assert [t.address for t in press.tags] == ["DB2.pressure", "DB2.cycle_count"]

    def test_synthesizes_default_states(self, loader):
        press = loader.load()[1]

        assert press.state_names == ["running", "stopped", "fault"]
        running = press.get_state("running")
        assert running.transitions == [
            Transition(to_state="stopped", condition="manual_stop"),
            Transition(to_state="fault", condition="equipment_fault", probability=0.01),
        ]
        assert press.get_state("fault").transitions[0].to_state == "stopped"

    def test_status_becomes_current_state(self, loader):
        configs = {c.id: c for c in loader.load()}
        assert configs["press3"].current_state == "running"
        assert configs["assembly2"].current_state == "stopped"

    def test_explicit_states_and_behaviors(self, loader):
        oven = loader.load()[0]

        assert oven.get_state("fault").tag_overrides == [
            TagOverride("heating_status", False),
            TagOverride("temperature", 300),
        ]
        assert oven.tags[0].behavior == SinusoidalBehavior(
            min=300, max=400, period=120000, amplitude=50, offset=350
        )

    def test_unknown_status_with_default_states_falls_back(self, tmp_path, caplog):
        write_line(tmp_path, 1, [equipment_document("press1", status="maintenance")])

        with caplog.at_level(logging.WARNING):
            configs = LineConfigLoader(tmp_path, watch=False).load()

        assert configs[0].current_state == "running"
        assert "maintenance" in caplog.text

    def test_unknown_kind_kept_as_string(self, tmp_path):
        write_line(tmp_path, 1, [equipment_document("mixer1", kind="mixer")])
        config = LineConfigLoader(tmp_path, watch=False).load()[0]
        assert config.type == "mixer"
        assert config.type_name == "mixer"

    def test_ignores_non_line_files(self, lines_dir):
        (lines_dir / "notes.json").write_text("{not json")
        assert len(LineConfigLoader(lines_dir, watch=False).load()) == 3

    def test_invalid_json_raises(self, tmp_path):
        (tmp_path / "line1.json").write_text("{broken")
        with pytest.raises(ConfigurationError) as exc_info:
            LineConfigLoader(tmp_path, watch=False).load()
        assert "line1.json" in str(exc_info.value)

    def test_missing_directory_raises(self, tmp_path):
        with pytest.raises(ConfigurationError):
            LineConfigLoader(tmp_path / "nope", watch=False).load()

    def test_duplicate_equipment_across_lines_raises(self, tmp_path):
        write_line(tmp_path, 1, [equipment_document("press1")])
        write_line(tmp_path, 2, [equipment_document("press1")])

        with pytest.raises(ConfigurationError) as exc_info:
            LineConfigLoader(tmp_path, watch=False).load()
        assert "duplicate equipment id 'press1'" in exc_info.value.errors

    def test_broken_cross_references_reported_together(self, tmp_path):
        states = [
            {
                "name": "running",
                "tagOverrides": [{"tagId": "ghost", "value": 1}],
                "transitions": [{"toState": "nowhere"}],
            }
        ]
        write_line(tmp_path, 1, [equipment_document("press1", status="idle", states=states)])

        with pytest.raises(ConfigurationError) as exc_info:
            LineConfigLoader(tmp_path, watch=False).load()

        errors = exc_info.value.errors
        assert len(errors) == 3
        assert any("ghost" in e for e in errors)
        assert any("nowhere" in e for e in errors)
        assert any("idle" in e for e in errors)

    @pytest.mark.parametrize(
        "transition",
        [
            {"toState": "stopped", "delayMs": "5000"},
            {"toState": "stopped", "probability": "0.5"},
            {"toState": "stopped", "probability": True},
            {"toState": 7},
        ],
    )
    def test_mistyped_transition_raises(self, tmp_path, transition):
        states = [{"name": "running", "transitions": [transition]}, {"name": "stopped"}]
        write_line(tmp_path, 1, [equipment_document("press1", states=states)])

        with pytest.raises(ConfigurationError) as exc_info:
            LineConfigLoader(tmp_path, watch=False).load()
        assert "press1" in str(exc_info.value)

    @pytest.mark.parametrize(
        "states",
        [
            ["running"],
            [{"name": "running", "tagOverrides": "pressure"}],
            [{"name": "running", "transitions": [None]}],
            [{"description": "no name"}],
        ],
    )
    def test_mistyped_states_raise(self, tmp_path, states):
        write_line(tmp_path, 1, [equipment_document("press1", states=states)])

        with pytest.raises(ConfigurationError):
            LineConfigLoader(tmp_path, watch=False).load()

    def test_equipment_must_be_a_list_of_objects(self, tmp_path):
        (tmp_path / "line1.json").write_text(json.dumps({"line": 1, "equipment": ["press1"]}))

        with pytest.raises(ConfigurationError):
            LineConfigLoader(tmp_path, watch=False).load()

    def test_numeric_delay_accepted(self, tmp_path):
        states = [
            {"name": "running", "transitions": [{"toState": "stopped", "delayMs": 5000}]},
            {"name": "stopped"},
        ]
        write_line(tmp_path, 1, [equipment_document("press1", states=states)])

        press = LineConfigLoader(tmp_path, watch=False).load()[0]
        assert press.states[0].transitions[0].delay_ms == 5000.0

    def test_get_equipment(self, loader):
        loader.load()
        assert loader.get_equipment("press3").name == "Press3"
        assert loader.get_equipment("press99") is None


class TestValidateEquipmentConfig:
    """Tests for validate_equipment_config."""

    def test_valid_config(self):
        assert validate_equipment_config(make_oven_config()) == []

    def test_duplicate_tags_and_states(self):
        config = make_oven_config()
        config.tags.append(config.tags[0])
        config.states.append(config.states[1])

        errors = validate_equipment_config(config)

        assert "oven1: duplicate tag id 'temperature'" in errors
        assert "oven1: duplicate state 'stopped'" in errors

    def test_probability_out_of_range(self):
        config = make_oven_config()
        config.states[0].transitions.append(Transition(to_state="fault", probability=1.5))
        assert len(validate_equipment_config(config)) == 1

    def test_non_numeric_probability_reported(self):
        config = make_oven_config()
        config.states[0].transitions.append(Transition(to_state="fault", probability="0.5"))
        assert len(validate_equipment_config(config)) == 1

    def test_negative_delay_reported(self):
        config = make_oven_config()
        config.states[0].transitions.append(Transition(to_state="fault", delay_ms=-1))

        errors = validate_equipment_config(config)
        assert len(errors) == 1
        assert "delay" in errors[0]


class TestReload:
    """Tests for change polling and reload callbacks."""

    @pytest.fixture
    def loader(self, lines_dir):
        loader = LineConfigLoader(lines_dir, watch=False)
        loader.load()
        return loader

    def test_no_change_detected(self, loader):
        reloads = []
        loader.on_reload(reloads.append)

        assert loader.check_for_changes() is False
        assert reloads == []

    def test_reload_replaces_equipment(self, loader, lines_dir):
        reloads = []
        loader.on_reload(reloads.append)

        path = write_line(lines_dir, 2, [equipment_document("press9"), equipment_document("mixer12", kind="mixer")])
        touch_later(path)

        assert loader.check_for_changes() is True
        assert [c.id for c in reloads[0]] == ["oven1", "press9", "mixer12"]
        assert [c.id for c in loader.current_configs()] == ["oven1", "press9", "mixer12"]

    def test_new_line_file_detected(self, loader, lines_dir):
        reloads = []
        loader.on_reload(reloads.append)

        write_line(lines_dir, 3, [equipment_document("press7")])

        assert loader.check_for_changes() is True
        assert "press7" in [c.id for c in reloads[0]]

    def test_failed_reload_keeps_previous_configuration(self, loader, lines_dir):
        reloads, errors = [], []
        loader.on_reload(reloads.append)
        loader.on_error(errors.append)

        path = lines_dir / "line2.json"
        path.write_text(json.dumps({"line": 2, "equipment": [{"name": "no id"}]}))
        touch_later(path)

        assert loader.check_for_changes() is True
        assert reloads == []
        assert isinstance(errors[0], ConfigurationError)
        assert [c.id for c in loader.current_configs()] == ["oven1", "press3", "assembly2"]

    @pytest.mark.parametrize(
        "states",
        [
            [{"name": "running", "transitions": [{"toState": "stopped", "probability": "0.5"}]}, {"name": "stopped"}],
            ["running", "stopped"],
        ],
    )
    def test_mistyped_reload_keeps_previous_configuration(self, loader, lines_dir, states):
        reloads, errors = [], []
        loader.on_reload(reloads.append)
        loader.on_error(errors.append)

        path = write_line(lines_dir, 2, [equipment_document("press3", states=states)])
        touch_later(path)

        assert loader.check_for_changes() is True
        assert reloads == []
        assert isinstance(errors[0], ConfigurationError)
        assert [c.id for c in loader.current_configs()] == ["oven1", "press3", "assembly2"]

    def test_watcher_survives_callback_errors(self, lines_dir):
        loader = LineConfigLoader(lines_dir, watch=False, poll_interval_s=0.01)
        loader.load()
        seen = []
        loader.on_error(seen.append)
        loader.check_for_changes = MagicMock(side_effect=RuntimeError("disk vanished"))

        loader.start_watching()
        try:
            deadline = time.monotonic() + 2
            while not seen and time.monotonic() < deadline:
                time.sleep(0.01)
            assert loader._thread.is_alive()
        finally:
            loader.stop_watching()
        assert isinstance(seen[0], RuntimeError)

    def test_watcher_thread_starts_and_stops(self, lines_dir):
        loader = LineConfigLoader(lines_dir, watch=True, poll_interval_s=0.05)
        loader.load()
        assert loader._thread is not None and loader._thread.is_alive()

        loader.stop_watching()
        assert loader._thread is None
