"""Tests for isocnc/config.py."""
import pytest

from isocnc.config import (
    DEFAULT_DRILL_CODE,
    DEFAULT_TOOL_CHANGE_CODE,
    ConfigError,
    ConfigStore,
    DrillSettings,
    IsoSettings,
)


class TestConfigStore:
    """Tests for parsing the key : value format."""

    def test_parse_values(self, config_store):
        """Keys and values are stripped."""
        assert config_store.get_string("coordinate_system") == "G54"
        assert config_store.get_float("iso_tool_size") == 0.2
        assert config_store.get_bool("metric_mode") is True

    def test_comments_and_blank_lines_ignored(self):
        store = ConfigStore.parse("# a\n/ b\n+ c\n- d\n\nkey : 1\n")
        assert store.values == {"key": "1"}

    def test_lines_without_colon_ignored(self):
        store = ConfigStore.parse("no separator here\nkey: value\n")
        assert store.values == {"key": "value"}

    def test_value_may_contain_colon(self):
        store = ConfigStore.parse("code : G4 P0.5 (wait: spindle)\n")
        assert store.get_string("code") == "G4 P0.5 (wait: spindle)"

    def test_duplicate_key_is_an_error(self):
        with pytest.raises(ConfigError) as excinfo:
            ConfigStore.parse("lift : 1\nlift : 2\n", source="dup.cfg")
        assert "lift" in str(excinfo.value)
        assert "dup.cfg" in str(excinfo.value)

    def test_string_escapes_decoded(self, config_store):
        """Escaped line breaks in string values become real ones."""
        assert config_store.get_string("file_end_code") == "M05\nM30"

    def test_tab_and_carriage_return_escapes(self):
        store = ConfigStore.parse("code : a\\tb\\rc\n")
        assert store.get_string("code") == "a\tb\rc"

    @pytest.mark.parametrize("text,expected", [("true", True), ("False", False), (" TRUE ", True)])
    def test_bool_values(self, text, expected):
        store = ConfigStore.parse(f"flag : {text}\n")
        assert store.get_bool("flag") is expected

    def test_bad_bool_names_key(self):
        store = ConfigStore.parse("flag : yes\n")
        with pytest.raises(ConfigError, match="flag"):
            store.get_bool("flag")

    def test_bad_float_names_key(self):
        store = ConfigStore.parse("depth : deep\n")
        with pytest.raises(ConfigError, match="depth"):
            store.get_float("depth")

    def test_missing_required_key(self):
        with pytest.raises(ConfigError, match="lift"):
            ConfigStore().get_float("lift")

    def test_missing_optional_key_uses_default(self):
        assert ConfigStore().get_float("lift", 2.0) == 2.0
        assert ConfigStore().get_int("count", 3) == 3

    def test_load_from_file(self, tmp_path, config_text):
        path = tmp_path / "machine.cfg"
        path.write_text(config_text, encoding="utf-8")
        store = ConfigStore.load(path)
        assert store.source == str(path)
        assert "iso_feed_rate" in store

    def test_load_missing_file_raises_oserror(self, tmp_path):
        with pytest.raises(OSError):
            ConfigStore.load(tmp_path / "nope.cfg")


class TestIsoSettings:
    """Tests for the isolation settings schema."""

    def test_from_store(self, iso_settings):
        assert iso_settings.tool_size == 0.2
        assert iso_settings.isolation_min == 0.6
        assert iso_settings.cut_depth == -0.1
        assert iso_settings.feed_rate == 120
        assert iso_settings.plunge_rate == 60
        assert iso_settings.spindle_speed == 12000
        assert iso_settings.file_end_code == "M05\nM30"

    def test_defaults(self, iso_settings):
        assert iso_settings.path_overlap == 0.2
        assert iso_settings.lift == 2.0
        assert iso_settings.tool2_size == 0.0
        assert iso_settings.milling_conventional is True
        assert iso_settings.relative_code is False
        assert iso_settings.tool_change_code == DEFAULT_TOOL_CHANGE_CODE
        assert iso_settings.tool_change_height == 40.0

    def test_isolation_max_raised_to_min(self, iso_settings):
        """A missing or smaller isolation_max clears at least isolation_min."""
        assert iso_settings.isolation_max == iso_settings.isolation_min

    def test_all_problems_reported_together(self):
        store = ConfigStore.parse("metric_mode : maybe\ncoordinate_system : G54\n")
        with pytest.raises(ConfigError) as excinfo:
            IsoSettings.from_store(store)
        message = str(excinfo.value)
        for key in ("metric_mode", "coordinate_system_mirror", "file_end_code", "iso_tool_size",
                    "iso_isolation_min", "iso_cut_depth", "iso_feed_rate", "iso_plunge_rate",
                    "iso_spindle_speed"):
            assert key in message
        assert len(excinfo.value.problems) == 9

    def test_config_error_is_value_error(self):
        assert issubclass(ConfigError, ValueError)


class TestDrillSettings:
    """Tests for the drill settings schema."""

    def test_defaults(self, drill_settings):
        assert drill_settings.drill_slots is False
        assert drill_settings.drill_depth == -2.5
        assert drill_settings.drill_lift == 3.0
        assert drill_settings.drill_feed_rate == 400
        assert drill_settings.drill_pause == 0.05
        assert drill_settings.slot_drill_overlap == 0.25
        assert drill_settings.mill_feed_rate == 100
        assert drill_settings.spindle_speed == 26000
        assert drill_settings.drill_code == DEFAULT_DRILL_CODE

    def test_overrides(self, config_text):
        store = ConfigStore.parse(config_text + "drill_slots : true\ndrill_spindle_speed : 20000\n")
        settings = DrillSettings.from_store(store)
        assert settings.drill_slots is True
        assert settings.spindle_speed == 20000

    def test_shared_keys_required(self):
        with pytest.raises(ConfigError) as excinfo:
            DrillSettings.from_store(ConfigStore())
        assert len(excinfo.value.problems) == 3


class TestCodeTemplates:
    """Templates are tried out when the settings are read."""

    def test_default_templates_accepted(self, iso_settings, drill_settings):
        assert iso_settings.tool_change_code == DEFAULT_TOOL_CHANGE_CODE
        assert drill_settings.tool_change_code == DEFAULT_TOOL_CHANGE_CODE

    def test_custom_template_accepted(self, config_text):
        store = ConfigStore.parse(config_text + "drill_code : G81 X{x:.3f} Y{y:.3f} Z{depth:.3f}\n")
        assert DrillSettings.from_store(store).drill_code == "G81 X{x:.3f} Y{y:.3f} Z{depth:.3f}"

    def test_bad_format_spec_in_tool_change_code(self, config_text):
        store = ConfigStore.parse(config_text + "tool_change_code : M06 T{tool_number:q}\n")
        with pytest.raises(ConfigError, match="tool_change_code"):
            IsoSettings.from_store(store)

    @pytest.mark.parametrize("template", [
        "G0 X{x:.4f} Y{foo}",
        "G0 X{7}",
        "G0 X{x:.4f",
    ])
    def test_bad_drill_code(self, config_text, template):
        store = ConfigStore.parse(config_text + f"drill_code : {template}\n")
        with pytest.raises(ConfigError) as excinfo:
            DrillSettings.from_store(store)
        assert excinfo.value.problems[0].startswith("setting drill_code is not a valid code template")

    def test_template_problem_reported_with_others(self):
        store = ConfigStore.parse("tool_change_code : T{nope}\n")
        with pytest.raises(ConfigError) as excinfo:
            DrillSettings.from_store(store)
        assert len(excinfo.value.problems) == 4
