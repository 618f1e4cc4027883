"""End-to-end tests for the isocnc command line."""
import pytest

from isocnc.image import FileType
from isocnc.main import build_arg_parser, detect_file_type, main

PAD_GERBER = """\
%FSLAX26Y26*%
%MOMM*%
%ADD10C,1.0*%
D10*
X0Y0D03*
X5000000Y0D03*
M02*
"""

DRILL_FILE = """\
M48
METRIC
T1C0.8
%
T1
X1.0Y2.0
M30
"""


@pytest.fixture
def workspace(tmp_path, config_text):
    config = tmp_path / "machine.cfg"
    config.write_text(config_text)
    return tmp_path


def run_cli(workspace, name, text, *extra):
    source = workspace / name
    source.write_text(text)
    output = workspace / "out.nc"
    code = main([str(source), str(output), str(workspace / "machine.cfg"), *extra])
    return code, output


class TestDetectFileType:

    @pytest.mark.parametrize("text,expected", [
        (PAD_GERBER, FileType.RS274X),
        ("G04 header*\n%MOIN*%\n", FileType.RS274X),
        (DRILL_FILE, FileType.DRILL),
        ("hello world\n", None),
    ])
    def test_detect(self, text, expected):
        assert detect_file_type(text) == expected


class TestArgs:

    def test_positional_arguments(self):
        args = build_arg_parser().parse_args(["a.gbr", "a.nc", "m.cfg", "--mirror-x"])
        assert args.input.name == "a.gbr"
        assert args.mirror_x
        assert not args.verbose

    def test_missing_arguments(self):
        with pytest.raises(SystemExit) as excinfo:
            main(["only-one.gbr"])
        assert excinfo.value.code != 0


class TestMain:

    def test_gerber_to_isolation(self, workspace):
        code, output = run_cli(workspace, "top.gbr", PAD_GERBER)
        assert code == 0
        out = output.read_text().splitlines()
        assert out[0] == "( Tool size 0.200 )"
        assert "G54" in out
        assert "G21 (metric mode)" in out
        # two separate pads, four passes each
        assert out.count("G1 Z-0.1 F60") == 8
        assert out[-1] == "M30"

    def test_mirror_uses_mirror_coordinate_system(self, workspace):
        code, output = run_cli(workspace, "bottom.gbr", PAD_GERBER, "--mirror-x")
        assert code == 0
        out = output.read_text().splitlines()
        assert "G55" in out
        assert "G54" not in out

    def test_drill(self, workspace):
        code, output = run_cli(workspace, "board.drl", DRILL_FILE)
        assert code == 0
        out = output.read_text().splitlines()
        assert "( T01 | 0.8000mm 0.0315in )" in out
        assert "G0 X1.0000 Y2.0000" in out
        assert out[-1] == "M30"

    def test_unknown_input(self, workspace):
        code, output = run_cli(workspace, "notes.txt", "nothing to see\n")
        assert code == 1
        assert not output.exists()

    def test_missing_input(self, workspace):
        output = workspace / "out.nc"
        code = main([str(workspace / "nope.gbr"), str(output), str(workspace / "machine.cfg")])
        assert code == 1

    def test_missing_config(self, tmp_path):
        source = tmp_path / "top.gbr"
        source.write_text(PAD_GERBER)
        code = main([str(source), str(tmp_path / "out.nc"), str(tmp_path / "missing.cfg")])
        assert code == 1

    def test_incomplete_config_writes_nothing(self, tmp_path):
        config = tmp_path / "machine.cfg"
        config.write_text("metric_mode : true\n")
        source = tmp_path / "top.gbr"
        source.write_text(PAD_GERBER)
        output = tmp_path / "out.nc"
        assert main([str(source), str(output), str(config)]) == 1
        assert not output.exists()

    def test_bad_drill_code_writes_nothing(self, workspace, config_text):
        (workspace / "machine.cfg").write_text(config_text + "drill_code : G0 X{x:.4f} Y{foo}\n")
        code, output = run_cli(workspace, "board.drl", DRILL_FILE)
        assert code == 1
        assert not output.exists()

    def test_bad_tool_change_code_writes_nothing(self, workspace, config_text):
        (workspace / "machine.cfg").write_text(
            config_text + "iso_tool2_size : 0.8\ntool_change_code : M06 T{tool_number:q}\n"
        )
        code, output = run_cli(workspace, "top.gbr", PAD_GERBER)
        assert code == 1
        assert not output.exists()

    def test_bad_gerber(self, workspace):
        code, _ = run_cli(workspace, "bad.gbr", "%FSQQ*%\nM02*\n")
        assert code == 1

    def test_unwritable_output(self, workspace):
        source = workspace / "top.gbr"
        source.write_text(PAD_GERBER)
        output = workspace / "no-such-dir" / "out.nc"
        assert main([str(source), str(output), str(workspace / "machine.cfg")]) == 1
