"""Tests for isocnc/tools.py."""
import pytest

from isocnc.image import CircleAperture, FileType, RectangleAperture, Unit
from isocnc.tools import DrillTool, collect_drill_tools, plan_isolation_passes


class TestDrillTool:

    def test_inch_diameter(self):
        tool = DrillTool(1, 0.04, Unit.INCH)
        assert tool.diameter_mm == pytest.approx(1.016)
        assert tool.diameter_in(False) == pytest.approx(0.04)

    def test_metric_diameter(self):
        tool = DrillTool(1, 1.0, Unit.MM)
        assert tool.diameter_in(True) == 1.0
        assert tool.diameter_inch == pytest.approx(1 / 25.4)


class TestCollectDrillTools:

    def test_used_circles_in_ascending_order(self, builder):
        image = (
            builder.aperture(12, CircleAperture(0.8, unit=Unit.MM))
            .aperture(3, CircleAperture(1.2, unit=Unit.MM))
            .aperture(5, RectangleAperture(1, 1))
            .aperture(7, CircleAperture(2.0))
            .flash(12, 0, 0)
            .line(3, 0, 0, 1, 0)
            .flash(5, 1, 1)
            .build()
        )
        tools = collect_drill_tools(image)
        assert [t.number for t in tools] == [3, 12]
        assert tools[0].diameter == 1.2
        assert tools[0].unit == Unit.MM

    def test_moves_alone_do_not_count(self, builder):
        image = builder.aperture(1, CircleAperture(1.0)).move(1, 2, 2).build()
        assert collect_drill_tools(image) == []

    def test_empty_image(self):
        from isocnc.image import Image
        assert collect_drill_tools(Image(FileType.DRILL)) == []


class TestPlanIsolationPasses:

    def test_single_pass_when_tool_is_wide_enough(self):
        passes = list(plan_isolation_passes(1.0, 0.5, 0.5))
        assert len(passes) == 1
        assert passes[0].distance == 0.5
        assert passes[0].last_path and passes[0].last_tool

    def test_passes_step_by_overlap(self):
        passes = list(plan_isolation_passes(0.2, 0.6, 0.6, path_overlap=0.2))
        assert [p.distance for p in passes] == pytest.approx([0.1, 0.26, 0.42, 0.58])
        assert [p.last_path for p in passes] == [False, False, False, True]
        assert [p.number for p in passes] == [0, 1, 2, 3]

    def test_isolation_max_below_min_is_raised(self):
        passes = list(plan_isolation_passes(0.2, 0.6, 0.0, path_overlap=0.2))
        assert len(passes) == 4

    def test_switches_to_second_tool(self):
        passes = list(plan_isolation_passes(0.2, 0.3, 1.0, path_overlap=0.0, tool2_size=0.8))
        assert [p.tool_diameter for p in passes] == [0.2, 0.2, 0.8]
        assert [p.last_tool for p in passes] == [False, False, True]
        assert passes[1].last_path
        # the second tool's edge starts where the first tool's last pass ended
        assert passes[2].distance == pytest.approx(0.6)
        assert passes[2].last_path

    def test_smaller_second_tool_is_ignored(self):
        passes = list(plan_isolation_passes(0.4, 0.4, 0.4, tool2_size=0.2))
        assert [p.tool_diameter for p in passes] == [0.4]

    @pytest.mark.parametrize("kwargs", [
        dict(tool_size=0, isolation_min=1, isolation_max=1),
        dict(tool_size=0.2, isolation_min=1, isolation_max=1, path_overlap=1.0),
    ])
    def test_rejects_endless_plans(self, kwargs):
        with pytest.raises(ValueError):
            list(plan_isolation_passes(**kwargs))
