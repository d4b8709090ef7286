"""
Tests for the diagnostic figures.
"""

import matplotlib
matplotlib.use("Agg")

import pytest

from ecotyper import visualization
from ecotyper.binning import BinLevel
from ecotyper.demarcation import DemarcationResult, EcotypeGroup
from ecotyper.estimation import CurveEstimator

LEVELS = [BinLevel(0.20, 1), BinLevel(0.10, 3), BinLevel(0.05, 3), BinLevel(0.01, 8)]


@pytest.fixture
def fit():
    return CurveEstimator().estimate(LEVELS, 1000)


def test_plot_binning_curve_png(tmp_path, fit):
    out = visualization.plot_binning_curve(fit, tmp_path / "figures" / "curve.png", dpi=72)
    assert out.exists()
    assert out.stat().st_size > 0


def test_plot_binning_curve_svg(tmp_path, fit):
    out = visualization.plot_binning_curve(fit, tmp_path / "curve.svg")
    assert out.read_text().lstrip().startswith("<?xml")


def test_plot_ecotype_sizes(tmp_path):
    result = DemarcationResult(groups=[EcotypeGroup(("A", "B")), EcotypeGroup(("C",))])
    out = visualization.plot_ecotype_sizes(result, tmp_path / "sizes.png", dpi=72)
    assert out is not None and out.exists()


def test_plot_ecotype_sizes_empty(tmp_path):
    assert visualization.plot_ecotype_sizes(DemarcationResult(), tmp_path / "sizes.png") is None
    assert not (tmp_path / "sizes.png").exists()


def test_ecotype_colors():
    colors = visualization.get_ecotype_colors(3)
    assert len(colors) == 3
    assert all(c.startswith("#") for c in colors)
    assert visualization.get_ecotype_colors(0) == []
