"""Tests for the descending zero finder."""

import math

import pytest

from pysvb.math.zero_finder import (
    DescendingZeroFinder,
    Function1D,
    LogBisectionGuesstimator,
)


class Linear(Function1D):
    def __init__(self, root, nan_above=None):
        self.root = root
        self.nan_above = nan_above
        self.calls = []

    def calculate(self, x):
        self.calls.append(x)
        if self.nan_above is not None and x > self.nan_above:
            return float("nan")
        return self.root - x


def test_finds_linear_zero():
    finder = DescendingZeroFinder(Linear(3.0), initial_guess=1.0,
                                  search_min=0.0, search_max=10.0)
    assert abs(finder.find() - 3.0) < 0.05


def test_finds_zero_below_guess():
    finder = DescendingZeroFinder(Linear(0.7), initial_guess=5.0,
                                  search_min=0.05, search_max=100.0,
                                  guesstimator=LogBisectionGuesstimator())
    assert abs(finder.find() - 0.7) / 0.7 < 0.02


def test_nan_treated_as_above_zero():
    """A region of non-finite values shrinks the bracket from above."""
    fcn = Linear(2.0, nan_above=4.0)
    finder = DescendingZeroFinder(fcn, initial_guess=8.0, search_min=0.0, search_max=10.0)
    assert abs(finder.find() - 2.0) < 0.05


def test_tol_y_stops_early():
    fcn = Linear(3.0)
    finder = DescendingZeroFinder(fcn, initial_guess=2.95, search_min=0.0,
                                  search_max=10.0, tol_y=0.1)
    assert finder.find() == 2.95
    assert finder.evaluations == 1


def test_evaluation_budget():
    fcn = Linear(1e6)
    finder = DescendingZeroFinder(fcn, initial_guess=1.0, search_min=0.0,
                                  search_max=1e9, max_evaluations=3)
    finder.find()
    assert finder.evaluations == 3
    assert len(fcn.calls) == 3


def test_no_zero_in_range_returns_last_probe():
    """A function positive everywhere ends near the top of the range."""
    finder = DescendingZeroFinder(Linear(100.0), initial_guess=1.0,
                                  search_min=0.0, search_max=10.0)
    result = finder.find()
    assert 9.0 < result <= 10.0
    assert math.isfinite(result)


def test_faster_guess_used():
    class Cached(Linear):
        def pick_faster_guess(self, guess, lower, upper, allow_endpoints=False):
            return 3.0

    fcn = Cached(3.0)
    finder = DescendingZeroFinder(fcn, initial_guess=1.0, search_min=0.0, search_max=10.0)
    assert finder.find() == 3.0
    assert fcn.calls == [3.0]


@pytest.mark.parametrize("kwargs", [
    dict(search_min=1.0, search_max=1.0),
    dict(search_min=0.0, search_max=1.0, max_evaluations=0),
    dict(search_min=0.0, search_max=1.0, ratio_tol_x=1.0),
])
def test_bad_settings(kwargs):
    with pytest.raises(ValueError):
        DescendingZeroFinder(Linear(0.5), initial_guess=0.5, **kwargs)
