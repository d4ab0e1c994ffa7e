"""Zero finder for strictly descending scalar functions of one variable."""

import logging
import math

logger = logging.getLogger(__name__)


class Function1D:
    """Scalar function of one variable, as consumed by DescendingZeroFinder."""

    def calculate(self, x: float) -> float:
        raise NotImplementedError

    def pick_faster_guess(
        self,
        guess: float,
        lower: float,
        upper: float,
        allow_endpoints: bool = False,
    ) -> float | None:
        """Optionally propose a cheaper point to evaluate inside the bracket."""
        return None


class BisectionGuesstimator:
    """Next probe at the arithmetic midpoint of the bracket."""

    def guess(self, lower: float, upper: float) -> float:
        return 0.5 * (lower + upper)


class LogBisectionGuesstimator:
    """Next probe at the geometric midpoint; needs a positive bracket."""

    def guess(self, lower: float, upper: float) -> float:
        if lower <= 0:
            return 0.5 * (lower + upper)
        return math.sqrt(lower * upper)


class DescendingZeroFinder:
    """Find the zero crossing of a strictly descending function.

    The search starts at ``initial_guess`` and steps outwards by a growing
    scale until the zero is bracketed (or a search limit is reached), then
    refines the bracket with the guesstimator. It stops when the bracket
    ratio is within ``ratio_tol_x``, when ``|f| <= tol_y``, or after
    ``max_evaluations`` function evaluations.

    Non-finite values (from an ill-conditioned inversion inside the
    function) are treated as lying above the zero: they shrink the bracket
    from above and the search carries on.
    """

    def __init__(
        self,
        fcn: Function1D,
        initial_guess: float,
        search_min: float,
        search_max: float,
        initial_scale: float | None = None,
        scale_growth: float = 2.0,
        ratio_tol_x: float = 1.01,
        tol_y: float | None = None,
        max_evaluations: int = 50,
        guesstimator=None,
    ):
        if not search_min < search_max:
            raise ValueError(
                f"Empty search range [{search_min}, {search_max}]")
        if max_evaluations < 1:
            raise ValueError("max_evaluations must be positive")
        if ratio_tol_x <= 1:
            raise ValueError("ratio_tol_x must be greater than 1")
        self.fcn = fcn
        self.initial_guess = initial_guess
        self.search_min = search_min
        self.search_max = search_max
        self.initial_scale = initial_scale
        self.scale_growth = scale_growth
        self.ratio_tol_x = ratio_tol_x
        self.tol_y = tol_y
        self.max_evaluations = max_evaluations
        self.guesstimator = guesstimator or BisectionGuesstimator()
        self.evaluations = 0

    def _bracket_converged(self, lower: float, upper: float) -> bool:
        if lower > 0:
            return upper / lower <= self.ratio_tol_x
        width = (self.ratio_tol_x - 1) * max(abs(lower), abs(upper))
        return upper - lower <= width

    def find(self) -> float:
        lower, upper = self.search_min, self.search_max
        have_lower = have_upper = False

        guess = self.initial_guess
        if not lower < guess < upper:
            guess = self.guesstimator.guess(lower, upper)
        scale = self.initial_scale
        if scale is None or scale <= 0:
            scale = abs(guess) * 0.5 if guess != 0 else 1.0

        self.evaluations = 0
        last = guess
        while True:
            faster = self.fcn.pick_faster_guess(guess, lower, upper)
            if faster is not None:
                logger.debug("Using cached guess %g instead of %g", faster, guess)
                guess = faster

            value = self.fcn.calculate(guess)
            self.evaluations += 1
            last = guess
            logger.debug("f(%g) = %g", guess, value)

            if not math.isfinite(value) or value < 0:
                upper, have_upper = guess, True
            elif value > 0:
                lower, have_lower = guess, True
            else:
                return guess

            if (math.isfinite(value) and self.tol_y is not None
                    and abs(value) <= self.tol_y):
                return guess
            if self._bracket_converged(lower, upper):
                break
            if self.evaluations >= self.max_evaluations:
                logger.debug("Zero finder used all %d evaluations",
                             self.max_evaluations)
                break

            if have_lower and not have_upper:
                guess = lower + scale
                scale *= self.scale_growth
                if guess >= upper:
                    guess = self.guesstimator.guess(lower, upper)
            elif have_upper and not have_lower:
                guess = upper - scale
                scale *= self.scale_growth
                if guess <= lower:
                    guess = self.guesstimator.guess(lower, upper)
            else:
                guess = self.guesstimator.guess(lower, upper)

        if have_lower and have_upper:
            return self.guesstimator.guess(lower, upper)
        return last
