"""Convergence detectors for the outer VB iteration."""

import logging
import math

from pysvb.errors import ConfigurationError

logger = logging.getLogger(__name__)


class ConvergenceDetector:
    """Decides, once per iteration, whether to stop.

    Attributes:
        its: Number of tests since the last reset.
        reason: Why the last positive test stopped the iteration.
        max_reached: True if it stopped on the iteration limit.
        needs_free_energy: Whether ``test`` uses its argument.
    """

    needs_free_energy = False

    def __init__(self, max_its: int = 10):
        if max_its < 1:
            raise ConfigurationError(f"max-iterations must be positive, got {max_its}")
        self.max_its = max_its
        self.reset()

    def reset(self) -> None:
        self.its = 0
        self.reason = ""
        self.max_reached = False

    def test(self, free_energy: float) -> bool:
        raise NotImplementedError

    def _max_reached(self) -> bool:
        if self.its >= self.max_its:
            self.reason = "Reached maximum iterations"
            self.max_reached = True
            return True
        return False


class MaxIterationsDetector(ConvergenceDetector):
    """Stops after a fixed number of iterations."""

    name = "maxits"

    def test(self, free_energy):
        self.its += 1
        return self._max_reached()


class FreeEnergyChangeDetector(ConvergenceDetector):
    """Stops when the free energy changes by less than ``min_fchange``."""

    name = "fchange"
    needs_free_energy = True

    def __init__(self, max_its: int = 10, min_fchange: float = 0.01):
        self.min_fchange = min_fchange
        super().__init__(max_its)

    def reset(self):
        super().reset()
        self.prev_f = -math.inf

    def test(self, free_energy):
        self.its += 1
        change = abs(free_energy - self.prev_f)
        self.prev_f = free_energy
        if change < self.min_fchange:
            self.reason = f"Free energy changed by less than {self.min_fchange}"
            return True
        return self._max_reached()


class TrialModeDetector(FreeEnergyChangeDetector):
    """Like fchange, but tolerates up to ``max_trials`` decreases in F."""

    name = "trialmode"

    def __init__(self, max_its: int = 10, min_fchange: float = 0.01, max_trials: int = 10):
        self.max_trials = max_trials
        super().__init__(max_its, min_fchange)

    def reset(self):
        super().reset()
        self.trials = 0
        self.best_f = -math.inf

    def test(self, free_energy):
        if free_energy < self.best_f:
            self.trials += 1
            logger.debug("Free energy decreased (trial %d of %d)",
                         self.trials, self.max_trials)
            if self.trials >= self.max_trials:
                self.its += 1
                self.reason = f"Free energy decreased {self.trials} times"
                return True
        else:
            self.best_f = free_energy
        return super().test(free_energy)


_DETECTORS = {
    cls.name: cls
    for cls in (MaxIterationsDetector, FreeEnergyChangeDetector, TrialModeDetector)
}


def create_convergence_detector(name: str, rundata=None) -> ConvergenceDetector:
    """Create a convergence detector by name, configured from run data.

    Raises:
        ConfigurationError: for an unknown detector name.
    """
    if name not in _DETECTORS:
        raise ConfigurationError(
            f"Unknown convergence detector '{name}'; known: {', '.join(sorted(_DETECTORS))}")
    cls = _DETECTORS[name]
    kwargs = {}
    if rundata is not None:
        kwargs["max_its"] = rundata.get_int("max-iterations", 10)
        if cls.needs_free_energy:
            kwargs["min_fchange"] = rundata.get_double("min-fchange", 0.01)
        if cls is TrialModeDetector:
            kwargs["max_trials"] = rundata.get_int("max-trials", 10)
    return cls(**kwargs)
