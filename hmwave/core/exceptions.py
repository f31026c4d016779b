"""Exceptions and warnings raised while history matching.

Recoverable conditions (low design yield, slow convergence of sigma inflation) are
handled locally with bounded retries; the exceptions here are raised for the
conditions that have to be surfaced to the caller.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any


class HmwaveError(Exception):
    """Base class for errors raised by the hmwave package."""


class FittingError(HmwaveError):
    """Raised when an emulator cannot be fit to its training data.

    Typical causes are duplicate (or nearly duplicate) training inputs, or too few
    training points relative to the number of regression terms, either of which leave
    the training covariance matrix singular.
    """


class InsufficientTrainingData(FittingError):
    """Raised when too few usable simulator runs remain to train emulators."""


class MisclassificationUnresolved(HmwaveError):
    """Raised when sigma inflation fails to remove classification false rejections.

    Parameters
    ----------
    outcomes : Mapping[str, Any]
        The correction outcomes for the emulators that could not be corrected, keyed by
        output name.
    """

    def __init__(self, outcomes: Mapping[str, Any]):
        self.outcomes = dict(outcomes)
        names = ", ".join(sorted(self.outcomes))
        super().__init__(
            f"Could not remove misclassifications for emulators of {names} within the "
            "iteration cap: manual review is required."
        )


class EmptyNROY(HmwaveError):
    """Raised when combined implausibility rules out every parameter set examined."""


class SimulatorEvaluationFailure(HmwaveError):
    """Raised when a simulator run fails or returns malformed output."""


class InvalidTransition(HmwaveError):
    """Raised when a wave operation is requested from a state that does not permit it."""


class YieldShortfall(UserWarning):
    """Warning category for designs holding fewer points than were requested."""
