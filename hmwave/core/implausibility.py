"""
Implausibility of parameter sets against observed targets.

For an output with target value ``z`` and observation variance ``V0``, the
implausibility of a parameter set ``x`` is

```
I(x) = |E[f(x)] - z| / sqrt(V0 + Vc(x) + Vm)
```

where ``E[f(x)]`` and ``Vc(x)`` are an emulator's adjusted expectation and variance and
``Vm`` is an optional model discrepancy variance. Implausibilities of several outputs
are combined by taking the n-th largest value, and a parameter set is non-implausible
(in the NROY region) when the combined value is below a threshold, 3 by default.

Every function that takes parameter sets accepts either a single `Input` (or
1-dimensional array), giving a scalar result, or an ``(n, d)`` array, giving an array of
``n`` results.


[`implausibility`][hmwave.core.implausibility.implausibility]
Implausibility of one emulator against a target.

[`model_implausibility`][hmwave.core.implausibility.model_implausibility]
Implausibility of true simulator outputs against a target.

[`combined_implausibility`][hmwave.core.implausibility.combined_implausibility]
n-th maximum implausibility over the emulators of one wave.

[`nth_implausibility`][hmwave.core.implausibility.nth_implausibility]
Combined implausibility over one wave or over every wave of a `MultiWave`.

[`nroy_fraction`][hmwave.core.implausibility.nroy_fraction]
Monte Carlo estimate of the proportion of a space that is not ruled out yet.

[`matching_fraction`][hmwave.core.implausibility.matching_fraction]
Proportion of simulator runs matching every target.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Mapping
from numbers import Real
from typing import TYPE_CHECKING, Any, Optional, Union
from warnings import warn

import numpy as np
from numpy.typing import NDArray

import hmwave.utilities.validation as validation
from hmwave.core.modelling import (
    EmulatorSet,
    Input,
    MultiWave,
    ParameterSpace,
    Target,
    TrainingSet,
    as_points,
)

if TYPE_CHECKING:
    from hmwave.core.emulators import Emulator

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 3.0
"""The default implausibility cutoff, from Pukelsheim's three sigma rule."""


class Classification(enum.Enum):
    """Whether a parameter set has been ruled out."""

    IMPLAUSIBLE = "implausible"
    NON_IMPLAUSIBLE = "non_implausible"


def classify(value: Real, threshold: Real = DEFAULT_THRESHOLD) -> Classification:
    """Classify an implausibility value: non-implausible precisely when the value is
    strictly below `threshold`."""

    validation.check_real(
        value,
        TypeError(f"Expected 'value' to be a real number, but received {type(value)} instead."),
    )
    validation.check_positive_real(threshold, "threshold")
    if value < threshold:
        return Classification.NON_IMPLAUSIBLE

    return Classification.IMPLAUSIBLE


def _check_target(target: Any) -> None:
    if not isinstance(target, Target):
        raise TypeError(
            f"Expected 'target' to be of type Target, but received {type(target)} instead."
        )


def _check_discrepancy(discrepancy: Any) -> None:
    validation.check_real(
        discrepancy,
        TypeError(
            "Expected 'discrepancy' to be a real number, but received "
            f"{type(discrepancy)} instead."
        ),
    )
    if discrepancy < 0:
        raise ValueError(
            f"Expected 'discrepancy' to be non-negative, but received {discrepancy} instead."
        )


def implausibility(
    emulator: Emulator,
    x: Union[Input, NDArray],
    target: Target,
    discrepancy: Real = 0.0,
) -> Union[float, NDArray]:
    """Compute the implausibility of parameter set(s) for one emulated output.

    Parameters
    ----------
    emulator : Emulator
        The emulator of the output.
    x : Input or numpy.ndarray
        A parameter set, or an ``(n, d)`` array of parameter sets.
    target : Target
        The observation (or acceptance interval) for the output.
    discrepancy : numbers.Real, optional
        (Default: 0) The model discrepancy variance ``Vm``.

    Returns
    -------
    float or numpy.ndarray
        The non-negative implausibility, or one per row of `x`.
    """

    _check_target(target)
    _check_discrepancy(discrepancy)
    expectation = emulator.expectation(x)
    variance = emulator.variance(x)
    return np.abs(expectation - target.value) / np.sqrt(
        target.variance + variance + discrepancy
    )


def model_implausibility(
    outputs: Union[Real, NDArray], target: Target, discrepancy: Real = 0.0
) -> Union[float, NDArray]:
    """Compute the implausibility of true simulator output(s) against a target, i.e.
    the implausibility with the emulator variance taken to be zero."""

    _check_target(target)
    _check_discrepancy(discrepancy)
    outputs = np.asarray(outputs, dtype=float)
    result = np.abs(outputs - target.value) / np.sqrt(target.variance + discrepancy)
    return float(result) if result.ndim == 0 else result


def _targeted_names(emulators: Mapping[str, Any], targets: Mapping[str, Target]):
    names = tuple(name for name in emulators if name in targets)
    if not names:
        raise ValueError(
            "None of the emulated outputs has a target: expected 'targets' to include "
            f"at least one of {tuple(emulators)}."
        )

    return names


def _clamp_nth(nth: Any, n_emulators: int) -> int:
    validation.check_int(
        nth, TypeError(f"Expected 'nth' to be an integer, but received {type(nth)} instead.")
    )
    if nth < 1:
        raise ValueError(f"Expected 'nth' to be a positive integer, but received {nth}.")

    if nth > n_emulators:
        warn(
            f"Cannot take the {nth}-th largest of {n_emulators} implausibilities: using "
            f"nth = {n_emulators} instead."
        )
        return n_emulators

    return int(nth)


def all_implausibilities(
    emulators: EmulatorSet,
    x: Union[Input, NDArray],
    targets: Mapping[str, Target],
    discrepancies: Optional[Mapping[str, Real]] = None,
) -> tuple[tuple[str, ...], NDArray]:
    """Compute the implausibility of every emulator that has a target.

    Returns
    -------
    tuple[tuple[str, ...], numpy.ndarray]
        The names of the outputs with targets, in emulator order, together with an array
        of shape ``(n, k)`` whose column ``j`` holds the implausibilities for output
        ``j``. A single parameter set gives an array of shape ``(1, k)``.
    """

    discrepancies = {} if discrepancies is None else discrepancies
    names = _targeted_names(emulators, targets)
    columns = [
        np.atleast_1d(
            implausibility(emulators[name], x, targets[name], discrepancies.get(name, 0.0))
        )
        for name in names
    ]
    return names, np.column_stack(columns)


def combined_implausibility(
    emulators: EmulatorSet,
    x: Union[Input, NDArray],
    targets: Mapping[str, Target],
    nth: int = 1,
    discrepancies: Optional[Mapping[str, Real]] = None,
) -> Union[float, NDArray]:
    """Combine the implausibilities of a wave's emulators by taking the n-th largest.

    Only outputs that have a target participate. With ``nth=1`` the combination is the
    maximum; larger values of `nth` tolerate ``nth - 1`` outputs being mismatched.

    Parameters
    ----------
    emulators : EmulatorSet
        The emulators of one wave, keyed by output name.
    x : Input or numpy.ndarray
        A parameter set, or an ``(n, d)`` array of parameter sets.
    targets : Mapping[str, Target]
        Targets keyed by output name.
    nth : int, optional
        (Default: 1) Which largest implausibility to take. Values larger than the number
        of emulators with targets are reduced to that number, with a warning.
    discrepancies : Mapping[str, numbers.Real], optional
        (Default: None) Model discrepancy variances keyed by output name; missing
        outputs have no discrepancy.

    Returns
    -------
    float or numpy.ndarray
        The combined implausibility, or one per row of `x`.

    Raises
    ------
    ValueError
        If `nth` is less than 1 or no emulator has a target.
    """

    single = isinstance(x, Input) or np.ndim(x) == 1
    names, values = all_implausibilities(emulators, x, targets, discrepancies)
    nth = _clamp_nth(nth, len(names))
    combined = -np.sort(-values, axis=1)[:, nth - 1]
    return float(combined[0]) if single else combined


def nth_implausibility(
    emulators: Union[EmulatorSet, MultiWave],
    x: Union[Input, NDArray],
    targets: Mapping[str, Target],
    nth: int = 1,
    cutoff: Optional[Real] = None,
    discrepancies: Optional[Mapping[str, Real]] = None,
) -> Union[float, bool, NDArray]:
    """Combined implausibility over a single wave or over several waves.

    For a `MultiWave`, the combined (n-th largest) implausibility of each wave is
    computed and the maximum over waves is returned. A parameter set outside the valid
    domain of a wave's emulators is treated as infinitely implausible for that wave, as
    those emulators say nothing about it.

    Parameters
    ----------
    emulators : EmulatorSet or MultiWave
        The emulators of one wave, or of several waves.
    x : Input or numpy.ndarray
        A parameter set, or an ``(n, d)`` array of parameter sets.
    targets : Mapping[str, Target]
        Targets keyed by output name.
    nth : int, optional
        (Default: 1) Which largest implausibility to take within each wave.
    cutoff : numbers.Real, optional
        (Default: None) If given, return whether each parameter set is non-implausible
        (combined implausibility strictly below `cutoff`) instead of the values.
    discrepancies : Mapping[str, numbers.Real], optional
        (Default: None) Model discrepancy variances keyed by output name.

    Returns
    -------
    float, bool or numpy.ndarray
        Combined implausibilities, or booleans when `cutoff` is given.
    """

    if isinstance(emulators, MultiWave):
        if not emulators:
            raise ValueError("Expected 'emulators' to contain at least one wave.")

        first = emulators.latest[next(iter(emulators.latest))]
        points, single = as_points(x, first.valid_domain.dim)
        values = np.zeros(len(points))
        for wave in emulators.waves:
            values = np.maximum(
                values,
                _wave_implausibility(emulators[wave], points, targets, nth, discrepancies),
            )
    elif isinstance(emulators, EmulatorSet):
        first = next(iter(emulators.values()))
        points, single = as_points(x, first.valid_domain.dim)
        values = combined_implausibility(emulators, points, targets, nth, discrepancies)
    else:
        raise TypeError(
            "Expected 'emulators' to be of type EmulatorSet or MultiWave, but received "
            f"{type(emulators)} instead."
        )

    if cutoff is not None:
        validation.check_positive_real(cutoff, "cutoff")
        result = values < cutoff
        return bool(result[0]) if single else result

    return float(values[0]) if single else values


def _wave_implausibility(
    emulators: EmulatorSet,
    points: NDArray,
    targets: Mapping[str, Target],
    nth: int,
    discrepancies: Optional[Mapping[str, Real]],
) -> NDArray:
    values = np.full(len(points), np.inf)
    inside = np.ones(len(points), dtype=bool)
    for emulator in emulators.values():
        inside &= emulator.valid_domain.contains(points)

    if np.any(inside):
        values[inside] = combined_implausibility(
            emulators, points[inside], targets, nth, discrepancies
        )

    return values


def nroy_fraction(
    emulators: Union[EmulatorSet, MultiWave],
    space: ParameterSpace,
    targets: Mapping[str, Target],
    n_samples: int = 10000,
    seed: Union[None, int, np.random.Generator] = None,
    cutoff: Real = DEFAULT_THRESHOLD,
    nth: int = 1,
) -> float:
    """Estimate the proportion of `space` that is not ruled out yet.

    Parameter sets are drawn uniformly from `space` and classified with
    `nth_implausibility`. The complement of the result is the proportion of space
    removed. With the same seed, the estimates for successive waves of a growing
    `MultiWave` are non-increasing.
    """

    validation.check_int(
        n_samples,
        TypeError(
            f"Expected 'n_samples' to be an integer, but received {type(n_samples)} instead."
        ),
    )
    if n_samples < 1:
        raise ValueError(f"Expected 'n_samples' to be positive, but received {n_samples}.")

    rng = np.random.default_rng(seed)
    points = space.from_unit(rng.uniform(size=(n_samples, space.dim)))
    accepted = nth_implausibility(emulators, points, targets, nth=nth, cutoff=cutoff)
    fraction = float(np.mean(accepted))
    logger.debug("Estimated NROY fraction %.4f from %d samples", fraction, n_samples)
    return fraction


def matching_fraction(
    outputs: Union[TrainingSet, Mapping[str, NDArray]],
    targets: Mapping[str, Target],
    sd: Real = 3,
) -> float:
    """The proportion of simulator runs whose every targeted output matches its target.

    Parameters
    ----------
    outputs : TrainingSet or Mapping[str, numpy.ndarray]
        Simulator runs, or arrays of outputs keyed by output name.
    targets : Mapping[str, Target]
        Targets keyed by output name. Outputs without a target are ignored.
    sd : numbers.Real, optional
        (Default: 3) The number of standard deviations within which an output matches an
        observation target (see `Target.contains`).
    """

    if isinstance(outputs, TrainingSet):
        outputs = {name: outputs.outputs(name) for name in outputs.output_names}

    names = _targeted_names(outputs, targets)
    matched = np.logical_and.reduce(
        [np.atleast_1d(targets[name].contains(outputs[name], sd=sd)) for name in names]
    )
    return float(np.mean(matched))
