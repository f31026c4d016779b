"""
Generation of simulator designs inside the non-implausible region.

A new design is built from a pool of candidate parameter sets, every one of which has
combined implausibility below the threshold. The pool is filled by up to three stages,
each run only while the pool is still too small:

1. Rejection sampling of a Latin hypercube over the parameter space.
2. Line sampling: points along lines through pairs of pool points, keeping those at the
   edge of the non-implausible region along each line.
3. Importance sampling: Gaussian perturbations of pool points, repeated until the pool
   is large enough or the evaluation budget is spent.

The requested number of points is then chosen from the pool by greedy maximin
selection, so that the design spreads over the region rather than clustering.


[`latin_hypercube`][hmwave.core.designers.latin_hypercube]
Latin hypercube design over a parameter space (e.g. for wave 0).

[`maximin_select`][hmwave.core.designers.maximin_select]
Greedy maximin subset selection.

[`DesignGenerator`][hmwave.core.designers.DesignGenerator]
Generates designs inside the NROY region of a set of emulators.

[`generate_new_runs`][hmwave.core.designers.generate_new_runs]
Convenience wrapper around `DesignGenerator`.
"""

from __future__ import annotations

import dataclasses
import logging
import math
from collections.abc import Mapping
from numbers import Real
from typing import Optional, Union
from warnings import warn

import numpy as np
from numpy.typing import NDArray
from scipy.spatial.distance import cdist
from scipy.stats import qmc

import hmwave.utilities.validation as validation
from hmwave.core.exceptions import EmptyNROY, YieldShortfall
from hmwave.core.implausibility import DEFAULT_THRESHOLD, nth_implausibility
from hmwave.core.modelling import EmulatorSet, Input, MultiWave, ParameterSpace, Target

logger = logging.getLogger(__name__)

Seed = Union[None, int, np.random.Generator]


def _check_count(n, name: str) -> None:
    validation.check_int(
        n, TypeError(f"Expected '{name}' to be an integer, but received {type(n)} instead.")
    )
    if n < 1:
        raise ValueError(f"Expected '{name}' to be a positive integer, but received {n}.")


def latin_hypercube(space: ParameterSpace, n: int, seed: Seed = None) -> NDArray:
    """Draw a Latin hypercube design of `n` parameter sets over `space`.

    Returns
    -------
    numpy.ndarray
        An array of shape ``(n, space.dim)``.
    """

    if not isinstance(space, ParameterSpace):
        raise TypeError(
            f"Expected 'space' to be of type ParameterSpace, but received {type(space)} "
            "instead."
        )

    _check_count(n, "n")
    sampler = qmc.LatinHypercube(d=space.dim, seed=np.random.default_rng(seed))
    return space.from_unit(sampler.random(n))


def maximin_select(
    points: NDArray,
    n: int,
    space: ParameterSpace,
    min_separation: Real = 1e-6,
    seed: Seed = None,
) -> NDArray:
    """Choose up to `n` of `points` by greedy maximin selection.

    Starting from a randomly chosen point, the point whose distance to the nearest
    already chosen point is largest is added repeatedly. Distances are measured after
    mapping `space` onto the unit hypercube. Points within `min_separation` of a chosen
    point are never chosen, so fewer than `n` indices are returned when the points do not
    contain `n` sufficiently separated ones.

    Returns
    -------
    numpy.ndarray
        Indices into `points` of the chosen points, in order of selection.
    """

    _check_count(n, "n")
    unit = space.to_unit(points)
    if len(unit) == 0:
        return np.array([], dtype=int)

    rng = np.random.default_rng(seed)
    chosen = [int(rng.integers(len(unit)))]
    nearest = cdist(unit, unit[chosen]).ravel()
    while len(chosen) < n:
        candidate = int(np.argmax(nearest))
        if nearest[candidate] <= min_separation:
            break

        chosen.append(candidate)
        nearest = np.minimum(nearest, cdist(unit, unit[[candidate]]).ravel())

    return np.array(chosen, dtype=int)


@dataclasses.dataclass(frozen=True)
class DesignOptions(object):
    """Options for `DesignGenerator`.

    Parameters
    ----------
    lhs_factor : int, optional
        (Default: 10) The Latin hypercube stage draws ``lhs_factor * n`` points.
    pool_factor : numbers.Real, optional
        (Default: 2.0) Stages run while the pool holds fewer than
        ``ceil(pool_factor * n)`` points. At least 1.
    line_pairs : int, optional
        (Default: 50) Number of lines drawn by the line sampling stage.
    line_points : int, optional
        (Default: 25) Number of points evaluated along each line.
    line_extension : numbers.Real, optional
        (Default: 0.5) How far lines extend beyond their end points, as a multiple of the
        distance between them.
    importance_batch : int, optional
        (Default: 500) Candidates proposed per importance sampling round.
    importance_sd : numbers.Real, optional
        (Default: 0.5) Standard deviation of importance sampling perturbations, relative
        to the spread of the pool along each parameter.
    max_evaluations : int, optional
        (Default: 100000) The total number of implausibility evaluations allowed.
    min_separation : numbers.Real, optional
        (Default: 1e-6) Minimum distance between design points, in unit scaled
        coordinates.
    """

    lhs_factor: int = 10
    pool_factor: Real = 2.0
    line_pairs: int = 50
    line_points: int = 25
    line_extension: Real = 0.5
    importance_batch: int = 500
    importance_sd: Real = 0.5
    max_evaluations: int = 100000
    min_separation: Real = 1e-6

    def __post_init__(self):
        for name in (
            "lhs_factor",
            "line_pairs",
            "line_points",
            "importance_batch",
            "max_evaluations",
        ):
            _check_count(getattr(self, name), name)

        if self.line_points < 2:
            raise ValueError("Expected 'line_points' to be at least 2.")

        validation.check_positive_real(self.pool_factor, "pool_factor")
        if self.pool_factor < 1:
            raise ValueError(
                f"Expected 'pool_factor' to be at least 1, but received {self.pool_factor}."
            )

        validation.check_real(
            self.line_extension,
            TypeError(
                "Expected 'line_extension' to be a real number, but received "
                f"{type(self.line_extension)} instead."
            ),
        )
        if self.line_extension < 0:
            raise ValueError("Expected 'line_extension' to be non-negative.")

        validation.check_positive_real(self.importance_sd, "importance_sd")
        validation.check_positive_real(self.min_separation, "min_separation")


@dataclasses.dataclass(frozen=True)
class Design(object):
    """A generated design.

    Attributes
    ----------
    points : numpy.ndarray
        The design, of shape ``(k, d)``, in order of maximin selection.
    implausibility : numpy.ndarray
        The combined implausibility of each design point.
    stage_yields : dict[str, int]
        Non-implausible candidates contributed by each stage that ran.
    evaluations : int
        Implausibility evaluations spent.
    shortfall : int
        How many fewer points than requested the design holds.
    seed : int, optional
        The integer seed the design was generated with, if one was given.
    """

    points: NDArray
    implausibility: NDArray
    stage_yields: dict[str, int]
    evaluations: int
    shortfall: int = 0
    seed: Optional[int] = None

    def __len__(self) -> int:
        return len(self.points)

    def inputs(self) -> list[Input]:
        """The design points as `Input` objects."""

        return [Input.from_array(row) for row in self.points]


class DesignGenerator(object):
    """Generates designs inside the non-implausible region of some emulators.

    Parameters
    ----------
    emulators : EmulatorSet or MultiWave
        The emulators defining the non-implausible region. For a `MultiWave`, a
        parameter set must be non-implausible for every wave.
    targets : Mapping[str, Target]
        Targets keyed by output name.
    space : ParameterSpace, optional
        (Default: None) The region to sample. Defaults to the valid domain of the latest
        emulators.
    threshold : numbers.Real, optional
        (Default: 3) Design points have combined implausibility strictly below this.
    nth : int, optional
        (Default: 1) Which largest implausibility is used for combination.
    options : DesignOptions, optional
        (Default: None) Sampling options; the defaults if ``None``.
    discrepancies : Mapping[str, numbers.Real], optional
        (Default: None) Model discrepancy variances keyed by output name.
    """

    def __init__(
        self,
        emulators: Union[EmulatorSet, MultiWave],
        targets: Mapping[str, Target],
        space: Optional[ParameterSpace] = None,
        threshold: Real = DEFAULT_THRESHOLD,
        nth: int = 1,
        options: Optional[DesignOptions] = None,
        discrepancies: Optional[Mapping[str, Real]] = None,
    ):
        if not isinstance(emulators, (EmulatorSet, MultiWave)) or not emulators:
            raise TypeError(
                "Expected 'emulators' to be a non-empty EmulatorSet or MultiWave, but "
                f"received {emulators!r} instead."
            )

        latest = emulators.latest if isinstance(emulators, MultiWave) else emulators
        self._emulators = emulators
        self._targets = dict(targets)
        self._space = (
            next(iter(latest.values())).valid_domain if space is None else space
        )
        validation.check_positive_real(threshold, "threshold")
        self._threshold = threshold
        self._nth = nth
        self._options = DesignOptions() if options is None else options
        self._discrepancies = discrepancies
        self._evaluations = 0

    @property
    def space(self) -> ParameterSpace:
        return self._space

    @property
    def threshold(self) -> Real:
        return self._threshold

    def _score(self, points: NDArray) -> NDArray:
        """Combined implausibility of candidate points, counting evaluations."""

        self._evaluations += len(points)
        return nth_implausibility(
            self._emulators,
            points,
            self._targets,
            nth=self._nth,
            discrepancies=self._discrepancies,
        )

    def _budget(self) -> int:
        return self._options.max_evaluations - self._evaluations

    def generate(self, n: int, seed: Seed = None) -> Design:
        """Generate a design of `n` non-implausible parameter sets.

        Parameters
        ----------
        n : int
            The number of design points requested.
        seed : int or numpy.random.Generator, optional
            (Default: None) Source of randomness for every stage.

        Returns
        -------
        Design
            The design. If fewer than `n` suitably separated non-implausible points were
            found within the evaluation budget, the design holds only those found, its
            `shortfall` is positive and a ``YieldShortfall`` warning is issued.

        Raises
        ------
        EmptyNROY
            If no non-implausible parameter set was found.
        """

        _check_count(n, "n")
        rng = np.random.default_rng(seed)
        self._evaluations = 0
        pool_target = math.ceil(self._options.pool_factor * n)
        stage_yields = {}

        lhs = latin_hypercube(
            self._space, min(self._options.lhs_factor * n, self._budget()), rng
        )
        lhs_values = self._score(lhs)
        accepted = lhs_values < self._threshold
        pool, pool_values = lhs[accepted], lhs_values[accepted]
        stage_yields["lhs"] = len(pool)

        # Least implausible points seed later stages while the pool is tiny
        order = np.argsort(lhs_values)[: max(2, len(lhs) // 10)]
        boundary = lhs[order]

        seeds = pool if len(pool) >= 2 else np.vstack([pool, boundary])
        if len(pool) < pool_target and self._budget() > 0 and len(seeds) >= 2:
            new, new_values = self._line_sample(seeds, rng)
            pool, pool_values = np.vstack([pool, new]), np.concatenate([pool_values, new_values])
            stage_yields["line"] = len(new)

        if len(pool) < pool_target and self._budget() > 0:
            stage_yields["importance"] = 0
            while len(pool) < pool_target and self._budget() > 0:
                seeds = pool if len(pool) > 0 else boundary
                new, new_values = self._importance_sample(seeds, rng)
                pool = np.vstack([pool, new])
                pool_values = np.concatenate([pool_values, new_values])
                stage_yields["importance"] += len(new)

        logger.info(
            "Design candidate pool of %d points from stages %s using %d evaluations",
            len(pool),
            stage_yields,
            self._evaluations,
        )
        if len(pool) == 0:
            raise EmptyNROY(
                f"No parameter set with implausibility below {self._threshold} was found "
                f"in {self._evaluations} evaluations."
            )

        chosen = maximin_select(pool, n, self._space, self._options.min_separation, rng)
        shortfall = n - len(chosen)
        if shortfall > 0:
            warn(
                f"Only {len(chosen)} of {n} requested design points could be found in "
                "the non-implausible region.",
                YieldShortfall,
            )

        return Design(
            pool[chosen],
            pool_values[chosen],
            stage_yields,
            self._evaluations,
            shortfall,
            seed if isinstance(seed, (int, np.integer)) else None,
        )

    def _line_sample(
        self, seeds: NDArray, rng: np.random.Generator
    ) -> tuple[NDArray, NDArray]:
        """Sample along lines through random pairs of seeds, keeping non-implausible
        points whose neighbour along the line is implausible or off the line."""

        opts = self._options
        t = np.linspace(-opts.line_extension, 1 + opts.line_extension, opts.line_points)
        kept, kept_values = [], []
        for _ in range(opts.line_pairs):
            if self._budget() < opts.line_points:
                break

            i, j = rng.choice(len(seeds), size=2, replace=False)
            line = seeds[i] + t[:, None] * (seeds[j] - seeds[i])
            inside = self._space.contains(line)
            values = np.full(len(line), np.inf)
            if np.any(inside):
                values[inside] = self._score(line[inside])

            ok = values < self._threshold
            padded = np.concatenate([[False], ok, [False]])
            edge = ok & ~(padded[:-2] & padded[2:])
            kept.append(line[edge])
            kept_values.append(values[edge])

        if not kept:
            return np.empty((0, self._space.dim)), np.empty(0)

        return np.vstack(kept), np.concatenate(kept_values)

    def _importance_sample(
        self, seeds: NDArray, rng: np.random.Generator
    ) -> tuple[NDArray, NDArray]:
        """Perturb randomly chosen seeds with Gaussian noise, keeping the non-implausible
        perturbed points."""

        opts = self._options
        unit = self._space.to_unit(seeds)
        spread = np.maximum(unit.std(axis=0), 0.05)
        size = min(opts.importance_batch, self._budget())
        centres = unit[rng.integers(len(unit), size=size)]
        proposals = centres + rng.normal(scale=opts.importance_sd * spread, size=centres.shape)
        proposals = proposals[np.all((proposals >= 0) & (proposals <= 1), axis=1)]

        # Out of range proposals still use up budget
        self._evaluations += size - len(proposals)
        if len(proposals) == 0:
            return np.empty((0, self._space.dim)), np.empty(0)

        points = self._space.from_unit(proposals)
        values = self._score(points)
        ok = values < self._threshold
        return points[ok], values[ok]


def generate_new_runs(
    emulators: Union[EmulatorSet, MultiWave],
    n_points: int,
    targets: Mapping[str, Target],
    space: Optional[ParameterSpace] = None,
    threshold: Real = DEFAULT_THRESHOLD,
    nth: int = 1,
    seed: Seed = None,
    options: Optional[DesignOptions] = None,
) -> Design:
    """Generate a design of `n_points` non-implausible parameter sets.

    See `DesignGenerator` for a description of the arguments.
    """

    return DesignGenerator(emulators, targets, space, threshold, nth, options).generate(
        n_points, seed
    )
