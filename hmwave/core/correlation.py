"""
Correlation kernels and correlation length estimation for emulator residuals.

The residual process of an emulator is stationary, with covariance
``process_var * corr(x, x'; theta)`` between distinct parameter sets, where ``theta``
holds one correlation length per active parameter. How ``theta`` is chosen is a
pluggable strategy: concrete estimators derive from
[`AbstractCorrelationEstimator`][hmwave.core.correlation.AbstractCorrelationEstimator].


Kernels
---------------------------------------------------------------------------------------
[`exp_sq`][hmwave.core.correlation.exp_sq]
Squared exponential kernel (the default).

[`matern52`][hmwave.core.correlation.matern52]
Matern kernel with smoothness 5/2.

[`orn_uhl`][hmwave.core.correlation.orn_uhl]
Ornstein-Uhlenbeck (exponential) kernel.


Estimators
---------------------------------------------------------------------------------------
[`FixedCorrelation`][hmwave.core.correlation.FixedCorrelation]
Use correlation lengths supplied by the user.

[`LikelihoodCorrelationEstimator`][hmwave.core.correlation.LikelihoodCorrelationEstimator]
Maximise the Gaussian likelihood of the regression residuals.

"""

from __future__ import annotations

import abc
import dataclasses
import math
from collections.abc import Sequence
from numbers import Real
from typing import Any, Callable, Union

import numpy as np
import scipy.linalg
from numpy.typing import NDArray
from scipy.spatial.distance import cdist

import hmwave.utilities.validation as validation
from hmwave.core.modelling import ParameterSpace
from hmwave.core.numerics import equal_within_tolerance
from hmwave.utilities.optimisation import maximise


def exp_sq(sq_dist: NDArray) -> NDArray:
    """Squared exponential correlation, ``exp(-sum_j ((x_j - x'_j) / theta_j)^2)``."""

    return np.exp(-sq_dist)


def matern52(sq_dist: NDArray) -> NDArray:
    """Matern 5/2 correlation in the scaled distance ``r``."""

    r = np.sqrt(5 * sq_dist)
    return (1 + r + r**2 / 3) * np.exp(-r)


def orn_uhl(sq_dist: NDArray) -> NDArray:
    """Ornstein-Uhlenbeck correlation, ``exp(-r)`` in the scaled distance ``r``."""

    return np.exp(-np.sqrt(sq_dist))


KERNELS: dict[str, Callable[[NDArray], NDArray]] = {
    "exp_sq": exp_sq,
    "matern52": matern52,
    "orn_uhl": orn_uhl,
}
"""The supported correlation kernels, by name."""


def correlation_matrix(
    points1: NDArray, points2: NDArray, lengths: NDArray, kernel: str = "exp_sq"
) -> NDArray:
    """Compute the correlation between two collections of points.

    Parameters
    ----------
    points1, points2 : numpy.ndarray
        Arrays of shape ``(n1, k)`` and ``(n2, k)``.
    lengths : numpy.ndarray
        The ``k`` correlation lengths.
    kernel : str, optional
        (Default: 'exp_sq') The name of a kernel in `KERNELS`.

    Returns
    -------
    numpy.ndarray
        The ``(n1, n2)`` array with entry ``(i, j)`` the correlation between
        ``points1[i]`` and ``points2[j]``.
    """

    try:
        kernel_func = KERNELS[kernel]
    except KeyError:
        raise ValueError(
            f"'{kernel}' is not a supported kernel: expected one of {tuple(KERNELS)}."
        ) from None

    lengths = np.asarray(lengths, dtype=float)
    sq_dist = cdist(
        np.asarray(points1, dtype=float) / lengths,
        np.asarray(points2, dtype=float) / lengths,
        "sqeuclidean",
    )
    return kernel_func(sq_dist)


@dataclasses.dataclass(frozen=True)
class CorrelationHyperparameters(object):
    """Hyperparameters of an emulator's residual process.

    Equality of `CorrelationHyperparameters` objects is tested hyperparameter-wise up
    to the default numerical precision defined in ``hmwave.core.numerics.FLOAT_TOLERANCE``.

    Parameters
    ----------
    corr_length_scales : sequence or Numpy array of numbers.Real
        The correlation lengths, one per active parameter, each positive.
    process_var : numbers.Real
        The process variance ``sigma^2``, which should be positive.
    nugget : numbers.Real, optional
        (Default: 0) The nugget variance added to the diagonal of the training
        covariance matrix, which should be non-negative.
    """

    corr_length_scales: Union[Sequence[Real], NDArray]
    process_var: Real
    nugget: Real = 0.0

    def __post_init__(self):
        if not isinstance(self.corr_length_scales, (Sequence, np.ndarray)):
            raise TypeError(
                "Expected 'corr_length_scales' to be a sequence or Numpy array, but "
                f"received {type(self.corr_length_scales)}."
            )

        nonpositive = [
            x for x in self.corr_length_scales if not isinstance(x, Real) or not x > 0
        ]
        if nonpositive:
            raise ValueError(
                "Expected 'corr_length_scales' to contain positive real numbers, but "
                f"found element {nonpositive[0]} of type {type(nonpositive[0])}."
            )

        validation.check_positive_real(self.process_var, "process_var")
        validation.check_real(
            self.nugget,
            TypeError(
                f"Expected 'nugget' to be a real number, but received {type(self.nugget)}."
            ),
        )
        if self.nugget < 0:
            raise ValueError(
                f"Expected 'nugget' to be a non-negative real number, but received {self.nugget}."
            )

        object.__setattr__(
            self, "corr_length_scales", tuple(float(x) for x in self.corr_length_scales)
        )

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, self.__class__):
            return False

        return (
            equal_within_tolerance(self.corr_length_scales, other.corr_length_scales)
            and equal_within_tolerance(self.process_var, other.process_var)
            and equal_within_tolerance(self.nugget, other.nugget)
        )

    def scaled(self, factor: Real) -> CorrelationHyperparameters:
        """Multiply the process standard deviation (and the nugget's) by `factor`."""

        return CorrelationHyperparameters(
            self.corr_length_scales, self.process_var * factor**2, self.nugget * factor**2
        )


class AbstractCorrelationEstimator(abc.ABC):
    """A strategy for choosing correlation lengths from regression residuals."""

    @abc.abstractmethod
    def estimate(
        self,
        points: NDArray,
        residuals: NDArray,
        process_var: float,
        nugget: float,
        kernel: str,
    ) -> NDArray:
        """Estimate correlation lengths.

        Parameters
        ----------
        points : numpy.ndarray
            The training points restricted to the active parameters, mapped onto
            ``[-1, 1]``, as an array of shape ``(n, k)``.
        residuals : numpy.ndarray
            The regression residuals at the training points.
        process_var, nugget : float
            The process variance and nugget variance already determined for the
            residual process.
        kernel : str
            The name of the correlation kernel.

        Returns
        -------
        numpy.ndarray
            The ``k`` correlation lengths.
        """

        raise NotImplementedError


class FixedCorrelation(AbstractCorrelationEstimator):
    """Use correlation lengths supplied directly.

    Parameters
    ----------
    lengths : numbers.Real or sequence of numbers.Real
        A single length used for every active parameter, or one length per active
        parameter. Lengths are on the ``[-1, 1]`` scale of each parameter.
    """

    def __init__(self, lengths: Union[Real, Sequence[Real]]):
        lengths_arr = np.atleast_1d(np.asarray(lengths, dtype=float))
        if lengths_arr.ndim != 1 or not np.all(lengths_arr > 0):
            raise ValueError(
                f"Expected 'lengths' to be positive real numbers, but received {lengths}."
            )

        self._lengths = lengths_arr

    def __repr__(self) -> str:
        return f"FixedCorrelation({self._lengths.tolist()})"

    def estimate(self, points, residuals, process_var, nugget, kernel) -> NDArray:
        k = np.asarray(points).shape[1]
        if len(self._lengths) == 1:
            return np.full(k, self._lengths[0])

        if len(self._lengths) != k:
            raise ValueError(
                f"Expected {k} correlation lengths, one per active parameter, but "
                f"{len(self._lengths)} were supplied."
            )

        return self._lengths.copy()


class LikelihoodCorrelationEstimator(AbstractCorrelationEstimator):
    """Choose correlation lengths by maximising the likelihood of the residuals.

    The residuals are treated as a zero mean Gaussian process with covariance
    ``process_var * corr + nugget * I``, and the log-likelihood is maximised over the
    logarithm of the correlation lengths within `bounds`, using differential evolution
    (see ``hmwave.utilities.optimisation.maximise``).

    Parameters
    ----------
    bounds : tuple[float, float], optional
        (Default: (0.1, 4.0)) Bounds on every correlation length, on the ``[-1, 1]``
        scale of each parameter.
    seed : int, optional
        (Default: 0) Seed for the optimisation, so that fitting is reproducible.
    maxiter : int, optional
        (Default: 60) Maximum number of differential evolution generations.
    tol : float, optional
        (Default: 1e-3) Convergence tolerance of the optimisation.
    """

    def __init__(
        self,
        bounds: tuple[float, float] = (0.1, 4.0),
        seed: int = 0,
        maxiter: int = 60,
        tol: float = 1e-3,
    ):
        lower, upper = bounds
        if not 0 < lower < upper:
            raise ValueError(
                f"Expected 'bounds' to satisfy 0 < lower < upper, but received {bounds}."
            )

        self._bounds = (float(lower), float(upper))
        self._seed = seed
        self._maxiter = maxiter
        self._tol = tol

    def __repr__(self) -> str:
        return f"LikelihoodCorrelationEstimator(bounds={self._bounds}, seed={self._seed})"

    def estimate(self, points, residuals, process_var, nugget, kernel) -> NDArray:
        points = np.asarray(points, dtype=float)
        residuals = np.asarray(residuals, dtype=float)
        log_lower, log_upper = (math.log(b) for b in self._bounds)
        search_space = ParameterSpace(
            {f"log_theta_{i}": (log_lower, log_upper) for i in range(points.shape[1])}
        )

        def log_likelihood(log_lengths: NDArray) -> float:
            return residual_log_likelihood(
                points, residuals, np.exp(log_lengths), process_var, nugget, kernel
            )

        log_lengths, _ = maximise(
            log_likelihood,
            search_space,
            seed=self._seed,
            tol=self._tol,
            maxiter=self._maxiter,
        )
        return np.exp(log_lengths)


def residual_log_likelihood(
    points: NDArray,
    residuals: NDArray,
    lengths: NDArray,
    process_var: float,
    nugget: float,
    kernel: str = "exp_sq",
) -> float:
    """The Gaussian log-likelihood (up to a constant) of residuals under the residual
    process. Covariance matrices that cannot be factorised give a very large negative
    value rather than an error, so the function can be used as an objective."""

    cov = process_var * correlation_matrix(points, points, lengths, kernel)
    cov[np.diag_indices_from(cov)] += nugget
    try:
        factor = scipy.linalg.cho_factor(cov, lower=True)
    except np.linalg.LinAlgError:
        return -1e300

    alpha = scipy.linalg.cho_solve(factor, residuals)
    return float(-np.sum(np.log(np.diag(factor[0]))) - 0.5 * residuals @ alpha)
