"""
Polynomial regression surfaces for emulators.

The regression part of an emulator is a linear combination of monomials (a constant,
linear terms and, optionally, squares and pairwise products) in the *active* parameters
of an output. Parameters are considered active when some term involving them is
statistically significant in a least squares fit.

All functions here expect parameter sets that have already been mapped onto
``[-1, 1]`` (see ``ParameterSpace.to_symmetric``), which keeps the least squares
problems well conditioned.


[`BasisFunction`][hmwave.core.regression.BasisFunction]
A monomial in the parameters.

[`candidate_basis`][hmwave.core.regression.candidate_basis]
Constant, linear and second order terms over a set of parameters.

[`fit_least_squares`][hmwave.core.regression.fit_least_squares]
Ordinary least squares with coefficient significance.

[`select_active_variables`][hmwave.core.regression.select_active_variables]
Choose the parameters with significant explanatory power.

[`build_regression`][hmwave.core.regression.build_regression]
Fit the regression surface over active parameters, pruning insignificant terms.
"""

from __future__ import annotations

import dataclasses
import itertools
import logging
from collections.abc import Sequence
from numbers import Real

import numpy as np
from numpy.typing import NDArray
from scipy import stats

from hmwave.core.exceptions import FittingError

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class BasisFunction(object):
    """A monomial in the parameters, e.g. ``1``, ``x``, ``x^2`` or ``x:y``.

    Parameters
    ----------
    powers : tuple[int, ...]
        The exponent of each parameter, in parameter order.
    """

    powers: tuple[int, ...]

    def __post_init__(self):
        if any(p < 0 for p in self.powers):
            raise ValueError("Basis function powers must be non-negative integers.")

        object.__setattr__(self, "powers", tuple(int(p) for p in self.powers))

    @classmethod
    def monomial(cls, dim: int, *variables: int) -> BasisFunction:
        """The product of the given parameters (repeats raise the power)."""

        powers = [0] * dim
        for v in variables:
            powers[v] += 1

        return cls(tuple(powers))

    @property
    def order(self) -> int:
        return sum(self.powers)

    @property
    def variables(self) -> tuple[int, ...]:
        """(Read-only) Indices of the parameters this function depends on."""
        return tuple(i for i, p in enumerate(self.powers) if p > 0)

    def evaluate(self, points: NDArray) -> NDArray:
        """Evaluate at an array of points of shape ``(n, d)``."""

        points = np.asarray(points, dtype=float)
        return np.prod(points ** np.array(self.powers), axis=1)

    def label(self, names: Sequence[str]) -> str:
        if self.order == 0:
            return "1"

        factors = []
        for i in self.variables:
            factors.append(names[i] if self.powers[i] == 1 else f"{names[i]}^{self.powers[i]}")

        return ":".join(factors)


def candidate_basis(
    variables: Sequence[int], dim: int, quadratic: bool = True
) -> list[BasisFunction]:
    """Constant, linear and (optionally) pairwise-quadratic terms over `variables`.

    The second order terms comprise the square of each variable and the product of
    every pair of distinct variables.
    """

    basis = [BasisFunction.monomial(dim)]
    basis.extend(BasisFunction.monomial(dim, v) for v in variables)
    if quadratic:
        basis.extend(
            BasisFunction.monomial(dim, v, w)
            for v, w in itertools.combinations_with_replacement(variables, 2)
        )

    return basis


def design_matrix(points: NDArray, basis: Sequence[BasisFunction]) -> NDArray:
    """The matrix whose ``(i, j)`` entry is basis function ``j`` at point ``i``."""

    return np.column_stack([f.evaluate(points) for f in basis])


@dataclasses.dataclass(frozen=True)
class RegressionFit(object):
    """The result of a least squares fit.

    Attributes
    ----------
    basis : tuple[BasisFunction, ...]
        The basis functions regressed on.
    coefficients : numpy.ndarray
        The fitted coefficient of each basis function.
    residuals : numpy.ndarray
        The training outputs minus the fitted values.
    residual_variance : float
        The unbiased residual variance, ``RSS / (n - p)``.
    p_values : numpy.ndarray
        Two-sided p-values for each coefficient being zero.
    dof : int
        The residual degrees of freedom ``n - p``.
    """

    basis: tuple[BasisFunction, ...]
    coefficients: NDArray
    residuals: NDArray
    residual_variance: float
    p_values: NDArray
    dof: int

    def predict(self, points: NDArray) -> NDArray:
        return design_matrix(points, self.basis) @ self.coefficients


def fit_least_squares(
    points: NDArray, y: NDArray, basis: Sequence[BasisFunction]
) -> RegressionFit:
    """Fit a regression by ordinary least squares.

    Raises
    ------
    FittingError
        If there are no more points than basis functions, or the design matrix does not
        have full column rank.
    """

    points = np.asarray(points, dtype=float)
    y = np.asarray(y, dtype=float)
    basis = tuple(basis)
    n, p = len(y), len(basis)
    if n <= p:
        raise FittingError(
            f"Cannot fit a regression with {p} terms to {n} training points: at least "
            f"{p + 1} points are required."
        )

    H = design_matrix(points, basis)
    if np.linalg.matrix_rank(H) < p:
        raise FittingError(
            "Regression design matrix is rank deficient: the training points do not "
            "distinguish all of the regression terms."
        )

    coefficients, *_ = np.linalg.lstsq(H, y, rcond=None)
    residuals = y - H @ coefficients
    dof = n - p
    residual_variance = float(residuals @ residuals / dof)

    std_errors = np.sqrt(np.maximum(np.diag(np.linalg.pinv(H.T @ H)), 0) * residual_variance)
    with np.errstate(divide="ignore", invalid="ignore"):
        t_stats = np.where(
            std_errors > 0,
            coefficients / std_errors,
            np.where(coefficients != 0, np.inf, 0.0),
        )

    p_values = 2 * stats.t.sf(np.abs(t_stats), dof)
    return RegressionFit(basis, coefficients, residuals, residual_variance, p_values, dof)


def select_active_variables(
    points: NDArray, y: NDArray, significance: Real = 0.05, quadratic: bool = True
) -> tuple[int, ...]:
    """Choose the parameters with significant explanatory power for an output.

    A regression on the constant, linear and pairwise-quadratic terms in every parameter
    is fit, and a parameter is active when some term containing it has a p-value below
    `significance`. With too few points for the full quadratic basis, only the squares
    are added to the linear terms, and with fewer still the basis is linear. If no
    parameter is significant, the single most significant one is returned so that the
    regression keeps a functional form.

    Returns
    -------
    tuple[int, ...]
        Indices of the active parameters, in increasing order.
    """

    points = np.asarray(points, dtype=float)
    dim = points.shape[1]
    variables = tuple(range(dim))
    basis = candidate_basis(variables, dim, quadratic=quadratic)
    if len(y) <= 2 * len(basis):
        basis = candidate_basis(variables, dim, quadratic=False)
        if quadratic and len(y) > 2 * len(basis):
            basis.extend(BasisFunction.monomial(dim, v, v) for v in variables)

        if quadratic:
            logger.debug(
                "Too few points (%d) to screen interactions; screening with %d terms",
                len(y),
                len(basis),
            )

    fit = fit_least_squares(points, y, basis)
    best_p = np.ones(dim)
    for f, p in zip(fit.basis, fit.p_values):
        for v in f.variables:
            best_p[v] = min(best_p[v], p)

    active = tuple(int(v) for v in np.flatnonzero(best_p < significance))
    if not active:
        active = (int(np.argmin(best_p)),)
        logger.debug(
            "No parameter significant at level %s; keeping parameter %d", significance, active[0]
        )

    return active


def build_regression(
    points: NDArray,
    y: NDArray,
    active: Sequence[int],
    quadratic: bool = True,
    significance: Real = 0.05,
) -> RegressionFit:
    """Fit the regression surface for an output over its active parameters.

    With `quadratic` set, and at least two residual degrees of freedom to spare, the
    full quadratic basis over the active parameters is fit and second order terms are
    then removed one at a time, least significant first, until all remaining second
    order terms have p-values below `significance`. The constant and linear terms are
    always kept.
    """

    points = np.asarray(points, dtype=float)
    dim = points.shape[1]
    basis = candidate_basis(active, dim, quadratic=quadratic)
    if quadratic and len(y) < len(basis) + 2:
        basis = candidate_basis(active, dim, quadratic=False)

    fit = fit_least_squares(points, y, basis)
    while True:
        second_order = [i for i, f in enumerate(fit.basis) if f.order > 1]
        if not second_order:
            return fit

        worst = max(second_order, key=lambda i: fit.p_values[i])
        if fit.p_values[worst] < significance:
            return fit

        fit = fit_least_squares(
            points, y, fit.basis[:worst] + fit.basis[worst + 1 :]
        )
