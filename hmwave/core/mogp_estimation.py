"""
Correlation length estimation backed by the `mogp_emulator` package.

The regression residuals of an output are fit with a zero mean ``GaussianProcess``
from mogp-emulator, whose hyperparameters are found by maximum a posteriori
estimation. mogp-emulator's squared exponential kernel is
``exp(-0.5 * sum_j (d_j / l_j)^2)``, so its correlation lengths ``l_j`` convert to the
lengths used in this package via ``theta_j = sqrt(2) * l_j``.
"""

from __future__ import annotations

import math

import mogp_emulator as mogp
import numpy as np
from mogp_emulator import GaussianProcess
from numpy.typing import NDArray

from hmwave.core.correlation import AbstractCorrelationEstimator
from hmwave.core.exceptions import FittingError
from hmwave.utilities.decorators import suppress_print


class MogpCorrelationEstimator(AbstractCorrelationEstimator):
    """Estimate correlation lengths with a MAP fit from mogp-emulator.

    Only the squared exponential kernel is supported, since it is the only kernel whose
    parametrisation is shared between the two packages.

    Parameters
    ----------
    n_tries : int, optional
        (Default: 15) The number of optimisation restarts mogp-emulator makes.
    nugget : str, optional
        (Default: 'adaptive') The nugget fitting method passed to the mogp-emulator
        ``GaussianProcess``.
    """

    def __init__(self, n_tries: int = 15, nugget: str = "adaptive"):
        if nugget not in ("adaptive", "fit", "pivot"):
            raise ValueError(
                f"'nugget' must be one of 'adaptive', 'fit' or 'pivot', but got '{nugget}'."
            )

        self._n_tries = n_tries
        self._nugget = nugget

    def __repr__(self) -> str:
        return f"MogpCorrelationEstimator(n_tries={self._n_tries}, nugget='{self._nugget}')"

    def estimate(self, points, residuals, process_var, nugget, kernel) -> NDArray:
        if kernel != "exp_sq":
            raise ValueError(
                f"MogpCorrelationEstimator only supports the 'exp_sq' kernel, not '{kernel}'."
            )

        gp = self._fit_gp(np.asarray(points, dtype=float), np.asarray(residuals, dtype=float))
        lengths = np.asarray(gp.theta.corr, dtype=float) * math.sqrt(2)
        if not np.all(np.isfinite(lengths) & (lengths > 0)):
            raise FittingError(
                f"mogp-emulator returned invalid correlation lengths {lengths.tolist()}."
            )

        return lengths

    @suppress_print
    def _fit_gp(self, points: NDArray, residuals: NDArray) -> GaussianProcess:
        try:
            gp = GaussianProcess(
                points, residuals, mean=None, kernel="SquaredExponential", nugget=self._nugget
            )
            return mogp.fit_GP_MAP(gp, n_tries=self._n_tries)
        except Exception as e:
            raise FittingError(f"mogp-emulator could not fit the residuals: {e}") from e
