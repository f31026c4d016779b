from numbers import Real
from typing import Callable, Optional

import numpy as np
import scipy.optimize
from numpy.typing import NDArray

import hmwave.core.numerics as numerics
from hmwave.core.modelling import ParameterSpace


def maximise(
    func: Callable[[NDArray], Real],
    space: ParameterSpace,
    seed: Optional[int] = None,
    tol: Optional[float] = None,
    maxiter: int = 1000,
) -> tuple[NDArray, float]:
    """Maximise an objective function over a parameter space.

    Searches the box given by the parameter ranges with Scipy's differential evolution
    and returns the best point found along with the function value there. Used to fit
    correlation lengths by maximum likelihood.

    Parameters
    ----------
    func : Callable[[numpy.ndarray], numbers.Real]
        The objective function to maximise. Should take a 1-dimensional array of
        coordinates from `space` (ordered as ``space.names``) and return a real number.
    space : ParameterSpace
        The bounded region over which `func` will be maximised.
    seed : int, optional
        (Default: None) A number to seed the random number generator used in the
        underlying optimisation. If ``None`` then no seeding will be used.
    tol : float, optional
        (Default: None) Relative and absolute tolerance governing convergence. If
        ``None`` then ``hmwave.core.numerics.FLOAT_TOLERANCE`` is used.
    maxiter : int, optional
        (Default: 1000) The maximum number of generations of differential evolution.

    Returns
    -------
    tuple[numpy.ndarray, float]
        A pair ``(x, val)``, where ``x`` is the point in the space that maximises the
        objective function and ``val`` is the maximum value of the objective function.

    Raises
    ------
    RuntimeError
        If finding the maximum value for the objective function failed for some reason.
        Note that reaching `maxiter` without meeting the tolerance is not treated as a
        failure: the best point found is returned.

    See Also
    --------
    The Scipy documentation for differential evolution optimisation:
    https://docs.scipy.org/doc/scipy/reference/generated/scipy.optimize.differential_evolution.html
    """

    if not isinstance(space, ParameterSpace):
        raise TypeError(
            f"Expected 'space' to be of type ParameterSpace, but received {type(space)} instead."
        )

    if seed is not None and not isinstance(seed, (int, np.integer)):
        raise TypeError(
            f"Random seed must be an integer, but received type {type(seed)}."
        )

    try:
        y = func((space.lower + space.upper) / 2)
    except Exception:
        raise ValueError(
            "Expected 'func' to be a callable that takes a 1-dimensional Numpy array."
        )

    if not isinstance(y, Real):
        raise ValueError(
            "Expected 'func' to be a callable that returns a real number, but instead "
            f"it returns type {type(y)}."
        )

    tol = numerics.FLOAT_TOLERANCE if tol is None else tol
    try:
        result = scipy.optimize.differential_evolution(
            lambda x: -func(x),
            bounds=space.bounds,
            tol=tol,
            atol=tol,
            maxiter=maxiter,
            seed=seed,
        )
    except Exception as e:
        raise RuntimeError(f"Maximisation failed: {str(e)}")

    if not np.isfinite(result.fun):
        raise RuntimeError(f"Maximisation failed to converge: {result.message}")

    return np.asarray(result.x, dtype=float), -float(result.fun)
