"""Tolerance-based comparison of real numbers, used when testing whether parameter sets
or outputs coincide.

The package-wide tolerance `FLOAT_TOLERANCE` is read at call time and can be changed
with `set_tolerance`. `duplicate_rows` applies the same comparison to the rows of an
array of parameter sets, as needed when checking emulator training data.
"""

import math
from collections.abc import Sequence
from numbers import Real
from typing import Optional, Union

import numpy as np
from numpy.typing import NDArray

FLOAT_TOLERANCE = 1e-9
"""The default tolerance to use when testing for equality of real numbers."""


def equal_within_tolerance(
    x: Union[Real, Sequence[Real]],
    y: Union[Real, Sequence[Real]],
    rel_tol: Optional[Real] = None,
    abs_tol: Optional[Real] = None,
) -> bool:
    """Test equality of two real numbers or sequences of real numbers up to a tolerance.

    Sequences (including Numpy arrays) are compared element-wise and are only equal if
    they have the same length.

    Parameters
    ----------
    x, y :
        Real numbers or sequences of real numbers to test equality of.
    rel_tol :
        The maximum allowed relative difference. Defaults to `FLOAT_TOLERANCE`, read at
        call time so that updates made with `set_tolerance` take effect.
    abs_tol :
        The minimum permitted absolute difference. Defaults to `FLOAT_TOLERANCE`.

    Returns
    -------
    bool
        Whether the two numbers or sequences of numbers are equal up to the relative and
        absolute tolerances.
    """

    rel_tol = FLOAT_TOLERANCE if rel_tol is None else rel_tol
    abs_tol = FLOAT_TOLERANCE if abs_tol is None else abs_tol

    if _is_seq(x) and _is_seq(y):
        return len(x) == len(y) and all(
            equal_within_tolerance(a, b, rel_tol=rel_tol, abs_tol=abs_tol)
            for a, b in zip(x, y)
        )
    elif isinstance(x, Real) and isinstance(y, Real):
        return math.isclose(x, y, rel_tol=rel_tol, abs_tol=abs_tol)
    else:
        raise TypeError(
            f"Expected 'x' and 'y' to both be real numbers or both be sequences, but "
            f"received {type(x)} and {type(y)}."
        )


def _is_seq(x) -> bool:
    return isinstance(x, (Sequence, np.ndarray))


def duplicate_rows(
    points: NDArray, rel_tol: Optional[Real] = None, abs_tol: Optional[Real] = None
) -> list[tuple[int, int]]:
    """Find the pairs of rows of a 2-dimensional array that are equal up to tolerance.

    Two rows are considered equal when every pair of corresponding entries agrees in the
    sense of ``math.isclose`` with the given tolerances (defaulting to
    `FLOAT_TOLERANCE`).

    Parameters
    ----------
    points :
        An array of shape ``(n, d)``.
    rel_tol, abs_tol :
        Relative and absolute tolerances, as for `equal_within_tolerance`.

    Returns
    -------
    list[tuple[int, int]]
        Index pairs ``(i, j)`` with ``i < j`` of rows that coincide.
    """

    rel_tol = FLOAT_TOLERANCE if rel_tol is None else rel_tol
    abs_tol = FLOAT_TOLERANCE if abs_tol is None else abs_tol

    points = np.asarray(points, dtype=float)
    if points.ndim != 2:
        raise ValueError(
            f"Expected 'points' to be a 2-dimensional array, but received an array with "
            f"{points.ndim} dimensions."
        )

    # Elementwise version of math.isclose, broadcast over all pairs of rows
    diffs = np.abs(points[:, None, :] - points[None, :, :])
    scale = np.maximum(np.abs(points[:, None, :]), np.abs(points[None, :, :]))
    close = np.all(diffs <= np.maximum(rel_tol * scale, abs_tol), axis=-1)
    i, j = np.nonzero(np.triu(close, k=1))
    return list(zip(i.tolist(), j.tolist()))


def set_tolerance(tol: float):
    """
    Update the global FLOAT_TOLERANCE from its default (1e-9) to the value passed.

    Parameters
    ----------
    tol :
        The new tolerance to set the global FLOAT_TOLERANCE to.
    """

    if not isinstance(tol, float):
        raise TypeError(
            f"Expected 'tol' to be of type float, but received {type(tol)} instead."
        )

    if tol < 0:
        raise ValueError(f"Expected 'tol' to be non-negative but received {tol}.")

    global FLOAT_TOLERANCE
    FLOAT_TOLERANCE = tol
