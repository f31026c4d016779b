"""Argument checks shared across the package.

The ``check_*(x, exception)`` functions raise the supplied exception when the check
fails, so that callers control the error message. `check_positive_real` and
`check_fraction` build the standard messages for a named argument themselves.
"""

from collections.abc import Iterable
from numbers import Real
from typing import Any, Callable

import numpy as np


def _is_real(x: Any) -> bool:
    return isinstance(x, Real)


def _is_finite(x: Any) -> bool:
    try:
        return bool(np.isfinite(x))
    except TypeError:
        return False


def _check_all(predicate: Callable[[Any], bool], x: Iterable, exception: Exception):
    if not all(predicate(element) for element in x):
        raise exception


def check_real(x: Any, exception: Exception) -> None:
    """Raise `exception` unless `x` is a real number."""
    if not _is_real(x):
        raise exception


def check_finite(x: Any, exception: Exception) -> None:
    """Raise `exception` unless `x` is a finite number."""
    if not _is_finite(x):
        raise exception


def check_int(x: Any, exception: Exception) -> None:
    """Raise `exception` unless `x` is an integer. Booleans are not integers here."""
    if isinstance(x, bool) or not isinstance(x, (int, np.integer)):
        raise exception


def check_entries_not_none(x: Iterable, exception: Exception) -> None:
    """Raise `exception` if some element of `x` is ``None``."""
    _check_all(lambda element: element is not None, x, exception)


def check_entries_real(x: Iterable, exception: Exception) -> None:
    """Raise `exception` if some element of `x` is not a real number."""
    _check_all(_is_real, x, exception)


def check_entries_finite(x: Iterable, exception: Exception) -> None:
    """Raise `exception` if some element of `x` is not a finite number."""
    _check_all(_is_finite, x, exception)


def check_positive_real(x: Any, name: str) -> None:
    """Raise a TypeError if an object is not a real number, or a ValueError if it is not
    a finite, strictly positive one."""

    check_real(
        x,
        TypeError(f"Expected '{name}' to be a real number, but received {type(x)} instead."),
    )
    if not (np.isfinite(x) and x > 0):
        raise ValueError(
            f"Expected '{name}' to be a positive real number, but received {x} instead."
        )


def check_fraction(x: Any, name: str) -> None:
    """Raise a TypeError if an object is not a real number, or a ValueError if it does
    not lie in the closed interval [0, 1]."""

    check_real(
        x,
        TypeError(f"Expected '{name}' to be a real number, but received {type(x)} instead."),
    )
    if not 0 <= x <= 1:
        raise ValueError(
            f"Expected '{name}' to be between 0 and 1, but received {x} instead."
        )
