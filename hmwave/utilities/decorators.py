import contextlib
from functools import wraps
from io import StringIO


def suppress_print(func):
    """Redirect anything printed to stdout by the wrapped function.

    Some libraries (e.g. the mogp-emulator) print progress from their fitting routines;
    this keeps such output away from the caller's stdout."""

    @wraps(func)
    def wrapper(*args, **kwargs):
        with contextlib.redirect_stdout(StringIO()):
            return func(*args, **kwargs)

    return wrapper
