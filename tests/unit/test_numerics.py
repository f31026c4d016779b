import itertools
import math
import unittest

import numpy as np

import hmwave.core.numerics as numerics
from hmwave.core.numerics import (
    FLOAT_TOLERANCE,
    duplicate_rows,
    equal_within_tolerance,
    set_tolerance,
)
from tests.utilities.utilities import exact, make_window


class TestEqualWithinTolerance(unittest.TestCase):
    def assertAgreeOnRange(self, func1, func2, _range):
        for x in _range:
            self.assertIs(func1(x), func2(x))

    def test_agrees_with_math_isclose(self):
        """Whether two reals are equal up to tolerance agrees with math.isclose, for
        relative and absolute tolerances."""

        for x, tol in itertools.product([-1, 0.1, 1], [1e-1, 1e-3]):
            with self.subTest(x=x, tol=tol):
                self.assertAgreeOnRange(
                    lambda y: equal_within_tolerance(x, y, rel_tol=tol, abs_tol=0),
                    lambda y: math.isclose(x, y, rel_tol=tol, abs_tol=0),
                    _range=make_window(x, 2 * tol, type="rel"),
                )
                self.assertAgreeOnRange(
                    lambda y: equal_within_tolerance(x, y, rel_tol=0, abs_tol=tol),
                    lambda y: math.isclose(x, y, rel_tol=0, abs_tol=tol),
                    _range=make_window(x, 2 * tol, type="abs"),
                )

    def test_default_tolerances(self):
        """The default relative and absolute tolerances are the package's float
        tolerance."""

        self.assertAgreeOnRange(
            lambda y: equal_within_tolerance(1, y),
            lambda y: math.isclose(1, y, rel_tol=FLOAT_TOLERANCE, abs_tol=FLOAT_TOLERANCE),
            _range=make_window(1, 2 * FLOAT_TOLERANCE, type="rel"),
        )

    def test_nan_never_equal(self):
        self.assertFalse(equal_within_tolerance(math.nan, math.nan, rel_tol=1, abs_tol=1))
        self.assertFalse(equal_within_tolerance(math.inf, 1.1))

    def test_sequences_and_arrays(self):
        """Sequences and arrays are equal when they have equal length and agree
        element-wise, including when nested."""

        self.assertTrue(equal_within_tolerance([1, 2], np.array([1, 2 + 1e-12])))
        self.assertFalse(equal_within_tolerance([1, 2], [1, 2, 3]))
        self.assertTrue(equal_within_tolerance([[1, 2], [3, 4]], np.array([[1, 2], [3, 4]])))
        self.assertFalse(equal_within_tolerance([[1, 2], [3, 4]], (1, 2, 3, 4)))

    def test_type_error_for_mixed_arguments(self):
        with self.assertRaises(TypeError):
            equal_within_tolerance(1, [1])


class TestDuplicateRows(unittest.TestCase):
    def test_no_duplicates(self):
        points = np.array([[0.0, 0.0], [0.5, 0.1], [1.0, 1.0]])
        self.assertEqual([], duplicate_rows(points))

    def test_finds_pairs_within_tolerance(self):
        """Rows that agree up to tolerance are reported as index pairs (i, j) with
        i < j."""

        points = np.array([[0.0, 1.0], [0.3, 0.3], [1e-12, 1.0], [0.3, 0.3]])
        self.assertEqual([(0, 2), (1, 3)], duplicate_rows(points))

    def test_respects_supplied_tolerance(self):
        points = np.array([[0.0, 1.0], [0.01, 1.0]])
        self.assertEqual([], duplicate_rows(points))
        self.assertEqual([(0, 1)], duplicate_rows(points, rel_tol=0, abs_tol=0.1))

    def test_non_2d_array_error(self):
        with self.assertRaisesRegex(
            ValueError,
            exact(
                "Expected 'points' to be a 2-dimensional array, but received an array "
                "with 1 dimensions."
            ),
        ):
            duplicate_rows(np.array([1.0, 2.0]))


class TestSetTolerance(unittest.TestCase):
    def tearDown(self) -> None:
        set_tolerance(1e-9)

    def test_set_tolerance_tol_type_error(self):
        tol = [1, 2]
        with self.assertRaisesRegex(
            TypeError,
            exact(f"Expected 'tol' to be of type float, but received {type(tol)} instead."),
        ):
            set_tolerance(tol)

    def test_set_tolerance_tol_negative_error(self):
        with self.assertRaisesRegex(
            ValueError, exact("Expected 'tol' to be non-negative but received -1.5.")
        ):
            set_tolerance(-1.5)

    def test_set_tolerance_used_by_default(self):
        """The updated tolerance is used by equality checks without explicit
        tolerances."""

        set_tolerance(1e-3)
        self.assertEqual(1e-3, numerics.FLOAT_TOLERANCE)
        self.assertTrue(equal_within_tolerance(1.0, 1.0005))
