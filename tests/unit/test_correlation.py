import math
import unittest

import numpy as np

from hmwave.core.correlation import (
    KERNELS,
    CorrelationHyperparameters,
    FixedCorrelation,
    LikelihoodCorrelationEstimator,
    correlation_matrix,
    residual_log_likelihood,
)
from tests.utilities.utilities import HmwaveTestCase, exact


class TestKernels(HmwaveTestCase):
    def test_exp_sq_formula(self):
        """The default kernel is exp(-sum_j ((x_j - y_j) / theta_j)^2)."""

        corr = correlation_matrix(
            np.array([[0.0, 0.0]]), np.array([[0.5, 1.0]]), np.array([0.5, 2.0])
        )
        self.assertEqualWithinTolerance(math.exp(-(1 + 0.25)), corr[0, 0])

    def test_unit_diagonal_and_decay(self):
        points = np.array([[0.0], [0.1], [1.0]])
        for kernel in KERNELS:
            with self.subTest(kernel=kernel):
                corr = correlation_matrix(points, points, [0.5], kernel)
                self.assertArraysClose(np.ones(3), np.diag(corr))
                self.assertArraysClose(corr, corr.T)
                self.assertGreater(corr[0, 1], corr[0, 2])

    def test_orn_uhl_formula(self):
        corr = correlation_matrix(np.array([[0.0]]), np.array([[0.6]]), [0.3], "orn_uhl")
        self.assertEqualWithinTolerance(math.exp(-2), corr[0, 0])

    def test_unknown_kernel_error(self):
        with self.assertRaisesRegex(ValueError, "'gaussian' is not a supported kernel"):
            correlation_matrix(np.zeros((1, 1)), np.zeros((1, 1)), [1.0], "gaussian")


class TestCorrelationHyperparameters(unittest.TestCase):
    def test_scaled(self):
        """Scaling multiplies both variances by the square of the factor and leaves the
        correlation lengths unchanged."""

        params = CorrelationHyperparameters([0.5, 1.0], 2.0, 0.01)
        self.assertEqual(
            CorrelationHyperparameters([0.5, 1.0], 8.0, 0.04), params.scaled(2)
        )

    def test_lengths_stored_as_tuple(self):
        params = CorrelationHyperparameters(np.array([0.5, 1.0]), 1.0)
        self.assertEqual((0.5, 1.0), params.corr_length_scales)

    def test_validation(self):
        with self.assertRaises(ValueError):
            CorrelationHyperparameters([0.5, 0.0], 1.0)

        with self.assertRaisesRegex(
            ValueError,
            exact("Expected 'process_var' to be a positive real number, but received -1 instead."),
        ):
            CorrelationHyperparameters([0.5], -1)

        with self.assertRaises(ValueError):
            CorrelationHyperparameters([0.5], 1.0, nugget=-0.1)


class TestFixedCorrelation(unittest.TestCase):
    def test_scalar_broadcast(self):
        lengths = FixedCorrelation(0.7).estimate(np.zeros((5, 3)), np.zeros(5), 1.0, 0.0, "exp_sq")
        np.testing.assert_array_equal([0.7, 0.7, 0.7], lengths)

    def test_per_variable(self):
        estimator = FixedCorrelation([0.5, 1.5])
        np.testing.assert_array_equal(
            [0.5, 1.5], estimator.estimate(np.zeros((5, 2)), np.zeros(5), 1.0, 0.0, "exp_sq")
        )
        with self.assertRaises(ValueError):
            estimator.estimate(np.zeros((5, 3)), np.zeros(5), 1.0, 0.0, "exp_sq")

    def test_non_positive_error(self):
        with self.assertRaises(ValueError):
            FixedCorrelation([1.0, -1.0])


class TestLikelihoodCorrelationEstimator(unittest.TestCase):
    def setUp(self) -> None:
        self.points = np.linspace(-1, 1, 15)[:, None]

    def test_smooth_residuals_get_longer_lengths(self):
        """Slowly varying residuals are explained by a longer correlation length than
        rapidly oscillating ones."""

        estimator = LikelihoodCorrelationEstimator(seed=1)
        smooth = np.sin(1.5 * self.points[:, 0])
        rough = np.sin(12 * self.points[:, 0])
        smooth_length = estimator.estimate(self.points, smooth, np.var(smooth), 1e-6, "exp_sq")
        rough_length = estimator.estimate(self.points, rough, np.var(rough), 1e-6, "exp_sq")
        self.assertGreater(smooth_length[0], rough_length[0])

    def test_lengths_within_bounds(self):
        estimator = LikelihoodCorrelationEstimator(bounds=(0.2, 2.0), seed=0)
        residuals = np.cos(3 * self.points[:, 0])
        length = estimator.estimate(self.points, residuals, 0.5, 1e-6, "matern52")[0]
        self.assertTrue(0.2 - 1e-9 <= length <= 2.0 + 1e-9)

    def test_reproducible(self):
        residuals = np.cos(3 * self.points[:, 0])
        first = LikelihoodCorrelationEstimator(seed=4).estimate(
            self.points, residuals, 0.5, 1e-6, "exp_sq"
        )
        second = LikelihoodCorrelationEstimator(seed=4).estimate(
            self.points, residuals, 0.5, 1e-6, "exp_sq"
        )
        np.testing.assert_array_equal(first, second)

    def test_invalid_bounds_error(self):
        with self.assertRaises(ValueError):
            LikelihoodCorrelationEstimator(bounds=(2.0, 1.0))


class TestResidualLogLikelihood(unittest.TestCase):
    def test_singular_covariance_gives_very_low_value(self):
        points = np.zeros((3, 1))
        self.assertEqual(
            -1e300, residual_log_likelihood(points, np.ones(3), np.array([1.0]), 1.0, 0.0)
        )
