import math
import unittest

import numpy as np

from hmwave.core.modelling import (
    EmulatorSet,
    Input,
    MultiWave,
    ParameterSpace,
    Prediction,
    Target,
    TrainingPoint,
    TrainingSet,
    as_points,
)
from tests.utilities.utilities import HmwaveTestCase, exact


class TestInput(unittest.TestCase):
    def test_input_reals(self):
        """Test that an input can be constructed from args that are real numbers,
        including Numpy scalars."""

        self.assertEqual((1.2, 33), Input(1.2, np.int32(33)).value)

    def test_input_non_real_error(self):
        msg = "Arguments must be instances of real numbers"
        for coord in ["a", complex(1, 1)]:
            with self.subTest(coord=coord):
                with self.assertRaisesRegex(TypeError, exact(msg)):
                    Input(1, coord)

    def test_input_none_error(self):
        with self.assertRaisesRegex(
            TypeError, exact("Input coordinates must be real numbers, not None")
        ):
            Input(1.1, None)

    def test_input_non_finite_error(self):
        """Test that a ValueError is raised if a coordinate is NaN or infinite."""

        for coord in [np.nan, np.inf, -np.inf]:
            with self.subTest(coord=coord):
                with self.assertRaisesRegex(
                    ValueError, exact("Cannot supply NaN or non-finite numbers as arguments")
                ):
                    Input(1.1, coord)

    def test_repr(self):
        self.assertEqual("Input(1, 2.5)", repr(Input(1, 2.5)))

    def test_eq_up_to_tolerance(self):
        self.assertEqual(Input(2, 3), Input(2, 3 + 1e-12))
        self.assertNotEqual(Input(1, 1), Input(1, 1.1))
        self.assertNotEqual(Input(1), Input(1, 1))
        self.assertNotEqual(Input(1), 1)

    def test_getitem(self):
        x = Input(1, 2, 3)
        self.assertEqual(2, x[1])
        self.assertEqual(Input(2, 3), x[1:])
        with self.assertRaisesRegex(IndexError, exact("Input index 3 out of range.")):
            x[3]

    def test_from_array_and_to_array(self):
        x = Input.from_array(np.array([0.5, 1.5]))
        self.assertEqual(Input(0.5, 1.5), x)
        np.testing.assert_array_equal(np.array([0.5, 1.5]), x.to_array())

    def test_from_array_wrong_shape_error(self):
        with self.assertRaises(ValueError):
            Input.from_array(np.array([[1.0, 2.0]]))


class TestAsPoints(unittest.TestCase):
    def test_single_and_batch(self):
        points, single = as_points(Input(1, 2), 2)
        self.assertTrue(single)
        self.assertEqual((1, 2), points.shape)

        points, single = as_points(np.zeros((4, 2)), 2)
        self.assertFalse(single)
        self.assertEqual((4, 2), points.shape)

    def test_dimension_mismatch_error(self):
        with self.assertRaisesRegex(
            ValueError,
            exact("Expected parameter sets with 3 coordinates, but received 2 instead."),
        ):
            as_points([1.0, 2.0], 3)

    def test_non_finite_error(self):
        with self.assertRaises(ValueError):
            as_points(np.array([[1.0, np.nan]]), 2)


class TestParameterSpace(HmwaveTestCase):
    def setUp(self) -> None:
        self.space = ParameterSpace({"beta": (0.1, 0.8), "gamma": (0.05, 0.5)})

    def test_properties(self):
        self.assertEqual(("beta", "gamma"), self.space.names)
        self.assertEqual(2, self.space.dim)
        self.assertEqual(((0.1, 0.8), (0.05, 0.5)), self.space.bounds)
        self.assertEqualWithinTolerance(0.7 * 0.45, self.space.volume)

    def test_invalid_range_errors(self):
        with self.assertRaisesRegex(
            ValueError,
            exact(
                "Lower bound must be less than upper bound for parameter 'a', but "
                "received (1, 1)."
            ),
        ):
            ParameterSpace({"a": (1, 1)})

        with self.assertRaises(ValueError):
            ParameterSpace({})

        with self.assertRaises(ValueError):
            ParameterSpace({"a": (0, math.inf)})

    def test_membership(self):
        self.assertIn(Input(0.1, 0.5), self.space)
        self.assertNotIn(Input(0.9, 0.2), self.space)
        self.assertNotIn(Input(0.3), self.space)
        np.testing.assert_array_equal(
            [True, False], self.space.contains(np.array([[0.3, 0.2], [0.3, 0.6]]))
        )

    def test_scaling_maps(self):
        """Points map between the space, the unit hypercube and [-1, 1]^d."""

        self.assertEqual(Input(0.1, 0.5), self.space.scale([0, 1]))
        self.assertArraysClose([[0.5, 0.5]], self.space.to_unit(np.array([[0.45, 0.275]])))
        self.assertArraysClose([[-1.0, 1.0]], self.space.to_symmetric(Input(0.1, 0.5)))

    def test_restrict(self):
        narrower = self.space.restrict({"beta": (0.2, 0.5), "gamma": (0.05, 0.3)})
        self.assertEqual(((0.2, 0.5), (0.05, 0.3)), narrower.bounds)

    def test_restrict_cannot_widen_or_rename(self):
        with self.assertRaisesRegex(
            ValueError,
            exact(
                "Cannot widen the range of parameter 'beta' from (0.1, 0.8) to (0.0, 0.5)."
            ),
        ):
            self.space.restrict({"beta": (0.0, 0.5), "gamma": (0.05, 0.3)})

        with self.assertRaises(ValueError):
            self.space.restrict({"gamma": (0.05, 0.3), "beta": (0.2, 0.5)})

    def test_bounding(self):
        """The bounding box is padded by a fraction of its width and clipped to the
        space; constant parameters are padded by a fraction of the space's width."""

        space = ParameterSpace({"a": (0, 1), "b": (0, 1)})
        bounded = space.bounding(np.array([[0.2, 0.3], [0.4, 0.3], [0.98, 0.3]]), 0.1)
        self.assertEqualWithinTolerance([0.122, 1.0], bounded.bounds[0])
        self.assertEqualWithinTolerance([0.2, 0.4], bounded.bounds[1])

    def test_equality(self):
        self.assertEqual(ParameterSpace({"beta": (0.1, 0.8), "gamma": (0.05, 0.5)}), self.space)
        self.assertNotEqual(ParameterSpace({"beta": (0.1, 0.8)}), self.space)


class TestTarget(HmwaveTestCase):
    def test_observation_target(self):
        target = Target(100, 5)
        self.assertFalse(target.is_interval)
        self.assertEqual(25, target.variance)
        self.assertTrue(target.contains(114))
        self.assertFalse(target.contains(116))

    def test_interval_target(self):
        """Interval targets have their midpoint as value and a sixth of their width as
        standard deviation."""

        target = Target.interval(90, 120)
        self.assertEqual(105, target.value)
        self.assertEqual(5, target.sigma)
        self.assertEqual((90, 120), target.bounds)
        np.testing.assert_array_equal(
            [False, True, True, False], target.contains(np.array([89, 90, 120, 121]))
        )

    def test_non_positive_sigma_error(self):
        for sigma in [0, -1]:
            with self.subTest(sigma=sigma):
                with self.assertRaisesRegex(
                    ValueError,
                    exact(
                        f"Expected 'sigma' to be a positive real number, but received "
                        f"{sigma} instead."
                    ),
                ):
                    Target(1, sigma)

    def test_empty_interval_error(self):
        with self.assertRaises(ValueError):
            Target.interval(2, 2)


class TestTrainingSet(unittest.TestCase):
    def setUp(self) -> None:
        inputs = np.array([[i / 10, (i % 3) / 3] for i in range(10)])
        self.training = TrainingSet.from_arrays(
            inputs, {"f": inputs.sum(axis=1), "g": inputs[:, 0] ** 2}
        )

    def test_training_point_validation(self):
        with self.assertRaisesRegex(ValueError, exact("Output 'f' cannot be NaN or non-finite")):
            TrainingPoint(Input(1), {"f": math.nan})

        with self.assertRaises(TypeError):
            TrainingPoint((1,), {"f": 1.0})

    def test_training_point_immutable(self):
        point = TrainingPoint(Input(1), {"f": 1.0})
        with self.assertRaises(TypeError):
            point.outputs["f"] = 2.0

    def test_arrays(self):
        self.assertEqual(("f", "g"), self.training.output_names)
        self.assertEqual(2, self.training.dim)
        self.assertEqual((10, 2), self.training.inputs().shape)
        np.testing.assert_allclose(self.training.inputs().sum(axis=1), self.training.outputs("f"))

    def test_empty_error(self):
        with self.assertRaises(ValueError):
            TrainingSet([])

    def test_inconsistent_outputs_error(self):
        with self.assertRaises(ValueError):
            TrainingSet([TrainingPoint(Input(1), {"f": 1}), TrainingPoint(Input(2), {"g": 1})])

    def test_slicing_and_concatenation(self):
        self.assertIsInstance(self.training[:3], TrainingSet)
        self.assertEqual(10, len(self.training[:3] + self.training[3:]))

    def test_split_disjoint_and_non_empty(self):
        training, validation_set = self.training.split(0.5, seed=1)
        self.assertEqual(5, len(training))
        self.assertEqual(5, len(validation_set))
        train_x = {tuple(row) for row in training.inputs()}
        valid_x = {tuple(row) for row in validation_set.inputs()}
        self.assertFalse(train_x & valid_x)
        self.assertEqual({tuple(row) for row in self.training.inputs()}, train_x | valid_x)

    def test_split_keeps_both_sets_non_empty(self):
        training, validation_set = self.training[:2].split(0.0, seed=1)
        self.assertEqual(1, len(training))
        self.assertEqual(1, len(validation_set))

    def test_split_is_reproducible(self):
        first, _ = self.training.split(seed=3)
        second, _ = self.training.split(seed=3)
        np.testing.assert_array_equal(first.inputs(), second.inputs())


class TestPrediction(HmwaveTestCase):
    def test_standard_deviation(self):
        self.assertEqualWithinTolerance(3, Prediction(1, 9).standard_deviation)

    def test_negative_variance_error(self):
        with self.assertRaisesRegex(
            ValueError, exact("'variance' must be a non-negative real number, but received -1.")
        ):
            Prediction(1, -1)

    def test_equality(self):
        self.assertEqual(Prediction(1, 2), Prediction(1 + 1e-12, 2))
        self.assertNotEqual(Prediction(1, 2), Prediction(1, 2.1))


class TestEmulatorSet(unittest.TestCase):
    def test_names_and_transforms(self):
        emulators = EmulatorSet({"a": 1, "b": 2})
        self.assertEqual(("a", "b"), emulators.names)
        self.assertEqual(EmulatorSet({"a": 10, "b": 20}), emulators.map(lambda _, v: 10 * v))
        self.assertEqual(EmulatorSet({"a": 1, "b": 5}), emulators.replace("b", 5))
        self.assertEqual(EmulatorSet({"b": 2}), emulators.without("a"))

    def test_replace_unknown_error(self):
        with self.assertRaises(KeyError):
            EmulatorSet({"a": 1}).replace("b", 2)

    def test_non_string_keys_error(self):
        with self.assertRaises(ValueError):
            EmulatorSet({1: "x"})

    def test_not_equal_to_dict(self):
        self.assertNotEqual({"a": 1}, EmulatorSet({"a": 1}))


class TestMultiWave(unittest.TestCase):
    def test_from_sequence_and_append(self):
        waves = MultiWave.from_sequence([EmulatorSet({"a": 1})])
        self.assertEqual((0,), waves.waves)

        waves = waves.append(EmulatorSet({"a": 2, "b": 3}))
        self.assertEqual((0, 1), waves.waves)
        self.assertEqual(EmulatorSet({"a": 2, "b": 3}), waves.latest)

    def test_append_to_empty(self):
        self.assertEqual((0,), MultiWave().append(EmulatorSet({"a": 1})).waves)

    def test_latest_of_empty_error(self):
        with self.assertRaises(ValueError):
            MultiWave().latest

    def test_invalid_keys_and_values(self):
        with self.assertRaises(ValueError):
            MultiWave({True: EmulatorSet()})

        with self.assertRaises(TypeError):
            MultiWave({0: {"a": 1}})
