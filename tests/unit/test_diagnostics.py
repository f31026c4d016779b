import math
import unittest

import numpy as np

from hmwave.core.diagnostics import (
    CorrectionOptions,
    LoopStatus,
    classification_diagnostic,
    comparison_diagnostic,
    correct_misclassification,
    refine_emulators,
    standardized_errors,
    validation_diagnostics,
)
from hmwave.core.exceptions import FittingError, MisclassificationUnresolved
from hmwave.core.modelling import EmulatorSet, ParameterSpace, Target, TrainingSet
from tests.unit.fakes import FakeEmulator
from tests.utilities.utilities import HmwaveTestCase, exact

SPACE = ParameterSpace({"x": (0, 1)})


def make_validation_set(**outputs) -> TrainingSet:
    """Validation runs at equally spaced points, with the given outputs."""

    n = len(next(iter(outputs.values())))
    return TrainingSet.from_arrays(np.linspace(0, 1, n)[:, None], outputs)


def offset_outputs(n: int, n_offset: int, offset: float = 5.0) -> np.ndarray:
    outputs = np.zeros(n)
    outputs[:n_offset] = offset
    return outputs


class TestComparisonDiagnostic(HmwaveTestCase):
    def setUp(self) -> None:
        self.emulator = FakeEmulator("f", 0, 1, SPACE)

    def test_fails_when_too_many_runs_flagged(self):
        """3 flagged runs out of 40 is more than 5% and fails."""

        result = comparison_diagnostic(
            self.emulator, make_validation_set(f=offset_outputs(40, 3))
        )
        self.assertEqual(3, int(np.sum(result.flagged)))
        self.assertEqualWithinTolerance(0.075, result.fraction)
        self.assertFalse(result.passed)

    def test_passes_with_few_runs_flagged(self):
        result = comparison_diagnostic(
            self.emulator, make_validation_set(f=offset_outputs(40, 1))
        )
        self.assertEqualWithinTolerance(0.025, result.fraction)
        self.assertTrue(result.passed)

    def test_fail_fraction_is_inclusive(self):
        result = comparison_diagnostic(
            self.emulator, make_validation_set(f=offset_outputs(40, 2))
        )
        self.assertTrue(result.passed)

    def test_band_width(self):
        """Runs exactly 3 standard deviations away are not flagged."""

        validation_set = make_validation_set(f=np.array([3.0, -3.0, 3.5]))
        result = comparison_diagnostic(self.emulator, validation_set)
        np.testing.assert_array_equal([False, False, True], result.flagged)

        result = comparison_diagnostic(self.emulator, validation_set, sd=4)
        self.assertFalse(np.any(result.flagged))

    def test_validation_set_errors(self):
        with self.assertRaises(TypeError):
            comparison_diagnostic(self.emulator, {"f": np.zeros(3)})

        with self.assertRaisesRegex(
            ValueError, exact("Validation runs do not record output 'f'.")
        ):
            comparison_diagnostic(self.emulator, make_validation_set(g=np.zeros(3)))


class TestClassificationDiagnostic(unittest.TestCase):
    def setUp(self) -> None:
        self.target = Target(0, 1)

    def test_false_rejections_counted(self):
        """Runs the emulator rules out but whose simulator output matches the target are
        misclassified; runs both rule out are not."""

        emulator = FakeEmulator("f", 5, 0, SPACE)
        validation_set = make_validation_set(f=np.array([0.0, 0.5, 10.0, 10.0]))
        result = classification_diagnostic(emulator, validation_set, self.target)

        np.testing.assert_array_equal([True, True, False, False], result.misclassified)
        self.assertEqual(2, result.n_misclassified)
        self.assertEqual(0.5, result.fraction)
        self.assertFalse(result.passed)
        self.assertEqual(
            {(False, False): 0, (False, True): 0, (True, False): 2, (True, True): 2},
            result.table,
        )

    def test_kept_runs_ruled_out_by_model_are_harmless(self):
        emulator = FakeEmulator("f", 0, 0, SPACE)
        validation_set = make_validation_set(f=np.array([10.0, 0.0]))
        result = classification_diagnostic(emulator, validation_set, self.target)
        self.assertEqual(0, result.n_misclassified)
        self.assertEqual(1, result.table[(False, True)])
        self.assertTrue(result.passed)

    def test_discrepancy_enters_both_implausibilities(self):
        """A discrepancy variance can bring a run the model ruled out back into play,
        exposing a false rejection by the emulator."""

        emulator = FakeEmulator("f", 5, 0, SPACE)
        validation_set = make_validation_set(f=np.array([4.0, 4.0]))
        without = classification_diagnostic(emulator, validation_set, self.target)
        self.assertEqual(0, without.n_misclassified)
        self.assertEqual(2, without.table[(True, True)])

        with_discrepancy = classification_diagnostic(
            emulator, validation_set, self.target, discrepancy=1.0
        )
        self.assertEqual(2, with_discrepancy.n_misclassified)
        self.assertEqual(2, with_discrepancy.table[(True, False)])

    def test_cutoff_errors(self):
        emulator = FakeEmulator("f", 0, 0, SPACE)
        validation_set = make_validation_set(f=np.array([0.0]))
        with self.assertRaisesRegex(
            ValueError,
            exact("Expected 'cutoff' to be a positive real number, but received 0 instead."),
        ):
            classification_diagnostic(emulator, validation_set, self.target, cutoff=0)

        with self.assertRaises(TypeError):
            classification_diagnostic(emulator, validation_set, self.target, cutoff="3")


class TestStandardizedErrors(HmwaveTestCase):
    def test_overconfident(self):
        emulator = FakeEmulator("f", 0, 1, SPACE)
        validation_set = make_validation_set(f=np.array([0.0, 1.0, -1.0, 4.0]))
        result = standardized_errors(emulator, validation_set)
        self.assertArraysClose([0, -1, 1, -4], result.errors)
        self.assertEqualWithinTolerance(0.25, result.outside_fraction)
        self.assertTrue(result.overconfident)
        self.assertFalse(result.passed)

    def test_conservative(self):
        emulator = FakeEmulator("f", 0, 100, SPACE)
        rng = np.random.default_rng(0)
        validation_set = make_validation_set(f=rng.normal(size=30))
        result = standardized_errors(emulator, validation_set)
        self.assertTrue(result.conservative)
        self.assertFalse(result.overconfident)
        self.assertTrue(result.passed)

    def test_biased(self):
        emulator = FakeEmulator("f", 0, 1, SPACE)
        validation_set = make_validation_set(f=2 + 0.1 * np.sin(np.arange(30)))
        result = standardized_errors(emulator, validation_set)
        self.assertTrue(result.biased)
        self.assertTrue(np.all(result.errors < 0))

    def test_zero_variance(self):
        """Exact predictions with zero variance have zero error, inexact ones an
        infinite error."""

        emulator = FakeEmulator("f", 0, 0, SPACE)
        validation_set = make_validation_set(f=np.array([0.0, 1.0, -1.0]))
        result = standardized_errors(emulator, validation_set)
        self.assertEqual([0.0, -math.inf, math.inf], result.errors.tolist())
        self.assertTrue(math.isnan(result.skewness))
        self.assertFalse(result.biased)


class TestValidationDiagnostics(unittest.TestCase):
    def test_summary_per_output(self):
        emulators = EmulatorSet(
            {"f": FakeEmulator("f", 0, 1, SPACE), "g": FakeEmulator("g", 0, 1, SPACE)}
        )
        validation_set = make_validation_set(f=np.zeros(10), g=offset_outputs(10, 2))
        summaries = validation_diagnostics(emulators, validation_set, {"f": Target(0, 1)})

        self.assertEqual({"f", "g"}, set(summaries))
        self.assertIsNotNone(summaries["f"].classification)
        self.assertIsNone(summaries["g"].classification)
        self.assertTrue(summaries["f"].passed)
        self.assertFalse(summaries["g"].passed)


class TestCorrectionOptions(unittest.TestCase):
    def test_defaults(self):
        options = CorrectionOptions()
        self.assertEqual(1.1, options.inflation)
        self.assertEqual(50, options.max_iterations)

    def test_validation(self):
        with self.assertRaisesRegex(
            ValueError, exact("Expected 'inflation' to be greater than 1, but received 1.")
        ):
            CorrectionOptions(inflation=1)

        with self.assertRaises(ValueError):
            CorrectionOptions(max_iterations=-1)

        with self.assertRaises(TypeError):
            CorrectionOptions(max_iterations=2.5)

        with self.assertRaises(ValueError):
            CorrectionOptions(comparison_drop_fraction=1.5)


class TestCorrectMisclassification(unittest.TestCase):
    def setUp(self) -> None:
        self.target = Target(0, 1)
        self.validation_set = make_validation_set(f=np.zeros(10))

    def test_no_correction_needed(self):
        emulator = FakeEmulator("f", 0, 1, SPACE)
        outcome = correct_misclassification(emulator, self.validation_set, self.target)
        self.assertIs(emulator, outcome.emulator)
        self.assertIs(LoopStatus.CONVERGED, outcome.status)
        self.assertEqual(0, outcome.iterations)

    def test_inflation_removes_false_rejections(self):
        """Implausibility 5 / sqrt(1 + 1.1^(2k)) first drops below 3 after k = 4
        inflation steps."""

        emulator = FakeEmulator("f", 5, 1, SPACE)
        outcome = correct_misclassification(emulator, self.validation_set, self.target)
        self.assertTrue(outcome.converged)
        self.assertEqual(4, outcome.iterations)
        self.assertEqual(0, outcome.misclassified_count)
        self.assertAlmostEqual(1.1**8, outcome.emulator.variance(np.zeros((1, 1)))[0])
        self.assertEqual(1, emulator.variance(np.zeros((1, 1)))[0])

    def test_iteration_cap(self):
        emulator = FakeEmulator("f", 5, 0, SPACE)
        options = CorrectionOptions(max_iterations=5)
        outcome = correct_misclassification(emulator, self.validation_set, self.target, options)
        self.assertIs(LoopStatus.CAP_EXCEEDED, outcome.status)
        self.assertFalse(outcome.converged)
        self.assertEqual(5, outcome.iterations)
        self.assertEqual(10, outcome.misclassified_count)


class TestRefineEmulators(unittest.TestCase):
    def setUp(self) -> None:
        self.targets = {"good": Target(0, 1), "bad": Target(0, 1)}

        # The 'bad' emulator passes the comparison diagnostic but rules out runs whose
        # output (2.5) matches the target, until its variance has more than doubled.
        self.emulators = EmulatorSet(
            {
                "good": FakeEmulator("good", 0, 1, SPACE),
                "bad": FakeEmulator("bad", 5.5, 1, SPACE),
            }
        )
        self.validation_set = make_validation_set(good=np.zeros(20), bad=np.full(20, 2.5))

    def test_misclassifying_emulator_corrected(self):
        report = refine_emulators(self.emulators, self.validation_set, self.targets)
        self.assertEqual(("good", "bad"), report.emulators.names)
        self.assertEqual((), report.dropped)
        self.assertEqual((), report.flagged)
        self.assertTrue(report.outcomes["bad"].converged)
        self.assertGreater(report.emulators["bad"].variance(np.zeros((1, 1)))[0], 1)
        self.assertIs(self.emulators["good"], report.emulators["good"])

    def test_unresolved_raises(self):
        options = CorrectionOptions(max_iterations=2)
        with self.assertRaises(MisclassificationUnresolved) as cm:
            refine_emulators(self.emulators, self.validation_set, self.targets, options)

        self.assertEqual(["bad"], list(cm.exception.outcomes))

    def test_unresolved_accepted_and_flagged(self):
        options = CorrectionOptions(max_iterations=2)
        report = refine_emulators(
            self.emulators, self.validation_set, self.targets, options, accept_unresolved=True
        )
        self.assertEqual(("bad",), report.flagged)
        self.assertEqual(("good", "bad"), report.emulators.names)
        self.assertIs(LoopStatus.CAP_EXCEEDED, report.outcomes["bad"].status)

    def test_unreliable_emulator_dropped_with_warning(self):
        """An emulator flagging more than 10% of runs in the comparison diagnostic is
        dropped, whether or not its output has a target."""

        emulators = self.emulators.replace("bad", FakeEmulator("bad", 0, 1, SPACE))
        emulators = EmulatorSet({**emulators, "noisy": FakeEmulator("noisy", 0, 1, SPACE)})
        validation_set = make_validation_set(
            good=np.zeros(20), bad=np.zeros(20), noisy=offset_outputs(20, 3)
        )
        with self.assertWarnsRegex(UserWarning, "Dropping emulator for 'noisy'"):
            report = refine_emulators(emulators, validation_set, self.targets)

        self.assertEqual(("noisy",), report.dropped)
        self.assertEqual(("good", "bad"), report.emulators.names)
        self.assertNotIn("noisy", report.outcomes)
        self.assertFalse(report.comparisons["noisy"].passed)

    def test_all_dropped_error(self):
        emulators = EmulatorSet({"noisy": FakeEmulator("noisy", 0, 1, SPACE)})
        validation_set = make_validation_set(noisy=offset_outputs(20, 3))
        with self.assertWarns(UserWarning):
            with self.assertRaises(FittingError):
                refine_emulators(emulators, validation_set, {})
