"""
Validation of emulators against held out simulator runs.

Each diagnostic compares an emulator with the simulator's true output at the parameter
sets of a validation `TrainingSet`:

[`comparison_diagnostic`][hmwave.core.diagnostics.comparison_diagnostic]
Flags runs whose output lies more than ``sd`` emulator standard deviations from the
emulator expectation.

[`classification_diagnostic`][hmwave.core.diagnostics.classification_diagnostic]
Cross-tabulates emulator and model implausibility. Runs that the emulator rules out
but the simulator output does not (false rejections) are the failure mode.

[`standardized_errors`][hmwave.core.diagnostics.standardized_errors]
Standardised prediction errors, checked for overconfidence, conservatism and bias.

The diagnostics drive two automated corrections, combined in
[`refine_emulators`][hmwave.core.diagnostics.refine_emulators]: a bounded loop that
inflates the standard deviation of an emulator until it stops making false rejections
(`correct_misclassification`), and the dropping of emulators that fail too many
comparisons.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
from collections.abc import Mapping
from numbers import Real
from typing import Any, Optional
from warnings import warn

import numpy as np
from numpy.typing import NDArray
from scipy import stats

import hmwave.utilities.validation as validation
from hmwave.core.exceptions import FittingError, MisclassificationUnresolved
from hmwave.core.implausibility import (
    DEFAULT_THRESHOLD,
    implausibility,
    model_implausibility,
)
from hmwave.core.modelling import EmulatorSet, Target, TrainingSet

logger = logging.getLogger(__name__)

DEFAULT_FAIL_FRACTION = 0.05
"""The proportion of validation runs allowed to fail a diagnostic."""


def _check_validation_set(emulator: Any, validation_set: Any) -> None:
    if not isinstance(validation_set, TrainingSet):
        raise TypeError(
            "Expected 'validation_set' to be of type TrainingSet, but received "
            f"{type(validation_set)} instead."
        )

    if emulator.output_name not in validation_set.output_names:
        raise ValueError(
            f"Validation runs do not record output '{emulator.output_name}'."
        )


@dataclasses.dataclass(frozen=True)
class ComparisonResult(object):
    """Outcome of the comparison diagnostic.

    Attributes
    ----------
    flagged : numpy.ndarray
        Boolean mask of validation runs lying outside the emulator's ``sd``-sigma band.
    fraction : float
        The proportion of runs flagged.
    passed : bool
        Whether `fraction` is at most the allowed fail fraction.
    """

    flagged: NDArray
    fraction: float
    passed: bool


def comparison_diagnostic(
    emulator,
    validation_set: TrainingSet,
    sd: Real = 3,
    fail_fraction: Real = DEFAULT_FAIL_FRACTION,
) -> ComparisonResult:
    """Compare emulator predictions with simulator outputs at validation runs.

    A run is flagged when ``|E[f(x)] - f(x)| > sd * sqrt(Var[f(x)])``. Under a well
    calibrated emulator about 5% of runs are flagged with ``sd = 3``; the diagnostic
    passes when the flagged proportion does not exceed `fail_fraction`.

    Parameters
    ----------
    emulator : Emulator
        The emulator to check.
    validation_set : TrainingSet
        Held out simulator runs recording the emulator's output.
    sd : numbers.Real, optional
        (Default: 3) Width of the acceptance band in emulator standard deviations.
    fail_fraction : numbers.Real, optional
        (Default: 0.05) The largest proportion of flagged runs that passes.

    Returns
    -------
    ComparisonResult
        The flagged runs and the verdict.
    """

    _check_validation_set(emulator, validation_set)
    validation.check_positive_real(sd, "sd")
    validation.check_fraction(fail_fraction, "fail_fraction")

    inputs = validation_set.inputs()
    truth = validation_set.outputs(emulator.output_name)
    error = np.abs(emulator.expectation(inputs) - truth)
    flagged = error > sd * np.sqrt(emulator.variance(inputs))
    fraction = float(np.mean(flagged))
    return ComparisonResult(flagged, fraction, fraction <= fail_fraction)


@dataclasses.dataclass(frozen=True)
class ClassificationResult(object):
    """Outcome of the classification diagnostic.

    Attributes
    ----------
    table : dict[tuple[bool, bool], int]
        Counts keyed by ``(emulator_implausible, model_implausible)``.
    misclassified : numpy.ndarray
        Boolean mask of false rejections: runs the emulator rules out although the
        simulator output itself is not implausible.
    fraction : float
        The proportion of runs misclassified.
    passed : bool
        Whether `fraction` is at most the allowed fail fraction.
    """

    table: dict[tuple[bool, bool], int]
    misclassified: NDArray
    fraction: float
    passed: bool

    @property
    def n_misclassified(self) -> int:
        return int(np.sum(self.misclassified))


def classification_diagnostic(
    emulator,
    validation_set: TrainingSet,
    target: Target,
    cutoff: Real = DEFAULT_THRESHOLD,
    fail_fraction: Real = DEFAULT_FAIL_FRACTION,
    discrepancy: Real = 0.0,
) -> ClassificationResult:
    """Cross-tabulate emulator implausibility against model implausibility.

    The model implausibility of a run substitutes the simulator output for the emulator
    expectation and takes the emulator variance to be zero. A run that the emulator
    classifies as implausible but the model does not is a false rejection; runs the
    emulator keeps but the model rules out are harmless, as a later wave can remove
    them.
    """

    _check_validation_set(emulator, validation_set)
    validation.check_positive_real(cutoff, "cutoff")
    validation.check_fraction(fail_fraction, "fail_fraction")

    inputs = validation_set.inputs()
    truth = validation_set.outputs(emulator.output_name)
    emulator_implausible = implausibility(emulator, inputs, target, discrepancy) >= cutoff
    model_implausible = model_implausibility(truth, target, discrepancy) >= cutoff

    table = {
        (em, mod): int(np.sum((emulator_implausible == em) & (model_implausible == mod)))
        for em in (False, True)
        for mod in (False, True)
    }
    misclassified = emulator_implausible & ~model_implausible
    fraction = float(np.mean(misclassified))
    return ClassificationResult(table, misclassified, fraction, fraction <= fail_fraction)


@dataclasses.dataclass(frozen=True)
class StandardizedErrorResult(object):
    """Outcome of the standardised error diagnostic.

    Attributes
    ----------
    errors : numpy.ndarray
        ``(E[f(x)] - f(x)) / sqrt(Var[f(x)])`` for each validation run. Runs with zero
        emulator variance give 0 for an exact prediction and an infinite error
        otherwise.
    outside_fraction : float
        The proportion of errors outside ``[-sd, sd]``.
    overconfident : bool
        Whether `outside_fraction` exceeds the allowed fail fraction.
    conservative : bool
        Whether almost all errors lie well inside ``[-1, 1]``, suggesting the emulator
        variance is too large.
    skewness : float
        Sample skewness of the finite errors (NaN with fewer than 3 distinct values).
    biased : bool
        Whether a one sample t-test rejects a zero mean error at the 5% level.
    passed : bool
        Whether the emulator is not overconfident.
    """

    errors: NDArray
    outside_fraction: float
    overconfident: bool
    conservative: bool
    skewness: float
    biased: bool
    passed: bool


def standardized_errors(
    emulator,
    validation_set: TrainingSet,
    sd: Real = 3,
    fail_fraction: Real = DEFAULT_FAIL_FRACTION,
    conservative_fraction: Real = 0.95,
) -> StandardizedErrorResult:
    """Compute and assess standardised prediction errors at validation runs.

    For a healthy emulator the errors are roughly standard normal. More than
    `fail_fraction` of errors outside ``[-sd, sd]`` signals overconfidence; more than
    `conservative_fraction` of them inside ``(-1, 1)`` signals excessive conservatism
    and a significantly non-zero mean signals systematic bias.
    """

    _check_validation_set(emulator, validation_set)
    validation.check_positive_real(sd, "sd")
    validation.check_fraction(fail_fraction, "fail_fraction")
    validation.check_fraction(conservative_fraction, "conservative_fraction")

    inputs = validation_set.inputs()
    diffs = emulator.expectation(inputs) - validation_set.outputs(emulator.output_name)
    std = np.sqrt(emulator.variance(inputs))
    with np.errstate(divide="ignore", invalid="ignore"):
        errors = np.where(std > 0, diffs / np.where(std > 0, std, 1.0), np.sign(diffs) * np.inf)

    errors = np.where((std == 0) & (diffs == 0), 0.0, errors)
    outside_fraction = float(np.mean(np.abs(errors) > sd))
    overconfident = outside_fraction > fail_fraction
    conservative = float(np.mean(np.abs(errors) < 1)) > conservative_fraction

    finite = errors[np.isfinite(errors)]
    if len(finite) >= 3 and np.ptp(finite) > 0:
        skewness = float(stats.skew(finite))
        biased = bool(stats.ttest_1samp(finite, 0.0).pvalue < 0.05)
    else:
        skewness, biased = float("nan"), False

    return StandardizedErrorResult(
        errors, outside_fraction, overconfident, conservative, skewness, biased, not overconfident
    )


@dataclasses.dataclass(frozen=True)
class DiagnosticSummary(object):
    """The diagnostics of one emulator. `classification` is ``None`` for outputs
    without a target."""

    comparison: ComparisonResult
    classification: Optional[ClassificationResult]
    standardized: StandardizedErrorResult

    @property
    def passed(self) -> bool:
        return (
            self.comparison.passed
            and self.standardized.passed
            and (self.classification is None or self.classification.passed)
        )


def validation_diagnostics(
    emulators: EmulatorSet,
    validation_set: TrainingSet,
    targets: Mapping[str, Target],
    sd: Real = 3,
    cutoff: Real = DEFAULT_THRESHOLD,
    fail_fraction: Real = DEFAULT_FAIL_FRACTION,
    discrepancies: Optional[Mapping[str, Real]] = None,
) -> dict[str, DiagnosticSummary]:
    """Run every diagnostic for every emulator of a wave, keyed by output name."""

    discrepancies = {} if discrepancies is None else discrepancies
    summaries = {}
    for name, emulator in emulators.items():
        classification = None
        if name in targets:
            classification = classification_diagnostic(
                emulator,
                validation_set,
                targets[name],
                cutoff,
                fail_fraction,
                discrepancies.get(name, 0.0),
            )

        summaries[name] = DiagnosticSummary(
            comparison_diagnostic(emulator, validation_set, sd, fail_fraction),
            classification,
            standardized_errors(emulator, validation_set, sd, fail_fraction),
        )

    return summaries


@dataclasses.dataclass(frozen=True)
class CorrectionOptions(object):
    """Options for the automated correction of emulators.

    Parameters
    ----------
    inflation : numbers.Real, optional
        (Default: 1.1) The factor each correction step multiplies an emulator's standard
        deviation by. Must exceed 1.
    max_iterations : int, optional
        (Default: 50) The largest number of inflation steps per emulator.
    comparison_drop_fraction : numbers.Real, optional
        (Default: 0.1) Emulators flagging more than this proportion of validation runs in
        the comparison diagnostic are dropped.
    sd : numbers.Real, optional
        (Default: 3) Band width used by the comparison diagnostic.
    cutoff : numbers.Real, optional
        (Default: 3) Implausibility cutoff used by the classification diagnostic.
    """

    inflation: Real = 1.1
    max_iterations: int = 50
    comparison_drop_fraction: Real = 0.1
    sd: Real = 3
    cutoff: Real = DEFAULT_THRESHOLD

    def __post_init__(self):
        validation.check_positive_real(self.inflation, "inflation")
        if not self.inflation > 1:
            raise ValueError(
                f"Expected 'inflation' to be greater than 1, but received {self.inflation}."
            )

        validation.check_int(
            self.max_iterations,
            TypeError(
                "Expected 'max_iterations' to be an integer, but received "
                f"{type(self.max_iterations)} instead."
            ),
        )
        if self.max_iterations < 0:
            raise ValueError(
                "Expected 'max_iterations' to be non-negative, but received "
                f"{self.max_iterations}."
            )

        validation.check_fraction(self.comparison_drop_fraction, "comparison_drop_fraction")
        validation.check_positive_real(self.sd, "sd")
        validation.check_positive_real(self.cutoff, "cutoff")


class LoopStatus(enum.Enum):
    """How a bounded correction loop ended."""

    CONVERGED = "converged"
    CAP_EXCEEDED = "cap_exceeded"


@dataclasses.dataclass(frozen=True)
class CorrectionOutcome(object):
    """Result of `correct_misclassification`.

    Attributes
    ----------
    emulator : Emulator
        The (possibly inflated) emulator after the last step.
    status : LoopStatus
        Whether all false rejections were removed.
    iterations : int
        The number of inflation steps applied.
    misclassified_count : int
        False rejections remaining for `emulator`.
    """

    emulator: Any
    status: LoopStatus
    iterations: int
    misclassified_count: int

    @property
    def converged(self) -> bool:
        return self.status is LoopStatus.CONVERGED


def correct_misclassification(
    emulator,
    validation_set: TrainingSet,
    target: Target,
    options: Optional[CorrectionOptions] = None,
    discrepancy: Real = 0.0,
) -> CorrectionOutcome:
    """Inflate an emulator's standard deviation until it makes no false rejections.

    At each step the emulator is replaced by ``emulator.mult_sigma(options.inflation)``
    until the classification diagnostic reports no misclassified validation runs, or
    `options.max_iterations` steps have been made. The supplied emulator is never
    modified.

    Returns
    -------
    CorrectionOutcome
        The final emulator, with status ``LoopStatus.CONVERGED`` if no false rejections
        remain and ``LoopStatus.CAP_EXCEEDED`` otherwise.
    """

    options = CorrectionOptions() if options is None else options
    current = emulator
    for iteration in range(options.max_iterations + 1):
        count = classification_diagnostic(
            current, validation_set, target, options.cutoff, discrepancy=discrepancy
        ).n_misclassified
        if count == 0:
            if iteration > 0:
                logger.info(
                    "Removed misclassifications for '%s' after %d inflation steps",
                    emulator.output_name,
                    iteration,
                )
            return CorrectionOutcome(current, LoopStatus.CONVERGED, iteration, 0)

        if iteration < options.max_iterations:
            logger.debug(
                "Emulator for '%s' misclassifies %d runs; inflating sigma by %s",
                emulator.output_name,
                count,
                options.inflation,
            )
            current = current.mult_sigma(options.inflation)

    logger.warning(
        "Emulator for '%s' still misclassifies %d runs after %d inflation steps",
        emulator.output_name,
        count,
        options.max_iterations,
    )
    return CorrectionOutcome(
        current, LoopStatus.CAP_EXCEEDED, options.max_iterations, count
    )


@dataclasses.dataclass(frozen=True)
class RefinementReport(object):
    """Result of `refine_emulators`.

    Attributes
    ----------
    emulators : EmulatorSet
        The corrected emulators that were kept.
    dropped : tuple[str, ...]
        Outputs whose emulators failed the comparison diagnostic too often.
    flagged : tuple[str, ...]
        Outputs whose emulators were kept although misclassifications remain, requiring
        manual review.
    outcomes : dict[str, CorrectionOutcome]
        Correction outcomes for the outputs with targets.
    comparisons : dict[str, ComparisonResult]
        The comparison diagnostic of each corrected emulator.
    """

    emulators: EmulatorSet
    dropped: tuple[str, ...]
    flagged: tuple[str, ...]
    outcomes: dict[str, CorrectionOutcome]
    comparisons: dict[str, ComparisonResult]


def refine_emulators(
    emulators: EmulatorSet,
    validation_set: TrainingSet,
    targets: Mapping[str, Target],
    options: Optional[CorrectionOptions] = None,
    accept_unresolved: bool = False,
    discrepancies: Optional[Mapping[str, Real]] = None,
) -> RefinementReport:
    """Correct misclassifying emulators and drop unreliable ones.

    Every emulator with a target goes through `correct_misclassification`. Afterwards,
    any emulator flagging more than ``options.comparison_drop_fraction`` of validation
    runs in the comparison diagnostic is dropped, with a warning.

    Parameters
    ----------
    emulators : EmulatorSet
        The emulators of a wave.
    validation_set : TrainingSet
        Held out runs, disjoint from the emulators' training runs.
    targets : Mapping[str, Target]
        Targets keyed by output name.
    options : CorrectionOptions, optional
        (Default: None) Correction options; the defaults if ``None``.
    accept_unresolved : bool, optional
        (Default: False) Keep emulators whose correction loop hit its cap, listing them
        in the report's `flagged` attribute, instead of raising.
    discrepancies : Mapping[str, numbers.Real], optional
        (Default: None) Model discrepancy variances keyed by output name.

    Returns
    -------
    RefinementReport
        The kept emulators and what happened to each output.

    Raises
    ------
    MisclassificationUnresolved
        If some kept emulator still misclassifies after the iteration cap and
        `accept_unresolved` is false.
    FittingError
        If every emulator would be dropped.
    """

    options = CorrectionOptions() if options is None else options
    discrepancies = {} if discrepancies is None else discrepancies

    outcomes, comparisons, corrected = {}, {}, {}
    for name, emulator in emulators.items():
        if name in targets:
            outcome = correct_misclassification(
                emulator, validation_set, targets[name], options, discrepancies.get(name, 0.0)
            )
            outcomes[name] = outcome
            emulator = outcome.emulator

        corrected[name] = emulator
        comparisons[name] = comparison_diagnostic(
            emulator, validation_set, options.sd, options.comparison_drop_fraction
        )

    dropped = tuple(name for name, result in comparisons.items() if not result.passed)
    for name in dropped:
        warn(
            f"Dropping emulator for '{name}': {comparisons[name].fraction:.1%} of "
            "validation runs fail the comparison diagnostic."
        )

    if len(dropped) == len(corrected):
        raise FittingError(
            "Every emulator fails the comparison diagnostic: supply more training runs."
        )

    unresolved = {
        name: outcome
        for name, outcome in outcomes.items()
        if not outcome.converged and name not in dropped
    }
    if unresolved and not accept_unresolved:
        raise MisclassificationUnresolved(unresolved)

    kept = EmulatorSet({k: v for k, v in corrected.items() if k not in dropped})
    return RefinementReport(kept, dropped, tuple(unresolved), outcomes, comparisons)
