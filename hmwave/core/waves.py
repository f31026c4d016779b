"""
Sequencing of history matching waves.

A [`HistoryMatch`][hmwave.core.waves.HistoryMatch] is a state machine that runs waves
of training, validation and design generation, narrowing the parameter space after each
wave:

```
COLLECTING_TRAINING_DATA --add_runs--> FITTING --fit--> VALIDATING
    --validate--> GENERATING_DESIGN --generate_design--> ADVANCING
    --advance--> COLLECTING_TRAINING_DATA (next wave)
```

Any state except ``TERMINATED`` may move to ``TERMINATED``: when the NROY region is
found to be empty, when emulator uncertainty is no longer larger than observation
uncertainty, or when enough simulator runs match every target. Emulators of every wave
are kept, and all of them are used when judging implausibility, since later emulators
are only valid inside their own, restricted, parameter space.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
from collections.abc import Mapping, Sequence
from numbers import Real
from typing import Optional, Union

import numpy as np
from numpy.typing import NDArray

import hmwave.utilities.validation as validation
from hmwave.core.designers import Design, DesignGenerator, DesignOptions
from hmwave.core.diagnostics import (
    CorrectionOptions,
    DiagnosticSummary,
    RefinementReport,
    refine_emulators,
    validation_diagnostics,
)
from hmwave.core.emulators import EmulatorOptions, fit_emulators
from hmwave.core.exceptions import EmptyNROY, InsufficientTrainingData, InvalidTransition
from hmwave.core.implausibility import DEFAULT_THRESHOLD, matching_fraction, nroy_fraction
from hmwave.core.modelling import (
    AbstractSimulator,
    EmulatorSet,
    Input,
    MultiWave,
    ParameterSpace,
    Target,
    TrainingSet,
    as_points,
)
from hmwave.core.simulators import run_simulations

logger = logging.getLogger(__name__)


class WaveState(enum.Enum):
    COLLECTING_TRAINING_DATA = "collecting_training_data"
    FITTING = "fitting"
    VALIDATING = "validating"
    GENERATING_DESIGN = "generating_design"
    ADVANCING = "advancing"
    TERMINATED = "terminated"


class TerminationReason(enum.Enum):
    """Why a history match stopped."""

    DIMINISHING_RETURNS = "diminishing_returns"
    EMPTY_NROY = "empty_nroy"
    TARGETS_MATCHED = "targets_matched"


@dataclasses.dataclass(frozen=True)
class WaveOptions(object):
    """Options for a history match.

    Parameters
    ----------
    threshold : numbers.Real, optional
        (Default: 3) The implausibility cutoff of every wave.
    nth : int, optional
        (Default: 1) Which largest implausibility is used to combine outputs.
    range_buffer : numbers.Real, optional
        (Default: 0.05) Fraction of each range width by which the bounding box of a new
        design is padded when narrowing the parameter space.
    min_training_points : int, optional
        (Default: None) The least number of training runs a wave accepts. If ``None``,
        no minimum beyond that needed for fitting is imposed.
    match_rate_goal : numbers.Real, optional
        (Default: None) Stop once at least this proportion of a wave's simulator runs
        match every target. If ``None``, this stopping rule is not used.
    validation_fraction : numbers.Real, optional
        (Default: 0.5) Proportion of a wave's runs held out for validation by
        `HistoryMatch.run_wave`.
    discrepancies : Mapping[str, numbers.Real], optional
        (Default: None) Model discrepancy variances keyed by output name.
    """

    threshold: Real = DEFAULT_THRESHOLD
    nth: int = 1
    range_buffer: Real = 0.05
    min_training_points: Optional[int] = None
    match_rate_goal: Optional[Real] = None
    validation_fraction: Real = 0.5
    discrepancies: Optional[Mapping[str, Real]] = None

    def __post_init__(self):
        validation.check_positive_real(self.threshold, "threshold")
        validation.check_int(
            self.nth,
            TypeError(f"Expected 'nth' to be an integer, but received {type(self.nth)}."),
        )
        if self.nth < 1:
            raise ValueError(f"Expected 'nth' to be positive, but received {self.nth}.")

        validation.check_fraction(self.range_buffer, "range_buffer")
        validation.check_fraction(self.validation_fraction, "validation_fraction")
        if self.match_rate_goal is not None:
            validation.check_fraction(self.match_rate_goal, "match_rate_goal")

        if self.min_training_points is not None:
            validation.check_int(
                self.min_training_points,
                TypeError(
                    "Expected 'min_training_points' to be None or an integer, but received "
                    f"{type(self.min_training_points)} instead."
                ),
            )

        if self.discrepancies is not None:
            object.__setattr__(self, "discrepancies", dict(self.discrepancies))


@dataclasses.dataclass
class Wave(object):
    """The record of one wave, filled in as the wave progresses.

    Attributes
    ----------
    index : int
        The wave number, starting from 0.
    space : ParameterSpace
        The parameter space the wave's runs and emulators belong to.
    threshold : numbers.Real
        The implausibility cutoff of the wave.
    training, validation : TrainingSet, optional
        The runs used to fit and to validate the wave's emulators.
    emulators : EmulatorSet, optional
        The fitted emulators, replaced by the refined ones after validation.
    report : RefinementReport, optional
        The outcome of emulator refinement.
    diagnostics : dict[str, DiagnosticSummary], optional
        Diagnostics of the refined emulators.
    design : Design, optional
        The design generated for the next wave.
    """

    index: int
    space: ParameterSpace
    threshold: Real = DEFAULT_THRESHOLD
    training: Optional[TrainingSet] = None
    validation: Optional[TrainingSet] = None
    emulators: Optional[EmulatorSet] = None
    report: Optional[RefinementReport] = None
    diagnostics: Optional[dict[str, DiagnosticSummary]] = None
    design: Optional[Design] = None


class HistoryMatch(object):
    """Runs history matching in waves.

    Parameters
    ----------
    space : ParameterSpace
        The initial parameter space (wave 0).
    targets : Mapping[str, Target]
        Targets keyed by output name. Only these outputs are emulated unless
        `output_names` is given.
    options : WaveOptions, optional
        (Default: None) Options for the waves.
    emulator_options : EmulatorOptions, optional
        (Default: None) Options for fitting emulators.
    design_options : DesignOptions, optional
        (Default: None) Options for generating designs.
    correction_options : CorrectionOptions, optional
        (Default: None) Options for correcting emulators after validation. Their
        `cutoff` is replaced by the wave threshold.
    output_names : sequence of str, optional
        (Default: None) The outputs to emulate; the outputs with targets if ``None``.

    Attributes
    ----------
    state : WaveState
        (Read-only) The current state.
    space : ParameterSpace
        (Read-only) The parameter space of the current wave.
    waves : tuple[Wave, ...]
        (Read-only) Every wave so far, the current one last.
    emulators : MultiWave
        (Read-only) The validated emulators of every wave.
    termination_reason : TerminationReason or None
        (Read-only) Why the history match stopped, if it has.
    """

    def __init__(
        self,
        space: ParameterSpace,
        targets: Mapping[str, Target],
        options: Optional[WaveOptions] = None,
        emulator_options: Optional[EmulatorOptions] = None,
        design_options: Optional[DesignOptions] = None,
        correction_options: Optional[CorrectionOptions] = None,
        output_names: Optional[Sequence[str]] = None,
    ):
        if not isinstance(space, ParameterSpace):
            raise TypeError(
                f"Expected 'space' to be of type ParameterSpace, but received {type(space)} "
                "instead."
            )

        if not isinstance(targets, Mapping) or not targets:
            raise ValueError("Expected 'targets' to be a non-empty mapping of output names.")

        if bad := [name for name, t in targets.items() if not isinstance(t, Target)]:
            raise TypeError(f"Expected the target for '{bad[0]}' to be of type Target.")

        self._targets = dict(targets)
        self._options = WaveOptions() if options is None else options
        self._emulator_options = emulator_options
        self._design_options = design_options
        self._correction_options = correction_options
        self._output_names = tuple(targets if output_names is None else output_names)
        self._initial_space = space
        self._waves = [Wave(0, space, self._options.threshold)]
        self._emulators = MultiWave()
        self._state = WaveState.COLLECTING_TRAINING_DATA
        self._termination_reason = None

    def __repr__(self) -> str:
        return (
            f"HistoryMatch(wave={self.current_wave.index}, state={self._state.name}, "
            f"space={self.space!r})"
        )

    @property
    def state(self) -> WaveState:
        return self._state

    @property
    def targets(self) -> dict[str, Target]:
        return dict(self._targets)

    @property
    def output_names(self) -> tuple[str, ...]:
        return self._output_names

    @property
    def current_wave(self) -> Wave:
        return self._waves[-1]

    @property
    def waves(self) -> tuple[Wave, ...]:
        return tuple(self._waves)

    @property
    def space(self) -> ParameterSpace:
        return self.current_wave.space

    @property
    def emulators(self) -> MultiWave:
        return self._emulators

    @property
    def termination_reason(self) -> Optional[TerminationReason]:
        return self._termination_reason

    def _require(self, operation: str, *states: WaveState) -> None:
        if self._state not in states:
            raise InvalidTransition(
                f"Cannot {operation} in state {self._state.name}: requires "
                f"{' or '.join(s.name for s in states)}."
            )

    def _move_to(self, state: WaveState) -> None:
        logger.info(
            "Wave %d: %s -> %s", self.current_wave.index, self._state.name, state.name
        )
        self._state = state

    def terminate(self, reason: TerminationReason) -> None:
        """Stop the history match, e.g. when the caller judges further waves to be of
        little value."""

        self._require(
            "terminate", *(s for s in WaveState if s is not WaveState.TERMINATED)
        )
        if not isinstance(reason, TerminationReason):
            raise TypeError(
                f"Expected 'reason' to be of type TerminationReason, but received "
                f"{type(reason)} instead."
            )

        self._termination_reason = reason
        self._move_to(WaveState.TERMINATED)

    def add_runs(self, training: TrainingSet, validation_set: TrainingSet) -> None:
        """Supply the current wave's training and validation runs.

        May be called again before fitting succeeds, replacing the runs supplied.

        Raises
        ------
        InsufficientTrainingData
            If there are fewer training runs than ``options.min_training_points``.
        ValueError
            If some run lies outside the current space or lacks an emulated output.
        """

        self._require("add runs", WaveState.COLLECTING_TRAINING_DATA, WaveState.FITTING)
        for name, runs in (("training", training), ("validation_set", validation_set)):
            if not isinstance(runs, TrainingSet):
                raise TypeError(
                    f"Expected '{name}' to be of type TrainingSet, but received "
                    f"{type(runs)} instead."
                )

            missing = [o for o in self._output_names if o not in runs.output_names]
            if missing:
                raise ValueError(f"Runs in '{name}' do not record output '{missing[0]}'.")

            if not np.all(self.space.contains(runs.inputs())):
                raise ValueError(
                    f"Expected every run in '{name}' to lie in the parameter space of wave "
                    f"{self.current_wave.index}."
                )

        min_points = self._options.min_training_points
        if min_points is not None and len(training) < min_points:
            raise InsufficientTrainingData(
                f"Wave {self.current_wave.index} requires at least {min_points} training "
                f"runs, but received {len(training)}."
            )

        self.current_wave.training = training
        self.current_wave.validation = validation_set
        if self._state is WaveState.COLLECTING_TRAINING_DATA:
            self._move_to(WaveState.FITTING)

    def fit(self) -> EmulatorSet:
        """Fit an emulator to the current wave's training runs for every output.

        Raises
        ------
        FittingError
            If some emulator cannot be fit. The state is left unchanged, so that other
            runs can be supplied with `add_runs`.
        """

        self._require("fit emulators", WaveState.FITTING)
        wave = self.current_wave
        wave.emulators = fit_emulators(
            wave.training, wave.space, self._output_names, self._emulator_options
        )
        self._move_to(WaveState.VALIDATING)
        return wave.emulators

    def validate(self, accept_unresolved: bool = False) -> RefinementReport:
        """Correct and prune the current wave's emulators against the validation runs.

        Raises
        ------
        MisclassificationUnresolved
            If some emulator still misclassifies after sigma inflation and
            `accept_unresolved` is false. The state is left unchanged, so that the
            emulators can be accepted with ``validate(accept_unresolved=True)``.
        """

        self._require("validate emulators", WaveState.VALIDATING)
        wave = self.current_wave

        # Corrections are judged at the cutoff this wave classifies with
        correction_options = dataclasses.replace(
            self._correction_options or CorrectionOptions(), cutoff=wave.threshold
        )
        report = refine_emulators(
            wave.emulators,
            wave.validation,
            self._targets,
            correction_options,
            accept_unresolved=accept_unresolved,
            discrepancies=self._options.discrepancies,
        )
        if report.flagged:
            logger.warning(
                "Accepting emulators for %s despite misclassifications",
                ", ".join(report.flagged),
            )

        wave.report = report
        wave.emulators = report.emulators
        wave.diagnostics = validation_diagnostics(
            report.emulators,
            wave.validation,
            self._targets,
            cutoff=wave.threshold,
            discrepancies=self._options.discrepancies,
        )
        self._emulators = MultiWave({**self._emulators, wave.index: report.emulators})
        self._move_to(WaveState.GENERATING_DESIGN)
        return report

    def generate_design(
        self, n: int, seed: Union[None, int, np.random.Generator] = None
    ) -> Design:
        """Generate the design for the next wave from the emulators of every wave.

        Raises
        ------
        EmptyNROY
            If no non-implausible parameter set can be found. The history match is
            terminated before the exception propagates.
        """

        self._require("generate a design", WaveState.GENERATING_DESIGN)
        wave = self.current_wave
        generator = DesignGenerator(
            self._emulators,
            self._targets,
            space=wave.space,
            threshold=wave.threshold,
            nth=self._options.nth,
            options=self._design_options,
            discrepancies=self._options.discrepancies,
        )
        try:
            wave.design = generator.generate(n, seed)
        except EmptyNROY:
            self._termination_reason = TerminationReason.EMPTY_NROY
            self._move_to(WaveState.TERMINATED)
            raise

        self._move_to(WaveState.ADVANCING)
        return wave.design

    def advance(self) -> ParameterSpace:
        """Start the next wave in the bounding region of the latest design.

        Returns
        -------
        ParameterSpace
            The new wave's parameter space, never wider than the previous one.
        """

        self._require("advance", WaveState.ADVANCING)
        wave = self.current_wave
        space = wave.space.bounding(wave.design.points, self._options.range_buffer)
        self._waves.append(Wave(wave.index + 1, space, self._options.threshold))
        logger.info("Wave %d parameter space: %s", wave.index + 1, space.as_dict())
        self._move_to(WaveState.COLLECTING_TRAINING_DATA)
        return space

    def uncertainty_ratio(self, points: Union[Input, NDArray]) -> float:
        """The largest ratio, over targeted outputs, of mean emulator variance at
        `points` to observation variance, using the latest emulators."""

        if not self._emulators:
            raise InvalidTransition("No emulators have been validated yet.")

        emulators = self._emulators.latest
        points, _ = as_points(points, self.space.dim)
        return max(
            float(np.mean(emulators[name].variance(points))) / self._targets[name].variance
            for name in emulators
            if name in self._targets
        )

    def check_termination(
        self,
        points: Union[None, Input, NDArray] = None,
        outputs: Optional[Union[TrainingSet, Mapping[str, NDArray]]] = None,
    ) -> Optional[TerminationReason]:
        """Terminate if emulator uncertainty at `points` is no larger than observation
        uncertainty, or if `outputs` match every target often enough.

        Returns
        -------
        TerminationReason or None
            The reason for terminating, or ``None`` if the history match continues.
        """

        self._require(
            "check termination", *(s for s in WaveState if s is not WaveState.TERMINATED)
        )
        reason = None
        if points is not None and self.uncertainty_ratio(points) <= 1:
            reason = TerminationReason.DIMINISHING_RETURNS
        elif (
            outputs is not None
            and self._options.match_rate_goal is not None
            and matching_fraction(outputs, self._targets) >= self._options.match_rate_goal
        ):
            reason = TerminationReason.TARGETS_MATCHED

        if reason is not None:
            self.terminate(reason)

        return reason

    def nroy_fraction(
        self, n_samples: int = 10000, seed: Union[None, int, np.random.Generator] = None
    ) -> float:
        """Estimate the proportion of the initial space that remains non-implausible for
        the emulators of every wave so far."""

        if not self._emulators:
            raise InvalidTransition("No emulators have been validated yet.")

        return nroy_fraction(
            self._emulators,
            self._initial_space,
            self._targets,
            n_samples=n_samples,
            seed=seed,
            cutoff=self._options.threshold,
            nth=self._options.nth,
        )

    def run_wave(
        self,
        simulator: AbstractSimulator,
        points: Union[NDArray, Sequence[Input]],
        n_next: int,
        seed: Union[None, int, np.random.Generator] = None,
        accept_unresolved: bool = False,
    ) -> Optional[Design]:
        """Run a complete wave.

        The simulator is run at `points`, the runs are split into training and
        validation sets, emulators are fit and validated, and a design of `n_next`
        points is generated. Unless a stopping rule applies, the history match then
        advances to the next wave, whose runs should be taken at the design.

        Returns
        -------
        Design or None
            The design generated, or ``None`` if the history match was terminated
            before one was generated.
        """

        self._require("run a wave", WaveState.COLLECTING_TRAINING_DATA)
        rng = np.random.default_rng(seed)
        runs, failures = run_simulations(
            simulator,
            points,
            self.space,
            self._output_names,
            min_points=max(2, self._options.min_training_points or 2),
        )
        if failures:
            logger.warning("%d simulator runs failed and were dropped", len(failures))

        training, validation_set = runs.split(self._options.validation_fraction, rng)
        self.add_runs(training, validation_set)
        self.fit()
        self.validate(accept_unresolved=accept_unresolved)

        if self.check_termination(outputs=runs) is not None:
            return None

        design = self.generate_design(n_next, rng)
        if self.check_termination(points=design.points) is None:
            self.advance()

        return design
