"""
Provides Bayes linear emulators of individual simulator outputs.


[Emulator][hmwave.core.emulators.Emulator]
---------------------------------------------------------------------------------------
[`fit`][hmwave.core.emulators.Emulator.fit]
Fit an emulator for one output to training data.

[`expectation`][hmwave.core.emulators.Emulator.expectation]
Adjusted expectation at parameter sets.

[`variance`][hmwave.core.emulators.Emulator.variance]
Adjusted variance at parameter sets.

[`covariance`][hmwave.core.emulators.Emulator.covariance]
Adjusted covariance matrix between two collections of parameter sets.

[`predict`][hmwave.core.emulators.Emulator.predict]
Prediction (expectation and variance) at a single parameter set.

[`mult_sigma`][hmwave.core.emulators.Emulator.mult_sigma]
New emulator with the residual standard deviation scaled.


[fit_emulators][hmwave.core.emulators.fit_emulators]
---------------------------------------------------------------------------------------
Fit emulators for several outputs concurrently, returning an ``EmulatorSet``.


"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from numbers import Real
from typing import Any, Optional, Union
from warnings import warn

import numpy as np
import scipy.linalg
from numpy.typing import NDArray

import hmwave.utilities.validation as validation
from hmwave.core.correlation import (
    KERNELS,
    AbstractCorrelationEstimator,
    CorrelationHyperparameters,
    LikelihoodCorrelationEstimator,
    correlation_matrix,
)
from hmwave.core.exceptions import FittingError
from hmwave.core.implausibility import implausibility
from hmwave.core.modelling import (
    EmulatorSet,
    Input,
    ParameterSpace,
    Prediction,
    Target,
    TrainingSet,
    as_points,
)
from hmwave.core.numerics import duplicate_rows
from hmwave.core.regression import (
    RegressionFit,
    build_regression,
    design_matrix,
    select_active_variables,
)

logger = logging.getLogger(__name__)

# Lower limit for the process variance, relative to the output variance, so that an
# exact regression fit still gives a usable (if tiny) residual process.
_MIN_RELATIVE_PROCESS_VAR = 1e-12


@dataclasses.dataclass(frozen=True)
class EmulatorOptions(object):
    """Options controlling how emulators are fit.

    Parameters
    ----------
    significance : numbers.Real, optional
        (Default: 0.05) The p-value below which a regression term is significant, used
        both for active variable selection and pruning second order terms.
    quadratic : bool, optional
        (Default: True) Whether squares and pairwise products of active parameters are
        candidate regression terms.
    kernel : str, optional
        (Default: 'exp_sq') The correlation kernel; one of ``correlation.KERNELS``.
    correlation : AbstractCorrelationEstimator, optional
        (Default: ``LikelihoodCorrelationEstimator()``) The strategy for choosing
        correlation lengths.
    nugget_fraction : numbers.Real, optional
        (Default: 1e-4) The nugget variance, as a fraction of the process variance.
    active_vars : sequence of str, optional
        (Default: None) Parameter names to use as the active variables instead of
        selecting them by significance.
    max_workers : int, optional
        (Default: None) The number of threads used by `fit_emulators`. ``None`` leaves
        the choice to ``concurrent.futures.ThreadPoolExecutor``.
    """

    significance: Real = 0.05
    quadratic: bool = True
    kernel: str = "exp_sq"
    correlation: AbstractCorrelationEstimator = dataclasses.field(
        default_factory=LikelihoodCorrelationEstimator
    )
    nugget_fraction: Real = 1e-4
    active_vars: Optional[Sequence[str]] = None
    max_workers: Optional[int] = None

    def __post_init__(self):
        validation.check_fraction(self.significance, "significance")
        if self.kernel not in KERNELS:
            raise ValueError(
                f"'{self.kernel}' is not a supported kernel: expected one of {tuple(KERNELS)}."
            )

        if not isinstance(self.correlation, AbstractCorrelationEstimator):
            raise TypeError(
                "Expected 'correlation' to be of type AbstractCorrelationEstimator, but "
                f"received {type(self.correlation)} instead."
            )

        validation.check_real(
            self.nugget_fraction,
            TypeError(
                "Expected 'nugget_fraction' to be a real number, but received "
                f"{type(self.nugget_fraction)} instead."
            ),
        )
        if self.nugget_fraction < 0:
            raise ValueError(
                "Expected 'nugget_fraction' to be non-negative, but received "
                f"{self.nugget_fraction} instead."
            )

        if self.active_vars is not None:
            object.__setattr__(self, "active_vars", tuple(self.active_vars))
            if not self.active_vars:
                raise ValueError("Expected 'active_vars' to name at least one parameter.")

        if self.max_workers is not None:
            validation.check_int(
                self.max_workers,
                TypeError(
                    "Expected 'max_workers' to be None or an integer, but received "
                    f"{type(self.max_workers)} instead."
                ),
            )
            if self.max_workers < 1:
                raise ValueError(
                    f"Expected 'max_workers' to be positive, but received {self.max_workers}."
                )


class Emulator(object):
    """A Bayes linear emulator of a single simulator output.

    The emulator models the output as a regression surface ``m(x)`` in the active
    parameters plus a stationary residual process with covariance
    ``sigma^2 * corr(x, x')`` between distinct parameter sets; the training covariance
    matrix additionally carries a nugget variance on its diagonal. Queries return the
    Bayes linear adjusted expectation and variance given the training runs:

    ```
    E[f(x)] = m(x) + Cov(x, X) Cov(X, X)^{-1} (f(X) - m(X))
    Var[f(x)] = sigma^2 - Cov(x, X) Cov(X, X)^{-1} Cov(X, x)
    ```

    with the variance floored at zero. The regression coefficients are treated as
    known once fit; their estimation uncertainty is absorbed by ``sigma^2``.

    Emulators are immutable and should be created with `Emulator.fit`. The variance
    can be rescaled with `mult_sigma`, which returns a new emulator.

    Parameters
    ----------
    output_name : str
        The name of the emulated output.
    space : ParameterSpace
        The parameter space the emulator was trained in (its valid domain).
    training : TrainingSet
        The runs the emulator was fit to.
    active : sequence of int
        Indices of the active parameters.
    regression : RegressionFit
        The fitted regression surface, over parameters mapped onto ``[-1, 1]``.
    hyperparameters : CorrelationHyperparameters
        Correlation lengths (one per active parameter), process variance and nugget.
    kernel : str, optional
        (Default: 'exp_sq') The correlation kernel.

    Raises
    ------
    FittingError
        If the training covariance matrix cannot be factorised.
    """

    def __init__(
        self,
        output_name: str,
        space: ParameterSpace,
        training: TrainingSet,
        active: Sequence[int],
        regression: RegressionFit,
        hyperparameters: CorrelationHyperparameters,
        kernel: str = "exp_sq",
    ):
        self._output_name = output_name
        self._space = space
        self._training = training
        self._active = tuple(int(i) for i in active)
        self._regression = regression
        self._hyperparameters = hyperparameters
        self._kernel = kernel

        if len(hyperparameters.corr_length_scales) != len(self._active):
            raise ValueError(
                f"Expected {len(self._active)} correlation lengths, one per active "
                f"parameter, but received {len(hyperparameters.corr_length_scales)}."
            )

        scaled = space.to_symmetric(training.inputs())
        self._train_active = scaled[:, self._active]
        cov = self._prior_covariance(self._train_active, self._train_active)
        cov[np.diag_indices_from(cov)] += hyperparameters.nugget
        try:
            self._factor = scipy.linalg.cho_factor(cov, lower=True)
        except np.linalg.LinAlgError:
            raise FittingError(
                f"Training covariance matrix for output '{output_name}' is singular: "
                "supply more, or more widely separated, training points."
            ) from None

        residuals = training.outputs(output_name) - regression.predict(scaled)
        self._weights = scipy.linalg.cho_solve(self._factor, residuals)

    @classmethod
    def fit(
        cls,
        training: TrainingSet,
        space: ParameterSpace,
        output_name: str,
        options: Optional[EmulatorOptions] = None,
    ) -> Emulator:
        """Fit an emulator for one output to training data.

        Active variables are chosen by significance in a least squares fit (unless given
        in `options`), the regression surface is refit over them, the process variance
        is the residual variance of that fit and the correlation lengths come from the
        estimator in `options`.

        Parameters
        ----------
        training : TrainingSet
            The runs to fit to. Every parameter set must lie in `space`.
        space : ParameterSpace
            The parameter space of the current wave.
        output_name : str
            The output to emulate.
        options : EmulatorOptions, optional
            (Default: None) Fitting options; the defaults of `EmulatorOptions` if
            ``None``.

        Returns
        -------
        Emulator
            The fitted emulator.

        Raises
        ------
        FittingError
            If training inputs are repeated (up to tolerance), there are too few
            training points for the regression, or the covariance matrix is singular.
        ValueError
            If a training input lies outside `space`.
        """

        options = EmulatorOptions() if options is None else options
        cls._validate_fit_args(training, space, output_name, options)

        inputs = training.inputs()
        if not np.all(space.contains(inputs)):
            raise ValueError(
                "Expected all training inputs to belong to 'space', but this is not the case."
            )

        if duplicates := duplicate_rows(inputs):
            i, j = duplicates[0]
            raise FittingError(
                f"Training points {i} and {j} have parameter sets that are not unique "
                "within tolerance."
            )

        y = training.outputs(output_name)
        scaled = space.to_symmetric(inputs)
        if options.active_vars is not None:
            active = tuple(space.names.index(name) for name in options.active_vars)
        else:
            active = select_active_variables(
                scaled, y, options.significance, options.quadratic
            )

        regression = build_regression(
            scaled, y, active, options.quadratic, options.significance
        )

        if len(y) < len(regression.basis) + len(active):
            warn(
                f"Fewer training points ({len(y)}) than regression terms and correlation "
                f"lengths ({len(regression.basis) + len(active)}) for output "
                f"'{output_name}'. Estimates may be unreliable."
            )

        process_var = max(
            regression.residual_variance,
            _MIN_RELATIVE_PROCESS_VAR * max(float(np.var(y)), 1.0),
        )
        nugget = options.nugget_fraction * process_var
        lengths = options.correlation.estimate(
            scaled[:, active], regression.residuals, process_var, nugget, options.kernel
        )
        hyperparameters = CorrelationHyperparameters(lengths, process_var, nugget)

        emulator = cls(
            output_name, space, training, active, regression, hyperparameters, options.kernel
        )
        logger.debug("Fitted %r", emulator)
        return emulator

    @staticmethod
    def _validate_fit_args(training: Any, space: Any, output_name: Any, options: Any):
        if not isinstance(training, TrainingSet):
            raise TypeError(
                f"Expected 'training' to be of type TrainingSet, but received {type(training)} "
                "instead."
            )

        if not isinstance(space, ParameterSpace):
            raise TypeError(
                f"Expected 'space' to be of type ParameterSpace, but received {type(space)} "
                "instead."
            )

        if not isinstance(options, EmulatorOptions):
            raise TypeError(
                "Expected 'options' to be None or of type EmulatorOptions, but received "
                f"{type(options)} instead."
            )

        if training.dim != space.dim:
            raise ValueError(
                f"Expected training inputs with {space.dim} coordinates, but they have "
                f"{training.dim}."
            )

        if output_name not in training.output_names:
            raise ValueError(f"Output '{output_name}' is not recorded in 'training'.")

        if options.active_vars is not None:
            if unknown := [v for v in options.active_vars if v not in space.names]:
                raise ValueError(f"Unknown active variable '{unknown[0]}'.")

    def __repr__(self) -> str:
        return (
            f"Emulator(output={self._output_name!r}, active_vars={self.active_vars}, "
            f"sigma_squared={self.sigma_squared:.4g}, "
            f"correlation_lengths={self._hyperparameters.corr_length_scales})"
        )

    @property
    def output_name(self) -> str:
        return self._output_name

    @property
    def valid_domain(self) -> ParameterSpace:
        """(Read-only) The parameter space the emulator was trained in."""
        return self._space

    @property
    def training_points(self) -> TrainingSet:
        """(Read-only) The runs the emulator was fit to."""
        return self._training

    @property
    def active_vars(self) -> tuple[str, ...]:
        """(Read-only) Names of the parameters in the emulator's functional form."""
        return tuple(self._space.names[i] for i in self._active)

    @property
    def basis_functions(self) -> tuple[str, ...]:
        """(Read-only) Labels of the regression terms, e.g. ``('1', 'beta', 'beta^2')``."""
        return tuple(f.label(self._space.names) for f in self._regression.basis)

    @property
    def regression_coefficients(self) -> NDArray:
        return self._regression.coefficients.copy()

    @property
    def hyperparameters(self) -> CorrelationHyperparameters:
        return self._hyperparameters

    @property
    def sigma_squared(self) -> float:
        """(Read-only) The process variance of the residual process."""
        return self._hyperparameters.process_var

    @property
    def correlation_lengths(self) -> tuple[float, ...]:
        return self._hyperparameters.corr_length_scales

    @property
    def nugget(self) -> float:
        return self._hyperparameters.nugget

    @property
    def kernel(self) -> str:
        return self._kernel

    def _prior_covariance(self, active1: NDArray, active2: NDArray) -> NDArray:
        return self.sigma_squared * correlation_matrix(
            active1, active2, self.correlation_lengths, self._kernel
        )

    def _scale(self, x: Any) -> tuple[NDArray, NDArray, bool]:
        points, single = as_points(x, self._space.dim)
        scaled = self._space.to_symmetric(points)
        return scaled, scaled[:, self._active], single

    def expectation(self, x: Union[Input, NDArray]) -> Union[float, NDArray]:
        """The adjusted expectation at a parameter set, or at each row of an ``(n, d)``
        array of parameter sets."""

        scaled, active, single = self._scale(x)
        cross = self._prior_covariance(active, self._train_active)
        mean = design_matrix(scaled, self._regression.basis) @ self._regression.coefficients
        result = mean + cross @ self._weights
        return float(result[0]) if single else result

    def variance(self, x: Union[Input, NDArray]) -> Union[float, NDArray]:
        """The adjusted variance at a parameter set, or at each row of an ``(n, d)``
        array of parameter sets. Always non-negative."""

        _, active, single = self._scale(x)
        cross = self._prior_covariance(active, self._train_active)
        reduction = np.sum(cross * scipy.linalg.cho_solve(self._factor, cross.T).T, axis=1)
        result = np.maximum(self.sigma_squared - reduction, 0.0)
        return float(result[0]) if single else result

    def covariance(
        self, x1: Union[Input, NDArray], x2: Union[Input, NDArray]
    ) -> NDArray:
        """The adjusted covariance matrix between two collections of parameter sets,
        of shape ``(n1, n2)``."""

        _, active1, _ = self._scale(x1)
        _, active2, _ = self._scale(x2)
        cross1 = self._prior_covariance(active1, self._train_active)
        cross2 = self._prior_covariance(active2, self._train_active)
        return self._prior_covariance(active1, active2) - cross1 @ scipy.linalg.cho_solve(
            self._factor, cross2.T
        )

    def predict(self, x: Input) -> Prediction:
        """The adjusted expectation and variance at a single parameter set."""

        if not isinstance(x, Input):
            raise TypeError(
                f"Expected 'x' to be of type Input, but received {type(x)} instead."
            )

        return Prediction(self.expectation(x), self.variance(x))

    def implausibility(
        self, x: Union[Input, NDArray], target: Target, discrepancy: Real = 0.0
    ) -> Union[float, NDArray]:
        """The implausibility of parameter set(s) against a target for this output."""

        return implausibility(self, x, target, discrepancy)

    def mult_sigma(self, factor: Real) -> Emulator:
        """Create an emulator with the residual standard deviation multiplied by
        `factor`.

        The process variance and nugget are both scaled by ``factor ** 2``, so the
        adjusted variance at every parameter set scales by ``factor ** 2`` while the
        adjusted expectation and correlation lengths are unchanged. This emulator is not
        modified.
        """

        validation.check_positive_real(factor, "factor")
        return Emulator(
            self._output_name,
            self._space,
            self._training,
            self._active,
            self._regression,
            self._hyperparameters.scaled(factor),
            self._kernel,
        )


def fit_emulators(
    training: TrainingSet,
    space: ParameterSpace,
    output_names: Optional[Sequence[str]] = None,
    options: Optional[EmulatorOptions] = None,
) -> EmulatorSet[Emulator]:
    """Fit an emulator for each of several outputs.

    Fits are independent of one another and run concurrently in a thread pool, one task
    per output. All fits complete before this function returns.

    Parameters
    ----------
    training : TrainingSet
        The runs to fit to.
    space : ParameterSpace
        The parameter space of the current wave.
    output_names : sequence of str, optional
        (Default: None) The outputs to emulate; all outputs of `training` if ``None``.
    options : EmulatorOptions, optional
        (Default: None) Fitting options shared by all outputs.

    Returns
    -------
    EmulatorSet[Emulator]
        The fitted emulators keyed by output name, in the order of `output_names`.

    Raises
    ------
    FittingError
        If the emulator for some output could not be fit; the message names the output.
    """

    options = EmulatorOptions() if options is None else options
    names = tuple(training.output_names if output_names is None else output_names)
    if not names:
        raise ValueError("Expected at least one output to emulate.")

    with ThreadPoolExecutor(max_workers=options.max_workers) as executor:
        futures = {
            name: executor.submit(Emulator.fit, training, space, name, options)
            for name in names
        }

    emulators = {}
    for name, future in futures.items():
        try:
            emulators[name] = future.result()
        except FittingError as e:
            raise e.__class__(f"Could not fit emulator for output '{name}': {e}") from e

    logger.info("Fitted emulators for %d outputs: %s", len(names), ", ".join(names))
    return EmulatorSet(emulators)
