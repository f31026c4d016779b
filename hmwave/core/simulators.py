"""
Running simulators to obtain training data.

Simulator runs are synchronous and blocking, and are never retried: a run that fails is
dropped from the resulting `TrainingSet` and reported back to the caller, who decides
whether to retry it.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from numbers import Real
from typing import Any, Callable, Optional, Union

import numpy as np
from numpy.typing import NDArray

import hmwave.utilities.validation as validation
from hmwave.core.exceptions import InsufficientTrainingData, SimulatorEvaluationFailure
from hmwave.core.modelling import (
    AbstractSimulator,
    Input,
    ParameterSpace,
    TrainingPoint,
    TrainingSet,
    as_points,
)

logger = logging.getLogger(__name__)

Simulation = tuple[Input, Optional[Mapping[str, Real]]]
"""A simulator input together with its outputs, or ``None`` if the run failed."""


class FunctionSimulator(AbstractSimulator):
    """A simulator defined by a Python function.

    Parameters
    ----------
    func : Callable
        The function to run. If `parameter_names` is given, it is called with a dict
        mapping each parameter name to its value; otherwise it is called with the
        `Input` itself. It should return a mapping of output names to real numbers, and
        may raise an exception to signal a failed run.
    output_names : sequence of str
        The outputs the function must produce. Additional outputs are ignored.
    parameter_names : sequence of str, optional
        (Default: None) Names for the coordinates of inputs, e.g.
        ``ParameterSpace.names``.

    Attributes
    ----------
    previous_simulations : tuple[Simulation, ...]
        (Read-only) Every input this simulator has been run at, in order, with the
        outputs obtained or ``None`` for failed runs.

    Examples
    --------
    >>> sim = FunctionSimulator(
    ...     lambda p: {"sum": p["a"] + p["b"]}, ["sum"], parameter_names=["a", "b"]
    ... )
    >>> sim.compute(Input(1, 2))
    {'sum': 3}
    """

    def __init__(
        self,
        func: Callable[[Any], Mapping[str, Real]],
        output_names: Sequence[str],
        parameter_names: Optional[Sequence[str]] = None,
    ):
        if not callable(func):
            raise TypeError(
                f"Expected 'func' to be callable, but received {type(func)} instead."
            )

        if isinstance(output_names, str) or not output_names:
            raise ValueError("Expected 'output_names' to be a non-empty sequence of names.")

        self._func = func
        self._output_names = tuple(output_names)
        self._parameter_names = None if parameter_names is None else tuple(parameter_names)
        self._simulations: list[Simulation] = []

    @property
    def output_names(self) -> tuple[str, ...]:
        return self._output_names

    @property
    def previous_simulations(self) -> tuple[Simulation, ...]:
        return tuple(self._simulations)

    def compute(self, x: Input) -> dict[str, Real]:
        """Run the function at an input.

        Raises
        ------
        SimulatorEvaluationFailure
            If the function raises an exception, or its result lacks an output or has an
            output that is not a finite real number.
        """

        if not isinstance(x, Input):
            raise TypeError(f"Expected 'x' to be of type Input, but received {type(x)}.")

        try:
            outputs = self._check_outputs(self._func(self._arguments(x)))
        except SimulatorEvaluationFailure:
            self._simulations.append((x, None))
            raise
        except Exception as e:
            self._simulations.append((x, None))
            raise SimulatorEvaluationFailure(f"Simulator run failed at {x}: {e}") from e

        self._simulations.append((x, outputs))
        return outputs

    def _arguments(self, x: Input) -> Union[Input, dict[str, Real]]:
        if self._parameter_names is None:
            return x

        if len(self._parameter_names) != len(x):
            raise ValueError(
                f"Expected an input with {len(self._parameter_names)} coordinates, but "
                f"received {len(x)}."
            )

        return dict(zip(self._parameter_names, x.value))

    def _check_outputs(self, result: Any) -> dict[str, Real]:
        if not isinstance(result, Mapping):
            raise SimulatorEvaluationFailure(
                f"Expected simulator to return a mapping of outputs, but it returned "
                f"{type(result)}."
            )

        outputs = {}
        for name in self._output_names:
            if name not in result:
                raise SimulatorEvaluationFailure(f"Simulator returned no output '{name}'.")

            value = result[name]
            if not isinstance(value, Real) or not np.isfinite(value):
                raise SimulatorEvaluationFailure(
                    f"Simulator output '{name}' is not a finite real number: {value!r}."
                )

            outputs[name] = value

        return outputs


def _make_run(x: Input, outputs: Any, names: Sequence[str]) -> TrainingPoint:
    if not isinstance(outputs, Mapping):
        raise SimulatorEvaluationFailure(
            f"Expected simulator to return a mapping of outputs, but it returned {type(outputs)}."
        )

    if missing := [name for name in names if name not in outputs]:
        raise SimulatorEvaluationFailure(f"Simulator returned no output '{missing[0]}'.")

    try:
        return TrainingPoint(x, {name: outputs[name] for name in names})
    except (TypeError, ValueError) as e:
        raise SimulatorEvaluationFailure(f"Malformed simulator output: {e}") from e


def run_simulations(
    simulator: AbstractSimulator,
    points: Union[NDArray, Sequence[Input]],
    space: Optional[ParameterSpace] = None,
    output_names: Optional[Sequence[str]] = None,
    min_points: int = 1,
) -> tuple[TrainingSet, list[tuple[Input, SimulatorEvaluationFailure]]]:
    """Run a simulator at each of a collection of parameter sets.

    Runs happen one after another. A run that raises ``SimulatorEvaluationFailure``, or
    lacks one of `output_names`, is dropped from the training data and listed among the
    failures instead.

    Parameters
    ----------
    simulator : AbstractSimulator
        The simulator to run.
    points : numpy.ndarray or sequence of Input
        The parameter sets, as an ``(n, d)`` array or a sequence of inputs.
    space : ParameterSpace, optional
        (Default: None) If given, every parameter set must belong to this space.
    output_names : sequence of str, optional
        (Default: None) The outputs to record; all of ``simulator.output_names`` if
        ``None``.
    min_points : int, optional
        (Default: 1) The least number of successful runs required.

    Returns
    -------
    tuple[TrainingSet, list[tuple[Input, SimulatorEvaluationFailure]]]
        The successful runs, in the order of `points`, and the failed inputs paired with
        the reason for failure.

    Raises
    ------
    InsufficientTrainingData
        If fewer than `min_points` runs succeed.
    """

    if not isinstance(simulator, AbstractSimulator):
        raise TypeError(
            "Expected 'simulator' to be of type AbstractSimulator, but received "
            f"{type(simulator)} instead."
        )

    validation.check_int(
        min_points,
        TypeError(
            f"Expected 'min_points' to be an integer, but received {type(min_points)} instead."
        ),
    )
    if min_points < 1:
        raise ValueError(f"Expected 'min_points' to be positive, but received {min_points}.")

    if isinstance(points, np.ndarray):
        inputs = [Input.from_array(row) for row in np.atleast_2d(points)]
    else:
        inputs = list(points)
        if not all(isinstance(x, Input) for x in inputs):
            raise TypeError("Expected 'points' to be an array or a sequence of Input.")

    if space is not None and inputs:
        arr, _ = as_points(np.array([x.value for x in inputs], dtype=float), space.dim)
        if not np.all(space.contains(arr)):
            raise ValueError("Expected all of 'points' to belong to 'space'.")

    names = tuple(simulator.output_names if output_names is None else output_names)
    runs, failures = [], []
    for x in inputs:
        try:
            runs.append(_make_run(x, simulator.compute(x), names))
        except SimulatorEvaluationFailure as e:
            logger.warning("Dropping simulator run at %s: %s", x, e)
            failures.append((x, e))

    logger.info("Completed %d of %d simulator runs", len(runs), len(inputs))
    if len(runs) < min_points:
        raise InsufficientTrainingData(
            f"Only {len(runs)} of {len(inputs)} simulator runs succeeded, but at least "
            f"{min_points} are required."
        )

    return TrainingSet(runs), failures
