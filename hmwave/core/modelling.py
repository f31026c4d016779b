"""Basic objects for expressing the history matching of simulators."""

from __future__ import annotations

import abc
import dataclasses
import math
import types
from collections.abc import Iterable, Mapping, Sequence
from numbers import Real
from typing import Any, Callable, Optional, TypeVar, Union

import numpy as np
from numpy.typing import NDArray

import hmwave.utilities.validation as validation
from hmwave.core.numerics import equal_within_tolerance

T = TypeVar("T")
S = TypeVar("S")


class Input(Sequence):
    """A parameter set, i.e. the input to a simulator or emulator.

    `Input` objects should be thought of as coordinate vectors, with coordinates ordered
    as the names of the `ParameterSpace` they belong to. They implement the Sequence
    abstract base class from the ``collections.abc`` module.

    Parameters
    ----------
    *args : tuple of numbers.Real
        The coordinates of the input. Each coordinate must define a finite
        number that is not a missing value (i.e. not None or NaN).

    Attributes
    ----------
    value : tuple of numbers.Real
        (Read-only) The coordinates of the point.

    Examples
    --------
    >>> x = Input(1, 2, 3)
    >>> x.value
    (1, 2, 3)
    >>> len(x)
    3
    >>> x[1:]
    Input(2, 3)
    """

    def __init__(self, *args: Real):
        self._value = self._validate_args(args)

    @classmethod
    def _validate_args(cls, args: tuple[Any, ...]) -> tuple[Real, ...]:
        """Check that all arguments define finite real numbers, returning the
        supplied tuple if so or raising an exception if not."""

        validation.check_entries_not_none(
            args, TypeError("Input coordinates must be real numbers, not None")
        )
        validation.check_entries_real(
            args, TypeError("Arguments must be instances of real numbers")
        )
        validation.check_entries_finite(
            args, ValueError("Cannot supply NaN or non-finite numbers as arguments")
        )

        return args

    @classmethod
    def from_array(cls, input: NDArray) -> Input:
        """Create an input from a 1-dimensional Numpy array of finite reals."""

        if not isinstance(input, np.ndarray):
            raise TypeError(
                f"Expected 'input' of type numpy.ndarray but received {type(input)}."
            )

        if not input.ndim == 1:
            raise ValueError(
                "Expected 'input' to be a 1-dimensional numpy.ndarray but received an "
                f"array with {input.ndim} dimensions."
            )

        return cls(*(float(z) for z in input))

    def to_array(self) -> NDArray:
        """Return the coordinates as a 1-dimensional float array."""

        return np.array(self._value, dtype=float)

    def __repr__(self) -> str:
        return f"Input({', '.join(repr(z) for z in self._value)})"

    def __str__(self) -> str:
        return str(self._value)

    def __eq__(self, other: Any) -> bool:
        """Returns ``True`` precisely when `other` is an `Input` with the same
        coordinates as this `Input`, up to the default tolerance."""

        if not isinstance(other, type(self)):
            return False

        return equal_within_tolerance(self._value, other._value)

    __hash__ = None

    def __len__(self) -> int:
        return len(self._value)

    def __getitem__(self, item: Union[int, slice]) -> Union[Input, Real]:
        try:
            subseq = self._value[item]
        except TypeError:
            raise TypeError(
                f"Subscript must be an 'int' or slice, but received {type(item)}."
            )
        except IndexError:
            raise IndexError(f"Input index {item} out of range.")

        if isinstance(item, slice):
            return self.__class__(*subseq)

        return subseq

    @property
    def value(self) -> tuple[Real, ...]:
        """(Read-only) The coordinates of the input."""

        return self._value


def as_points(x: Any, dim: int) -> tuple[NDArray, bool]:
    """Convert one or many parameter sets to a 2-dimensional array.

    Parameters
    ----------
    x : Input, sequence of reals or numpy.ndarray
        Either a single parameter set (an `Input`, or a 1-dimensional sequence or array)
        or a batch given as an array of shape ``(n, dim)``.
    dim : int
        The number of parameters.

    Returns
    -------
    tuple[numpy.ndarray, bool]
        The points as an array of shape ``(n, dim)``, together with whether a single
        parameter set was supplied.
    """

    if isinstance(x, Input):
        points, single = x.to_array()[None, :], True
    else:
        try:
            arr = np.asarray(x, dtype=float)
        except (TypeError, ValueError):
            raise TypeError(
                "Expected 'x' to be an Input, a sequence of real numbers or a Numpy "
                f"array, but received {type(x)} instead."
            ) from None

        if arr.ndim == 1:
            points, single = arr[None, :], True
        elif arr.ndim == 2:
            points, single = arr, False
        else:
            raise ValueError(
                f"Expected 'x' to have 1 or 2 dimensions, but it has {arr.ndim}."
            )

    if points.shape[1] != dim:
        raise ValueError(
            f"Expected parameter sets with {dim} coordinates, but received "
            f"{points.shape[1]} instead."
        )

    if not np.all(np.isfinite(points)):
        raise ValueError("Parameter sets cannot contain NaN or non-finite numbers.")

    return points, single


class ParameterSpace(object):
    """The space of parameter sets that a simulator is run over.

    A parameter space maps each parameter name to a closed range ``[lo, hi]`` with
    ``lo < hi``. The names, and their order, are fixed: later waves may narrow the
    ranges (see `restrict`) but can never add, remove or rename parameters. Membership
    of an `Input` can be tested with the ``in`` operator.

    Parameters
    ----------
    ranges : Mapping[str, tuple[Real, Real]]
        The lower and upper bound for each parameter, in parameter order.

    Attributes
    ----------
    names : tuple[str, ...]
        (Read-only) The parameter names.
    dim : int
        (Read-only) The number of parameters.
    bounds : tuple[tuple[float, float], ...]
        (Read-only) The ranges, ordered as `names`.
    lower, upper, widths : numpy.ndarray
        (Read-only) The lower bounds, upper bounds and range widths as arrays.

    Examples
    --------
    >>> space = ParameterSpace({"beta": (0.1, 0.8), "gamma": (0.05, 0.5)})
    >>> Input(0.3, 0.2) in space
    True
    >>> Input(0.9, 0.2) in space
    False
    """

    def __init__(self, ranges: Mapping[str, tuple[Real, Real]]):
        self._validate_ranges(ranges)
        self._names = tuple(ranges.keys())
        self._bounds = tuple((float(lo), float(hi)) for lo, hi in ranges.values())
        self._lower = np.array([lo for lo, _ in self._bounds])
        self._upper = np.array([hi for _, hi in self._bounds])

    @staticmethod
    def _validate_ranges(ranges: Any) -> None:
        if not isinstance(ranges, Mapping):
            raise TypeError(
                "Expected 'ranges' to be a mapping of parameter names to (lower, upper) "
                f"pairs, but received {type(ranges)} instead."
            )

        if not ranges:
            raise ValueError("At least one parameter range must be provided.")

        for name, bound in ranges.items():
            if not isinstance(name, str):
                raise TypeError(
                    f"Expected parameter names to be strings, but received {type(name)}."
                )

            if not isinstance(bound, Sequence) or len(bound) != 2:
                raise ValueError(
                    f"Range for parameter '{name}' must be a pair of numbers."
                )

            low, high = bound
            if not (isinstance(low, Real) and isinstance(high, Real)):
                raise TypeError(f"Range for parameter '{name}' must contain real numbers.")

            if not (math.isfinite(low) and math.isfinite(high)):
                raise ValueError(f"Range for parameter '{name}' must be finite.")

            if not low < high:
                raise ValueError(
                    f"Lower bound must be less than upper bound for parameter '{name}', "
                    f"but received ({low}, {high})."
                )

    @property
    def names(self) -> tuple[str, ...]:
        """(Read-only) The parameter names."""
        return self._names

    @property
    def dim(self) -> int:
        """(Read-only) The number of parameters."""
        return len(self._names)

    @property
    def bounds(self) -> tuple[tuple[float, float], ...]:
        """(Read-only) The parameter ranges, ordered as `names`."""
        return self._bounds

    @property
    def lower(self) -> NDArray:
        return self._lower.copy()

    @property
    def upper(self) -> NDArray:
        return self._upper.copy()

    @property
    def widths(self) -> NDArray:
        return self._upper - self._lower

    @property
    def volume(self) -> float:
        """(Read-only) The product of the range widths."""
        return float(np.prod(self.widths))

    def as_dict(self) -> dict[str, tuple[float, float]]:
        return dict(zip(self._names, self._bounds))

    def __contains__(self, item: Any) -> bool:
        """Returns ``True`` when `item` is an `Input` of the correct dimension whose
        coordinates lie within the ranges of this space."""

        return (
            isinstance(item, Input)
            and len(item) == self.dim
            and all(lo <= item[i] <= hi for i, (lo, hi) in enumerate(self._bounds))
        )

    def contains(self, points: Any) -> NDArray:
        """Test membership for a batch of parameter sets, returning a boolean array."""

        points, _ = as_points(points, self.dim)
        return np.all((points >= self._lower) & (points <= self._upper), axis=1)

    def __eq__(self, other: Any) -> bool:
        return (
            isinstance(other, ParameterSpace)
            and self._names == other._names
            and equal_within_tolerance(
                np.ravel(self._bounds), np.ravel(other._bounds)
            )
        )

    __hash__ = None

    def __repr__(self) -> str:
        return f"ParameterSpace({self.as_dict()!r})"

    def scale(self, coordinates: Sequence[Real]) -> Input:
        """Scale coordinates from the unit hypercube into coordinates for this space.

        For each coordinate, if the range of the corresponding parameter is
        ``[a_i, b_i]``, then ``x_i`` is transformed to ``a_i + x_i * (b_i - a_i)``.

        Raises
        ------
        ValueError
            If the number of coordinates supplied is not equal to the dimension of this
            space.
        """

        if not len(coordinates) == self.dim:
            raise ValueError(
                f"Expected 'coordinates' to be a sequence of length {self.dim} but "
                f"received sequence of length {len(coordinates)}."
            )

        return Input.from_array(self.from_unit(np.asarray(coordinates, dtype=float)))

    def from_unit(self, unit_points: NDArray) -> NDArray:
        """Map points of the unit hypercube into this space (batch version of
        `scale`)."""

        return self._lower + np.asarray(unit_points, dtype=float) * self.widths

    def to_unit(self, points: Any) -> NDArray:
        """Map points of this space onto the unit hypercube."""

        points, _ = as_points(points, self.dim)
        return (points - self._lower) / self.widths

    def to_symmetric(self, points: Any) -> NDArray:
        """Map points of this space onto the hypercube ``[-1, 1]^dim``."""

        return 2 * self.to_unit(points) - 1

    def restrict(self, ranges: Mapping[str, tuple[Real, Real]]) -> ParameterSpace:
        """Create a narrower parameter space.

        Parameters
        ----------
        ranges : Mapping[str, tuple[Real, Real]]
            New ranges for every parameter of this space. Each must lie within the
            existing range.

        Raises
        ------
        ValueError
            If the parameter names differ from this space's or a range would widen.
        """

        if tuple(ranges.keys()) != self._names:
            raise ValueError(
                f"Expected ranges for parameters {self._names}, but received ranges for "
                f"{tuple(ranges.keys())}."
            )

        for (name, (lo, hi)), (old_lo, old_hi) in zip(ranges.items(), self._bounds):
            if lo < old_lo or hi > old_hi:
                raise ValueError(
                    f"Cannot widen the range of parameter '{name}' from "
                    f"({old_lo}, {old_hi}) to ({lo}, {hi})."
                )

        return ParameterSpace(ranges)

    def bounding(self, points: Any, buffer: Real = 0.0) -> ParameterSpace:
        """Create the parameter space bounding a collection of points.

        The bounding box of the points is padded on each side by `buffer` times its
        width, then clipped to the ranges of this space. Parameters along which the
        points do not vary are padded by `buffer` (or 1%, if `buffer` is zero) of this
        space's range instead.
        """

        validation.check_fraction(buffer, "buffer")
        points, _ = as_points(points, self.dim)
        lo, hi = points.min(axis=0), points.max(axis=0)
        pad = np.where(hi > lo, buffer * (hi - lo), max(buffer, 0.01) * self.widths)
        lo = np.maximum(lo - pad, self._lower)
        hi = np.minimum(hi + pad, self._upper)
        return self.restrict(
            {name: (float(a), float(b)) for name, a, b in zip(self._names, lo, hi)}
        )


@dataclasses.dataclass(frozen=True)
class Target(object):
    """An observed value of a simulator output, or an interval of acceptable values.

    A target is either an observation ``value`` with standard deviation ``sigma``, or an
    acceptance interval created with `Target.interval`. Interval targets are expressed
    through their midpoint and a standard deviation of one sixth of their width, so that
    the interval ends sit three standard deviations from the midpoint.

    Parameters
    ----------
    value : numbers.Real
        The observed value.
    sigma : numbers.Real
        The observation's standard deviation, which must be positive.

    Attributes
    ----------
    bounds : tuple[float, float] or None
        (Read-only) The acceptance interval, or ``None`` for an observation target.
    """

    value: Real
    sigma: Real
    bounds: Optional[tuple[Real, Real]] = None

    def __post_init__(self):
        validation.check_real(
            self.value,
            TypeError(
                f"Expected 'value' to be a real number, but received {type(self.value)} "
                "instead."
            ),
        )
        validation.check_finite(
            self.value, ValueError("Target 'value' cannot be NaN or non-finite.")
        )
        validation.check_positive_real(self.sigma, "sigma")

        if self.bounds is not None:
            lower, upper = self.bounds
            if not lower < upper:
                raise ValueError(
                    "Expected target interval lower bound to be less than upper bound, "
                    f"but received ({lower}, {upper})."
                )

    @classmethod
    def interval(cls, lower: Real, upper: Real) -> Target:
        """Create a target from an acceptance interval ``[lower, upper]``."""

        validation.check_entries_real(
            (lower, upper), TypeError("Interval bounds must be real numbers.")
        )
        if not lower < upper:
            raise ValueError(
                "Expected target interval lower bound to be less than upper bound, "
                f"but received ({lower}, {upper})."
            )

        return cls((lower + upper) / 2, (upper - lower) / 6, bounds=(lower, upper))

    @property
    def is_interval(self) -> bool:
        return self.bounds is not None

    @property
    def variance(self) -> float:
        """(Read-only) The observation variance ``sigma^2``."""
        return float(self.sigma) ** 2

    def contains(self, output: Union[Real, NDArray], sd: Real = 3) -> Union[bool, NDArray]:
        """Whether simulator output(s) match this target: inside the interval, or within
        `sd` standard deviations of the observed value."""

        output = np.asarray(output, dtype=float)
        if self.bounds is not None:
            lower, upper = self.bounds
            matched = (output >= lower) & (output <= upper)
        else:
            matched = np.abs(output - self.value) <= sd * self.sigma

        return bool(matched) if matched.ndim == 0 else matched


@dataclasses.dataclass(frozen=True)
class TrainingPoint(object):
    """A single simulator run: a parameter set paired with the outputs it produced.

    Parameters
    ----------
    parameters : Input
        The parameter set the simulator was run at.
    outputs : Mapping[str, numbers.Real]
        The simulator outputs, keyed by output name. Each must be a finite real number.
    """

    parameters: Input
    outputs: Mapping[str, Real]

    def __post_init__(self):
        if not isinstance(self.parameters, Input):
            raise TypeError("Argument 'parameters' must be of type Input")

        if not isinstance(self.outputs, Mapping) or not self.outputs:
            raise TypeError("Argument 'outputs' must be a non-empty mapping")

        for name, output in self.outputs.items():
            if not isinstance(name, str):
                raise TypeError(f"Output names must be strings, but received {type(name)}")

            validation.check_real(
                output, TypeError(f"Output '{name}' must define a real number")
            )
            validation.check_finite(
                output, ValueError(f"Output '{name}' cannot be NaN or non-finite")
            )

        object.__setattr__(self, "outputs", types.MappingProxyType(dict(self.outputs)))

    def __str__(self) -> str:
        return f"({str(self.parameters)}, {dict(self.outputs)})"


class TrainingSet(Sequence):
    """An ordered, non-empty collection of simulator runs.

    Every run must have parameter sets of the same dimension and outputs for the same
    names. Indexing with a slice returns another `TrainingSet`.

    Parameters
    ----------
    points : Iterable[TrainingPoint]
        The simulator runs.

    Attributes
    ----------
    output_names : tuple[str, ...]
        (Read-only) The names of the outputs recorded for each run.
    dim : int
        (Read-only) The number of coordinates of each parameter set.
    """

    def __init__(self, points: Iterable[TrainingPoint]):
        self._points = tuple(points)
        if not self._points:
            raise ValueError("A TrainingSet must contain at least one TrainingPoint.")

        if not all(isinstance(p, TrainingPoint) for p in self._points):
            raise TypeError(
                "Expected all elements of 'points' to be of type TrainingPoint."
            )

        self._output_names = tuple(self._points[0].outputs)
        self._dim = len(self._points[0].parameters)
        for point in self._points[1:]:
            if len(point.parameters) != self._dim:
                raise ValueError(
                    "All parameter sets in a TrainingSet must have the same dimension."
                )
            if set(point.outputs) != set(self._output_names):
                raise ValueError(
                    "All runs in a TrainingSet must record the same simulator outputs."
                )

    @classmethod
    def from_arrays(cls, inputs: NDArray, outputs: Mapping[str, NDArray]) -> TrainingSet:
        """Create a training set from an ``(n, d)`` array of parameter sets and a mapping
        of output names to length ``n`` arrays of outputs."""

        inputs = np.asarray(inputs, dtype=float)
        if inputs.ndim != 2:
            raise ValueError("Expected 'inputs' to be a 2-dimensional array.")

        columns = {name: np.asarray(vals, dtype=float) for name, vals in outputs.items()}
        if any(len(col) != len(inputs) for col in columns.values()):
            raise ValueError(
                "Expected each array of outputs to have one entry per row of 'inputs'."
            )

        return cls(
            TrainingPoint(
                Input.from_array(row),
                {name: float(col[i]) for name, col in columns.items()},
            )
            for i, row in enumerate(inputs)
        )

    def __len__(self) -> int:
        return len(self._points)

    def __getitem__(self, item: Union[int, slice]) -> Union[TrainingPoint, TrainingSet]:
        if isinstance(item, slice):
            return TrainingSet(self._points[item])

        return self._points[item]

    def __add__(self, other: TrainingSet) -> TrainingSet:
        if not isinstance(other, TrainingSet):
            return NotImplemented

        return TrainingSet(self._points + other._points)

    def __repr__(self) -> str:
        return f"TrainingSet(<{len(self)} runs, outputs={self._output_names}>)"

    @property
    def output_names(self) -> tuple[str, ...]:
        return self._output_names

    @property
    def dim(self) -> int:
        return self._dim

    def inputs(self) -> NDArray:
        """The parameter sets as an array of shape ``(n, d)``."""

        return np.array([p.parameters.value for p in self._points], dtype=float)

    def outputs(self, name: str) -> NDArray:
        """The values of output `name` as an array of shape ``(n,)``."""

        if name not in self._output_names:
            raise KeyError(f"No output called '{name}' is recorded in this TrainingSet.")

        return np.array([p.outputs[name] for p in self._points], dtype=float)

    def split(
        self,
        validation_fraction: Real = 0.5,
        seed: Union[None, int, np.random.Generator] = None,
    ) -> tuple[TrainingSet, TrainingSet]:
        """Partition the runs at random into disjoint training and validation sets.

        Parameters
        ----------
        validation_fraction : numbers.Real, optional
            (Default: 0.5) The proportion of runs to hold out for validation. The
            number held out is rounded, then adjusted so that both sets are non-empty.
        seed : int or numpy.random.Generator, optional
            (Default: None) Source of randomness for the partition.

        Returns
        -------
        tuple[TrainingSet, TrainingSet]
            The training and validation sets, in that order.
        """

        validation.check_fraction(validation_fraction, "validation_fraction")
        if len(self) < 2:
            raise ValueError("Cannot split a TrainingSet with fewer than 2 runs.")

        n_validation = min(max(round(validation_fraction * len(self)), 1), len(self) - 1)
        order = np.random.default_rng(seed).permutation(len(self))
        held_out = set(order[:n_validation].tolist())
        training = [p for i, p in enumerate(self._points) if i not in held_out]
        validating = [p for i, p in enumerate(self._points) if i in held_out]
        return TrainingSet(training), TrainingSet(validating)


@dataclasses.dataclass(frozen=True)
class Prediction:
    """Represents a predicted value together with the variance and standard deviation of
    the prediction.

    Two predictions are considered equal if their estimated values and variances agree,
    to within the standard tolerance `hmwave.core.numerics.FLOAT_TOLERANCE`.

    Parameters
    ----------
    estimate : numbers.Real
        The estimated value of the prediction (the adjusted expectation).
    variance : numbers.Real
        The variance of the prediction (the adjusted variance).

    Attributes
    ----------
    standard_deviation : numbers.Real
        (Read-only) The square root of the variance.
    """

    estimate: Real
    variance: Real
    standard_deviation: Real = dataclasses.field(default=None, init=False)

    def __post_init__(self):
        validation.check_real(
            self.estimate,
            TypeError(
                "Expected 'estimate' to define a real number, but received "
                f"{type(self.estimate)} instead."
            ),
        )
        validation.check_real(
            self.variance,
            TypeError(
                "Expected 'variance' to define a real number, but received "
                f"{type(self.variance)} instead."
            ),
        )
        if self.variance < 0:
            raise ValueError(
                f"'variance' must be a non-negative real number, but received {self.variance}."
            )

        object.__setattr__(self, "standard_deviation", math.sqrt(self.variance))

    def __eq__(self, other: Any) -> bool:
        if type(other) is not type(self):
            return False

        return equal_within_tolerance(
            self.estimate, other.estimate
        ) and equal_within_tolerance(self.variance, other.variance)


class AbstractSimulator(abc.ABC):
    """Represents an abstract simulator.

    Classes that inherit from this abstract base class define simulators: opaque,
    deterministic programs mapping a parameter set to named outputs. A simulator may be
    slow, but is treated as a pure function of its input.
    """

    @property
    @abc.abstractmethod
    def output_names(self) -> tuple[str, ...]:
        """(Read-only) The names of the outputs produced by this simulator."""
        raise NotImplementedError

    @abc.abstractmethod
    def compute(self, x: Input) -> Mapping[str, Real]:
        """Run the simulator at a parameter set, returning outputs keyed by name.

        Implementations should raise ``SimulatorEvaluationFailure`` if the run fails.
        """

        raise NotImplementedError


class EmulatorSet(dict[str, T]):
    """The emulators of a single wave, as a mapping from output name to emulator.

    The only methods of `dict` that this class overrides are those concerning equality
    testing and the result of applying `repr`. An instance of this class is equal to
    another object precisely when the other object is also an `EmulatorSet` and there is
    equality as dicts.

    Parameters
    ----------
    named_elems :
        Either a mapping of output names to emulators, or an iterable of
        ``(name, emulator)`` pairs.

    Attributes
    ----------
    names : tuple of str
        (Read-only) The output names in the collection, in insertion order.
    """

    def __init__(self, named_elems: Union[Mapping[str, T], Iterable[tuple[str, T]]] = ()):
        super().__init__(named_elems)
        if invalid_keys := [k for k in self.keys() if not isinstance(k, str)]:
            key = invalid_keys[0]
            raise ValueError(
                f"Key '{key}' of invalid type {type(key)} found: keys should be output "
                "names."
            )

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(self.keys())

    def __repr__(self):
        return f"{__class__.__name__}({super().__repr__()})"

    def __eq__(self, other):
        return isinstance(other, __class__) and super().__eq__(other)

    def __ne__(self, other):
        return not self == other

    def map(self, f: Callable[[str, T], S]) -> EmulatorSet[S]:
        """Create a new collection by applying a function to each (name, emulator)."""

        return __class__({name: f(name, em) for name, em in self.items()})

    def replace(self, name: str, emulator: T) -> EmulatorSet[T]:
        """Create a new collection with the emulator for `name` replaced."""

        if name not in self:
            raise KeyError(f"No emulator for output '{name}' in this EmulatorSet.")

        return __class__({k: (emulator if k == name else v) for k, v in self.items()})

    def without(self, *names: str) -> EmulatorSet[T]:
        """Create a new collection with the emulators for `names` removed."""

        return __class__({k: v for k, v in self.items() if k not in names})


class MultiWave(dict[int, EmulatorSet]):
    """The emulators of successive waves, as a mapping from wave index to `EmulatorSet`.

    Emulators from later waves are only trained inside their own, restricted, parameter
    space, so the emulators of every wave remain relevant when deciding whether a
    parameter set is implausible.

    Attributes
    ----------
    waves : tuple of int
        (Read-only) The wave indices in the collection, in increasing order.
    latest : EmulatorSet
        (Read-only) The emulators of the highest indexed wave.

    Examples
    --------
    >>> mw = MultiWave.from_sequence([EmulatorSet({"I25": em0})])
    >>> mw.waves
    (0,)
    >>> mw = mw.append(EmulatorSet({"I25": em1, "R40": em2}))
    >>> mw.waves
    (0, 1)
    """

    def __init__(
        self,
        waved_elems: Union[Mapping[int, EmulatorSet], Iterable[tuple[int, EmulatorSet]]] = (),
    ):
        super().__init__(waved_elems)
        if invalid_keys := [
            k for k in self.keys() if isinstance(k, bool) or not isinstance(k, int)
        ]:
            key = invalid_keys[0]
            raise ValueError(
                f"Key '{key}' of invalid type {type(key)} found: keys should be integers "
                "that define waves."
            )

        if bad := [v for v in self.values() if not isinstance(v, EmulatorSet)]:
            raise TypeError(
                f"Expected values to be of type EmulatorSet, but found {type(bad[0])}."
            )

    @classmethod
    def from_sequence(cls, elements: Sequence[EmulatorSet]) -> MultiWave:
        """Create a collection with waves enumerating `elements` in order, from 0."""

        return cls({i: elem for i, elem in enumerate(elements)})

    @property
    def waves(self) -> tuple[int, ...]:
        return tuple(sorted(self.keys()))

    @property
    def latest(self) -> EmulatorSet:
        if not self:
            raise ValueError("This MultiWave does not contain any waves.")

        return self[self.waves[-1]]

    def append(self, emulators: EmulatorSet) -> MultiWave:
        """Create a new collection with `emulators` added as the next wave."""

        next_wave = self.waves[-1] + 1 if self else 0
        return __class__({**self, next_wave: emulators})

    def __repr__(self):
        return f"{__class__.__name__}({super().__repr__()})"

    def __eq__(self, other):
        return isinstance(other, __class__) and super().__eq__(other)

    def __ne__(self, other):
        return not self == other
