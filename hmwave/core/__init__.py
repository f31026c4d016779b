"""
hmwave.core
===========

-------------------------------------------------------------------------------------------
The hmwave core package contains everything required to history match a deterministic
simulator: Bayes linear emulators of individual outputs, implausibility measures built
from them, validation diagnostics, design generation inside the non-implausible region
and the orchestration of successive waves.

-------------------------------------------------------------------------------------------
Modules
=========

[`modelling`][hmwave.core.modelling]:
    Parameter spaces, targets, training data, predictions and emulator collections.

[`regression`][hmwave.core.regression]:
    Polynomial basis functions, least squares fitting and active variable selection.

[`correlation`][hmwave.core.correlation]:
    Correlation kernels and pluggable correlation length estimation.

[`emulators`][hmwave.core.emulators]:
    Bayes linear emulators of single simulator outputs.

[`implausibility`][hmwave.core.implausibility]:
    Per-output and combined implausibility, NROY classification and volume estimates.

[`diagnostics`][hmwave.core.diagnostics]:
    Emulator validation and the automated correction loop.

[`designers`][hmwave.core.designers]:
    Latin hypercube designs and the three stage NROY design generator.

[`simulators`][hmwave.core.simulators]:
    Wrapping simulator callables and evaluating batches of parameter sets.

[`waves`][hmwave.core.waves]:
    The wave-by-wave history matching state machine.

[`numerics`][hmwave.core.numerics]:
    Numerical tolerance checks.

-------------------------------------------------------------------------------------------
"""
