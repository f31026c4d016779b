"""
History Matching in Waves (hmwave)
==================================

The `hmwave` package provides the computational core of Bayes linear history matching
for expensive, deterministic computer models. Fast statistical surrogates (emulators)
are built for selected simulator outputs, and used to rule out regions of parameter
space whose outputs could not plausibly match observed targets. The space that has
"Not been Ruled Out Yet" (NROY) is then refocused over successive *waves*, each wave
training new emulators on runs drawn from the current NROY region.

Key Features
============
- **Bayes linear emulation**: Regression surfaces over automatically selected active
  parameters, combined with a stationary correlated residual process.
- **Implausibility**: Per-output and nth-maximum combined implausibility, with
  observation, emulator and model discrepancy variances.
- **Diagnostics**: Comparison, classification and standardized error diagnostics with
  automated sigma inflation and emulator rejection.
- **Design generation**: Latin hypercube rejection sampling, line sampling towards the
  NROY boundary and importance sampling, finished with a maximin selection.
- **Wave orchestration**: A state machine sequencing fitting, validation and design
  across waves, keeping every wave's emulators in play.

Subpackages
---------------------------------------------------------------------------------------------------------
- [`core`][hmwave.core]:
Implements emulation, implausibility, diagnostics, design generation and wave handling.

- [`utilities`][hmwave.utilities]:
Argument validation, optimisation and other supporting functionality.


References
---------------------------------------------------------------------------------------------------------
- Vernon, I., Goldstein, M. and Bower, R. G. (2010) "Galaxy formation: a Bayesian
  uncertainty analysis". DOI: <https://doi.org/10.1214/10-BA524>
- Craig, P. S. et al. (1997) "Pressure matching for hydrocarbon reservoirs: a case study
  in the use of Bayes linear strategies for large computer experiments".
- Andrianakis, I. et al. (2015) "Bayesian history matching of complex infectious disease
  models using emulation: a tutorial and a case study on HIV in Uganda".
  DOI: <https://doi.org/10.1371/journal.pcbi.1003968>
"""

__version__ = "0.1.0"
