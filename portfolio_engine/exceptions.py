"""
Engine Error Taxonomy
=====================
    (a) ValidationError       malformed input, rejected before the engine runs
    (b) numerical degeneracy  repaired in place and logged, never raised
    (c) DecompositionError    Cholesky failed on an unrepairable matrix (fatal)
    (d) convergence failure   flagged on the result, never raised
    (e) SimulationCancelled   cooperative cancellation, no partial result
"""

import numpy as np


class EngineError(Exception):
    """Base class for every error raised by the engine."""


class ValidationError(EngineError, ValueError):
    """Input rejected before entering the engine."""


class DecompositionError(EngineError, np.linalg.LinAlgError):
    """Covariance matrix could not be factorized even after regularization."""


class SimulationCancelled(EngineError):
    """Raised between batches once a cancellation has been requested."""
