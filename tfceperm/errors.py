"""
Exceptions raised by the permutation TFCE engine.
"""


class ConfigurationError(ValueError):
    """Invalid engine, integrator or connectivity configuration."""


class ComputationFailure(RuntimeError):
    """A permutation could not be computed; the whole run is void."""


class ResourceExhaustion(MemoryError):
    """Permutation storage or output buffers could not be allocated."""
