"""Exceptions and warnings raised while preparing an ensemble launch.

Every error here is raised by the dispatcher before any lane starts. Numerical
outcomes inside a lane are reported through
:class:`cuensemble.integrators.lane_state.ReturnCode` instead.
"""


class ConfigurationError(ValueError):
    """The requested save policy or option combination is invalid."""


class IncompatibleNoiseError(ValueError):
    """The algorithm cannot integrate the batch's noise structure."""


class UnsupportedConfigurationError(NotImplementedError):
    """The combination is well-formed but not implemented, e.g. adaptive SDEs."""


class HostBackendWarning(UserWarning):
    """Lanes are running on the host backend rather than an accelerator."""
