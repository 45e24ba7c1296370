"""Error taxonomy for the equalization pipeline.

Every failure the core can raise derives from ``EqualizationError`` so the
command-line entry point can turn it into a readable message and a non-zero
exit status. Device-level failures are treated as non-transient: nothing here
is retried.
"""


class EqualizationError(Exception):
    """Base class for all pipeline failures."""


class ConfigurationError(EqualizationError):
    """Invalid run parameters, e.g. an unknown platform or device index."""


class ScanOverflowError(ConfigurationError):
    """The bin count exceeds what the single-block scan kernels can address."""

    def __init__(self, num_bins, span):
        super().__init__(
            f"{num_bins} bins exceed the scan span of {span} elements; "
            f"use --bins to select at most {span}"
        )
        self.num_bins = num_bins
        self.span = span


class DeviceUnavailableError(EqualizationError):
    """No device of the requested class exists."""


class BuildError(EqualizationError):
    """The kernel module failed to compile. Carries the compiler diagnostic."""

    def __init__(self, message, diagnostic=""):
        text = message if not diagnostic else f"{message}\n{diagnostic}"
        super().__init__(text)
        self.diagnostic = diagnostic


class DispatchError(EqualizationError):
    """A kernel launch or its execution failed."""


class DataIntegrityError(EqualizationError):
    """A host-side invariant check failed (histogram sum, monotonicity, ...)."""


class StageError(EqualizationError):
    """A channel pipeline aborted. Tagged with the stage that failed."""

    def __init__(self, stage, channel, cause):
        super().__init__(f"channel {channel}: stage '{stage}' failed: {cause}")
        self.stage = stage
        self.channel = channel
        self.cause = cause
