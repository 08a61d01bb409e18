"""Error taxonomy for crossbin.

Every failure surfaced by a build pipeline derives from CrossbinError and
carries the process exit code the CLI reports for it:

    ConfigurationError   2   invalid target, conflicting cache modes or linkage plan
    NetworkError         3   dependency fetch failure (retried with backoff first)
    IntegrityError       4   fetched dependency hash mismatch
    CompileError         5   toolchain invocation failure
    VerificationError    6   produced binary does not match the target
    StagingError         7   artifact could not be moved into the output directory
    BuildCancelledError  130 pipeline cancelled

Module-specific errors subclass these next to the code that raises them.
"""


class CrossbinError(Exception):
    """Base class for all crossbin failures."""

    exit_code = 1


class ConfigurationError(CrossbinError):
    """Raised for invalid or contradictory build configuration.

    Always surfaced before any cache region or network resource is touched.
    """

    exit_code = 2


class NetworkError(CrossbinError):
    """Raised when a dependency cannot be fetched from its source."""

    exit_code = 3


class IntegrityError(CrossbinError):
    """Raised when fetched content does not match its locked hash."""

    exit_code = 4


class CompileError(CrossbinError):
    """Raised when the compiler or linker exits unsuccessfully."""

    exit_code = 5

    def __init__(self, message: str, stage: str = "compile", returncode: int = 1):
        super().__init__(message)
        self.stage = stage
        self.returncode = returncode


class VerificationError(CrossbinError):
    """Raised when a produced binary fails verification."""

    exit_code = 6


class StagingError(CrossbinError):
    """Raised when a verified artifact cannot be staged."""

    exit_code = 7


class BuildCancelledError(CrossbinError):
    """Raised when a pipeline is cancelled."""

    exit_code = 130
