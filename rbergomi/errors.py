# rbergomi/errors.py
"""
Error taxonomy for the rBergomi pricer.

Configuration problems are fatal and carry the process exit code the CLI uses.
Implied-vol failures are recoverable and only ever affect one grid index.
"""


class ConfigurationError(ValueError):
    """Bad arguments or inconsistent parameter arrays."""
    exit_code = 2


class ArgumentCountError(ConfigurationError):
    exit_code = 5


class EmptyParameterError(ConfigurationError):
    exit_code = 17


class ParameterSizeError(ConfigurationError):
    exit_code = 18


class FileAccessError(OSError):
    """Input could not be read or output could not be written."""
    exit_code = 1


class NumericNonConvergence(ArithmeticError):
    """Implied-vol root finder did not bracket or did not converge."""


class WorkerError(RuntimeError):
    """
    One or more pool workers failed. Raised after all workers have joined.

    `failures` holds (worker_index, exception) pairs in worker order.
    """

    def __init__(self, failures):
        self.failures = list(failures)
        idx = ", ".join(str(w) for w, _ in self.failures)
        first = self.failures[0][1] if self.failures else None
        super().__init__(f"{len(self.failures)} worker(s) failed [{idx}]: {first!r}")
