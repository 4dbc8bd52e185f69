class AssemblyError(Exception):
    """Base class for every fatal error raised by draft_assembly."""


class ConfigError(AssemblyError, ValueError):
    """Invalid or missing user input, detected before any stage runs."""


class DependencyError(AssemblyError, RuntimeError):
    """A required external tool is missing or its version can't be determined."""


class StageExecutionError(AssemblyError, RuntimeError):
    """An external stage exited non-zero or did not produce its declared output."""

    def __init__(self, stage: str, message: str):
        self.stage = stage
        super().__init__(f"{stage}: {message}")


class ParseError(AssemblyError, ValueError):
    """An expected value could not be extracted from a collaborator's output."""


class ZeroOutputError(AssemblyError, RuntimeError):
    """Assembly finished cleanly but produced no usable contigs."""
