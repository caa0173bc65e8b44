"""
Error taxonomy for the ingestion pipeline.

Only a few of these ever escape to the caller as an ``error`` event:
port exhaustion, a process that cannot be spawned (or dies before it is
ready), a failed proxy deployment, bad input, and a chain stage that
raised. The rest are recorded and the pipeline keeps going.
"""


class ForgeError(Exception):
    """Base class for every pipeline failure."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ExtractionIncomplete(ForgeError):
    """A required file could not be located in the generated text."""

    def __init__(self, missing: list[str]):
        super().__init__(
            f"Missing required files: {', '.join(missing)}",
            {"missing": list(missing)},
        )
        self.missing = list(missing)


class DependencyUnresolved(ForgeError):
    """An imported package is not in the version table."""

    def __init__(self, packages: list[str]):
        super().__init__(
            f"No known version for: {', '.join(packages)}",
            {"packages": list(packages)},
        )
        self.packages = list(packages)


class ValidationFailed(ForgeError):
    pass


class ProcessSpawnFailed(ForgeError):
    pass


class DeploymentFailed(ForgeError):
    pass


class PortUnavailableError(ForgeError):
    pass


class InvalidSubdomainError(ForgeError):
    pass
