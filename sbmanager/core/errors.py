# sbmanager/core/errors.py


class ManagerError(Exception):
    """Base class for every error raised by the manager."""


class ConfigurationError(ManagerError):
    """Missing engine binary or configuration file; nothing was attempted."""


class ProcessError(ManagerError):
    """Signal delivery, spawn or engine command failure."""


class AlreadyRunningError(ProcessError):
    pass


class BuildError(ManagerError):
    """The generated configuration could not be serialized."""


class EntityNotFoundError(ManagerError, KeyError):
    def __init__(self, kind: str, entity_id: str):
        super().__init__(f"{kind} '{entity_id}' not found")
        self.kind = kind
        self.entity_id = entity_id

    def __str__(self) -> str:
        return f"{self.kind} '{self.entity_id}' not found"


class SubscriptionError(ManagerError):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


class DaemonError(ManagerError):
    pass


class KernelError(ManagerError):
    """Release lookup, download or install of the sing-box binary failed."""

    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.status_code = status_code
