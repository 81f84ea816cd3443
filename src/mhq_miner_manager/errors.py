"""Error taxonomy for install and uninstall operations.

Every failure raised by the installer carries the lifecycle phase it came
from and, where there is one, the underlying cause, so front ends can render
a useful message without inspecting tracebacks.
"""

from enum import StrEnum


class Phase(StrEnum):
    """Lifecycle phase an error originated from."""

    CONFIGURATION = "configuration"
    FETCH = "fetch"
    INTEGRITY = "integrity"
    REGISTRATION = "registration"
    STATE_PERSIST = "state-persist"
    UNINSTALL = "uninstall"
    STATE = "state"


class InstallerError(Exception):
    """Base class for all installer failures."""

    phase: Phase = Phase.STATE

    def __init__(self, message: str, *, cause: BaseException | None = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        text = f"{self.phase}: {self.message}"
        if self.cause is not None:
            text += f" ({self.cause})"
        return text


class ConfigurationError(InstallerError):
    """Invalid constructor inputs. Never retried."""

    phase = Phase.CONFIGURATION


class FetchError(InstallerError):
    """An artifact or the manifest could not be downloaded."""

    phase = Phase.FETCH

    def __init__(self, artifact: str, message: str, *, cause: BaseException | None = None):
        super().__init__(f"{artifact}: {message}", cause=cause)
        self.artifact = artifact


class ArtifactIntegrityError(InstallerError):
    """A downloaded artifact does not match its manifest checksum."""

    phase = Phase.INTEGRITY

    def __init__(self, artifact: str, expected: str, actual: str):
        super().__init__(
            f"{artifact}: checksum mismatch (expected {expected}, got {actual})"
        )
        self.artifact = artifact
        self.expected = expected
        self.actual = actual


class RegistrationError(InstallerError):
    """The OS service manager rejected a register/unregister request."""

    phase = Phase.REGISTRATION

    def __init__(
        self,
        service: str,
        operating_system: str,
        message: str,
        *,
        cause: BaseException | None = None,
    ):
        super().__init__(f"{service} on {operating_system}: {message}", cause=cause)
        self.service = service
        self.operating_system = operating_system


class StatePersistError(InstallerError):
    """The pointer file or installation record could not be written."""

    phase = Phase.STATE_PERSIST


class UninstallError(InstallerError):
    """Removal failed while the target demonstrably still exists."""

    phase = Phase.UNINSTALL


class NotInstalledError(InstallerError):
    """No pointer file names a prior installation."""

    phase = Phase.STATE


class NotFoundError(InstallerError):
    """The pointer file does not exist or is empty."""

    phase = Phase.STATE


class BusyError(InstallerError):
    """Another lifecycle operation is already running on this handle."""

    phase = Phase.STATE


class OperationCancelledError(InstallerError):
    """The caller's cancel signal was honoured before registration began."""

    phase = Phase.FETCH
