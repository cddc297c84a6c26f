"""
Dirkeeper - Error Kinds
=========================
Every failure surfaced by the lifecycle core is a LifecycleError. The
subclasses only narrow down which stage failed, so callers that do not
care can catch the base class.

    LifecycleError
      +-- ProvisioningError       directory / file copy failures
      +-- TemplateError           config template missing or unreadable
      +-- CredentialStagingError  pin files could not be written
      +-- SettingError            malformed value in an update request
      +-- DataImportError         bulk-data load failed
      |     +-- BackendNotFoundError
      +-- LockError               lock file could not be taken / released
            +-- BackendLockError
"""


class LifecycleError(Exception):
    """
    Base error for start/stop/restart/update failures.

    Attributes:
        message: Human-readable description.
        cause:   The underlying exception, if any.
    """

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.message = message
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        if self.cause is not None:
            return f"{self.message} ({self.cause})"
        return self.message


class ProvisioningError(LifecycleError):
    """A directory or default file could not be laid out."""


class TemplateError(ProvisioningError):
    """A configuration template could not be read or written."""


class CredentialStagingError(LifecycleError):
    """A keystore pin file could not be written."""


class SettingError(LifecycleError):
    """An update request carried a value that cannot be applied."""


class DataImportError(LifecycleError):
    """A bulk-data (LDIF) import into a backend failed."""


class BackendNotFoundError(DataImportError):
    """No live backend is registered under the requested id."""


class LockError(LifecycleError):
    """An exclusive lock file could not be acquired or released."""


class BackendLockError(LockError, DataImportError):
    """The backend-scoped lock could not be acquired for an import."""
