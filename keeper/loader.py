"""
Dirkeeper - Data Loader
=========================
Replaces the contents of one live backend from an LDIF stream without
restarting the whole server.

Order of operations (the lock is scoped to the backend, not the server):

    1. build the import config (replace all, clear first, no schema check)
    2. look up the backend             -> BackendNotFoundError, no lock taken
    3. acquire backend-<id>.lock       -> BackendLockError
    4. finalize the backend            -> on failure: release lock, raise
    5. import                          -> failure remembered
    6. initialize the backend          -> always attempted after step 4
    7. release the lock                -> failure only logged

The backend is never imported into while initialized, and is never left
finalized once step 4 succeeded.
"""

from typing import BinaryIO, Callable, NoReturn

from keeper.backends import Backend, ImportConfig, ImportResult
from keeper.errors import (
    BackendLockError,
    BackendNotFoundError,
    DataImportError,
    LockError,
)
from keeper.locks import LockFileManager, backend_lock_name
from keeper.log import SupervisorLogger


class DataLoader:
    """
    Exclusive-locked bulk reload of a backend.

    Attributes:
        get_backend: Lookup of live backends by id (returns None if absent).
        locks:       Lock manager for the install root's locks/ directory.
        logger:      Supervisor logger.
    """

    def __init__(
        self,
        get_backend: Callable[[str], Backend | None],
        locks: LockFileManager,
        logger: SupervisorLogger | None = None,
    ):
        self.get_backend = get_backend
        self.locks = locks
        self.logger = logger or SupervisorLogger(echo=False)

    def load_bulk_data(self, stream: BinaryIO, backend_id: str) -> int:
        """
        Replace everything in `backend_id` with the entries of `stream`.

        The stream is not closed here; it belongs to the caller.

        Args:
            stream:     LDIF byte stream.
            backend_id: Backend to reload, e.g. "userRoot".

        Returns:
            Number of entries imported.

        Raises:
            BackendNotFoundError: No live backend with that id.
            BackendLockError:     The backend lock is busy.
            DataImportError:      Teardown, import or re-initialization failed.
        """
        config = ImportConfig(stream)

        backend = self.get_backend(backend_id)
        if backend is None:
            raise BackendNotFoundError(f"No backend registered with id {backend_id}")
        self.logger.debug(f"Got reference to backend: {backend.backend_id}")

        lock_name = backend_lock_name(backend_id)
        try:
            self.locks.acquire_exclusive(lock_name)
        except LockError as e:
            le = BackendLockError(f"Could not lock backend {backend_id} for import", e)
            self.logger.warning(le.message)
            raise le from e

        try:
            result = self._reload(backend, config)
        finally:
            try:
                self.locks.release(lock_name)
            except LockError as e:
                self.logger.warning(f"Could not release the lock for backend {backend_id}", e)

        self.logger.debug(f"Complete result of import: {result}")
        self.logger.info(f"{result.entries_imported} entries imported.")
        return result.entries_imported

    def _reload(self, backend: Backend, config: ImportConfig) -> ImportResult:
        try:
            backend.finalize()
        except Exception as e:
            self._fail("Error while taking backend database offline.", e)

        result: ImportResult | None = None
        import_error: Exception | None = None
        try:
            result = backend.import_ldif(config)
        except Exception as e:
            import_error = e

        try:
            backend.initialize()
        except Exception as e:
            if import_error is not None:
                self.logger.warning("Error while trying to import LDIF.", import_error)
            self._fail("Error while trying to re-initialize backend database.", e)

        if import_error is not None:
            self._fail("Error while trying to import LDIF.", import_error)
        return result

    def _fail(self, message: str, cause: Exception) -> NoReturn:
        if isinstance(cause, DataImportError):
            self.logger.warning(cause.message)
            raise cause
        err = DataImportError(message, cause)
        self.logger.warning(err.message, cause)
        raise err from cause
