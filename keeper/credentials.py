"""
Dirkeeper - Credential Staging
================================
Writes the keystore password pin files the managed server reads at start.

Runs before every start, not only the first one: pin files live under a
random name in a volatile directory and may be gone after a reboot. Each
file is deleted and written fresh (never appended), then restricted to
owner read/write. Platforms without POSIX permissions only get a warning.
"""

import os
import stat
from typing import Iterable

from keeper.connectors import KeystoreBinding
from keeper.errors import CredentialStagingError
from keeper.log import SupervisorLogger


OWNER_READ_WRITE = stat.S_IRUSR | stat.S_IWUSR


class CredentialStaging:
    """Materializes pin files for key/trust stores."""

    def __init__(self, logger: SupervisorLogger | None = None):
        self.logger = logger or SupervisorLogger(echo=False)

    def stage(self, bindings: Iterable[KeystoreBinding]) -> None:
        """
        Recreate the pin file of every binding.

        Raises:
            CredentialStagingError: If a pin file cannot be removed, written or
                                    (other than for lack of support) restricted.
        """
        bindings = list(bindings)
        for binding in bindings:
            self._write_pin(binding)

        for binding in bindings:
            self._restrict(binding.password_pin)

    def _write_pin(self, binding: KeystoreBinding) -> None:
        path = binding.password_pin
        try:
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
            # O_EXCL: a file that reappeared between remove and create is an error
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, OWNER_READ_WRITE)
            with os.fdopen(fd, "wb") as f:
                f.write(binding.password.encode("utf-8"))
        except OSError as e:
            raise CredentialStagingError("Could not create password pin files.", e) from e
        self.logger.debug(f"Wrote {binding.kind.name.lower()} pin file {path}")

    def _restrict(self, path: str) -> None:
        if os.name != "posix":
            self.logger.warning(
                "Unable to set read/write permissions for temporary keystore password "
                "files. This might be normal if running in a Windows environment."
            )
            return
        try:
            os.chmod(path, OWNER_READ_WRITE)
        except (NotImplementedError, PermissionError) as e:
            self.logger.warning(f"Unable to restrict permissions on {path}", e)
        except OSError as e:
            raise CredentialStagingError(f"Could not restrict permissions on {path}", e) from e
