"""
Dirkeeper - Test Configuration

Shared fixtures: a recording logger, an in-memory directory server and
backend that log every call in order, temporary resource bundles and a
ready-to-start controller rooted in tmp_path.
"""
import os
from typing import Any

import pytest

from keeper.backends import Backend, ImportConfig, ImportResult, count_ldif_entries
from keeper.connectors import ConnectorRegistry, default_keystores
from keeper.lifecycle import LifecycleController
from keeper.log import SupervisorLogger
from keeper.process import EmbeddedServer, ServerOptions
from keeper.resources import ResourceResolver


# =============================================================================
# Fakes
# =============================================================================

class RecordingLogger(SupervisorLogger):
    """Keeps every emitted line in memory instead of printing it."""

    def __init__(self):
        super().__init__(echo=False)
        self.lines: list[tuple[str, str]] = []
        self.states: list[str] = []

    def _emit(self, level: str, text: str, show: bool = True) -> str:
        self.lines.append((level, text))
        return text

    def status(self, state: str, details: dict | None = None) -> None:
        self.states.append(state)

    def messages(self, level: str) -> list[str]:
        return [text for lvl, text in self.lines if lvl == level]


class FakeBackend(Backend):
    """Backend that records finalize/import/initialize into a shared call log."""

    def __init__(self, backend_id: str, calls: list, locks=None):
        super().__init__(backend_id)
        self.calls = calls
        self.locks = locks
        self.fail_finalize = False
        self.fail_import = False
        self.fail_initialize = False
        self.data = b""
        self.lock_held_during_import: bool | None = None
        self.last_config: ImportConfig | None = None

    def finalize(self) -> None:
        self.calls.append(("finalize", self.backend_id))
        if self.fail_finalize:
            raise RuntimeError("finalize failed")

    def import_ldif(self, config: ImportConfig) -> ImportResult:
        self.calls.append(("import", self.backend_id))
        self.last_config = config
        if self.locks is not None:
            self.lock_held_during_import = self.locks.is_held(f"backend-{self.backend_id}.lock")
        if self.fail_import:
            raise RuntimeError("import failed")
        self.data = config.stream.read()
        count = count_ldif_entries(self.data)
        return ImportResult(entries_read=count, entries_imported=count)

    def initialize(self) -> None:
        self.calls.append(("initialize", self.backend_id))
        if self.fail_initialize:
            raise RuntimeError("initialize failed")


class FakeServer(EmbeddedServer):
    """In-memory EmbeddedServer. Every call is appended to `calls`."""

    def __init__(self, backend_ids: tuple[str, ...] = ("userRoot",)):
        self.calls: list[tuple[Any, ...]] = []
        self.running = False
        self.fail_start = False
        self.fail_stop = False
        self.install_roots: list[str] = []
        self.options: ServerOptions | None = None
        self.backends = {bid: FakeBackend(bid, self.calls) for bid in backend_ids}

    def start_process(self, install_root: str, options: ServerOptions) -> None:
        self.calls.append(("start", install_root))
        if self.fail_start:
            raise RuntimeError("engine refused to start")
        self.install_roots.append(install_root)
        self.options = options
        self.running = True

    def stop_process(self) -> None:
        self.calls.append(("stop",))
        if self.fail_stop:
            raise RuntimeError("engine refused to stop")
        self.running = False

    def is_process_running(self) -> bool:
        return self.running

    def get_backend(self, backend_id: str) -> Backend | None:
        self.calls.append(("get_backend", backend_id))
        return self.backends.get(backend_id)

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def logger() -> RecordingLogger:
    return RecordingLogger()


@pytest.fixture
def fake_server() -> FakeServer:
    return FakeServer()


@pytest.fixture
def bundle_dir(tmp_path) -> str:
    """
    A small resource source laid out like the bundled defaults:

        config/config.ldif, config/a.ldif, config/b.ldif,
        config/schema/00-core.ldif, data/one.txt
    """
    root = tmp_path / "bundle"
    (root / "config" / "schema").mkdir(parents=True)
    (root / "data").mkdir()
    (root / "config" / "config.ldif").write_text(
        "ds-cfg-enabled: ldap.enable\nds-cfg-listen-port: ldap.port\n"
    )
    (root / "config" / "a.ldif").write_text("a\n")
    (root / "config" / "b.ldif").write_text("b\n")
    (root / "config" / "schema" / "00-core.ldif").write_text("schema\n")
    (root / "data" / "one.txt").write_text("one\n")
    return str(root)


@pytest.fixture
def bundle_resolver(bundle_dir) -> ResourceResolver:
    return ResourceResolver([bundle_dir], include_bundled=False)


@pytest.fixture
def keystore_env(tmp_path) -> dict[str, str]:
    return {
        "KEY_STORE": str(tmp_path / "server.jks"),
        "KEY_STORE_PASSWORD": "key-secret",
        "KEY_STORE_TYPE": "JKS",
        "TRUST_STORE": str(tmp_path / "trust.jks"),
        "TRUST_STORE_PASSWORD": "trust-secret",
        "TRUST_STORE_TYPE": "PKCS12",
    }


@pytest.fixture
def pin_dir(tmp_path) -> str:
    path = tmp_path / "pins"
    path.mkdir()
    return str(path)


@pytest.fixture
def data_path(tmp_path) -> str:
    return os.path.join(str(tmp_path), "etc", "keeper", "ldap")


@pytest.fixture
def controller(fake_server, logger, keystore_env, pin_dir, data_path) -> LifecycleController:
    """Controller over the bundled defaults; the install root does not exist yet."""
    return LifecycleController(
        fake_server,
        ResourceResolver(),
        data_path=data_path,
        connectors=ConnectorRegistry(),
        keystores=default_keystores(keystore_env, pin_dir),
        logger=logger,
    )
