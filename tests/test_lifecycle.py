"""
Tests for LifecycleController: first-run provisioning, start/stop/restart
and reconciliation of update requests.
"""
import os

import pytest

from keeper.connectors import ConnectorKind
from keeper.errors import DataImportError, LifecycleError, SettingError
from keeper.lifecycle import LifecycleController, ServerState
from keeper.locks import SERVER_LOCK, LockFileManager
from keeper.resources import ResourceResolver


def _config_text(root: str) -> str:
    with open(os.path.join(root, "config", "config.ldif"), encoding="utf-8") as f:
        return f.read()


# =============================================================================
# Start
# =============================================================================

class TestFreshStart:

    def test_provisions_install_root(self, controller, data_path):
        controller.start()

        for sub in ["config/schema", "config/upgrade", "locks", "logs", "db/userRoot"]:
            assert os.path.isdir(os.path.join(data_path, sub)), sub
        for name in ["config.ldif", "admin-backend.ldif", "buildinfo"]:
            assert os.path.isfile(os.path.join(data_path, "config", name)), name
        assert os.path.isfile(os.path.join(data_path, "config", "upgrade", "schema.ldif.9086"))
        assert os.listdir(os.path.join(data_path, "config", "schema"))

    def test_config_rendered_with_defaults(self, controller, data_path, keystore_env):
        controller.start()
        text = _config_text(data_path)

        assert "ds-cfg-listen-port: 1389" in text
        assert "ds-cfg-listen-port: 1636" in text
        assert "ds-cfg-listen-port: 4444" in text
        assert f"ds-cfg-key-store-file: {keystore_env['KEY_STORE']}" in text
        assert "ds-cfg-trust-store-type: PKCS12" in text
        for token in ["ldap.port", "ldap.enable", "key.store.", "trust.store."]:
            assert token not in text

    def test_pin_files_staged(self, controller):
        controller.start()
        key, trust = controller.keystores
        with open(key.password_pin) as f:
            assert f.read() == "key-secret"
        with open(trust.password_pin) as f:
            assert f.read() == "trust-secret"

    def test_engine_started_once(self, controller, fake_server, data_path):
        controller.start()

        assert fake_server.count("start") == 1
        assert fake_server.install_roots == [os.path.abspath(data_path)]
        assert fake_server.options.disable_connection_handlers is False
        assert fake_server.options.maintain_config_archive is False
        assert controller.state == ServerState.RUNNING
        assert controller.is_running

    def test_state_sequence(self, controller, logger):
        controller.start()
        assert logger.states == ["provisioning", "staging_credentials", "starting", "running"]

    def test_seed_data_loaded_after_start(self, controller, fake_server):
        controller.start()

        names = [call[0] for call in fake_server.calls]
        assert names.index("start") < names.index("finalize")
        assert fake_server.backends["userRoot"].data.count(b"dn:") == 4

    def test_start_when_running_is_refused(self, controller, fake_server):
        controller.start()

        with pytest.raises(LifecycleError):
            controller.start()

        assert fake_server.count("start") == 1
        assert fake_server.running
        assert controller.state == ServerState.RUNNING
        assert controller._lock_manager().is_held(SERVER_LOCK)

    def test_server_lock_held_while_running(self, controller, data_path):
        controller.start()
        other = LockFileManager(os.path.join(data_path, "locks"))
        with pytest.raises(LifecycleError):
            other.acquire_exclusive(SERVER_LOCK)


class TestExistingInstall:

    def test_not_reprovisioned(self, controller, fake_server, data_path):
        controller.start()
        controller.stop()

        config_file = os.path.join(data_path, "config", "config.ldif")
        with open(config_file, "w") as f:
            f.write("operator edited")

        controller.start()
        assert _config_text(data_path) == "operator edited"
        assert fake_server.count("finalize") == 1
        assert fake_server.count("start") == 2

    def test_pin_files_restaged_every_start(self, controller):
        controller.start()
        controller.stop()
        pin = controller.keystores[0].password_pin
        os.remove(pin)

        controller.start()
        assert os.path.isfile(pin)


class TestStartFailures:

    def test_engine_failure(self, controller, fake_server, logger):
        fake_server.fail_start = True

        with pytest.raises(LifecycleError) as exc_info:
            controller.start()

        assert isinstance(exc_info.value.cause, RuntimeError)
        assert controller.state == ServerState.STOPPED
        assert not controller._lock_manager().is_held(SERVER_LOCK)
        assert logger.messages("WARN")

    def test_seed_failure_stops_server(self, controller, fake_server):
        fake_server.backends["userRoot"].fail_import = True

        with pytest.raises(DataImportError):
            controller.start()

        assert fake_server.count("stop") == 1
        assert not fake_server.running
        assert controller.state == ServerState.STOPPED

    def test_missing_seed_backend_stops_server(self, fake_server, logger, data_path):
        fake_server.backends.clear()
        controller = LifecycleController(fake_server, ResourceResolver(), data_path=data_path, logger=logger)

        with pytest.raises(DataImportError):
            controller.start()
        assert not fake_server.running

    def test_missing_template(self, fake_server, logger, data_path, tmp_path):
        resolver = ResourceResolver([str(tmp_path / "empty")], include_bundled=False)
        controller = LifecycleController(fake_server, resolver, data_path=data_path, logger=logger)

        with pytest.raises(LifecycleError):
            controller.start()
        assert fake_server.count("start") == 0


# =============================================================================
# Stop / Restart
# =============================================================================

class TestStop:

    def test_stop_when_not_running(self, controller, fake_server, logger):
        controller.stop()

        assert fake_server.count("stop") == 0
        assert "Server was not started, it is still stopped." in logger.messages("INFO")
        assert controller.state == ServerState.STOPPED

    def test_stop_releases_server_lock(self, controller, fake_server, data_path):
        controller.start()
        controller.stop()

        assert not fake_server.running
        other = LockFileManager(os.path.join(data_path, "locks"))
        other.acquire_exclusive(SERVER_LOCK)
        other.release(SERVER_LOCK)

    def test_engine_stop_failure(self, controller, fake_server):
        controller.start()
        fake_server.fail_stop = True

        with pytest.raises(LifecycleError):
            controller.stop()
        assert controller.state == ServerState.RUNNING

    def test_restart_is_stop_then_start(self, controller, fake_server):
        controller.start()
        before = len(fake_server.calls)

        controller.restart()

        names = [call[0] for call in fake_server.calls[before:]]
        assert names == ["stop", "start"]
        assert controller.state == ServerState.RUNNING


# =============================================================================
# Updates
# =============================================================================

class TestUpdate:

    def test_port_change_restarts_once(self, controller, fake_server, data_path):
        controller.start()

        assert controller.update({"ldap.port": 9000}) is True

        assert fake_server.count("stop") == 1
        assert fake_server.count("start") == 2
        assert controller.get_port(ConnectorKind.PLAIN) == 9000
        assert "ds-cfg-listen-port: 9000" in _config_text(data_path)
        assert "ds-cfg-listen-port: 1389" not in _config_text(data_path)

    def test_several_changes_one_restart(self, controller, fake_server):
        controller.start()
        controller.update({"ldap.port": "9000", "ldaps.port": "9636", "admin.port": 0})

        assert fake_server.count("start") == 2
        assert controller.connectors.as_dict() == {
            "ldap.port": 9000, "ldaps.port": 9636, "admin.port": 0,
        }

    def test_disabled_connector_in_config(self, controller, data_path):
        controller.start()
        controller.update({"admin.port": "0"})

        text = _config_text(data_path)
        admin_block = text.split("cn=Administration Connector")[1]
        assert "ds-cfg-enabled: false" in admin_block
        assert "ds-cfg-listen-port: 4444" in admin_block

    def test_unchanged_values_are_noop(self, controller, fake_server, data_path):
        controller.start()
        before = list(fake_server.calls)
        mtime = os.path.getmtime(os.path.join(data_path, "config", "config.ldif"))

        restarted = controller.update({
            "ldap.port": "1389",
            "ldaps.port": 1636,
            "admin.port": " 4444 ",
            "base.ldif": "",
            "dataPath": data_path,
        })

        assert restarted is False
        assert fake_server.calls == before
        assert os.path.getmtime(os.path.join(data_path, "config", "config.ldif")) == mtime

    def test_unknown_keys_ignored(self, controller, fake_server):
        controller.start()
        assert controller.update({"service.pid": "x", "felix.fileinstall": "y"}) is False
        assert fake_server.count("start") == 1

    @pytest.mark.parametrize("value", ["abc", "", "70000", "-1"])
    def test_bad_port_value(self, controller, value):
        with pytest.raises(SettingError):
            controller.update({"ldap.port": value})

    def test_bad_value_applies_nothing(self, controller, fake_server, data_path):
        controller.start()

        with pytest.raises(SettingError):
            controller.update({"ldap.port": 9000, "ldaps.port": "abc"})

        assert controller.get_port(ConnectorKind.PLAIN) == 1389
        assert fake_server.count("start") == 1

        assert controller.update({"ldap.port": 9000}) is True
        assert fake_server.count("start") == 2
        assert "ds-cfg-listen-port: 9000" in _config_text(data_path)

    def test_whole_float_port(self, controller):
        controller.start()
        assert controller.update({"ldap.port": 9000.0}) is True
        assert controller.get_port(ConnectorKind.PLAIN) == 9000

    def test_fractional_port(self, controller):
        with pytest.raises(SettingError):
            controller.update({"ldap.port": 9000.5})

    def test_base_ldif_loaded_immediately(self, controller, fake_server, tmp_path):
        controller.start()
        ldif = tmp_path / "base.ldif"
        ldif.write_bytes(b"dn: dc=other,dc=com\nobjectClass: domain\n")

        assert controller.update({"base.ldif": str(ldif)}) is False

        assert fake_server.backends["userRoot"].data == ldif.read_bytes()
        assert fake_server.count("start") == 1

    def test_missing_base_ldif_only_warns(self, controller, fake_server, logger, tmp_path):
        controller.start()
        missing = str(tmp_path / "nope.ldif")

        assert controller.update({"base.ldif": missing}) is False
        assert any(missing in line for line in logger.messages("WARN"))
        assert fake_server.running

    def test_failed_base_ldif_only_warns(self, controller, fake_server, logger, tmp_path):
        controller.start()
        fake_server.backends["userRoot"].fail_import = True
        ldif = tmp_path / "base.ldif"
        ldif.write_bytes(b"dn: dc=example,dc=com\n")

        assert controller.update({"base.ldif": str(ldif)}) is False
        assert any(str(ldif) in line for line in logger.messages("WARN"))
        assert fake_server.running

    def test_failed_base_ldif_keeps_port_restart(self, controller, fake_server, data_path, tmp_path):
        controller.start()
        fake_server.backends["userRoot"].fail_import = True
        ldif = tmp_path / "base.ldif"
        ldif.write_bytes(b"dn: dc=example,dc=com\n")

        assert controller.update({"ldap.port": 9000, "base.ldif": str(ldif)}) is True

        assert fake_server.count("start") == 2
        assert "ds-cfg-listen-port: 9000" in _config_text(data_path)

    def test_data_path_change(self, controller, fake_server, tmp_path):
        controller.start()
        new_root = str(tmp_path / "relocated")

        assert controller.update({"dataPath": new_root}) is True

        assert controller.install_root == new_root
        assert fake_server.install_roots[-1] == new_root
        assert os.path.isfile(os.path.join(new_root, "config", "config.ldif"))
        assert fake_server.count("stop") == 1

    def test_update_while_stopped_starts_server(self, controller, fake_server):
        assert controller.update({"ldap.port": 9000}) is True
        assert fake_server.running
        assert "ds-cfg-listen-port: 9000" in _config_text(controller.install_root)
