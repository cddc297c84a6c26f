"""
Tests for keystore pin file staging.
"""
import os
import stat

import pytest

from keeper.connectors import KeystoreBinding, KeystoreKind, default_keystores
from keeper.credentials import CredentialStaging
from keeper.errors import CredentialStagingError


@pytest.fixture
def staging(logger) -> CredentialStaging:
    return CredentialStaging(logger)


def _read(path: str) -> str:
    with open(path, encoding="utf-8") as f:
        return f.read()


class TestStage:

    def test_writes_password_only(self, staging, keystore_env, pin_dir):
        key, trust = default_keystores(keystore_env, pin_dir)
        staging.stage([key, trust])

        assert _read(key.password_pin) == "key-secret"
        assert _read(trust.password_pin) == "trust-secret"

    @pytest.mark.skipif(os.name != "posix", reason="POSIX permissions only")
    def test_owner_only_permissions(self, staging, keystore_env, pin_dir):
        bindings = default_keystores(keystore_env, pin_dir)
        staging.stage(bindings)

        for binding in bindings:
            mode = stat.S_IMODE(os.stat(binding.password_pin).st_mode)
            assert mode == 0o600

    def test_restage_replaces_contents(self, staging, pin_dir):
        path = os.path.join(pin_dir, "pin")
        staging.stage([KeystoreBinding(KeystoreKind.KEY_STORE, "", "first-password", "JKS", path)])
        staging.stage([KeystoreBinding(KeystoreKind.KEY_STORE, "", "second", "JKS", path)])

        assert _read(path) == "second"
        assert os.listdir(pin_dir) == ["pin"]

    def test_empty_password(self, staging, pin_dir):
        path = os.path.join(pin_dir, "pin")
        staging.stage([KeystoreBinding(KeystoreKind.TRUST_STORE, "", "", "", path)])
        assert _read(path) == ""

    def test_unwritable_location(self, staging, tmp_path):
        path = str(tmp_path / "missing" / "pin")
        with pytest.raises(CredentialStagingError):
            staging.stage([KeystoreBinding(KeystoreKind.KEY_STORE, "", "pw", "JKS", path)])

    def test_chmod_failure_is_staging_error(self, staging, pin_dir, monkeypatch):
        def vanished(path, mode):
            raise FileNotFoundError(path)

        monkeypatch.setattr(os, "chmod", vanished)
        path = os.path.join(pin_dir, "pin")
        with pytest.raises(CredentialStagingError):
            staging.stage([KeystoreBinding(KeystoreKind.KEY_STORE, "", "pw", "JKS", path)])

    def test_chmod_not_permitted_only_warns(self, staging, logger, pin_dir, monkeypatch):
        def refused(path, mode):
            raise PermissionError(path)

        monkeypatch.setattr(os, "chmod", refused)
        path = os.path.join(pin_dir, "pin")
        staging.stage([KeystoreBinding(KeystoreKind.KEY_STORE, "", "pw", "JKS", path)])

        assert _read(path) == "pw"
        assert logger.messages("WARN")


class TestBindingFromEnv:

    def test_reads_environment(self, keystore_env, pin_dir):
        key, trust = default_keystores(keystore_env, pin_dir)
        assert key.location == keystore_env["KEY_STORE"]
        assert key.type == "JKS"
        assert trust.type == "PKCS12"
        assert os.path.dirname(key.password_pin) == pin_dir

    def test_random_pin_names(self, keystore_env, pin_dir):
        key, trust = default_keystores(keystore_env, pin_dir)
        assert key.password_pin != trust.password_pin

    def test_relative_location_made_absolute(self, pin_dir):
        (key, _trust) = default_keystores({"KEY_STORE": "keys/server.jks"}, pin_dir)
        assert os.path.isabs(key.location)
        assert key.location.endswith(os.path.join("keys", "server.jks"))

    def test_unset_values(self, pin_dir):
        key, _trust = default_keystores({}, pin_dir)
        assert key.location == ""
        assert key.password == ""
