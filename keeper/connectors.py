"""
Dirkeeper - Connectors and Keystores
======================================
Desired-state records for the managed server's network endpoints and the
key/trust stores its TLS connectors read.

Connectors:
    Three kinds, each with a port placeholder and an enable placeholder in
    the config template. A current port of 0 means "disabled"; the default
    port is still written to the config in that case because the server
    rejects port 0 even for a disabled handler.

        kind    name    port token    enable token    default
        PLAIN   LDAP    ldap.port     ldap.enable     1389
        TLS     LDAPS   ldaps.port    ldaps.enable    1636
        ADMIN   ADMIN   admin.port    admin.enable    4444

Keystores:
    KEY_STORE and TRUST_STORE, each with a location, password, type and a
    password pin file (a transient plaintext copy of the password the
    server reads at start-up). Values come from the environment the same
    way the JVM reads javax.net.ssl.* properties.

Each LifecycleController owns its own ConnectorRegistry; nothing here is
module-level mutable state.
"""

import os
import tempfile
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Mapping


DEFAULT_LDAP_PORT = 1389
DEFAULT_LDAPS_PORT = 1636
DEFAULT_ADMIN_PORT = 4444


class ConnectorKind(Enum):
    PLAIN = "plain"
    TLS = "tls"
    ADMIN = "admin"


class KeystoreKind(Enum):
    KEY_STORE = "key_store"
    TRUST_STORE = "trust_store"


@dataclass(frozen=True)
class ConnectorSpec:
    """Immutable description of one connector kind."""
    kind: ConnectorKind
    name: str
    port_variable: str
    enable_variable: str
    default_port: int


CONNECTOR_SPECS: dict[ConnectorKind, ConnectorSpec] = {
    ConnectorKind.PLAIN: ConnectorSpec(
        ConnectorKind.PLAIN, "LDAP", "ldap.port", "ldap.enable", DEFAULT_LDAP_PORT
    ),
    ConnectorKind.TLS: ConnectorSpec(
        ConnectorKind.TLS, "LDAPS", "ldaps.port", "ldaps.enable", DEFAULT_LDAPS_PORT
    ),
    ConnectorKind.ADMIN: ConnectorSpec(
        ConnectorKind.ADMIN, "ADMIN", "admin.port", "admin.enable", DEFAULT_ADMIN_PORT
    ),
}


@dataclass
class Connector:
    """
    Mutable connector state.

    Attributes:
        spec:         The connector kind's fixed description.
        current_port: Port to bind on next (re)start, 0 when disabled.
    """
    spec: ConnectorSpec
    current_port: int

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def port_variable(self) -> str:
        return self.spec.port_variable

    @property
    def enable_variable(self) -> str:
        return self.spec.enable_variable

    @property
    def default_port(self) -> int:
        return self.spec.default_port

    @property
    def enabled(self) -> bool:
        return self.current_port != 0


class ConnectorRegistry:
    """
    The three connectors of one managed server.

    Iteration order is LDAP, LDAPS, ADMIN, which is also the order in which
    the template engine substitutes them.
    """

    def __init__(self, ports: Mapping[ConnectorKind, int] | None = None):
        """
        Args:
            ports: Optional initial ports by kind. Missing kinds start at
                   their compiled-in default.
        """
        ports = ports or {}
        self._connectors = {
            kind: Connector(spec, int(ports.get(kind, spec.default_port)))
            for kind, spec in CONNECTOR_SPECS.items()
        }

    def __iter__(self) -> Iterator[Connector]:
        return iter(self._connectors.values())

    def get(self, kind: ConnectorKind) -> Connector:
        return self._connectors[kind]

    def by_port_variable(self, setting: str) -> Connector | None:
        """Return the connector whose port setting is named `setting`, if any."""
        for connector in self._connectors.values():
            if connector.port_variable == setting:
                return connector
        return None

    def port(self, kind: ConnectorKind) -> int:
        return self._connectors[kind].current_port

    def set_port(self, kind: ConnectorKind, port: int) -> None:
        """
        Set the port a connector binds on its next start.

        This does not touch the running server; the config has to be
        regenerated and the server restarted to re-bind.
        """
        if port < 0 or port > 65535:
            raise ValueError(f"Port out of range for {kind.name}: {port}")
        self._connectors[kind].current_port = port

    def as_dict(self) -> dict[str, int]:
        """Ports keyed by their setting name, e.g. {"ldap.port": 1389, ...}."""
        return {c.port_variable: c.current_port for c in self}


# =============================================================================
# Keystores
# =============================================================================

@dataclass(frozen=True)
class KeystoreTokens:
    """Placeholder tokens of one keystore kind in the config template."""
    location: str
    password: str
    type: str
    pin: str


KEYSTORE_TOKENS: dict[KeystoreKind, KeystoreTokens] = {
    KeystoreKind.KEY_STORE: KeystoreTokens(
        "key.store.loc", "key.store.pw", "key.store.type", "key.store.pin.loc"
    ),
    KeystoreKind.TRUST_STORE: KeystoreTokens(
        "trust.store.loc", "trust.store.pw", "trust.store.type", "trust.store.pin.loc"
    ),
}

# Environment variable names per kind: (location, password, type)
KEYSTORE_ENV: dict[KeystoreKind, tuple[str, str, str]] = {
    KeystoreKind.KEY_STORE: ("KEY_STORE", "KEY_STORE_PASSWORD", "KEY_STORE_TYPE"),
    KeystoreKind.TRUST_STORE: ("TRUST_STORE", "TRUST_STORE_PASSWORD", "TRUST_STORE_TYPE"),
}


@dataclass
class KeystoreBinding:
    """
    One key or trust store as the managed server should see it.

    Attributes:
        kind:         KEY_STORE or TRUST_STORE.
        location:     Absolute path of the store file ("" when unset).
        password:     Store password.
        type:         Store type, e.g. "JKS" or "PKCS12".
        password_pin: Absolute path of the transient pin file.
    """
    kind: KeystoreKind
    location: str
    password: str
    type: str
    password_pin: str = field(default="")

    @property
    def tokens(self) -> KeystoreTokens:
        return KEYSTORE_TOKENS[self.kind]

    @classmethod
    def from_env(
        cls,
        kind: KeystoreKind,
        env: Mapping[str, str] | None = None,
        pin_dir: str | None = None,
    ) -> "KeystoreBinding":
        """
        Build a binding from environment-style settings.

        The pin file gets a fresh random name inside pin_dir (the system
        temp directory by default), so it cannot be assumed to survive a
        process restart.

        Args:
            kind:    Which store to read.
            env:     Mapping to read from (defaults to os.environ).
            pin_dir: Directory for the pin file.
        """
        env = os.environ if env is None else env
        loc_key, pw_key, type_key = KEYSTORE_ENV[kind]
        location = env.get(loc_key) or ""
        pin_dir = pin_dir or tempfile.gettempdir()
        return cls(
            kind=kind,
            location=os.path.abspath(location) if location else "",
            password=env.get(pw_key) or "",
            type=env.get(type_key) or "",
            password_pin=os.path.abspath(os.path.join(pin_dir, str(uuid.uuid4()))),
        )


def default_keystores(
    env: Mapping[str, str] | None = None, pin_dir: str | None = None
) -> list[KeystoreBinding]:
    """Key store then trust store, as read from the environment."""
    return [
        KeystoreBinding.from_env(KeystoreKind.KEY_STORE, env, pin_dir),
        KeystoreBinding.from_env(KeystoreKind.TRUST_STORE, env, pin_dir),
    ]
