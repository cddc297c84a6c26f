"""
Dirkeeper - Config Template Engine
====================================
Instantiates the server's configuration template with runtime values.

The template is plain text containing placeholder tokens:

    ds-cfg-listen-port: ldap.port
    ds-cfg-enabled: ldap.enable
    ds-cfg-key-store-file: key.store.loc
    ...

Connector tokens are replaced first-occurrence-only (each connector block
declares its tokens once). Keystore tokens are replaced everywhere they
appear. Substituted values are always inserted literally; store paths and
passwords may contain backslashes or "$" that a pattern replacement would
otherwise interpret.
"""

import re
from typing import Iterable

from keeper.connectors import Connector, KeystoreBinding
from keeper.log import SupervisorLogger


def _replace_first(text: str, token: str, value: str) -> str:
    return re.sub(re.escape(token), lambda _m: value, text, count=1)


def _replace_all(text: str, token: str, value: str) -> str:
    return re.sub(re.escape(token), lambda _m: value, text)


class ConfigTemplateEngine:
    """Pure string rewriting of config templates."""

    def __init__(self, logger: SupervisorLogger | None = None):
        self.logger = logger or SupervisorLogger(echo=False)

    def apply_connectors(self, text: str, connectors: Iterable[Connector]) -> str:
        """
        Fill in the enable flag and port of every connector.

        A connector with current port 0 is written as disabled with its
        default port, since the server refuses a port of 0.

        Args:
            text:       Template text.
            connectors: Connectors to apply, in order.

        Returns:
            The rewritten text (trimmed).
        """
        for connector in connectors:
            text = text.strip()
            if connector.current_port == 0:
                self.logger.info(f"Disabling {connector.name} connector.")
                text = _replace_first(text, connector.enable_variable, "false")
                text = _replace_first(text, connector.port_variable, str(connector.default_port))
            else:
                self.logger.info(
                    f"Updating port for {connector.name} connector to {connector.current_port}"
                )
                text = _replace_first(text, connector.enable_variable, "true")
                text = _replace_first(text, connector.port_variable, str(connector.current_port))
        return text

    def apply_keystores(self, text: str, bindings: Iterable[KeystoreBinding]) -> str:
        """Replace every keystore token with the binding's location/password/type/pin path."""
        for binding in bindings:
            tokens = binding.tokens
            text = text.strip()
            text = _replace_all(text, tokens.location, binding.location)
            text = _replace_all(text, tokens.password, binding.password)
            text = _replace_all(text, tokens.type, binding.type)
            text = _replace_all(text, tokens.pin, binding.password_pin)
        return text

    def render(
        self,
        text: str,
        connectors: Iterable[Connector],
        bindings: Iterable[KeystoreBinding],
    ) -> str:
        """Connectors first, then keystores."""
        return self.apply_keystores(self.apply_connectors(text, connectors), bindings)
