"""
Dirkeeper - Console Settings
==============================
The console keeps its state in two files under the project directory:

    config.yaml  -- web listener, install root, ports, engine commands
    .env         -- keystore locations and passwords (KEY_STORE*, TRUST_STORE*)

Whatever the operator edits in config.yaml's "server" section is diffed
into an update map (ldap.port, ldaps.port, admin.port, base.ldif, dataPath)
so a running directory server reconciles it the same way as any other
update request.

Usage:
    config = ConfigManager("/opt/dirkeeper")
    settings = config.load()
    config.update({"server": {"ldap_port": 9000}})
    config.set_secrets({"KEY_STORE_PASSWORD": "changeit"})
"""

import copy
import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import dotenv_values, set_key

from keeper.connectors import (
    DEFAULT_ADMIN_PORT,
    DEFAULT_LDAP_PORT,
    DEFAULT_LDAPS_PORT,
    KEYSTORE_ENV,
)
from keeper.lifecycle import BASE_LDIF_SETTING, DATA_PATH_SETTING, DEFAULT_DATA_PATH


DEFAULTS = {
    "web": {
        "port": 8389,
        "host": "127.0.0.1",
    },
    "server": {
        "data_path": DEFAULT_DATA_PATH,
        "backend_id": "userRoot",
        "ldap_port": DEFAULT_LDAP_PORT,
        "ldaps_port": DEFAULT_LDAPS_PORT,
        "admin_port": DEFAULT_ADMIN_PORT,
        "base_ldif": "",
        "resource_dirs": [],
        "start_command": [],
        "stop_command": [],
        "import_command": [],
        "backend_disable_command": [],
        "backend_enable_command": [],
        "stop_timeout": 30,
        "autostart": False,
    },
}

SECTIONS = ("web", "server")

# config.yaml server key -> update setting name
UPDATE_SETTINGS = {
    "ldap_port": "ldap.port",
    "ldaps_port": "ldaps.port",
    "admin_port": "admin.port",
    "base_ldif": BASE_LDIF_SETTING,
    "data_path": DATA_PATH_SETTING,
}

KNOWN_SECRETS = [name for group in KEYSTORE_ENV.values() for name in group]
PASSWORD_SECRETS = {group[1] for group in KEYSTORE_ENV.values()}


class ConfigManager:
    """
    Reads and writes config.yaml and .env for the console.

    Attributes:
        project_dir: Dirkeeper project root.
        config_path: <project_dir>/config.yaml
        env_path:    <project_dir>/.env
    """

    def __init__(self, project_dir: str):
        self.project_dir = project_dir
        self.config_path = os.path.join(project_dir, "config.yaml")
        self.env_path = os.path.join(project_dir, ".env")

    # -- config.yaml -----------------------------------------------------------

    def load(self) -> dict:
        """
        Return DEFAULTS with config.yaml layered on top.

        An unreadable or malformed file leaves the defaults in place and
        sets "_config_error" so startup can report it.
        """
        config = copy.deepcopy(DEFAULTS)
        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                _deep_merge(config, yaml.safe_load(f) or {})
        except FileNotFoundError:
            pass
        except (yaml.YAMLError, OSError) as e:
            config["_config_error"] = str(e)
        return config

    def save(self, config: dict) -> None:
        """Persist the web and server sections; anything else is dropped."""
        document = {name: config[name] for name in SECTIONS if name in config}
        with open(self.config_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(document, f, default_flow_style=False, sort_keys=False)

    def update(self, updates: dict) -> dict:
        config = self.load()
        config.pop("_config_error", None)
        _deep_merge(config, updates)
        self.save(config)
        return config

    # -- .env ------------------------------------------------------------------

    def _dotenv(self) -> dict[str, str]:
        if not os.path.exists(self.env_path):
            return {}
        return {k: v for k, v in dotenv_values(self.env_path).items() if v is not None}

    def keystore_env(self) -> dict[str, str]:
        """
        Keystore settings for the lifecycle core.

        A non-empty process environment variable overrides the .env value.
        """
        values = self._dotenv()
        values.update({name: os.environ[name] for name in KNOWN_SECRETS if os.environ.get(name)})
        return values

    def get_secrets(self) -> dict:
        """
        Keystore settings for display, with passwords masked.

        Returns:
            {"secrets": {"KEY_STORE": "/etc/pki/server.jks", "KEY_STORE_PASSWORD": "ch****it", ...}}
        """
        stored = self._dotenv()
        shown = {}
        for name in KNOWN_SECRETS:
            value = stored.get(name, "")
            shown[name] = _mask(value) if name in PASSWORD_SECRETS else value
        return {"secrets": shown}

    def set_secrets(self, secrets: dict[str, str]) -> None:
        """
        Write keystore settings to .env, replacing existing lines in place.

        Raises:
            ValueError: A name outside KNOWN_SECRETS; nothing is written.
        """
        unknown = [name for name in secrets if name not in KNOWN_SECRETS]
        if unknown:
            raise ValueError(f"Unknown setting '{unknown[0]}'")

        Path(self.env_path).touch(exist_ok=True)
        for name, value in secrets.items():
            set_key(self.env_path, name, str(value), quote_mode="auto")


# -- Helpers ------------------------------------------------------------------

def update_request(old_server: dict, new_server: dict) -> dict[str, Any]:
    """
    Diff two "server" sections into an update map.

    Only keys listed in UPDATE_SETTINGS count; a changed stop_timeout, for
    example, takes effect on the next start without an update.

    Returns:
        e.g. {"ldap.port": 9000} when only ldap_port changed.
    """
    return {
        setting: new_server[key]
        for key, setting in UPDATE_SETTINGS.items()
        if key in new_server and new_server[key] != old_server.get(key)
    }


def _deep_merge(base: dict, override: dict) -> None:
    for key, value in override.items():
        if isinstance(base.get(key), dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


def _mask(value: str) -> str:
    """ch****it for long values, **** for short ones, "" for unset."""
    if not value:
        return ""
    if len(value) < 8:
        return "****"
    return f"{value[:2]}****{value[-2:]}"
