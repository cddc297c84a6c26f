"""
Dirkeeper - File Provisioner
==============================
Lays out a fresh install root and copies the default assets into it.

Install layout:
    <root>/
      config/
        config.ldif            <- rendered from the template
        admin-backend.ldif
        buildinfo
        schema/*.ldif
        upgrade/schema.ldif.<version>
      locks/
      logs/
      db/<backendId>/

Copies are described by a CopySpec built once at the call site:
    ExactCopy  - one resource to one file, or into a directory when the
                 destination ends with a separator
    GlobCopy   - every resource matching a pattern under a directory into
                 a destination directory
A failure on any single file aborts the whole copy. Nothing is rolled back;
the caller decides how to recover.
"""

import os
import shutil
from dataclasses import dataclass
from typing import Iterable, Union

from keeper.connectors import Connector, KeystoreBinding
from keeper.errors import ProvisioningError, TemplateError
from keeper.log import SupervisorLogger
from keeper.resources import ResourceHandle, ResourceResolver
from keeper.templates import ConfigTemplateEngine


UPGRADE_SCHEMA_VERSION = "9086"

CONFIG_RESOURCE = "config/config.ldif"
ADMIN_BACKEND_RESOURCE = "config/admin-backend.ldif"
BUILDINFO_RESOURCE = "config/buildinfo"
SCHEMA_RESOURCE_DIR = "config/schema/"
UPGRADE_SCHEMA_RESOURCE = f"config/upgrade/schema.ldif.{UPGRADE_SCHEMA_VERSION}"

DEFAULT_BACKEND_ID = "userRoot"


@dataclass(frozen=True)
class InstallLayout:
    """On-disk directory tree of one install root."""
    root: str
    backend_id: str = DEFAULT_BACKEND_ID

    @property
    def config_dir(self) -> str:
        return os.path.join(self.root, "config")

    @property
    def schema_dir(self) -> str:
        return os.path.join(self.config_dir, "schema")

    @property
    def upgrade_dir(self) -> str:
        return os.path.join(self.config_dir, "upgrade")

    @property
    def locks_dir(self) -> str:
        return os.path.join(self.root, "locks")

    @property
    def logs_dir(self) -> str:
        return os.path.join(self.root, "logs")

    @property
    def db_dir(self) -> str:
        return os.path.join(self.root, "db", self.backend_id)

    @property
    def config_file(self) -> str:
        return os.path.join(self.root, *CONFIG_RESOURCE.split("/"))

    def directories(self) -> list[str]:
        """All directories a complete install has, parents first."""
        return [
            self.config_dir,
            self.schema_dir,
            self.upgrade_dir,
            self.locks_dir,
            self.logs_dir,
            self.db_dir,
        ]

    def path(self, resource: str) -> str:
        """Destination of a logical resource path inside this root (keeps a trailing separator)."""
        trailing = resource.endswith("/")
        full = os.path.join(self.root, *resource.strip("/").split("/"))
        return full + os.sep if trailing else full


# =============================================================================
# Copy specifications
# =============================================================================

@dataclass(frozen=True)
class ExactCopy:
    """
    Copy one resource.

    Attributes:
        source: Logical resource path of the file.
        dest:   Destination file, or a directory when `into_dir` is set.
    """
    source: str
    dest: str
    into_dir: bool = False


@dataclass(frozen=True)
class GlobCopy:
    """Copy every resource matching `pattern` under `source_dir` into `dest_dir`."""
    source_dir: str
    dest_dir: str
    pattern: str = "*"


CopySpec = Union[ExactCopy, GlobCopy]


def _is_dir_path(path: str) -> bool:
    return path.endswith("/") or path.endswith(os.sep)


def copy_spec(source: str, dest: str) -> CopySpec:
    """
    Infer a CopySpec from trailing separators.

        "a/b.ldif", "x/b.ldif"   -> exact file to file
        "a/b.ldif", "x/"         -> exact file into directory
        "a/",       "x/"         -> every file under a/ into x/
        "a/",       "x/c.ldif"   -> files named c.ldif under a/ into x/

    Raises:
        ValueError: If either path is empty.
    """
    if not source or not dest:
        raise ValueError("Copy source and destination must not be empty")
    if _is_dir_path(source) and _is_dir_path(dest):
        return GlobCopy(source, dest, "*")
    if _is_dir_path(source):
        dest_dir, pattern = os.path.split(dest)
        return GlobCopy(source, dest_dir + os.sep, pattern)
    return ExactCopy(source, dest, into_dir=_is_dir_path(dest))


class FileProvisioner:
    """
    Creates install roots and copies default assets into them.

    Attributes:
        resolver: Where default assets are read from.
        engine:   Template engine for the main config.
        logger:   Supervisor logger.
    """

    def __init__(
        self,
        resolver: ResourceResolver,
        engine: ConfigTemplateEngine | None = None,
        logger: SupervisorLogger | None = None,
    ):
        self.resolver = resolver
        self.logger = logger or SupervisorLogger(echo=False)
        self.engine = engine or ConfigTemplateEngine(self.logger)

    # -- Directories -----------------------------------------------------------

    def create_directory_tree(self, root: str, backend_id: str = DEFAULT_BACKEND_ID) -> InstallLayout:
        """
        Create the install root and every directory of its layout.

        Raises:
            ProvisioningError: If any directory could not be created.
        """
        layout = InstallLayout(os.path.abspath(root), backend_id)
        for directory in [layout.root] + layout.directories():
            try:
                os.makedirs(directory, exist_ok=True)
            except OSError as e:
                raise ProvisioningError(f"Could not create folders for {directory}", e) from e
        return layout

    # -- Templated config ------------------------------------------------------

    def copy_templated_config(
        self,
        template: str,
        dest: str,
        connectors: Iterable[Connector],
        bindings: Iterable[KeystoreBinding],
    ) -> None:
        """
        Render a config template with the live connector/keystore state.

        Args:
            template:   Logical resource path of the template.
            dest:       File to write.
            connectors: Current connector state.
            bindings:   Current keystore bindings.

        Raises:
            TemplateError: If the template is missing or any I/O fails.
        """
        try:
            with self.resolver.open_resource(template) as src:
                text = src.read().decode("utf-8")
            rendered = self.engine.render(text, connectors, bindings)
            self.logger.debug(f"Copying {template} to {dest}")
            with open(dest, "w", encoding="utf-8") as out:
                out.write(rendered)
        except (OSError, UnicodeDecodeError) as e:
            le = TemplateError(f"Could not copy file {template} to {dest}", e)
            self.logger.warning(le.message, e)
            raise le from e

    # -- Plain copies ----------------------------------------------------------

    def copy_file(self, source: str, dest: str) -> int:
        """Copy using addressing inferred from trailing separators. See copy_spec()."""
        return self.copy(copy_spec(source, dest))

    def copy_files(self, source_dir: str, dest_dir: str, pattern: str = "*") -> int:
        """Copy every resource matching `pattern` under `source_dir` into `dest_dir`."""
        return self.copy(GlobCopy(source_dir, dest_dir, pattern))

    def copy(self, spec: CopySpec) -> int:
        """
        Execute a copy.

        Returns:
            Number of files copied.

        Raises:
            ProvisioningError: If an exact source is missing or any single
                               file copy fails (the rest are abandoned).
        """
        if isinstance(spec, ExactCopy):
            handle = self.resolver.get(spec.source)
            if handle is None:
                raise ProvisioningError(f"Could not copy file {spec.source}: resource not found")
            target = os.path.join(spec.dest, handle.name) if spec.into_dir else spec.dest
            self._copy_one(handle, target)
            return 1

        source_dir = spec.source_dir.rstrip("/")
        copied = 0
        for handle in self.resolver.find(source_dir, spec.pattern):
            self._copy_one(handle, os.path.join(spec.dest_dir, handle.name))
            copied += 1
        return copied

    def _copy_one(self, handle: ResourceHandle, target: str) -> None:
        self.logger.debug(f"Copying {handle.identifier} to {target}")
        try:
            with handle.open() as src, open(target, "wb") as dst:
                shutil.copyfileobj(src, dst)
        except OSError as e:
            le = ProvisioningError(f"Could not copy file {handle.identifier} to {target}", e)
            self.logger.warning(le.message, e)
            raise le from e

    # -- Full default set ------------------------------------------------------

    def install_defaults(
        self,
        layout: InstallLayout,
        connectors: Iterable[Connector],
        bindings: Iterable[KeystoreBinding],
    ) -> None:
        """
        Copy the complete default asset set into a freshly created layout.

        The server needs every one of these files, so the first failure
        aborts provisioning.
        """
        self.copy_templated_config(CONFIG_RESOURCE, layout.config_file, connectors, bindings)
        self.copy_file(ADMIN_BACKEND_RESOURCE, layout.path(ADMIN_BACKEND_RESOURCE))
        self.copy_file(BUILDINFO_RESOURCE, layout.path(BUILDINFO_RESOURCE))
        # fragment schema files are picked up as well
        self.copy_file(SCHEMA_RESOURCE_DIR, layout.path(SCHEMA_RESOURCE_DIR))
        self.copy_file(UPGRADE_SCHEMA_RESOURCE, layout.path(UPGRADE_SCHEMA_RESOURCE))
