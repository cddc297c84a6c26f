"""
Dirkeeper - Resource Resolver
===============================
Looks up default assets (config templates, schema files, seed LDIF) by
logical path across several source directories.

The first source is the bundle shipped inside this package
(keeper/defaults); further sources are "fragments" configured by the
operator, e.g. a directory of extra schema files. A lookup searches every
source, so a fragment can contribute additional matches for a glob or
provide a file the bundle does not have.

Logical paths use "/" separators and are relative to each source root:
    "config/config.ldif", "config/schema/", ""  (the source root itself)
"""

import fnmatch
import os
from dataclasses import dataclass
from typing import BinaryIO, Iterator


BUNDLED_DEFAULTS = os.path.join(os.path.dirname(os.path.abspath(__file__)), "defaults")


@dataclass(frozen=True)
class ResourceHandle:
    """
    A resolved resource.

    Attributes:
        identifier: Absolute path of the backing file (used in logs).
        name:       Base file name, used when copying into a directory.
    """
    identifier: str
    name: str

    def open(self) -> BinaryIO:
        """Open the resource for reading. The caller closes it."""
        return open(self.identifier, "rb")


class ResourceResolver:
    """
    Resolves logical resource names against an ordered list of sources.

    Attributes:
        sources: Directories searched in order.
    """

    def __init__(self, sources: list[str] | None = None, include_bundled: bool = True):
        """
        Args:
            sources:         Extra source directories (fragments).
            include_bundled: Search the bundled defaults first.
        """
        self.sources: list[str] = []
        if include_bundled:
            self.sources.append(BUNDLED_DEFAULTS)
        for src in sources or []:
            self.sources.append(os.path.abspath(src))

    def _source_path(self, source: str, path: str) -> str:
        rel = path.strip("/")
        if not rel:
            return source
        return os.path.join(source, *rel.split("/"))

    def find(self, path: str, pattern: str, recursive: bool = False) -> list[ResourceHandle]:
        """
        Find all files under `path` whose names match `pattern`.

        Matches from every source are returned, in source order and then
        name order. Nothing matching is not an error.

        Args:
            path:      Logical directory to search.
            pattern:   fnmatch-style file name pattern, e.g. "*.ldif".
            recursive: Also search sub-directories.

        Returns:
            List of ResourceHandle, possibly empty.
        """
        found: list[ResourceHandle] = []
        for source in self.sources:
            base = self._source_path(source, path)
            if not os.path.isdir(base):
                continue
            if recursive:
                for root, dirs, files in os.walk(base):
                    dirs.sort()
                    for fn in sorted(fnmatch.filter(files, pattern)):
                        found.append(ResourceHandle(os.path.join(root, fn), fn))
            else:
                for fn in sorted(os.listdir(base)):
                    full = os.path.join(base, fn)
                    if os.path.isfile(full) and fnmatch.fnmatch(fn, pattern):
                        found.append(ResourceHandle(full, fn))
        return found

    def get(self, path: str) -> ResourceHandle | None:
        """Return the first source's file at logical `path`, or None."""
        for source in self.sources:
            full = self._source_path(source, path)
            if os.path.isfile(full):
                return ResourceHandle(full, os.path.basename(full))
        return None

    def open_resource(self, path: str) -> BinaryIO:
        """
        Open the resource at `path` for reading.

        Raises:
            FileNotFoundError: If no source has it.
        """
        handle = self.get(path)
        if handle is None:
            raise FileNotFoundError(f"Resource not found in any source: {path}")
        return handle.open()

    def resolve(self, path: str, pattern: str) -> Iterator[tuple[str, BinaryIO]]:
        """
        Yield (identifier, stream) for every match of `pattern` under `path`.

        Each stream is closed as soon as the consumer moves on, whether the
        consumer finished with it normally or raised.
        """
        for handle in self.find(path, pattern):
            with handle.open() as stream:
                yield handle.identifier, stream
