"""
Workspace path resolution for the session broker.

Maps an install group, a hosting resource and a project slug to the
directory holding that workspace's files, and maps document names inside
it to absolute paths and protocol language ids.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from sourcekit_broker.errors import StorageUnavailableError

logger = logging.getLogger(__name__)

STORAGE_ROOT_ENV = "SOURCEKIT_BROKER_STORAGE_ROOT"
CONTAINER_SUFFIX_ENV = "SOURCEKIT_BROKER_CONTAINER_SUFFIX"
DEFAULT_CONTAINER_SUFFIX = "com.kishikawakatsumi.SourceKitForSafari"

# macOS keeps application group containers here
_DEFAULT_STORAGE_BASE = Path("~/Library/Group Containers")

_SCHEME_PREFIX = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*://")


class Language(str, Enum):
    """Protocol language ids the analysis server understands."""

    SWIFT = "swift"
    OBJECTIVE_C = "objective-c"
    OBJECTIVE_CPP = "objective-cpp"
    C = "c"
    CPP = "cpp"


EXTENSION_LANGUAGES: dict[str, Language] = {
    "swift": Language.SWIFT,
    "m": Language.OBJECTIVE_C,
    "mm": Language.OBJECTIVE_CPP,
    "c": Language.C,
    "cpp": Language.CPP,
    "cc": Language.CPP,
    "cxx": Language.CPP,
    "c++": Language.CPP,
    "h": Language.OBJECTIVE_C,
    "hpp": Language.OBJECTIVE_CPP,
}

DEFAULT_LANGUAGE = Language.SWIFT


@dataclass(frozen=True)
class WorkspaceKey:
    """Normalized identity of a workspace: host without scheme or slashes, plus slug."""

    host: str
    slug: str

    def __str__(self) -> str:
        return f"{self.host}/{self.slug}"


def workspace_key(resource: str, slug: str) -> WorkspaceKey:
    """Build the registry key for a hosting resource and project slug.

    ``https://example.com`` and ``example.com/`` produce the same key.
    """
    host = _SCHEME_PREFIX.sub("", resource).replace("/", "")
    return WorkspaceKey(host=host, slug=slug)


def _storage_base(storage_root: str | os.PathLike[str] | None) -> Path:
    if storage_root is not None:
        return Path(storage_root).expanduser().absolute()

    configured = os.environ.get(STORAGE_ROOT_ENV)
    if configured:
        return Path(configured).expanduser().absolute()

    default = _DEFAULT_STORAGE_BASE.expanduser()
    if default.is_dir():
        return default

    raise StorageUnavailableError(
        f"cannot resolve shared storage: set {STORAGE_ROOT_ENV} "
        f"(no {default} directory on this host)"
    )


def root(
    install_group: str, storage_root: str | os.PathLike[str] | None = None
) -> Path:
    """Return the shared storage container for an install group.

    Raises:
        StorageUnavailableError: No storage base is configured or present.
            Callers are not expected to recover from this.
    """
    suffix = os.environ.get(CONTAINER_SUFFIX_ENV) or DEFAULT_CONTAINER_SUFFIX
    return _storage_base(storage_root) / f"{install_group}.{suffix}"


def document_root(
    install_group: str,
    resource: str,
    slug: str,
    storage_root: str | os.PathLike[str] | None = None,
) -> Path:
    """Return the directory holding a workspace's files.

    The resource and slug are joined as path segments without validation.
    """
    return root(install_group, storage_root) / resource / slug


def resolve_document(document_root: Path, relative_name: str) -> Path:
    return document_root / relative_name


def classify_language(path: str | os.PathLike[str]) -> Language:
    """Classify a document by its extension, falling back to Swift."""
    suffix = Path(path).suffix
    return EXTENSION_LANGUAGES.get(suffix[1:], DEFAULT_LANGUAGE)
