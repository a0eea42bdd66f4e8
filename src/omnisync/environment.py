import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import List, Optional, Tuple

from packaging.utils import canonicalize_name

logger = logging.getLogger(__name__)

REGISTRY_FILE_NAME = "registry.json"
REGISTRY_LOCK_NAME = "registry.lock"
STAGING_DIR_NAME = ".staging"


class VersionedEnvironment:
    """
    A version-isolated install root bound to one Python interpreter.

    Packages live at `<root>/<canonical-name>/<version>/`, so any number of
    versions of the same package can sit side by side. Files at the top of the
    root (`registry.json`, `registry.lock`) and dot-directories such as the
    install staging area are bookkeeping, not packages.
    """

    def __init__(self, environment_id: str, root, python_executable: Optional[str] = None):
        self.environment_id = environment_id
        self.root = Path(root)
        self.python_executable = python_executable

    def __repr__(self):
        return f"VersionedEnvironment({self.environment_id!r}, {str(self.root)!r})"

    @property
    def registry_path(self) -> Path:
        return self.root / REGISTRY_FILE_NAME

    @property
    def registry_lock_path(self) -> Path:
        return self.root / REGISTRY_LOCK_NAME

    @property
    def staging_dir(self) -> Path:
        return self.root / STAGING_DIR_NAME

    def package_root(self, package_name: str) -> Path:
        return self.root / canonicalize_name(package_name)

    def version_path(self, package_name: str, version: str) -> Path:
        return self.package_root(package_name) / version

    def list_version_directories(self, package_name: str) -> List[Tuple[str, Path]]:
        """Every version subdirectory of a package, as (version, path) pairs."""
        package_root = self.package_root(package_name)
        if not package_root.is_dir():
            return []
        entries = []
        for child in sorted(package_root.iterdir()):
            if child.is_dir() and not child.name.startswith("."):
                entries.append((child.name, child))
        return entries

    def copy_tree(self, src: Path, dst: Path) -> None:
        """
        Recursively copy a version directory. Raises OSError/shutil.Error on failure.

        The tree is copied into the staging area first and renamed into place,
        so `dst` either holds a complete copy or does not exist.
        """
        dst = Path(dst)
        dst.parent.mkdir(parents=True, exist_ok=True)
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        staging_path = Path(tempfile.mkdtemp(prefix=f"{dst.parent.name}-", dir=str(self.staging_dir)))
        try:
            partial = staging_path / dst.name
            shutil.copytree(str(src), str(partial), symlinks=True)
            os.replace(str(partial), str(dst))
        finally:
            shutil.rmtree(staging_path, ignore_errors=True)

    def remove_tree(self, path: Path) -> None:
        """Best-effort recursive delete; whatever cannot be removed stays for the next run."""
        path = Path(path)
        if path.is_symlink() or path.is_file():
            try:
                os.unlink(path)
            except OSError as e:
                logger.debug("Could not remove %s: %s", path, e)
            return
        shutil.rmtree(path, ignore_errors=True)
