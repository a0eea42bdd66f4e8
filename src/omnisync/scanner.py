import logging
from typing import Dict, Iterable, Iterator, List, Optional

from .common_utils import highest_version
from .environment import VersionedEnvironment
from .models import CleanupDirective, ResolvedVersion, normalize_path
from .registry import RegistryClient

logger = logging.getLogger(__name__)


class PendingCleanupSet:
    """
    Insertion-ordered set of cleanup directives collected over a whole run.

    Owned by the sync run, filled by the scanner package by package, and
    consumed exactly once by the cleanup executor after the loop.
    """

    def __init__(self, directives: Optional[Iterable[CleanupDirective]] = None):
        self._directives: Dict[CleanupDirective, None] = {}
        if directives:
            self.update(directives)

    def add(self, directive: CleanupDirective) -> bool:
        """Add a directive; returns False when an equal one was already pending."""
        if directive in self._directives:
            return False
        self._directives[directive] = None
        return True

    def update(self, directives: Iterable[CleanupDirective]) -> int:
        return sum(1 for d in directives if self.add(d))

    def discard(self, directive: CleanupDirective) -> None:
        self._directives.pop(directive, None)

    def __contains__(self, directive) -> bool:
        return directive in self._directives

    def __iter__(self) -> Iterator[CleanupDirective]:
        return iter(list(self._directives))

    def __len__(self) -> int:
        return len(self._directives)

    def __repr__(self):
        return f"PendingCleanupSet({len(self)} directives)"


class StaleVersionScanner:
    """
    Finds versions that are no longer current and queues their removal.

    Two strategies feed the same pending set:
      * directory scan of the secondary environment, one package at a time
      * registration scan of the primary environment, keeping only the highest
        registered version (used for managed and legacy package names alike)
    The current version of a package is never queued by either strategy.
    """

    def __init__(
        self,
        registry: RegistryClient,
        primary: VersionedEnvironment,
        secondary: VersionedEnvironment,
        pending: PendingCleanupSet,
    ):
        self.registry = registry
        self.primary = primary
        self.secondary = secondary
        self.pending = pending

    def scan_directories(self, resolved: ResolvedVersion) -> List[CleanupDirective]:
        current_path = normalize_path(
            self.secondary.version_path(resolved.package_name, resolved.target_version)
        )
        added = []
        for version, path in self.secondary.list_version_directories(resolved.package_name):
            if version == resolved.target_version or normalize_path(path) == current_path:
                continue
            directive = CleanupDirective.remove_directory(path)
            if self.pending.add(directive):
                added.append(directive)
        if added:
            logger.debug("%d stale directories queued for %s", len(added), resolved.package_name)
        return added

    def scan_registrations(
        self, package_name: str, protected_version: Optional[str] = None
    ) -> List[CleanupDirective]:
        records = self.registry.list_installed(package_name, self.primary, all_versions=True)
        if len(records) <= 1:
            return []
        keep = highest_version(r.version for r in records)
        if keep is None:
            logger.warning("No parsable version registered for %s, leaving it alone", package_name)
            return []
        added = []
        for record in records:
            if record.version in (keep, protected_version):
                continue
            directive = CleanupDirective.uninstall(self.primary.root, package_name, record.version)
            if self.pending.add(directive):
                added.append(directive)
        return added
