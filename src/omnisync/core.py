"""
omnisync
Keeps the primary and secondary environments on identical package versions,
then sweeps every stale version out of both without tripping over files the
running process still holds open.

A run has three phases, each completed for the whole package list before the
next one starts:
  1. resolve: compare installed and published versions, install what is behind
  2. sync + scan: copy the current version into the secondary environment and
     queue everything that is no longer current
  3. cleanup: run the queued removals in one detached process
"""
import logging
import sys
from typing import Dict, List, Optional, Tuple

from packaging.utils import canonicalize_name

from .cleanup import DeferredCleanupExecutor, DetachedProcessLauncher
from .common_utils import print_header, safe_print
from .config_manager import ConfigManager
from .environment import VersionedEnvironment
from .i18n import _
from .lockmanager import OmnisyncLockManager
from .models import (
    CleanupOutcome,
    QueryError,
    ResolutionResult,
    ResolvedVersion,
    SyncOutcome,
    SyncReport,
    SyncResult,
)
from .registry import BubbleRegistryClient, RegistryClient
from .report import ReportAggregator
from .resolver import VersionResolver
from .scanner import PendingCleanupSet, StaleVersionScanner
from .synchronizer import EnvironmentSynchronizer

logger = logging.getLogger(__name__)


class omnisync:

    def __init__(
        self,
        config_manager: ConfigManager,
        registry: Optional[RegistryClient] = None,
        launcher: Optional[DetachedProcessLauncher] = None,
        environments: Optional[Tuple[VersionedEnvironment, VersionedEnvironment]] = None,
        cleanup_timeout: Optional[float] = None,
    ):
        self.config_manager = config_manager
        self.config = config_manager.config
        # Raises EnvironmentSetupError before any package work starts.
        self.primary, self.secondary = environments or config_manager.environments()
        self.registry = registry or BubbleRegistryClient(
            index_url=config_manager.get("index_url"),
            request_timeout=config_manager.get("request_timeout", 10.0),
            install_timeout=config_manager.get("install_timeout"),
        )
        self.resolver = VersionResolver(self.registry, self.primary)
        self.synchronizer = EnvironmentSynchronizer(self.primary, self.secondary)
        self.executor = DeferredCleanupExecutor(
            launcher=launcher,
            python_executable=sys.executable,
            timeout=cleanup_timeout if cleanup_timeout is not None else config_manager.cleanup_timeout(),
            log_path=config_manager.cleanup_log_path,
        )
        self.aggregator = ReportAggregator()
        self.lock_manager = OmnisyncLockManager(config_manager)

    def managed_packages(self) -> List[str]:
        return _unique_names(self.config_manager.managed_packages())

    def cleanup_candidates(self) -> List[str]:
        """Managed names followed by legacy names kept only so they get swept."""
        return _unique_names(self.managed_packages() + self.config_manager.legacy_packages())

    def sync(self) -> SyncReport:
        """Run all three phases under the run lock and return the final report."""
        with self.lock_manager.acquire_lock("sync"):
            packages = self.managed_packages()
            resolutions = self.resolve_all(packages)
            pending = PendingCleanupSet()
            resolved, sync_results = self.synchronize_and_scan(packages, pending)
            print_header(_("Phase 3: Cleaning up stale versions"))
            cleanup = self.executor.execute(pending)
            return self.aggregator.aggregate(
                packages,
                resolutions,
                resolved,
                sync_results,
                cleanup,
                queued=[d.describe() for d in pending],
            )

    def resolve_all(self, packages: List[str]) -> Dict[str, ResolutionResult]:
        print_header(_("Phase 1: Resolving latest versions"))
        resolutions = {}
        for name in packages:
            try:
                resolutions[name] = self.resolver.resolve(name)
            except Exception as e:
                # One broken package must not stop the others.
                logger.exception("Resolving %s failed", name)
                resolutions[name] = ResolutionResult(name, needs_update=True, install_error=str(e))
        return resolutions

    def synchronize_and_scan(
        self, packages: List[str], pending: PendingCleanupSet
    ) -> Tuple[Dict[str, Optional[ResolvedVersion]], Dict[str, SyncResult]]:
        print_header(_("Phase 2: Synchronizing {} and scanning for stale versions").format(
            self.secondary.environment_id
        ))
        scanner = StaleVersionScanner(self.registry, self.primary, self.secondary, pending)
        resolved: Dict[str, Optional[ResolvedVersion]] = {}
        sync_results: Dict[str, SyncResult] = {}

        for name in packages:
            try:
                current = self.resolver.current_version(name)
            except Exception:
                logger.exception("Reading installed versions of %s failed", name)
                current = None
            resolved[name] = current
            if current is None:
                safe_print(_("   ⚠️ {} is unresolved, skipping sync and directory cleanup").format(name))
                continue
            result = self.synchronizer.synchronize(name, current.target_version)
            sync_results[name] = result
            if result.outcome is SyncOutcome.SYNC_FAILED:
                # Older copies stay until the current version is really there.
                continue
            scanner.scan_directories(current)

        for name in self.cleanup_candidates():
            current = resolved.get(name)
            try:
                scanner.scan_registrations(
                    name, protected_version=current.target_version if current else None
                )
            except Exception:
                logger.exception("Scanning registrations of %s failed", name)

        safe_print(_("   🔎 {} stale item(s) queued for removal").format(len(pending)))
        return resolved, sync_results

    def status(self) -> SyncReport:
        """Read-only view: what a sync run would do, without installing, copying or deleting."""
        packages = self.managed_packages()
        resolutions: Dict[str, ResolutionResult] = {}
        resolved: Dict[str, Optional[ResolvedVersion]] = {}
        secondary_states: Dict[str, str] = {}
        pending = PendingCleanupSet()
        scanner = StaleVersionScanner(self.registry, self.primary, self.secondary, pending)

        for name in packages:
            resolved[name] = None
            try:
                result = ResolutionResult(name, local_version=self.resolver.local_version(name))
                try:
                    remote = self.registry.find_latest(name)
                    result.remote_version = remote.latest_version if remote else None
                    result.needs_update = self.resolver.needs_update(result.local_version, result.remote_version)
                except QueryError as e:
                    result.query_error = e.reason
                    result.needs_update = True
                resolutions[name] = result

                current = ResolvedVersion(name, result.local_version) if result.local_version else None
                resolved[name] = current
                if current is None:
                    continue
                if self.secondary.version_path(name, current.target_version).exists():
                    secondary_states[name] = SyncOutcome.ALREADY_SYNCHRONIZED.value
                else:
                    secondary_states[name] = "missing"
                scanner.scan_directories(current)
            except Exception:
                # Reported as unknown/unresolved; the other packages still get a row.
                logger.exception("Inspecting %s failed", name)

        for name in self.cleanup_candidates():
            current = resolved.get(name)
            try:
                scanner.scan_registrations(
                    name, protected_version=current.target_version if current else None
                )
            except Exception:
                logger.exception("Scanning registrations of %s failed", name)

        return self.aggregator.aggregate(
            packages,
            resolutions,
            resolved,
            {},
            CleanupOutcome(directive_count=len(pending)),
            queued=[d.describe() for d in pending],
            secondary_states=secondary_states,
        )


def _unique_names(names: List[str]) -> List[str]:
    seen = set()
    unique = []
    for name in names:
        c_name = canonicalize_name(name)
        if c_name in seen:
            continue
        seen.add(c_name)
        unique.append(name)
    return unique
