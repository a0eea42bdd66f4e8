import logging
from typing import Optional

from .common_utils import highest_version, safe_parse_version, safe_print
from .environment import VersionedEnvironment
from .i18n import _
from .models import InstallError, QueryError, ResolutionResult, ResolvedVersion
from .registry import RegistryClient

logger = logging.getLogger(__name__)


class VersionResolver:
    """
    Decides, per package, whether the primary environment is behind the index
    and installs the newer version when it is.

    A failed remote query is not fatal: the resolver assumes an update is
    required and lets the install attempt decide. This can reinstall a package
    needlessly while the index is flaky, which is accepted behaviour.
    """

    def __init__(self, registry: RegistryClient, environment: VersionedEnvironment):
        self.registry = registry
        self.environment = environment

    def local_version(self, package_name: str) -> Optional[str]:
        records = self.registry.list_installed(package_name, self.environment, all_versions=True)
        return highest_version(r.version for r in records)

    def needs_update(self, local_version: Optional[str], remote_version: Optional[str]) -> bool:
        if local_version is None:
            return True
        if remote_version is None:
            return False
        remote_parsed = safe_parse_version(remote_version)
        if remote_parsed is None:
            return True
        local_parsed = safe_parse_version(local_version)
        return local_parsed is None or local_parsed < remote_parsed

    def resolve(self, package_name: str) -> ResolutionResult:
        result = ResolutionResult(package_name=package_name)
        result.local_version = self.local_version(package_name)

        try:
            remote = self.registry.find_latest(package_name)
        except QueryError as e:
            logger.warning("%s", e)
            result.query_error = e.reason
            result.needs_update = True
        else:
            if remote is None:
                logger.info("'%s' was not found on the index", package_name)
            else:
                result.remote_version = remote.latest_version
            result.needs_update = self.needs_update(result.local_version, result.remote_version)

        if not result.needs_update:
            safe_print(
                _("   ✅ {} {} is up to date").format(package_name, result.local_version)
            )
            return result

        safe_print(
            _("   🔄 {}: {} -> {}").format(
                package_name,
                result.local_version or _("not installed"),
                result.remote_version or _("latest"),
            )
        )
        try:
            self.registry.install_or_update(
                package_name, self.environment, version=result.remote_version
            )
            result.updated = True
        except InstallError as e:
            result.install_error = e.reason
            safe_print(_("   ❌ Failed to install {}: {}").format(package_name, e.reason))
        return result

    def current_version(self, package_name: str) -> Optional[ResolvedVersion]:
        """Re-query the primary environment; None means the package is unresolved."""
        version = self.local_version(package_name)
        if version is None:
            return None
        return ResolvedVersion(package_name, version)
