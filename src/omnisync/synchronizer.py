import logging
import shutil

from .common_utils import safe_print
from .environment import VersionedEnvironment
from .i18n import _
from .models import SyncOutcome, SyncResult

logger = logging.getLogger(__name__)


class EnvironmentSynchronizer:
    """Copies a resolved version directory from the primary into the secondary environment."""

    def __init__(self, primary: VersionedEnvironment, secondary: VersionedEnvironment):
        self.primary = primary
        self.secondary = secondary

    def synchronize(self, package_name: str, version: str) -> SyncResult:
        source = self.primary.version_path(package_name, version)
        destination = self.secondary.version_path(package_name, version)
        result = SyncResult(package_name, version, SyncOutcome.ALREADY_SYNCHRONIZED, source, destination)

        if destination.exists():
            logger.debug("%s %s already present at %s", package_name, version, destination)
            return result

        if not source.is_dir():
            result.outcome = SyncOutcome.SYNC_FAILED
            result.reason = _("source directory {} does not exist").format(source)
            safe_print(_("   ❌ Cannot sync {} {}: {}").format(package_name, version, result.reason))
            return result

        safe_print(
            _("   📋 Copying {} {} to {}...").format(package_name, version, self.secondary.environment_id)
        )
        try:
            self.secondary.copy_tree(source, destination)
        except (OSError, shutil.Error) as e:
            # A failed copy may leave a partial tree behind; it is surfaced, not retried.
            result.outcome = SyncOutcome.SYNC_FAILED
            result.reason = str(e)
            safe_print(_("   ❌ Copy of {} {} failed: {}").format(package_name, version, e))
            return result

        result.outcome = SyncOutcome.SYNCHRONIZED
        return result
