#!/usr/bin/env python3
"""
Full sync runs over two throwaway environments.

The index and pip are replaced by OfflineIndexRegistry; everything else
(registration database, copies, scans and, where noted, the detached cleanup
worker) is the real thing.
"""
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from omnisync.config_manager import ConfigManager
from omnisync.core import omnisync as OmnisyncCore
from omnisync.models import CleanupState, normalize_path
from omnisync.registry import RegistrationDatabase

from sync_fixtures import (
    OfflineIndexRegistry,
    RecordingLauncher,
    TempEnvironmentsMixin,
    make_version_dir,
    query_error,
    register_version,
)


class SyncScenarioTestCase(TempEnvironmentsMixin, unittest.TestCase):

    def setUp(self):
        self.make_environments()
        config_dir = Path(tempfile.mkdtemp(prefix="omnisync_cfg_"))
        self.addCleanup(shutil.rmtree, config_dir, True)
        self.cm = ConfigManager(config_dir=config_dir, suppress_init_messages=True)
        self.cm.set("managed_packages", ["P"])

    def make_core(self, registry, launcher=None):
        return OmnisyncCore(
            self.cm,
            registry=registry,
            launcher=launcher or RecordingLauncher(),
            environments=(self.primary, self.secondary),
            cleanup_timeout=60,
        )

    def row(self, report, name="P"):
        return next(r for r in report.rows if r.package_name == name)


class TestSyncScenarios(SyncScenarioTestCase):

    def test_a_missing_package_is_installed_and_copied(self):
        registry = OfflineIndexRegistry({"P": "2.0.0"})
        launcher = RecordingLauncher()
        report = self.make_core(registry, launcher).sync()

        row = self.row(report)
        self.assertEqual(registry.install_calls, [("P", "primary", "2.0.0")])
        self.assertEqual(row.resolved_version, "2.0.0")
        self.assertEqual(row.primary_status, "updated")
        self.assertEqual(row.secondary_status, "synchronized")
        self.assertTrue(self.secondary.version_path("P", "2.0.0").is_dir())
        # Nothing stale, so no cleanup process.
        self.assertEqual(launcher.launched, [])
        self.assertEqual(report.cleanup.state, CleanupState.COMPLETED)

    def test_b_older_registrations_are_queued_for_uninstall(self):
        for version in ("1.0.0", "1.5.0", "2.0.0"):
            register_version(self.primary, "P", version)
        registry = OfflineIndexRegistry({"P": "2.0.0"})
        report = self.make_core(registry).sync()

        root = normalize_path(self.primary.root)
        self.assertEqual(
            sorted(report.queued),
            [f"uninstall p==1.0.0 from {root}", f"uninstall p==1.5.0 from {root}"],
        )
        self.assertEqual(report.cleanup.directive_count, 2)
        self.assertEqual(self.row(report).resolved_version, "2.0.0")

    def test_c_existing_secondary_copy_is_not_recopied(self):
        register_version(self.primary, "P", "2.0.0")
        make_version_dir(self.secondary, "P", "2.0.0")
        registry = OfflineIndexRegistry({"P": "2.0.0"})
        core = self.make_core(registry)

        with mock.patch.object(self.secondary, "copy_tree") as copy_tree:
            report = core.sync()

        copy_tree.assert_not_called()
        self.assertEqual(self.row(report).secondary_status, "already-synchronized")
        self.assertEqual(self.row(report).primary_status, "up-to-date")

    def test_d_query_error_still_attempts_install(self):
        register_version(self.primary, "P", "1.0.0")
        registry = OfflineIndexRegistry({"P": query_error("P")})
        report = self.make_core(registry).sync()

        row = self.row(report)
        self.assertEqual(len(registry.install_calls), 1)
        self.assertEqual(row.resolved_version, "1.0.0")
        self.assertIn("simulated index outage", row.detail)
        self.assertEqual(row.secondary_status, "synchronized")


class TestPartialFailures(SyncScenarioTestCase):

    def test_1_failed_package_does_not_stop_the_others(self):
        self.cm.set("managed_packages", ["broken", "P"])
        registry = OfflineIndexRegistry({"broken": "1.0", "P": "2.0.0"}, failing_installs=["broken"])
        report = self.make_core(registry).sync()

        self.assertEqual([r.package_name for r in report.rows], ["broken", "P"])
        self.assertEqual(self.row(report, "broken").resolved_version, "unresolved")
        self.assertEqual(self.row(report, "broken").secondary_status, "skipped")
        self.assertEqual(self.row(report, "P").secondary_status, "synchronized")

    def test_2_failed_copy_keeps_older_secondary_versions(self):
        register_version(self.primary, "P", "2.0.0")
        make_version_dir(self.secondary, "P", "1.0.0")
        registry = OfflineIndexRegistry({"P": "2.0.0"})
        core = self.make_core(registry)

        with mock.patch.object(self.secondary, "copy_tree", side_effect=PermissionError("denied")):
            report = core.sync()

        self.assertEqual(self.row(report).secondary_status, "sync-failed")
        self.assertEqual(report.queued, [])

    def test_3_unexpected_resolver_crash_is_contained(self):
        registry = OfflineIndexRegistry({"P": "2.0.0"})
        core = self.make_core(registry)
        with mock.patch.object(core.resolver, "resolve", side_effect=RuntimeError("kaboom")):
            report = core.sync()

        self.assertEqual(self.row(report).primary_status, "update-failed")
        self.assertIn("kaboom", self.row(report).detail)

    def test_4_cleanup_that_cannot_be_prepared_still_reports(self):
        for version in ("1.0.0", "2.0.0"):
            register_version(self.primary, "P", version)
        registry = OfflineIndexRegistry({"P": "2.0.0"})
        launcher = RecordingLauncher()
        core = self.make_core(registry, launcher)
        disk_full = OSError(28, "No space left on device")
        with mock.patch("omnisync.cleanup.create_subprocess_script", side_effect=disk_full):
            report = core.sync()

        self.assertEqual(launcher.launched, [])
        self.assertEqual(report.cleanup.state, CleanupState.COMPLETED)
        self.assertIn("No space left on device", report.cleanup.error)
        self.assertEqual(self.row(report).secondary_status, "synchronized")
        self.assertTrue(self.primary.version_path("P", "1.0.0").exists())


class TestCleanupEndToEnd(SyncScenarioTestCase):

    def test_1_stale_versions_are_swept_by_detached_worker(self):
        self.cm.set("legacy_packages", ["p-legacy"])
        for version in ("1.0.0", "1.5.0", "2.0.0"):
            register_version(self.primary, "P", version)
        old_secondary = make_version_dir(self.secondary, "P", "1.0.0")
        register_version(self.primary, "p-legacy", "0.1")
        register_version(self.primary, "p-legacy", "0.2")

        registry = OfflineIndexRegistry({"P": "2.0.0"})
        core = OmnisyncCore(self.cm, registry=registry, environments=(self.primary, self.secondary), cleanup_timeout=60)
        report = core.sync()

        self.assertTrue(report.cleanup.succeeded, msg=report.cleanup.error)
        self.assertEqual(report.cleanup.directive_count, 4)
        self.assertFalse(old_secondary.exists())
        self.assertTrue(self.secondary.version_path("P", "2.0.0").is_dir())
        registered = RegistrationDatabase(self.primary).load()
        self.assertEqual(list(registered["p"]), ["2.0.0"])
        self.assertEqual(list(registered["p-legacy"]), ["0.2"])

        # A second run finds nothing left to do.
        second = OmnisyncCore(
            self.cm, registry=registry, launcher=RecordingLauncher(), environments=(self.primary, self.secondary)
        ).sync()
        self.assertEqual(second.queued, [])
        self.assertEqual(self.row(second).secondary_status, "already-synchronized")


class TestStatus(SyncScenarioTestCase):

    def test_1_status_changes_nothing(self):
        register_version(self.primary, "P", "1.0.0")
        register_version(self.primary, "P", "1.5.0")
        make_version_dir(self.secondary, "P", "1.0.0")
        registry = OfflineIndexRegistry({"P": "2.0.0"})
        launcher = RecordingLauncher()
        report = self.make_core(registry, launcher).status()

        row = self.row(report)
        self.assertEqual(row.resolved_version, "1.5.0")
        self.assertEqual(row.primary_status, "update-available")
        self.assertEqual(row.secondary_status, "missing")
        self.assertEqual(report.cleanup.state, CleanupState.IDLE)
        self.assertEqual(report.cleanup.directive_count, 2)
        self.assertEqual(registry.install_calls, [])
        self.assertEqual(launcher.launched, [])
        self.assertFalse(self.secondary.version_path("P", "1.5.0").exists())
        self.assertTrue(self.secondary.version_path("P", "1.0.0").exists())

    def test_2_broken_index_answer_is_contained_per_package(self):
        self.cm.set("managed_packages", ["broken", "P"])
        register_version(self.primary, "broken", "1.0")
        register_version(self.primary, "P", "2.0.0")
        registry = OfflineIndexRegistry({"broken": RuntimeError("unexpected payload"), "P": "2.0.0"})
        report = self.make_core(registry).status()

        self.assertEqual([r.package_name for r in report.rows], ["broken", "P"])
        self.assertEqual(self.row(report, "broken").resolved_version, "unresolved")
        self.assertEqual(self.row(report, "broken").primary_status, "unknown")
        self.assertEqual(self.row(report, "P").primary_status, "up-to-date")

    def test_3_unreadable_local_state_is_contained_per_package(self):
        self.cm.set("managed_packages", ["broken", "P"])
        register_version(self.primary, "P", "2.0.0")
        registry = OfflineIndexRegistry({"broken": "1.0", "P": "2.0.0"})
        core = self.make_core(registry)
        real_local_version = core.resolver.local_version

        def local_version(name):
            if name == "broken":
                raise PermissionError("registry.json: permission denied")
            return real_local_version(name)

        with mock.patch.object(core.resolver, "local_version", side_effect=local_version):
            report = core.status()

        self.assertEqual(self.row(report, "broken").resolved_version, "unresolved")
        self.assertEqual(self.row(report, "P").resolved_version, "2.0.0")
        self.assertEqual(self.row(report, "P").secondary_status, "missing")


if __name__ == "__main__":
    unittest.main(verbosity=2)
