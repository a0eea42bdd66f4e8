#!/usr/bin/env python3
"""
BubbleRegistryClient against a mocked HTTP session and a mocked pip, plus
the on-disk registration database it keeps per environment.
"""
import json
import subprocess
import unittest
from pathlib import Path
from unittest import mock

import requests

from omnisync.models import InstallError, QueryError
from omnisync.registry import (
    BubbleRegistryClient,
    RegistrationDatabase,
    read_installed_version,
)

from sync_fixtures import TempEnvironmentsMixin, make_version_dir, register_version


def fake_response(status_code=200, payload=None, bad_json=False):
    response = mock.Mock()
    response.status_code = status_code
    if bad_json:
        response.json.side_effect = ValueError("Expecting value")
    else:
        response.json.return_value = payload
    return response


class TestFindLatest(unittest.TestCase):

    def setUp(self):
        self.session = mock.Mock()
        self.session.headers = {}
        self.client = BubbleRegistryClient(index_url="https://pypi.example/", session=self.session)

    def test_1_returns_latest_version(self):
        self.session.get.return_value = fake_response(payload={"info": {"version": "2.31.0"}})
        info = self.client.find_latest("Requests")

        self.assertEqual(info.latest_version, "2.31.0")
        url = self.session.get.call_args.args[0]
        self.assertEqual(url, "https://pypi.example/pypi/requests/json")
        self.assertIn("omnisync", self.session.headers["User-Agent"])

    def test_2_unknown_package_is_not_found(self):
        self.session.get.return_value = fake_response(status_code=404)
        self.assertIsNone(self.client.find_latest("no-such-package"))

    def test_3_network_errors_become_query_errors(self):
        self.session.get.side_effect = requests.exceptions.ConnectionError("connection refused")
        with self.assertRaises(QueryError) as ctx:
            self.client.find_latest("pkg")
        self.assertIn("connection refused", ctx.exception.reason)

    def test_4_bad_responses_become_query_errors(self):
        cases = {
            "server error": fake_response(status_code=503),
            "bad json": fake_response(bad_json=True),
            "no version": fake_response(payload={"info": {}}),
            "junk version": fake_response(payload={"info": {"version": "latest!"}}),
            "null info": fake_response(payload={"info": None}),
            "not an object": fake_response(payload=["2.0.0"]),
        }
        for label, response in cases.items():
            with self.subTest(label):
                self.session.get.return_value = response
                with self.assertRaises(QueryError):
                    self.client.find_latest("pkg")


class TestRegistrationDatabase(TempEnvironmentsMixin, unittest.TestCase):

    def setUp(self):
        self.make_environments()
        self.database = RegistrationDatabase(self.primary)

    def test_1_register_and_unregister(self):
        self.database.register("My_Pkg", "1.0", self.primary.version_path("my-pkg", "1.0"))
        self.database.register("my-pkg", "2.0", self.primary.version_path("my-pkg", "2.0"))

        self.assertEqual(sorted(self.database.load()["my-pkg"]), ["1.0", "2.0"])
        self.assertEqual(self.database.unregister("MY.PKG", "1.0"), str(self.primary.version_path("my-pkg", "1.0")))
        self.database.unregister("my-pkg", "2.0")
        self.assertEqual(self.database.load(), {})

    def test_2_corrupt_registry_reads_as_empty(self):
        self.primary.registry_path.write_text("{not json", encoding="utf-8")
        self.assertEqual(self.database.load(), {})

    def test_3_writes_are_atomic_json(self):
        self.database.register("pkg", "1.0", Path("/x"))
        with open(self.primary.registry_path, "r", encoding="utf-8") as f:
            self.assertEqual(json.load(f), {"pkg": {"1.0": "/x"}})
        self.assertFalse(self.primary.registry_path.with_suffix(".json.tmp").exists())


class TestInstalledVersions(TempEnvironmentsMixin, unittest.TestCase):

    def setUp(self):
        self.make_environments()
        self.client = BubbleRegistryClient(session=mock.Mock(headers={}))

    def test_1_list_installed_is_highest_first(self):
        for version in ("1.10.0", "1.9.0", "2.0.0b1"):
            register_version(self.primary, "pkg", version)
        records = self.client.list_installed("pkg", self.primary)

        self.assertEqual([r.version for r in records], ["2.0.0b1", "1.10.0", "1.9.0"])
        self.assertEqual([r.version for r in self.client.list_installed("pkg", self.primary, all_versions=False)], ["2.0.0b1"])

    def test_2_registrations_without_files_are_ignored(self):
        RegistrationDatabase(self.primary).register("pkg", "1.0", self.primary.version_path("pkg", "1.0"))
        self.assertEqual(self.client.list_installed("pkg", self.primary), [])

    def test_3_uninstall_removes_files_then_registration(self):
        path = register_version(self.primary, "pkg", "1.0")
        register_version(self.primary, "pkg", "2.0")
        self.client.uninstall("pkg", "1.0", self.primary)

        self.assertFalse(path.exists())
        self.assertEqual(list(RegistrationDatabase(self.primary).load()["pkg"]), ["2.0"])

    def test_4_uninstall_keeps_registration_while_files_remain(self):
        path = register_version(self.primary, "pkg", "1.0")
        with mock.patch.object(self.primary, "remove_tree"):
            self.client.uninstall("pkg", "1.0", self.primary)

        self.assertTrue(path.exists())
        self.assertIn("1.0", RegistrationDatabase(self.primary).load()["pkg"])

    def test_5_read_installed_version(self):
        path = make_version_dir(self.primary, "my-pkg", "3.2.1")
        self.assertEqual(read_installed_version(path, "My_Pkg"), "3.2.1")
        self.assertIsNone(read_installed_version(path, "other"))


class TestInstallOrUpdate(TempEnvironmentsMixin, unittest.TestCase):

    def setUp(self):
        self.make_environments()
        self.client = BubbleRegistryClient(session=mock.Mock(headers={}))

    def fake_pip(self, version, returncode=0):
        def run(cmd, **kwargs):
            target = Path(cmd[cmd.index("--target") + 1])
            if returncode == 0:
                (target / "pkg").mkdir()
                (target / f"pkg-{version}.dist-info").mkdir()
            return subprocess.CompletedProcess(cmd, returncode, stdout="", stderr="ERROR: boom" if returncode else "")

        return run

    def test_1_install_places_and_registers_version(self):
        with mock.patch.object(subprocess, "run", side_effect=self.fake_pip("2.0.0")) as run:
            record = self.client.install_or_update("pkg", self.primary, version="2.0.0")

        cmd = run.call_args.args[0]
        self.assertIn("pkg==2.0.0", cmd)
        self.assertNotIn("--index-url", cmd)
        self.assertEqual(record.version, "2.0.0")
        self.assertTrue((self.primary.version_path("pkg", "2.0.0") / "pkg").is_dir())
        self.assertIn("2.0.0", RegistrationDatabase(self.primary).load()["pkg"])
        self.assertEqual(list(self.primary.staging_dir.iterdir()), [])

    def test_2_pip_failure_raises_install_error(self):
        with mock.patch.object(subprocess, "run", side_effect=self.fake_pip("2.0.0", returncode=1)):
            with self.assertRaises(InstallError) as ctx:
                self.client.install_or_update("pkg", self.primary)

        self.assertIn("boom", ctx.exception.reason)
        self.assertEqual(RegistrationDatabase(self.primary).load(), {})
        self.assertEqual(list(self.primary.staging_dir.iterdir()), [])


if __name__ == "__main__":
    unittest.main(verbosity=2)
