"""
Registry client: talks to the package index and owns the per-environment
registration database.

`BubbleRegistryClient` installs each package version into its own directory
under the environment root (`pip install --target`) and records it in
`registry.json` so installed versions can be listed and uninstalled one by
one.
"""
import json
import logging
import os
import shutil
import subprocess
import sys
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

import requests as http_requests
from filelock import FileLock
from packaging.utils import canonicalize_name

from .common_utils import safe_parse_version, safe_print
from .environment import VersionedEnvironment
from .i18n import _
from .models import InstallError, InstalledVersionRecord, QueryError, RemoteVersionInfo

logger = logging.getLogger(__name__)

DEFAULT_INDEX_URL = "https://pypi.org"


class RegistryClient:
    """Narrow interface the sync engine uses to reach the package registry."""

    def find_latest(self, package_name: str) -> Optional[RemoteVersionInfo]:
        """Latest published version, None if the package is unknown. Raises QueryError."""
        raise NotImplementedError

    def install_or_update(
        self, package_name: str, environment: VersionedEnvironment, version: Optional[str] = None
    ) -> InstalledVersionRecord:
        """Install the latest (or the given) version. Raises InstallError."""
        raise NotImplementedError

    def list_installed(
        self, package_name: str, environment: VersionedEnvironment, all_versions: bool = True
    ) -> List[InstalledVersionRecord]:
        """Registered versions, highest first."""
        raise NotImplementedError

    def uninstall(self, package_name: str, version: str, environment: VersionedEnvironment) -> None:
        """Best-effort removal of one registered version; never raises."""
        raise NotImplementedError


def sort_records(records: List[InstalledVersionRecord]) -> List[InstalledVersionRecord]:
    """Highest version first; versions that do not parse sink to the end."""

    def sort_key(record):
        parsed = safe_parse_version(record.version)
        return (True, parsed) if parsed is not None else (False,)

    return sorted(records, key=sort_key, reverse=True)


class RegistrationDatabase:
    """
    The `registry.json` file of one environment: {canonical_name: {version: path}}.

    Every read-modify-write happens under the environment's FileLock, and
    writes go through a temp file plus rename so a crash never leaves a
    half-written registry behind.
    """

    def __init__(self, environment: VersionedEnvironment):
        self.environment = environment
        self.lock = FileLock(str(environment.registry_lock_path))

    def _read(self) -> Dict[str, Dict[str, str]]:
        registry_file = self.environment.registry_path
        if not registry_file.exists():
            return {}
        try:
            with open(registry_file, "r", encoding="utf-8") as f:
                data = json.load(f)
            return data if isinstance(data, dict) else {}
        except (json.JSONDecodeError, IOError):
            safe_print(_("    ⚠️ Warning: Failed to load registry at {}, starting fresh.").format(registry_file))
            return {}

    def _write(self, data: Dict[str, Dict[str, str]]) -> None:
        registry_file = self.environment.registry_path
        temp_file = registry_file.with_suffix(f"{registry_file.suffix}.tmp")
        try:
            with open(temp_file, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(temp_file, registry_file)
        finally:
            if temp_file.exists():
                temp_file.unlink()

    def load(self) -> Dict[str, Dict[str, str]]:
        if not self.environment.registry_path.exists():
            return {}
        with self.lock:
            return self._read()

    def register(self, package_name: str, version: str, path: Path) -> None:
        self.environment.root.mkdir(parents=True, exist_ok=True)
        c_name = canonicalize_name(package_name)
        with self.lock:
            data = self._read()
            data.setdefault(c_name, {})[version] = str(path)
            self._write(data)

    def path_for(self, package_name: str, version: str) -> Optional[str]:
        return self.load().get(canonicalize_name(package_name), {}).get(version)

    def unregister(self, package_name: str, version: str) -> Optional[str]:
        """Drop a registration and return the path it pointed at."""
        c_name = canonicalize_name(package_name)
        with self.lock:
            data = self._read()
            versions = data.get(c_name, {})
            path = versions.pop(version, None)
            if not versions:
                data.pop(c_name, None)
            self._write(data)
        return path


class BubbleRegistryClient(RegistryClient):

    def __init__(
        self,
        index_url: Optional[str] = None,
        request_timeout: float = 10.0,
        install_timeout: Optional[float] = None,
        session: Optional[http_requests.Session] = None,
    ):
        self.index_url = (index_url or DEFAULT_INDEX_URL).rstrip("/")
        self.request_timeout = request_timeout
        self.install_timeout = install_timeout
        self.http_session = session or http_requests.Session()
        self.http_session.headers.update(
            {"User-Agent": "omnisync-package-manager/1.0", "Accept": "application/json"}
        )

    def find_latest(self, package_name: str) -> Optional[RemoteVersionInfo]:
        url = f"{self.index_url}/pypi/{canonicalize_name(package_name)}/json"
        try:
            response = self.http_session.get(url, timeout=self.request_timeout)
        except http_requests.exceptions.RequestException as e:
            raise QueryError(package_name, str(e)) from e
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise QueryError(package_name, f"HTTP {response.status_code} from {url}")
        try:
            pkg_data = response.json()
        except ValueError as e:
            raise QueryError(package_name, f"invalid JSON from {url}") from e
        info = pkg_data.get("info") if isinstance(pkg_data, dict) else None
        latest = info.get("version") if isinstance(info, dict) else None
        if safe_parse_version(latest) is None:
            raise QueryError(package_name, f"no usable version in response ({latest!r})")
        return RemoteVersionInfo(package_name, latest)

    def install_or_update(
        self, package_name: str, environment: VersionedEnvironment, version: Optional[str] = None
    ) -> InstalledVersionRecord:
        python_exe = environment.python_executable or sys.executable
        c_name = canonicalize_name(package_name)
        environment.staging_dir.mkdir(parents=True, exist_ok=True)
        staging_path = Path(tempfile.mkdtemp(prefix=f"{c_name}-", dir=str(environment.staging_dir)))
        spec = f"{package_name}=={version}" if version else package_name
        cmd = [
            python_exe,
            "-m",
            "pip",
            "install",
            "--upgrade",
            "--no-input",
            "--disable-pip-version-check",
            "--target",
            str(staging_path),
            spec,
        ]
        if self.index_url != DEFAULT_INDEX_URL:
            cmd.extend(["--index-url", f"{self.index_url}/simple"])
        try:
            safe_print(_("    📦 Installing {} into {}...").format(spec, environment.environment_id))
            logger.debug("Running %s", " ".join(cmd))
            try:
                result = subprocess.run(
                    cmd, capture_output=True, text=True, timeout=self.install_timeout
                )
            except (OSError, subprocess.SubprocessError) as e:
                raise InstallError(package_name, str(e)) from e
            if result.returncode != 0:
                reason = (result.stderr or "").strip() or f"pip exited with code {result.returncode}"
                raise InstallError(package_name, reason)

            installed_version = read_installed_version(staging_path, package_name)
            if not installed_version:
                raise InstallError(package_name, "pip succeeded but no .dist-info was produced")

            destination = environment.version_path(package_name, installed_version)
            if destination.exists():
                logger.debug("%s already present at %s, reusing it", spec, destination)
            else:
                destination.parent.mkdir(parents=True, exist_ok=True)
                try:
                    shutil.move(str(staging_path), str(destination))
                except (OSError, shutil.Error) as e:
                    raise InstallError(package_name, f"could not place {destination}: {e}") from e
            RegistrationDatabase(environment).register(package_name, installed_version, destination)
            return InstalledVersionRecord(
                c_name, environment.environment_id, installed_version, destination
            )
        finally:
            shutil.rmtree(staging_path, ignore_errors=True)

    def list_installed(
        self, package_name: str, environment: VersionedEnvironment, all_versions: bool = True
    ) -> List[InstalledVersionRecord]:
        c_name = canonicalize_name(package_name)
        registered = RegistrationDatabase(environment).load().get(c_name, {})
        records = []
        for version, path_str in registered.items():
            path = Path(path_str)
            if not path.exists():
                logger.debug("Ignoring registration %s==%s, %s is gone", c_name, version, path)
                continue
            records.append(InstalledVersionRecord(c_name, environment.environment_id, version, path))
        records = sort_records(records)
        return records if all_versions else records[:1]

    def uninstall(self, package_name: str, version: str, environment: VersionedEnvironment) -> None:
        database = RegistrationDatabase(environment)
        try:
            path = Path(
                database.path_for(package_name, version)
                or environment.version_path(package_name, version)
            )
            environment.remove_tree(path)
            if path.exists():
                logger.info("%s==%s is still in use, leaving it for the next run", package_name, version)
                return
            database.unregister(package_name, version)
        except Exception as e:
            logger.warning("Uninstall of %s==%s failed: %s", package_name, version, e)


def read_installed_version(install_path: Path, package_name: str) -> Optional[str]:
    """Find `<name>-<version>.dist-info` for the package in a --target tree."""
    c_name = canonicalize_name(package_name)
    for dist_info in Path(install_path).glob("*.dist-info"):
        stem = dist_info.name[: -len(".dist-info")]
        name, sep, version = stem.rpartition("-")
        if sep and canonicalize_name(name) == c_name:
            return version
    return None
