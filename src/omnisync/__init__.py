"""
omnisync: keeps version-isolated package installs identical across two
Python environments and sweeps stale versions out of both.

Copyright (c) 2025  1minds3t

This file is part of `omnisync`.

omnisync is free software: you can redistribute it and/or modify
it under the terms of the GNU Affero General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

omnisync is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the License for more details.

You should have received a copy of the GNU Affero General Public License
along with omnisync. If not, see <https://www.gnu.org/licenses/>.
"""
from pathlib import Path

from importlib.metadata import PackageNotFoundError, version

# On Python >= 3.11 the built-in `tomllib` is used, older interpreters get `tomli`.
try:
    import tomllib
except ModuleNotFoundError:
    import tomli as tomllib

__version__ = "0.0.0"  # fallback default

_pkg_name = "omnisync"

try:
    __version__ = version(_pkg_name)
except PackageNotFoundError:
    # Likely running from source → try pyproject.toml
    pyproject_path = Path(__file__).resolve().parent.parent.parent / "pyproject.toml"
    if pyproject_path.exists():
        with pyproject_path.open("rb") as f:
            __version__ = tomllib.load(f)["project"]["version"]

__all__ = [
    "cleanup",
    "cli",
    "common_utils",
    "config_manager",
    "core",
    "environment",
    "models",
    "registry",
    "report",
    "resolver",
    "scanner",
    "synchronizer",
]
