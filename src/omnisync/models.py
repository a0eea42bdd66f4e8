"""
Data model shared by the resolver, synchronizer, scanner, cleanup executor
and report.

Everything here is plain data: records read from an environment, results of
each phase, and the removal directives handed to the detached cleanup worker.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from packaging.utils import canonicalize_name


class OmnisyncError(Exception):
    """Base class for omnisync errors."""


class QueryError(OmnisyncError):
    """The remote registry could not be queried for a package's latest version."""

    def __init__(self, package_name: str, reason: str):
        self.package_name = package_name
        self.reason = reason
        super().__init__(f"Could not query latest version of '{package_name}': {reason}")


class InstallError(OmnisyncError):
    """Installing or updating a package into an environment failed."""

    def __init__(self, package_name: str, reason: str):
        self.package_name = package_name
        self.reason = reason
        super().__init__(f"Failed to install '{package_name}': {reason}")


class EnvironmentSetupError(OmnisyncError):
    """Required environment paths could not be determined. Fatal for a run."""


@dataclass(frozen=True)
class InstalledVersionRecord:
    package_name: str
    environment_id: str
    version: str
    path: Path


@dataclass(frozen=True)
class RemoteVersionInfo:
    package_name: str
    latest_version: str


@dataclass(frozen=True)
class ResolvedVersion:
    package_name: str
    target_version: str


@dataclass
class ResolutionResult:
    """Outcome of Phase 1 for one package."""

    package_name: str
    local_version: Optional[str] = None
    remote_version: Optional[str] = None
    needs_update: bool = False
    updated: bool = False
    query_error: Optional[str] = None
    install_error: Optional[str] = None


class SyncOutcome(Enum):
    ALREADY_SYNCHRONIZED = "already-synchronized"
    SYNCHRONIZED = "synchronized"
    SYNC_FAILED = "sync-failed"


@dataclass
class SyncResult:
    package_name: str
    version: str
    outcome: SyncOutcome
    source: Optional[Path] = None
    destination: Optional[Path] = None
    reason: Optional[str] = None


class DirectiveKind(Enum):
    REMOVE_DIRECTORY = "remove-directory"
    UNINSTALL_VERSION = "uninstall-version"


def normalize_path(path) -> str:
    return os.path.normcase(os.path.normpath(os.path.abspath(str(path))))


@dataclass(frozen=True)
class CleanupDirective:
    """
    One idempotent removal instruction.

    Directives are value objects: two directives naming the same target
    compare equal and hash alike, so a set collapses them to one entry.
    Build them through `remove_directory()` or `uninstall()` so paths and
    package names are normalised before comparison.
    """

    kind: DirectiveKind
    target: str
    package_name: Optional[str] = None
    version: Optional[str] = None

    @classmethod
    def remove_directory(cls, path):
        return cls(DirectiveKind.REMOVE_DIRECTORY, normalize_path(path))

    @classmethod
    def uninstall(cls, environment_root, package_name: str, version: str):
        return cls(
            DirectiveKind.UNINSTALL_VERSION,
            normalize_path(environment_root),
            canonicalize_name(package_name),
            version,
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "target": self.target,
            "package": self.package_name,
            "version": self.version,
        }

    def describe(self) -> str:
        if self.kind is DirectiveKind.UNINSTALL_VERSION:
            return f"uninstall {self.package_name}=={self.version} from {self.target}"
        return f"remove {self.target}"


class CleanupState(Enum):
    IDLE = "idle"
    BATCHED = "batched"
    LAUNCHED = "launched"
    COMPLETED = "completed"


@dataclass
class DirectiveResult:
    directive: Dict[str, Any]
    ok: bool
    error: Optional[str] = None


@dataclass
class CleanupOutcome:
    state: CleanupState = CleanupState.IDLE
    directive_count: int = 0
    launched: bool = False
    exit_code: Optional[int] = None
    acknowledged: bool = False
    results: List[DirectiveResult] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        if not self.launched:
            return self.error is None
        return self.exit_code == 0 and self.acknowledged

    @property
    def left_in_place(self) -> List[DirectiveResult]:
        return [r for r in self.results if not r.ok]


@dataclass(frozen=True)
class FinalReportRow:
    package_name: str
    resolved_version: str
    primary_status: str
    secondary_status: str
    detail: Optional[str] = None


@dataclass
class SyncReport:
    rows: List[FinalReportRow]
    cleanup: CleanupOutcome
    queued: List[str] = field(default_factory=list)
