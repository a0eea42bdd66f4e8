import json
from dataclasses import asdict
from typing import Dict, Iterable, List, Optional

from rich.console import Console
from rich.table import Table

from .i18n import _
from .models import (
    CleanupOutcome,
    CleanupState,
    FinalReportRow,
    ResolutionResult,
    ResolvedVersion,
    SyncReport,
    SyncResult,
)

UNRESOLVED = "unresolved"
SKIPPED = "skipped"


class ReportAggregator:
    """Joins the per-package results of every phase into one row per managed package."""

    def primary_status(self, resolution: Optional[ResolutionResult], resolved: Optional[ResolvedVersion]) -> str:
        if resolution is None:
            return "unknown"
        if resolution.install_error:
            return "update-failed"
        if resolution.updated:
            return "updated"
        if not resolution.needs_update:
            return "up-to-date"
        if resolved is None:
            return "not-installed"
        return "update-available"

    def detail(self, resolution: Optional[ResolutionResult], sync: Optional[SyncResult]) -> Optional[str]:
        parts = []
        if resolution is not None:
            if resolution.query_error:
                parts.append(_("index query failed, update assumed: {}").format(resolution.query_error))
            if resolution.install_error:
                parts.append(resolution.install_error.splitlines()[-1])
        if sync is not None and sync.reason:
            parts.append(sync.reason)
        return "; ".join(parts) or None

    def aggregate(
        self,
        package_names: Iterable[str],
        resolutions: Dict[str, ResolutionResult],
        resolved: Dict[str, Optional[ResolvedVersion]],
        sync_results: Dict[str, SyncResult],
        cleanup: CleanupOutcome,
        queued: Optional[List[str]] = None,
        secondary_states: Optional[Dict[str, str]] = None,
    ) -> SyncReport:
        secondary_states = secondary_states or {}
        rows = []
        for name in package_names:
            resolution = resolutions.get(name)
            current = resolved.get(name)
            sync = sync_results.get(name)
            rows.append(
                FinalReportRow(
                    package_name=name,
                    resolved_version=current.target_version if current else UNRESOLVED,
                    primary_status=self.primary_status(resolution, current),
                    secondary_status=secondary_states.get(
                        name, sync.outcome.value if sync else SKIPPED
                    ),
                    detail=self.detail(resolution, sync),
                )
            )
        return SyncReport(rows=rows, cleanup=cleanup, queued=list(queued or []))


def report_to_dict(report: SyncReport) -> dict:
    cleanup = report.cleanup
    return {
        "packages": [asdict(row) for row in report.rows],
        "cleanup": {
            "state": cleanup.state.value,
            "directives": cleanup.directive_count,
            "launched": cleanup.launched,
            "exit_code": cleanup.exit_code,
            "succeeded": cleanup.succeeded,
            "left_in_place": [asdict(r) for r in cleanup.left_in_place],
            "error": cleanup.error,
            "queued": report.queued,
        },
    }


def render_json(report: SyncReport) -> str:
    return json.dumps(report_to_dict(report), indent=2)


def render_table(report: SyncReport, console: Optional[Console] = None) -> None:
    console = console or Console()
    table = Table(title=_("omnisync report"))
    table.add_column(_("Package"))
    table.add_column(_("Version"))
    table.add_column(_("Primary"))
    table.add_column(_("Secondary"))
    table.add_column(_("Notes"), overflow="fold")
    for row in report.rows:
        table.add_row(
            row.package_name,
            row.resolved_version,
            row.primary_status,
            row.secondary_status,
            row.detail or "",
        )
    console.print(table)

    cleanup = report.cleanup
    if cleanup.state is CleanupState.IDLE:
        if report.queued:
            console.print(_("🧹 {} stale item(s) would be removed:").format(len(report.queued)))
            for item in report.queued:
                console.print(_("   - {}").format(item))
        else:
            console.print(_("🧹 Nothing stale to remove"))
        return
    if not cleanup.launched and cleanup.error is None:
        console.print(_("🧹 Cleanup: nothing to remove"))
    elif cleanup.succeeded:
        removed = cleanup.directive_count - len(cleanup.left_in_place)
        console.print(_("🧹 Cleanup: {} of {} stale item(s) removed").format(removed, cleanup.directive_count))
    else:
        console.print(_("🧹 Cleanup failed: {}").format(cleanup.error))
    for result in cleanup.left_in_place:
        directive = result.directive
        if directive.get("package"):
            label = "{}=={}".format(directive["package"], directive.get("version"))
        else:
            label = directive.get("target")
        console.print(_("   ⏭️  left in place for next run: {} ({})").format(label, result.error))
