"""
Deferred cleanup: runs every queued removal in a separate, detached process.

The process that drives a sync run may itself hold files open inside the
version directories it wants to delete (it imported them, or an interpreter
it launched still maps them). A thread cannot escape those handles, so the
whole batch is written to a payload file and handed to a fresh interpreter
started in its own session/process group. The caller blocks until that
process exits, then reads the acknowledgement file the worker leaves behind.
"""
import json
import logging
import os
import subprocess
import sys
import tempfile
import textwrap
from pathlib import Path
from typing import Any, Dict, List, Optional

import psutil

from .common_utils import (
    create_subprocess_script,
    pass_config_to_subprocess,
    safe_print,
    safe_unlink,
)
from .i18n import _
from .models import CleanupOutcome, CleanupState, DirectiveResult
from .scanner import PendingCleanupSet

logger = logging.getLogger(__name__)

ACKNOWLEDGE_STEP = "acknowledge"

# Runs in the detached interpreter. It must not import omnisync or any managed
# package: only the standard library and filelock (for the registry lock).
CLEANUP_WORKER_SCRIPT = textwrap.dedent(
    """
    import json
    import os
    import shutil
    import sys

    from filelock import FileLock


    def remove_tree(path):
        if os.path.islink(path) or os.path.isfile(path):
            os.unlink(path)
        elif os.path.isdir(path):
            shutil.rmtree(path, ignore_errors=True)
        if os.path.lexists(path):
            raise OSError("still present (in use?): " + path)


    def read_registry(registry_file):
        if not os.path.exists(registry_file):
            return {}
        with open(registry_file, "r", encoding="utf-8") as f:
            return json.load(f)


    def uninstall(root, package, version):
        registry_file = os.path.join(root, "registry.json")
        lock = FileLock(os.path.join(root, "registry.lock"))
        with lock:
            path = read_registry(registry_file).get(package, {}).get(version)
        remove_tree(path or os.path.join(root, package, version))
        # Only forget the registration once the files are really gone, so a
        # version that was locked today is found and retried on the next run.
        with lock:
            data = read_registry(registry_file)
            versions = data.get(package, {})
            if versions.pop(version, None) is None:
                return
            if not versions:
                data.pop(package, None)
            temp_file = registry_file + ".tmp"
            with open(temp_file, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(temp_file, registry_file)


    def main():
        with open(sys.argv[1], "r", encoding="utf-8") as f:
            payload = json.load(f)
        results = []
        for step in payload["steps"]:
            kind = step["kind"]
            if kind == "acknowledge":
                with open(step["target"], "w", encoding="utf-8") as f:
                    json.dump({"acknowledged": True, "results": results}, f)
                continue
            try:
                if kind == "uninstall-version":
                    uninstall(step["target"], step["package"], step["version"])
                elif kind == "remove-directory":
                    remove_tree(step["target"])
                else:
                    raise ValueError("unknown directive kind: " + kind)
                results.append({"directive": step, "ok": True, "error": None})
            except Exception as e:
                results.append({"directive": step, "ok": False, "error": str(e)})
        return 0


    if __name__ == "__main__":
        sys.exit(main())
    """
)


class DetachedProcessLauncher:
    """Starts commands as independent processes and waits for them."""

    def launch_detached(self, command: List[str], log_path: Optional[Path] = None) -> subprocess.Popen:
        log_file = None
        if log_path is not None:
            Path(log_path).parent.mkdir(parents=True, exist_ok=True)
            log_file = open(log_path, "a", encoding="utf-8")
        try:
            kwargs: Dict[str, Any] = {
                "stdin": subprocess.DEVNULL,
                "stdout": subprocess.DEVNULL,
                "stderr": log_file or subprocess.DEVNULL,
                "close_fds": True,
                # Never start inside a directory that may be about to be deleted.
                "cwd": tempfile.gettempdir(),
            }
            if os.name == "nt":
                kwargs["creationflags"] = (
                    subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
                )
            else:
                kwargs["start_new_session"] = True
            return subprocess.Popen(command, **kwargs)
        finally:
            if log_file is not None:
                log_file.close()

    def wait_for_exit(self, handle: subprocess.Popen, timeout: Optional[float] = None) -> int:
        try:
            return handle.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            safe_print(_("   ⚠️ Cleanup process timed out after {} seconds, terminating it").format(timeout))
            self._kill_tree(handle.pid)
            handle.wait()
            return -1

    def _kill_tree(self, pid: int) -> None:
        try:
            parent = psutil.Process(pid)
        except psutil.NoSuchProcess:
            return
        for child in parent.children(recursive=True):
            try:
                child.kill()
            except psutil.NoSuchProcess:
                pass
        try:
            parent.kill()
        except psutil.NoSuchProcess:
            pass


class DeferredCleanupExecutor:
    """
    Idle -> Batched -> Launched -> Completed.

    An empty pending set goes straight from Idle to Completed without starting
    any process. Otherwise the directives become one ordered batch closed by an
    acknowledgement step and run in a single detached worker. A failed launch
    or a non-zero exit is reported in the outcome, never raised.
    """

    def __init__(
        self,
        launcher: Optional[DetachedProcessLauncher] = None,
        python_executable: Optional[str] = None,
        timeout: Optional[float] = None,
        log_path: Optional[Path] = None,
    ):
        self.launcher = launcher or DetachedProcessLauncher()
        self.python_executable = python_executable or sys.executable
        self.timeout = timeout
        self.log_path = log_path
        self.state = CleanupState.IDLE

    def build_batch(self, pending: PendingCleanupSet, ack_path: str) -> List[Dict[str, Any]]:
        steps = [directive.to_payload() for directive in pending]
        steps.append({"kind": ACKNOWLEDGE_STEP, "target": ack_path, "package": None, "version": None})
        return steps

    def execute(self, pending: PendingCleanupSet) -> CleanupOutcome:
        self.state = CleanupState.IDLE
        outcome = CleanupOutcome(directive_count=len(pending))
        if not len(pending):
            self.state = outcome.state = CleanupState.COMPLETED
            return outcome

        ack_path = payload_path = script_path = None
        try:
            try:
                fd, ack_path = tempfile.mkstemp(suffix=".json", prefix="omnisync_cleanup_ack_")
                os.close(fd)
                safe_unlink(Path(ack_path))
                steps = self.build_batch(pending, ack_path)
                payload_path = pass_config_to_subprocess({"steps": steps}, prefix="omnisync_cleanup_")
                script_path = create_subprocess_script(CLEANUP_WORKER_SCRIPT, "cleanup_worker")
            except OSError as e:
                outcome.error = _("could not prepare cleanup batch: {}").format(e)
                safe_print(_("   ❌ {}").format(outcome.error))
                self.state = outcome.state = CleanupState.COMPLETED
                return outcome
            self.state = outcome.state = CleanupState.BATCHED

            safe_print(_("🧹 Handing {} cleanup directive(s) to a detached process...").format(len(pending)))
            command = [self.python_executable, script_path, payload_path]
            try:
                handle = self.launcher.launch_detached(command, log_path=self.log_path)
            except OSError as e:
                outcome.error = _("could not launch cleanup process: {}").format(e)
                safe_print(_("   ❌ {}").format(outcome.error))
                self.state = outcome.state = CleanupState.COMPLETED
                return outcome
            outcome.launched = True
            self.state = outcome.state = CleanupState.LAUNCHED
            logger.debug("Cleanup worker started with pid %s", getattr(handle, "pid", "?"))

            outcome.exit_code = self.launcher.wait_for_exit(handle, timeout=self.timeout)
            self.state = outcome.state = CleanupState.COMPLETED
            self._read_acknowledgement(Path(ack_path), outcome)
            if outcome.exit_code != 0:
                outcome.error = _("cleanup process exited with code {}").format(outcome.exit_code)
            elif not outcome.acknowledged:
                outcome.error = _("cleanup process exited without acknowledging the batch")
            return outcome
        finally:
            for path in (payload_path, script_path, ack_path):
                if path:
                    safe_unlink(Path(path))

    def _read_acknowledgement(self, ack_path: Path, outcome: CleanupOutcome) -> None:
        if not ack_path.exists():
            return
        try:
            with open(ack_path, "r", encoding="utf-8") as f:
                ack = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.warning("Unreadable cleanup acknowledgement %s: %s", ack_path, e)
            return
        outcome.acknowledged = bool(ack.get("acknowledged"))
        outcome.results = [
            DirectiveResult(r.get("directive", {}), bool(r.get("ok")), r.get("error"))
            for r in ack.get("results", [])
        ]
