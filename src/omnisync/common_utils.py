from __future__ import annotations

import json
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict

# Keep a reference to the original, built-in print function
_builtin_print = print


def safe_print(*args, **kwargs):
    """
    Ultra-robust print: Handles Windows encoding issues and prevents shell crashes.
    Detects non-UTF8 sessions (like cp1252) and strips emojis to prevent mojibake.
    """
    if "flush" not in kwargs:
        kwargs["flush"] = True
    try:
        _builtin_print(*args, **kwargs)
    except UnicodeEncodeError:
        try:
            safe_args = []
            encoding = sys.stdout.encoding or "utf-8"
            for arg in args:
                if isinstance(arg, str):
                    if sys.platform == "win32" and encoding.lower() not in ["utf-8", "utf8"]:
                        import unicodedata

                        arg = "".join(
                            (c if ord(c) < 128 or unicodedata.category(c)[0] != "S" else "?")
                            for c in arg
                        )
                    safe_args.append(arg.encode(encoding, "replace").decode(encoding))
                else:
                    safe_args.append(arg)
            _builtin_print(*safe_args, **kwargs)
        except Exception:
            _builtin_print("[omnisync: Encoding Error - Shell might not support UTF-8]", flush=True)


def print_header(title):
    """Prints a consistent, pretty header."""
    # Lazy import to avoid circular import
    from omnisync.i18n import _

    safe_print("\n" + "=" * 60)
    safe_print(_("  🚀 {}").format(title))
    safe_print("=" * 60)


def safe_unlink(path: Path) -> None:
    """Unlink that ignores files which are already gone."""
    try:
        Path(path).unlink()
    except FileNotFoundError:
        pass


def pass_config_to_subprocess(config_dict: Dict[str, Any], prefix: str = "omnisync_config_") -> str:
    """
    Bulletproof way to pass configuration to a subprocess.

    Creates a temporary JSON file and returns the path.
    This completely avoids Windows path escaping nightmares.

    Usage in subprocess script:
        config_path = sys.argv[1]
        with open(config_path, 'r') as f:
            config = json.load(f)

    Returns:
        Path to temporary config file (caller should clean up after subprocess completes)
    """
    fd, temp_path = tempfile.mkstemp(suffix=".json", prefix=prefix)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(config_dict, f, indent=2)
        return temp_path
    except Exception:
        safe_unlink(Path(temp_path))
        raise


def create_subprocess_script(script_content: str, script_name: str = "temp_script") -> str:
    """
    Writes a standalone Python script to a temporary file and returns its path.

    The script is expected to load its configuration from the JSON file passed
    as its first argument (see pass_config_to_subprocess).
    """
    fd, script_path = tempfile.mkstemp(suffix=".py", prefix=f"omnisync_{script_name}_")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(script_content)
        return script_path
    except Exception:
        safe_unlink(Path(script_path))
        raise


def safe_parse_version(version_str):
    """Parse a version string, returning None instead of raising for junk."""
    from packaging.version import InvalidVersion, Version

    if not version_str:
        return None
    try:
        return Version(str(version_str))
    except InvalidVersion:
        return None


def highest_version(version_strings):
    """Return the highest parsable version string, or None if there is none."""
    best, best_parsed = None, None
    for version_str in version_strings:
        parsed = safe_parse_version(version_str)
        if parsed is None:
            continue
        if best_parsed is None or parsed > best_parsed:
            best, best_parsed = version_str, parsed
    return best
