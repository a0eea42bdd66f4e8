import json
import locale as sys_locale
import os
import sys
import sysconfig
from pathlib import Path
from typing import Dict, Optional, Tuple

from .common_utils import safe_print
from .environment import VersionedEnvironment
from .i18n import _
from .models import EnvironmentSetupError


LIST_KEYS = {"managed_packages", "legacy_packages"}
NUMBER_KEYS = {"request_timeout", "cleanup_timeout", "install_timeout"}
CONFIG_KEYS = {
    "primary_python",
    "primary_root",
    "secondary_python",
    "secondary_root",
    "index_url",
    "language",
} | LIST_KEYS | NUMBER_KEYS


class ConfigManager:
    """
    Manages loading and first-time creation of the omnisync config file.

    The file lives at ~/.config/omnisync/config.json unless OMNISYNC_CONFIG_DIR
    points somewhere else. It names the two environments, the managed and
    legacy package lists, and a few network/cleanup knobs.
    """

    def __init__(self, config_dir=None, suppress_init_messages=False):
        env_override = os.environ.get("OMNISYNC_CONFIG_DIR")
        if config_dir is not None:
            self.config_dir = Path(config_dir)
        elif env_override:
            self.config_dir = Path(env_override)
        else:
            self.config_dir = Path.home() / ".config" / "omnisync"
        self.config_path = self.config_dir / "config.json"
        self.config = self._load_or_create_config(interactive=not suppress_init_messages)

    @property
    def cleanup_log_path(self) -> Path:
        return self.config_dir / "cleanup.log"

    def _get_system_lang_code(self):
        """Helper to get a valid system language code."""
        try:
            lang_code = sys_locale.getlocale()[0]
            if lang_code and "_" in lang_code:
                lang_code = lang_code.split("_")[0]
            return lang_code or "en"
        except Exception:
            return "en"

    def _get_sensible_defaults(self) -> Dict:
        """
        Defaults derived from the running interpreter: it becomes the primary
        environment, with its version-isolated root next to its site-packages.
        The secondary environment has no sensible default and must be configured.
        """
        site_packages = Path(sysconfig.get_paths()["purelib"])
        return {
            "primary_python": sys.executable,
            "primary_root": str(site_packages / ".omnisync_versions"),
            "secondary_python": None,
            "secondary_root": None,
            "managed_packages": [],
            "legacy_packages": [],
            "index_url": "https://pypi.org",
            "request_timeout": 10.0,
            "install_timeout": None,
            "cleanup_timeout": None,
            "language": self._get_system_lang_code(),
        }

    def _load_or_create_config(self, interactive: bool = True) -> Dict:
        """Loads the config file, filling in defaults and creating it on first use."""
        defaults = self._get_sensible_defaults()
        self.config_dir.mkdir(parents=True, exist_ok=True)
        if self.config_path.exists():
            try:
                with open(self.config_path, "r", encoding="utf-8") as f:
                    stored = json.load(f)
                if isinstance(stored, dict):
                    return {**defaults, **stored}
            except json.JSONDecodeError:
                pass
            safe_print(_("⚠️ Warning: Config file {} is corrupted. Starting fresh.").format(self.config_path))
        elif interactive:
            safe_print(_("👋 No omnisync configuration found, creating {}").format(self.config_path))
        self.config = defaults
        self.save_config()
        return defaults

    def save_config(self):
        temp_file = self.config_path.with_suffix(".json.tmp")
        with open(temp_file, "w", encoding="utf-8") as f:
            json.dump(self.config, f, indent=4)
        os.replace(temp_file, self.config_path)

    def get(self, key, default=None):
        """Get a configuration value, with an optional default."""
        value = self.config.get(key)
        return default if value is None else value

    def set(self, key, value):
        """Set a configuration value and save."""
        if key not in CONFIG_KEYS:
            raise KeyError(_("Unknown configuration key '{}'").format(key))
        self.config[key] = value
        self.save_config()

    @staticmethod
    def parse_value(key: str, raw: str):
        """Turn a command-line string into the type stored for `key`."""
        if raw.strip().lower() in ("", "none", "null"):
            return [] if key in LIST_KEYS else None
        if key in LIST_KEYS:
            return [item.strip() for item in raw.split(",") if item.strip()]
        if key in NUMBER_KEYS:
            return float(raw)
        return raw

    def environments(self) -> Tuple[VersionedEnvironment, VersionedEnvironment]:
        """
        Builds the primary and secondary environments.

        Raises:
            EnvironmentSetupError: if either root is unset or both point at the same place.
        """
        primary_root = self.get("primary_root")
        secondary_root = self.get("secondary_root")
        if not primary_root:
            raise EnvironmentSetupError(_("The primary environment root is not configured."))
        if not secondary_root:
            raise EnvironmentSetupError(
                _("The secondary environment root is not configured (omnisync config set secondary_root PATH).")
            )
        primary_root = Path(primary_root).expanduser()
        secondary_root = Path(secondary_root).expanduser()
        if primary_root.resolve() == secondary_root.resolve():
            raise EnvironmentSetupError(
                _("Primary and secondary environments both point at {}").format(primary_root)
            )
        primary = VersionedEnvironment("primary", primary_root, self.get("primary_python", sys.executable))
        secondary = VersionedEnvironment("secondary", secondary_root, self.get("secondary_python"))
        return primary, secondary

    def managed_packages(self):
        return list(self.get("managed_packages", []))

    def legacy_packages(self):
        return list(self.get("legacy_packages", []))

    def cleanup_timeout(self) -> Optional[float]:
        return self.get("cleanup_timeout")
