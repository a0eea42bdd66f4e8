"""omnisync CLI - keep two environments on the same package versions"""
import argparse
import logging
import sys

from . import __version__
from .common_utils import print_header, safe_print
from .config_manager import CONFIG_KEYS, ConfigManager
from .core import omnisync as OmnisyncCore
from .i18n import SUPPORTED_LANGUAGES, _
from .models import EnvironmentSetupError
from .report import render_json, render_table

VERSION = __version__


def create_parser():
    """Creates and configures the argument parser."""
    epilog_parts = [
        _("💡 Quick Start:"),
        _("  omnisync config set secondary_root ~/envs/py312/.omnisync_versions"),
        _("  omnisync config set managed_packages requests,rich,packaging"),
        _("  omnisync status                 # What would change, without touching anything"),
        _("  omnisync                        # Update, synchronize and clean up"),
        "",
        _("Version: {}").format(VERSION),
    ]
    parser = argparse.ArgumentParser(
        prog="omnisync",
        description=_("🔄 Keeps package versions identical across two Python environments"),
        formatter_class=argparse.RawTextHelpFormatter,
        epilog="\n".join(epilog_parts),
    )
    parser.add_argument(
        "-v", "--version", action="version", version=_("%(prog)s {}").format(VERSION)
    )
    parser.add_argument(
        "--lang",
        metavar="CODE",
        help=_("Override the display language for this command (e.g., en)"),
    )
    parser.add_argument(
        "--verbose",
        "-V",
        action="store_true",
        help=_("Enable verbose output for detailed debugging"),
    )
    subparsers = parser.add_subparsers(dest="command", help=_("Available commands:"), required=False)

    sync_parser = subparsers.add_parser(
        "sync", help=_("Update, synchronize and clean up every managed package (default)")
    )
    status_parser = subparsers.add_parser(
        "status", help=_("Show what a sync would do without changing anything")
    )
    for sub in (sync_parser, status_parser):
        sub.add_argument("--json", action="store_true", help=_("Print the report as JSON"))
    sync_parser.add_argument(
        "--cleanup-timeout",
        type=float,
        metavar="SECONDS",
        help=_("Stop waiting for the cleanup process after this many seconds"),
    )

    config_parser = subparsers.add_parser("config", help=_("View or edit omnisync configuration"))
    config_subparsers = config_parser.add_subparsers(dest="config_command", required=True)
    config_subparsers.add_parser("view", help=_("Display the current configuration"))
    config_set_parser = config_subparsers.add_parser("set", help=_("Set a configuration value"))
    config_set_parser.add_argument("key", choices=sorted(CONFIG_KEYS), help=_("Configuration key to set"))
    config_set_parser.add_argument(
        "value", help=_("Value to set for the key (comma separated for package lists, 'none' to clear)")
    )
    return parser


def handle_config(args, cm: ConfigManager) -> int:
    if args.config_command == "view":
        print_header(_("omnisync Configuration"))
        safe_print(_("  - config file: {}").format(cm.config_path))
        for key, value in sorted(cm.config.items()):
            safe_print(_("  - {}: {}").format(key, value))
        return 0
    if args.key == "language" and args.value not in SUPPORTED_LANGUAGES:
        safe_print(
            _("❌ Error: Language '{}' not supported. Supported: {}").format(
                args.value, ", ".join(SUPPORTED_LANGUAGES.keys())
            )
        )
        return 1
    try:
        value = cm.parse_value(args.key, args.value)
    except ValueError:
        safe_print(_("❌ Error: '{}' expects a number, got '{}'").format(args.key, args.value))
        return 1
    cm.set(args.key, value)
    if args.key == "language":
        _.set_language(value)
        value = _.get_native_name(value)
    safe_print(_("✅ {} permanently set to: {}").format(args.key, value))
    return 0


def main(argv=None):
    """Main application entry point."""
    parser = create_parser()
    args = parser.parse_args(sys.argv[1:] if argv is None else argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    cm = ConfigManager(suppress_init_messages=args.command == "config")
    user_lang = args.lang or cm.config.get("language")
    if user_lang:
        _.set_language(user_lang)

    command = args.command or "sync"
    if command == "config":
        return handle_config(args, cm)

    try:
        core = OmnisyncCore(
            config_manager=cm, cleanup_timeout=getattr(args, "cleanup_timeout", None)
        )
    except EnvironmentSetupError as e:
        safe_print(_("❌ FATAL: {}").format(e))
        return 1

    try:
        report = core.status() if command == "status" else core.sync()
    except TimeoutError as e:
        safe_print(_("❌ Another omnisync run is still in progress: {}").format(e))
        return 1
    except KeyboardInterrupt:
        safe_print(_("\n⚠️  Command cancelled by user (Ctrl+C)"))
        return 130

    if getattr(args, "json", False):
        safe_print(render_json(report))
    else:
        render_table(report)
    # Per-package failures are in the report; they never change the exit code.
    return 0


if __name__ == "__main__":
    sys.exit(main())
