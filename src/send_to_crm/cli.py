"""Command-line interface for Send to CRM.

Entry point flow:
1. Parse arguments; introspection flags print and exit
2. One-shot commands (--pair, --check-updates, --capture) talk to the
   server or to the running instance
3. Otherwise become the background process, or, if one is already
   running, ask it to start a capture
"""

import argparse
import atexit
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from . import __version__
from .app import QUIT_GRACE_S, run_app
from .autostart import choose_start_on_login
from .config import (
    Config,
    config_defaults,
    config_schema,
    config_to_dict,
    load_config,
    validate_config_file,
)
from .emit import EVENT_CATALOG, configure, emit
from .instance import InstanceManager
from .settings import API_BASE_URL, AUTH_TOKEN, SettingsStore, settings_defaults
from .updater import ReleaseFeed, UpdateCheckFailed
from .upload import UploadClient

log = logging.getLogger(__name__)

# Extra time a freshly installed build allows the old process for shutdown
POST_UPDATE_MARGIN_S = 15.0
POST_UPDATE_POLL_S = 0.5


def post_update_wait_s(config: Config) -> float:
    """How long a new build waits for the old one to release the lock.

    Covers the old process waiting out its upload grace period, a final
    upload running to its timeout, and then shutting down.
    """
    return QUIT_GRACE_S + config.upload_timeout_s + POST_UPDATE_MARGIN_S


# (flag, help) for flags that print something and exit
INTROSPECTION_FLAGS = (
    ("--print-defaults", "print the built-in configuration as JSON"),
    ("--print-config-schema", "print the configuration schema as JSON"),
    ("--validate-config", "check the configuration file; errors go to stderr"),
    ("--print-resolved", "print the effective configuration as JSON"),
    ("--print-event-catalog", "print the structured event catalog as JSON"),
)


def create_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="send-to-crm",
        description="Send to CRM: capture a screen region and upload it to your CRM",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                      # Start in the background (or capture, if already running)
  %(prog)s --capture            # Ask the running instance to start a capture
  %(prog)s --pair CODE          # Pair this computer with your account
  %(prog)s --check-updates      # Check for a new version now
  %(prog)s --print-resolved     # Show the effective configuration
""",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", metavar="PATH", help="config file (default: platform config dir)")
    parser.add_argument("--debug", action="store_true", help="enable debug logging")

    introspection = parser.add_argument_group("introspection")
    for flag, help_text in INTROSPECTION_FLAGS:
        introspection.add_argument(flag, action="store_true", help=help_text)

    commands = parser.add_argument_group("commands").add_mutually_exclusive_group()
    commands.add_argument(
        "--capture",
        action="store_true",
        help="ask the running instance to start a capture (bind this to your hotkey)",
    )
    commands.add_argument("--pair", metavar="TOKEN", help="verify a pairing code and store it")
    commands.add_argument("--check-updates", action="store_true", help="check for a new version now")
    commands.add_argument(
        "--start-on-login",
        choices=("on", "off"),
        help="start automatically when you log in (default: on)",
    )
    # Passed by the installer to the build it just launched
    commands.add_argument("--post-update", action="store_true", help=argparse.SUPPRESS)
    return parser


def _print_json(payload: dict) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _config_path(args: argparse.Namespace) -> Optional[Path]:
    return Path(args.config).expanduser() if args.config else None


def _validate(config_path: Optional[Path]) -> int:
    try:
        problems = validate_config_file(config_path)
    except ValueError as e:
        problems = [str(e)]
    for problem in problems:
        print(problem, file=sys.stderr)
    return 1 if problems else 0


def _handle_introspection(args: argparse.Namespace) -> Optional[int]:
    """Run the first requested introspection flag; None if there is none."""
    config_path = _config_path(args)
    printers = {
        "print_defaults": config_defaults,
        "print_config_schema": config_schema,
        "print_resolved": lambda: config_to_dict(load_config(config_path=config_path)),
        "print_event_catalog": lambda: {"catalog": EVENT_CATALOG},
    }
    for flag, _ in INTROSPECTION_FLAGS:
        dest = flag.lstrip("-").replace("-", "_")
        if not getattr(args, dest):
            continue
        if dest == "validate_config":
            return _validate(config_path)
        _print_json(printers[dest]())
        return 0
    return None


def _open_settings(config: Config) -> SettingsStore:
    return SettingsStore(config.settings_file, settings_defaults(config.api_base_url))


def handle_pair(token: str, config: Config, instance_mgr: InstanceManager) -> int:
    """Verify ``token`` and store it; tell a running instance to reload."""
    settings = _open_settings(config)
    client = UploadClient(
        config.billing_url,
        timeout_s=config.upload_timeout_s,
        connect_timeout_s=config.connect_timeout_s,
    )
    api_base_url = str(settings.get(API_BASE_URL) or config.api_base_url)
    result = client.verify(token, api_base_url)
    if not result.ok:
        log.error("Pairing failed: %s", result.reason)
        emit("error.handled", {"error_type": "VerifyFailed", "message": result.reason, "stage": "pairing"})
        return 1

    settings.set(AUTH_TOKEN, token.strip())
    print("Paired. Captures will now be sent to your CRM.")
    instance_mgr.signal_reload()
    return 0


def handle_start_on_login(choice: str, config: Config) -> int:
    """Store the user's start-on-login choice and update the autostart entry."""
    enabled = choice == "on"
    if not choose_start_on_login(_open_settings(config), config, enabled):
        return 1
    print(f"Start on login {'enabled' if enabled else 'disabled'}.")
    return 0


def handle_check_updates(config: Config, instance_mgr: InstanceManager) -> int:
    """Let the running instance check, or check once here and report."""
    if instance_mgr.signal_check_updates():
        log.info("Asked the running instance to check for updates")
        return 0

    try:
        release = ReleaseFeed(config).check()
    except UpdateCheckFailed as e:
        log.error("Update check failed: %s", e)
        emit("error.handled", {"error_type": "UpdateCheckFailed", "message": str(e), "stage": "update"})
        return 1

    _print_json({
        "current_version": __version__,
        "update_available": release is not None,
        "version": release.version if release else None,
        "url": release.download_url if release else None,
    })
    return 0


def handle_capture(instance_mgr: InstanceManager) -> int:
    if instance_mgr.signal_capture():
        return 0
    log.error("Send to CRM is not running; start it first")
    return 1


def handle_background(config: Config, instance_mgr: InstanceManager, post_update: bool = False) -> int:
    """Run the background process."""
    if post_update:
        if not instance_mgr.wait_for_lock(post_update_wait_s(config), POST_UPDATE_POLL_S):
            # Signalling would pop an overlay in the instance that is quitting
            log.error("Previous version did not exit; not starting version %s", __version__)
            emit("error.handled", {
                "error_type": "LockTimeout",
                "message": "previous instance still running after update",
                "stage": "update",
            })
            return 1
        log.info("Updated to version %s", __version__)
    elif not instance_mgr.acquire_lock():
        # Already running - treat this invocation as a hotkey press
        log.debug("Already running, sending capture signal")
        if instance_mgr.signal_capture():
            return 0
        log.error("Failed to signal running instance")
        return 1

    try:
        return run_app(config)
    finally:
        instance_mgr.release_lock()


def main(args: Optional[list[str]] = None) -> int:
    """Main entry point.

    Args:
        args: Command-line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_argument_parser()
    parsed_args = parser.parse_args(args)

    # Introspection flags short-circuit normal execution
    result = _handle_introspection(parsed_args)
    if result is not None:
        return result

    logging.basicConfig(
        level=logging.DEBUG if parsed_args.debug else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    configure("send-to-crm")
    atexit.register(lambda: emit("shutdown", {}))

    config_path = _config_path(parsed_args)
    config = load_config(config_path=config_path)

    resolved_path = config_path or "default"
    source = "cli" if config_path else "default"
    emit("config.resolved", {"config_path": str(resolved_path), "source": source})

    instance_mgr = InstanceManager(config)

    if parsed_args.pair is not None:
        return handle_pair(parsed_args.pair, config, instance_mgr)

    if parsed_args.start_on_login is not None:
        return handle_start_on_login(parsed_args.start_on_login, config)

    if parsed_args.check_updates:
        return handle_check_updates(config, instance_mgr)

    if parsed_args.capture:
        return handle_capture(instance_mgr)

    return handle_background(config, instance_mgr, post_update=parsed_args.post_update)


if __name__ == "__main__":
    sys.exit(main())
