"""
Command-line interface for cobaltsync.

Provides commands for backing the local library up to a storage provider,
restoring it, and exporting or importing portable local packages.

Uses Python's argparse module (no external CLI libraries).
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, NoReturn

from cobaltsync import __version__
from cobaltsync.backup.errors import BackupError, NotAuthenticatedError
from cobaltsync.backup.local_package import LocalBackupPreview, preview_local_backup
from cobaltsync.backup.service import BackupService, OperationResult
from cobaltsync.backup.types import BackupOptions, ConflictStrategy, LocalEncryption
from cobaltsync.config.settings import (
    ConfigurationError,
    Settings,
    load_config,
    to_backup_options,
    to_provider_config,
    to_retry_policy,
)
from cobaltsync.providers.base import ProviderConnections, ProviderRegistry
from cobaltsync.storage.library_store import LibraryStore

logger = logging.getLogger(__name__)

PASSWORD_ENV_VAR = "COBALTSYNC_BACKUP_PASSWORD"

# Global verbosity settings (set during main() based on args)
_quiet_mode = False


def set_output_mode(quiet: bool = False) -> None:
    global _quiet_mode
    _quiet_mode = quiet


def output(message: str = "", force: bool = False) -> None:
    """
    Print a message to stdout, respecting quiet mode.

    Args:
        message: The message to print.
        force: If True, print even in quiet mode (for essential output like JSON).
    """
    if force or not _quiet_mode:
        print(message)


def output_error(message: str) -> None:
    """Print an error message (always shown, even in quiet mode)."""
    print(message, file=sys.stderr)


def _add_domain_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--no-files",
        action="store_const",
        const=False,
        default=None,
        dest="include_files",
        help="Leave file metadata and payloads out",
    )
    parser.add_argument(
        "--thumbnails",
        action="store_const",
        const=True,
        default=None,
        dest="include_thumbnails",
        help="Include cached thumbnails",
    )


def _add_strategy_flag(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--strategy",
        choices=[s.value for s in ConflictStrategy],
        default=None,
        help="How restored entities are reconciled with existing ones "
        "(default: from config, normally skip-existing)",
    )


def _add_provider_flag(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--provider",
        metavar="KIND",
        default=None,
        help="Storage provider to use (default: from config)",
    )


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for the cobaltsync CLI."""
    parser = argparse.ArgumentParser(
        prog="cobaltsync",
        description="Backup and restore for astrophotography libraries",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"cobaltsync {__version__}",
    )

    parser.add_argument(
        "--config",
        metavar="PATH",
        help="Override config file location (default: ~/.cobaltsync/config.yaml)",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase output verbosity (can be repeated)",
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress non-essential output",
    )

    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        metavar="<command>",
    )

    # backup command
    backup_parser = subparsers.add_parser(
        "backup",
        help="Back the library up to a storage provider",
        description="Upload a full snapshot of the library to the configured provider.",
    )
    _add_provider_flag(backup_parser)
    _add_domain_flags(backup_parser)
    backup_parser.set_defaults(func=cmd_backup)

    # restore command
    restore_parser = subparsers.add_parser(
        "restore",
        help="Restore the library from a storage provider",
        description="Download the provider's snapshot and reconcile it into the library.",
    )
    _add_provider_flag(restore_parser)
    _add_domain_flags(restore_parser)
    _add_strategy_flag(restore_parser)
    restore_parser.set_defaults(func=cmd_restore)

    # export command
    export_parser = subparsers.add_parser(
        "export",
        help="Write a local backup package",
        description="Write the library to a zip package, a metadata-only JSON file, "
        "or a password-protected package.",
    )
    export_parser.add_argument(
        "--output",
        "-o",
        metavar="DIR",
        help="Output directory for the backup file (default: current directory)",
    )
    export_parser.add_argument(
        "--metadata-only",
        action="store_true",
        dest="metadata_only",
        help="Write metadata only, without file payloads or thumbnails",
    )
    export_parser.add_argument(
        "--encrypt",
        action="store_true",
        help=f"Protect the package with a password (read from {PASSWORD_ENV_VAR} or prompted)",
    )
    _add_domain_flags(export_parser)
    export_parser.set_defaults(func=cmd_export)

    # import command
    import_parser = subparsers.add_parser(
        "import",
        help="Restore the library from a local backup package",
        description="Reconcile a local backup package into the library.",
    )
    import_parser.add_argument(
        "backup_file",
        metavar="FILE",
        help="Path to backup file (.zip, .json or .cobaltbak)",
    )
    _add_domain_flags(import_parser)
    _add_strategy_flag(import_parser)
    import_parser.set_defaults(func=cmd_import)

    # preview command
    preview_parser = subparsers.add_parser(
        "preview",
        help="Show what a local backup package contains",
        description="Summarize a local backup package without restoring it.",
    )
    preview_parser.add_argument(
        "backup_file",
        metavar="FILE",
        help="Path to backup file",
    )
    preview_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    preview_parser.set_defaults(func=cmd_preview)

    # info command
    info_parser = subparsers.add_parser(
        "info",
        help="Show library statistics and the provider's current backup",
        description="Display library statistics and the snapshot held by the provider.",
    )
    _add_provider_flag(info_parser)
    info_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    info_parser.set_defaults(func=cmd_info)

    # test-connection command
    test_parser = subparsers.add_parser(
        "test-connection",
        help="Check that the provider is reachable",
        description="Connect to the configured provider and run a connection test.",
    )
    _add_provider_flag(test_parser)
    test_parser.set_defaults(func=cmd_test_connection)

    return parser


def setup_logging(verbose: int, quiet: bool) -> None:
    """Configure logging based on verbosity level."""
    if quiet:
        level = logging.WARNING
    elif verbose == 0:
        level = logging.INFO
    else:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _load_settings(args: argparse.Namespace) -> Settings:
    config_path = Path(args.config) if args.config else None
    return load_config(config_path)


def _build_service(settings: Settings) -> tuple[BackupService, LibraryStore]:
    store = LibraryStore(Path(settings.data_dir))
    connections = ProviderConnections(retry_policy=to_retry_policy(settings))
    service = BackupService(
        connections,
        store,
        store,
        store.files_dir,
        thumbnail_resolver=store.thumbnail_path,
        device_name=settings.device_name or None,
    )
    return service, store


def _connect(service: BackupService, settings: Settings, kind: str | None) -> str:
    """
    Connect the requested provider using the configured credentials.

    Raises:
        ValueError: If the provider kind is unknown.
        NotAuthenticatedError: If the provider configuration is incomplete.
    """
    kind = kind or settings.provider.kind
    if ProviderRegistry.get_provider_class(kind) is None:
        raise ValueError(
            f"Unknown provider: {kind}. Available: {', '.join(ProviderRegistry.get_kinds())}"
        )
    config = to_provider_config(settings)
    config.kind = kind
    service.connections.connect(kind, config)
    return kind


def _options(settings: Settings, args: argparse.Namespace, **extra: Any) -> BackupOptions:
    return to_backup_options(
        settings,
        include_files=getattr(args, "include_files", None),
        include_thumbnails=getattr(args, "include_thumbnails", None),
        restore_conflict_strategy=getattr(args, "strategy", None),
        **extra,
    )


def get_password(confirm: bool = False) -> str:
    """
    Get the package password from the environment or an interactive prompt.

    Raises:
        ValueError: If the prompted passwords do not match or are empty.
    """
    password = os.environ.get(PASSWORD_ENV_VAR)
    if password:
        return password

    password = getpass.getpass("Backup password: ")
    if not password:
        raise ValueError("A password is required")
    if confirm and getpass.getpass("Confirm password: ") != password:
        raise ValueError("Passwords do not match")
    return password


def _report_failure(name: str, result: OperationResult) -> int:
    if result.cancelled:
        output_error(f"{name} cancelled.")
        return 130
    output_error(f"{name} failed: {result.error}")
    return 1


def _print_summary(summary: dict[str, Any]) -> None:
    for key, value in summary.items():
        output(f"  {key}: {value}")


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------


def cmd_backup(args: argparse.Namespace) -> int:
    """Back the library up to a storage provider."""
    settings = _load_settings(args)
    service, store = _build_service(settings)

    try:
        kind = _connect(service, settings, args.provider)
    except (BackupError, ValueError) as e:
        output_error(f"Cannot connect to provider: {e}")
        return 1

    output(f"Backing up {settings.data_dir} to {kind}...")
    result = service.backup(kind, _options(settings, args))
    if not result.success:
        return _report_failure("Backup", result)

    store.record_backup()
    report = result.report
    output("Backup completed successfully!")
    output(f"  Snapshot: {report.manifest.snapshot_id}")
    output(f"  Files uploaded: {len(report.uploaded_files)}")
    output(f"  Thumbnails uploaded: {len(report.uploaded_thumbnails)}")
    if report.pruned:
        output(f"  Stale objects removed: {len(report.pruned)}")
    return 0


def cmd_restore(args: argparse.Namespace) -> int:
    """Restore the library from a storage provider."""
    settings = _load_settings(args)
    service, _ = _build_service(settings)

    try:
        kind = _connect(service, settings, args.provider)
    except (BackupError, ValueError) as e:
        output_error(f"Cannot connect to provider: {e}")
        return 1

    options = _options(settings, args)
    output(f"Restoring from {kind} ({options.restore_conflict_strategy.value})...")
    result = service.restore(kind, options)
    if not result.success:
        return _report_failure("Restore", result)

    report = result.report
    output("Restore completed successfully!")
    output(f"  Files restored: {len(report.restored_files)}")
    output(f"  Files kept or skipped: {len(report.skipped_files)}")
    output(f"  Thumbnails restored: {len(report.restored_thumbnails)}")
    if report.integrity_failures:
        output_error(
            f"  Integrity check failed for {len(report.integrity_failures)} file(s): "
            f"{', '.join(report.integrity_failures)}"
        )
    return 0


def cmd_export(args: argparse.Namespace) -> int:
    """Write a local backup package."""
    settings = _load_settings(args)
    service, _ = _build_service(settings)

    encryption = LocalEncryption()
    if args.encrypt:
        encryption = LocalEncryption(enabled=True, password=get_password(confirm=True))

    options = _options(
        settings,
        args,
        local_payload_mode="metadata-only" if args.metadata_only else None,
        local_encryption=encryption,
    )
    output_dir = Path(args.output) if args.output else Path.cwd()
    output_dir.mkdir(parents=True, exist_ok=True)

    result = service.export_local(output_dir, options)
    if not result.success:
        return _report_failure("Export", result)

    path: Path = result.report
    output("Backup package written.")
    output(f"  File: {path}")
    output(f"  Size: {path.stat().st_size:,} bytes")
    output()
    output("To restore from this package, run:")
    output(f"  cobaltsync import {path}")
    return 0


def cmd_import(args: argparse.Namespace) -> int:
    """Restore the library from a local backup package."""
    settings = _load_settings(args)
    service, _ = _build_service(settings)

    try:
        preview = preview_local_backup(args.backup_file)
    except (BackupError, OSError) as e:
        output_error(f"Cannot read backup file: {e}")
        return 1

    extra: dict[str, Any] = {}
    if preview.encrypted:
        extra["local_encryption"] = LocalEncryption(enabled=True, password=get_password())

    options = _options(settings, args, **extra)
    output(f"Importing {preview.file_name} ({options.restore_conflict_strategy.value})...")
    result = service.import_local(preview, options)
    if not result.success:
        return _report_failure("Import", result)

    report = result.report
    output("Import completed successfully!")
    output(f"  Files restored: {len(report.restored_files)}")
    output(f"  Files kept or skipped: {len(report.skipped_files)}")
    if report.integrity_failures:
        output_error(
            f"  Integrity check failed for {len(report.integrity_failures)} file(s): "
            f"{', '.join(report.integrity_failures)}"
        )
    return 0


def _preview_to_dict(preview: LocalBackupPreview) -> dict[str, Any]:
    return {
        "file_name": preview.file_name,
        "source_type": preview.source_type,
        "encrypted": preview.encrypted,
        "summary": preview.summary.to_dict(),
    }


def cmd_preview(args: argparse.Namespace) -> int:
    """Summarize a local backup package."""
    try:
        preview = preview_local_backup(args.backup_file)
    except (BackupError, OSError) as e:
        output_error(f"Cannot read backup file: {e}")
        return 1

    if args.json:
        output(json.dumps(_preview_to_dict(preview), indent=2), force=True)
        return 0

    output(f"Backup file: {preview.file_name}")
    output(f"  Type: {preview.source_type}")
    output(f"  Encrypted: {'yes' if preview.encrypted else 'no'}")
    _print_summary(preview.summary.to_dict())
    return 0


def cmd_info(args: argparse.Namespace) -> int:
    """Show library statistics and the provider's current backup."""
    settings = _load_settings(args)
    service, store = _build_service(settings)

    info: dict[str, Any] = {
        "version": __version__,
        "data_dir": settings.data_dir,
        "library": store.get_statistics(),
        "backup": None,
    }

    try:
        kind = _connect(service, settings, args.provider)
        backup_info = service.get_backup_info(kind)
        info["backup"] = asdict(backup_info) if backup_info else None
    except (BackupError, ValueError) as e:
        logger.debug(f"Provider unavailable for info: {e}")
        info["provider_error"] = str(e)

    if args.json:
        output(json.dumps(info, indent=2, default=str), force=True)
        return 0

    output(f"cobaltsync {__version__}")
    output(f"Data directory: {settings.data_dir}")
    output()
    output("Library:")
    for domain, count in info["library"]["records_by_domain"].items():
        output(f"  {domain}: {count}")
    output(f"  last backup: {info['library']['last_backup_at'] or 'never'}")
    output()
    if info["backup"]:
        output("Provider backup:")
        _print_summary(info["backup"])
    elif "provider_error" in info:
        output(f"Provider unavailable: {info['provider_error']}")
    else:
        output("No backup found on provider.")
    return 0


def cmd_test_connection(args: argparse.Namespace) -> int:
    """Check that the provider is reachable."""
    settings = _load_settings(args)
    service, _ = _build_service(settings)

    try:
        kind = _connect(service, settings, args.provider)
    except (NotAuthenticatedError, ValueError) as e:
        output_error(f"Cannot connect to provider: {e}")
        return 1

    if service.test_connection(kind):
        output(f"Connection to {kind} OK")
        return 0
    output_error(f"Connection to {kind} failed")
    return 1


def main() -> NoReturn:
    """Main entry point for the cobaltsync CLI."""
    parser = create_parser()
    args = parser.parse_args()

    setup_logging(args.verbose, args.quiet)
    set_output_mode(args.quiet)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    try:
        exit_code = args.func(args)
        sys.exit(exit_code)
    except KeyboardInterrupt:
        output("\nOperation cancelled.")
        sys.exit(130)
    except ConfigurationError as e:
        output_error(f"Configuration error: {e}")
        sys.exit(2)
    except Exception as e:
        if args.verbose > 0:
            raise
        output_error(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
