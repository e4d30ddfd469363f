"""Tierstore CLI - command-line access to hybrid storage.

Usage:
    python -m tierstore [GLOBAL FLAGS] put LOCATOR [--input PATH] [--content-type TYPE]
    python -m tierstore [GLOBAL FLAGS] get LOCATOR [--out PATH]
    python -m tierstore [GLOBAL FLAGS] stat LOCATOR
    python -m tierstore [GLOBAL FLAGS] delete LOCATOR
    python -m tierstore [GLOBAL FLAGS] exists LOCATOR
    python -m tierstore [GLOBAL FLAGS] version create LOCATOR --message MSG [--input PATH]
    python -m tierstore [GLOBAL FLAGS] version list LOCATOR
    python -m tierstore [GLOBAL FLAGS] version get LOCATOR VERSION_ID [--out PATH]
    python -m tierstore [GLOBAL FLAGS] presign LOCATOR [--method get|put] [--expires-in N]
    python -m tierstore [GLOBAL FLAGS] stats
    python -m tierstore [GLOBAL FLAGS] tier

Global flags override the TIERSTORE_* environment configuration:
    --hot/--cold/--backup KIND, --disk-root PATH, --bucket NAME,
    --key-prefix PREFIX, --access-threshold N

Output is deterministic JSON on stdout, except `get` and `version get`
without --out, which write the raw content.

Exit codes:
    0: Success
    1: Storage, configuration or internal error
    2: Locator or version not found
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from tierstore.config import (
    BackendKind,
    DiskBackendConfig,
    ObjectStoreConfig,
    StorageConfig,
    StorageConfigError,
    load_storage_config,
)
from tierstore.errors import NotFoundError, StorageError
from tierstore.factory import create_storage
from tierstore.hybrid import HybridStorage
from tierstore.observability.tracing import configure_tracing

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_NOT_FOUND = 2

BACKEND_CHOICES = sorted(kind.value for kind in BackendKind)


def _output_json(data: dict[str, Any]) -> None:
    """Output JSON to stdout with deterministic ordering."""
    print(json.dumps(data, sort_keys=True, indent=2))


def _make_error_result(code: str, message: str) -> dict[str, Any]:
    return {"error": {"code": code, "message": message}, "ok": False}


def _read_input(input_path: str | None) -> bytes:
    if input_path:
        return Path(input_path).read_bytes()
    return sys.stdin.buffer.read()


def _write_content(content: bytes, out_path: str | None, locator_id: str) -> None:
    if out_path is None:
        sys.stdout.buffer.write(content)
        sys.stdout.flush()
        return
    Path(out_path).write_bytes(content)
    _output_json({"locator_id": locator_id, "out": out_path, "size": len(content)})


def build_config(args: argparse.Namespace) -> StorageConfig:
    """Load configuration from the environment and apply CLI overrides.

    Raises:
        StorageConfigError: If the resulting configuration is invalid.
    """
    config = load_storage_config()

    tiering_updates: dict[str, Any] = {}
    for name in ("hot", "cold", "backup"):
        value = getattr(args, name, None)
        if value is not None:
            tiering_updates[f"{name}_backend"] = BackendKind(value)
    if args.access_threshold is not None:
        if args.access_threshold < 1:
            raise StorageConfigError(
                f"--access-threshold must be a positive integer, got {args.access_threshold}"
            )
        tiering_updates["access_threshold"] = args.access_threshold

    updates: dict[str, Any] = {}
    if tiering_updates:
        updates["tiering"] = config.tiering.model_copy(update=tiering_updates)
    if args.disk_root is not None:
        updates["disk"] = DiskBackendConfig(root_dir=Path(args.disk_root))
    if args.bucket is not None or args.key_prefix is not None:
        base = config.object_store
        bucket = args.bucket or (base.bucket if base is not None else None)
        if bucket is None:
            raise StorageConfigError("--key-prefix requires a bucket (--bucket)")
        fields = base.model_dump() if base is not None else {}
        fields["bucket"] = bucket
        if args.key_prefix is not None:
            fields["key_prefix"] = args.key_prefix
        try:
            updates["object_store"] = ObjectStoreConfig(**fields)
        except ValidationError as e:
            raise StorageConfigError(f"Invalid object store configuration: {e}") from e

    return config.model_copy(update=updates) if updates else config


def cmd_put(storage: HybridStorage, args: argparse.Namespace) -> int:
    opts = {"content_type": args.content_type} if args.content_type else None
    envelope = storage.write(args.locator, _read_input(args.input), opts=opts)
    _output_json(envelope.to_dict())
    return EXIT_OK


def cmd_get(storage: HybridStorage, args: argparse.Namespace) -> int:
    _write_content(storage.read(args.locator), args.out, args.locator)
    return EXIT_OK


def cmd_stat(storage: HybridStorage, args: argparse.Namespace) -> int:
    _output_json(storage.stat(args.locator).to_dict())
    return EXIT_OK


def cmd_delete(storage: HybridStorage, args: argparse.Namespace) -> int:
    storage.delete(args.locator)
    _output_json({"deleted": True, "locator_id": args.locator})
    return EXIT_OK


def cmd_exists(storage: HybridStorage, args: argparse.Namespace) -> int:
    found = storage.exists(args.locator)
    _output_json({"exists": found, "locator_id": args.locator})
    return EXIT_OK if found else EXIT_NOT_FOUND


def cmd_version(storage: HybridStorage, args: argparse.Namespace) -> int:
    if args.version_command == "create":
        version_id, record = storage.create_version(
            args.locator, _read_input(args.input), args.message
        )
        _output_json({"record": record.to_dict(), "version_id": version_id})
        return EXIT_OK

    if args.version_command == "list":
        versions = storage.list_versions(args.locator)
        _output_json({"locator_id": args.locator, "versions": [v.to_dict() for v in versions]})
        return EXIT_OK

    _write_content(storage.get_version(args.locator, args.version_id), args.out, args.locator)
    return EXIT_OK


def cmd_presign(storage: HybridStorage, args: argparse.Namespace) -> int:
    url = storage.generate_presigned_url(args.locator, args.method, args.expires_in)
    _output_json(
        {
            "expires_in": args.expires_in,
            "locator_id": args.locator,
            "method": args.method,
            "url": url,
        }
    )
    return EXIT_OK


def cmd_stats(storage: HybridStorage, args: argparse.Namespace) -> int:
    _output_json(storage.get_storage_stats())
    return EXIT_OK


def cmd_tier(storage: HybridStorage, args: argparse.Namespace) -> int:
    _output_json(storage.trigger_tiering().to_dict())
    return EXIT_OK


COMMAND_DISPATCH = {
    "put": cmd_put,
    "get": cmd_get,
    "stat": cmd_stat,
    "delete": cmd_delete,
    "exists": cmd_exists,
    "version": cmd_version,
    "presign": cmd_presign,
    "stats": cmd_stats,
    "tier": cmd_tier,
}


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="tierstore",
        description="Tierstore - hybrid hot/cold/backup blob storage CLI",
    )
    parser.add_argument("--hot", choices=BACKEND_CHOICES, help="Hot tier backend")
    parser.add_argument("--cold", choices=BACKEND_CHOICES, help="Cold tier backend")
    parser.add_argument("--backup", choices=BACKEND_CHOICES, help="Backup tier backend")
    parser.add_argument("--disk-root", metavar="PATH", help="Disk backend root directory")
    parser.add_argument("--bucket", metavar="NAME", help="Object store bucket")
    parser.add_argument("--key-prefix", metavar="PREFIX", help="Object store key prefix")
    parser.add_argument(
        "--access-threshold",
        type=int,
        metavar="N",
        help="Cold reads before promotion to the hot tier",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    put_parser = subparsers.add_parser("put", help="Write content to a locator")
    put_parser.add_argument("locator")
    put_parser.add_argument(
        "--input", metavar="PATH", help="File to upload (reads stdin if omitted)"
    )
    put_parser.add_argument("--content-type", metavar="TYPE", help="Explicit MIME type")

    get_parser = subparsers.add_parser("get", help="Read the content of a locator")
    get_parser.add_argument("locator")
    get_parser.add_argument("--out", metavar="PATH", help="Write content to a file")

    for name, help_text in [
        ("stat", "Show metadata of a locator"),
        ("delete", "Delete a locator from every tier"),
        ("exists", "Check whether any tier holds a locator"),
        ("presign", "Issue a presigned URL from the cold tier"),
    ]:
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("locator")
    presign_parser = subparsers.choices["presign"]
    presign_parser.add_argument("--method", choices=["get", "put"], default="get")
    presign_parser.add_argument("--expires-in", type=int, default=3600, metavar="SECONDS")

    version_parser = subparsers.add_parser("version", help="Version history operations")
    version_subparsers = version_parser.add_subparsers(
        dest="version_command",
        help="Version subcommands",
    )
    create_parser_ = version_subparsers.add_parser("create", help="Create a new version")
    create_parser_.add_argument("locator")
    create_parser_.add_argument("--message", "-m", required=True, help="Commit message")
    create_parser_.add_argument(
        "--input", metavar="PATH", help="File to upload (reads stdin if omitted)"
    )
    list_parser = version_subparsers.add_parser("list", help="List versions, newest first")
    list_parser.add_argument("locator")
    vget_parser = version_subparsers.add_parser("get", help="Read a specific version")
    vget_parser.add_argument("locator")
    vget_parser.add_argument("version_id")
    vget_parser.add_argument("--out", metavar="PATH", help="Write content to a file")

    subparsers.add_parser("stats", help="Show per-tier stats and access patterns")
    subparsers.add_parser("tier", help="Run one tiering pass")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point.

    Exit codes:
        0: Success
        1: Storage, configuration or internal error
        2: Not found
    """
    try:
        parser = create_parser()
        args = parser.parse_args(argv)

        if args.command is None:
            parser.print_help()
            return EXIT_OK

        if args.command == "version" and getattr(args, "version_command", None) is None:
            parser.parse_args(["version", "--help"])
            return EXIT_OK

        configure_tracing()
        with create_storage(build_config(args)) as storage:
            return COMMAND_DISPATCH[args.command](storage, args)

    except NotFoundError as e:
        _output_json(_make_error_result("NOT_FOUND", str(e)))
        return EXIT_NOT_FOUND
    except StorageConfigError as e:
        _output_json(_make_error_result("CONFIG_ERROR", str(e)))
        return EXIT_ERROR
    except StorageError as e:
        _output_json(_make_error_result(type(e).__name__, str(e)))
        return EXIT_ERROR
    except (OSError, ValueError) as e:
        _output_json(_make_error_result("INVALID_ARGUMENT", str(e)))
        return EXIT_ERROR
    except Exception as e:
        # Fail-closed: unexpected errors return exit code 1
        _output_json(_make_error_result("INTERNAL_ERROR", str(e)))
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
