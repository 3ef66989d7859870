"""wasmverify CLI: reproduce a contract build and check it against the ledger."""

import argparse
import sys
from importlib.metadata import version as get_version, PackageNotFoundError
from pathlib import Path
from typing import Dict, List, Optional


def _parse_params(pairs: Optional[List[str]]) -> Dict[str, str]:
    params: Dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"Build parameter must be KEY=VALUE, got '{pair}'")
        params[key] = value
    return params


def main():
    """Main CLI entry point for wasmverify commands."""
    try:
        wasmverify_version = get_version("wasmverify")
    except PackageNotFoundError:
        wasmverify_version = "dev"

    parser = argparse.ArgumentParser(
        prog="wasmverify",
        description="wasmverify: reproducible-build verification of deployed contract Wasm"
    )
    parser.add_argument("--version", action="version", version=f"wasmverify {wasmverify_version}")
    # Common arguments
    parent_parser = argparse.ArgumentParser(add_help=False)
    parent_parser.add_argument(
        "--quiet",
        action="store_true",
        help="Suppress all non-error output."
    )
    parent_parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to YAML settings file (defaults to ./wasmverify.yaml if present)"
    )
    parent_parser.add_argument(
        "--records-dir",
        type=Path,
        default=None,
        help="Directory of verification record files"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # verify command
    verify_parser = subparsers.add_parser(
        "verify",
        help="Build a contract at a commit and match its Wasm hash against the ledger",
        parents=[parent_parser]
    )
    verify_parser.add_argument("--repo", required=True, help="Repository (owner/repo, GitHub URL or local git path)")
    verify_parser.add_argument("--sha", required=True, help="Commit hash to build")
    verify_parser.add_argument("--package", default=None, help="Cargo package of the contract")
    verify_parser.add_argument("--dir", default=None, help="Subdirectory to build in (default: repository root)")
    verify_parser.add_argument("--toolchain", default=None, help="Rust toolchain version, e.g. 1.81.0")
    verify_parser.add_argument("--hash", dest="expected_hash", default=None, help="Wasm hash the build is expected to reproduce")
    verify_parser.add_argument(
        "--param",
        action="append",
        default=None,
        metavar="KEY=VALUE",
        help="Additional build parameter (repeatable)"
    )
    verify_parser.add_argument("--ledger", default=None, help="Ledger snapshot JSON path or URL")
    verify_parser.add_argument("--requested-by", default=None, help="Who asked for this verification")
    verify_parser.add_argument("--determinism-runs", type=int, default=None, help="Number of identical builds to compare")

    # record command group
    record_parser = subparsers.add_parser(
        "record",
        help="Record commands"
    )
    record_subparsers = record_parser.add_subparsers(dest="record_command", help="Available record commands")
    record_show_parser = record_subparsers.add_parser(
        "show",
        help="Print the record for a Wasm hash",
        parents=[parent_parser]
    )
    record_show_parser.add_argument("wasm_hash", help="Wasm hash (hex)")

    # ledger command group
    ledger_parser = subparsers.add_parser(
        "ledger",
        help="Ledger commands"
    )
    ledger_subparsers = ledger_parser.add_subparsers(dest="ledger_command", help="Available ledger commands")
    ledger_lookup_parser = ledger_subparsers.add_parser(
        "lookup",
        help="Look up a Wasm hash in a ledger snapshot",
        parents=[parent_parser]
    )
    ledger_lookup_parser.add_argument("wasm_hash", help="Wasm hash (hex)")
    ledger_lookup_parser.add_argument("--ledger", default=None, help="Ledger snapshot JSON path or URL")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    from .config import reload_settings
    from .errors import VerificationError
    from .logging_config import configure_logging

    try:
        settings = reload_settings(
            getattr(args, "config", None),
            records_dir=getattr(args, "records_dir", None),
            ledger_source=getattr(args, "ledger", None),
            determinism_runs=getattr(args, "determinism_runs", None),
        )
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    configure_logging("ERROR" if getattr(args, "quiet", False) else settings.log_level, settings.log_json)

    if args.command == "verify":
        from .kernel.request import VerificationRequest
        from .kernel.record import VerificationStatus
        from .pipeline import build_pipeline
        from ._internal.io.ledger import init_ledger
        from ._internal.io.source import fetcher_for

        try:
            params = _parse_params(args.param)
            for key, value in (("package", args.package), ("dir", args.dir), ("toolchain", args.toolchain)):
                if value is not None:
                    params[key] = value
            request = VerificationRequest(
                repository_url=args.repo,
                commit_hash=args.sha,
                build_parameters=params,
                requested_by=args.requested_by,
                expected_hash=args.expected_hash,
            )
            if not settings.ledger_source:
                print("Error: No ledger snapshot configured (use --ledger or WASMVERIFY_LEDGER_SOURCE)", file=sys.stderr)
                sys.exit(1)
            ledger = init_ledger(
                settings.ledger_source,
                timeout=settings.http_timeout,
                max_age_seconds=settings.ledger_max_age_seconds,
            )
            pipeline = build_pipeline(
                settings,
                ledger=ledger,
                fetcher=fetcher_for(request.repository_url, timeout=settings.http_timeout),
            )
            record = pipeline.run(request)
        except VerificationError as e:
            print(f"Error: {e}", file=sys.stderr)
            if e.stage:
                print(f"  Stage: {e.stage}", file=sys.stderr)
            if e.request_id:
                print(f"  Request: {e.request_id}", file=sys.stderr)
            sys.exit(1)
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        except Exception as e:
            print(f"Unexpected error: {e}", file=sys.stderr)
            import traceback
            traceback.print_exc()
            sys.exit(1)

        verified = record.status == VerificationStatus.VERIFIED
        if not args.quiet:
            print(f"[{'OK' if verified else 'FAILED'}] Verification complete")
            print(f"  Status: {record.status.value.upper()}")
            print(f"  Wasm hash: {record.wasm_hash}")
            if record.network:
                print(f"  Network: {record.network}")
            print(f"  Commit: {record.source_commit}")
            if record.expected_hash_matched is not None:
                print(f"  Expected hash matched: {'yes' if record.expected_hash_matched else 'no'}")
        sys.exit(0 if verified else 1)
    elif args.command == "record" and args.record_command == "show":
        from ._internal.canonical_json import canonical_dumps
        from ._internal.store import RecordStore

        try:
            record = RecordStore(settings.records_dir).get_any(args.wasm_hash)
        except (VerificationError, ValueError) as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        print(canonical_dumps(record.model_dump(mode="json")))
    elif args.command == "ledger" and args.ledger_command == "lookup":
        from ._internal.io.ledger import load_snapshot

        if not settings.ledger_source:
            print("Error: No ledger snapshot configured (use --ledger or WASMVERIFY_LEDGER_SOURCE)", file=sys.stderr)
            sys.exit(1)
        try:
            entry = load_snapshot(settings.ledger_source, timeout=settings.http_timeout).lookup(args.wasm_hash)
        except VerificationError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        if entry is None:
            if not args.quiet:
                print(f"[FAILED] {args.wasm_hash} not found on ledger")
            sys.exit(1)
        if not args.quiet:
            print(f"[OK] {entry.contract_hash} found")
            print(f"  Network: {entry.network}")
    elif args.command == "record":
        record_parser.print_help()
        sys.exit(1)
    elif args.command == "ledger":
        ledger_parser.print_help()
        sys.exit(1)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
