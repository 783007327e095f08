"""
Stockmeta Command Line Interface
================================

Command line front end for the metadata generator. Every command opens a
Session on the persisted state, performs one action, and exits.

Commands:
- keys set|show|remove|test: manage the Gemini API key(s)
- add FILES...: queue images for generation
- list: show queued rows with status and a short id
- select / deselect IDS | --all: mark rows for a selected-only batch
- remove IDS: drop rows from the queue
- clear-processed: drop every row that is no longer pending
- generate [--selected | --retry-failed]: run a batch with a progress bar
- export [PATH]: write the Adobe Stock CSV
- config show | set KEY VALUE: view or change persisted settings

Rows are addressed by a unique prefix of their id, as shown by ``list``.
"""

import argparse
import logging
import sys
import time
from pathlib import Path
from typing import List, Optional

from tqdm import tqdm

from stockmeta import __version__
from stockmeta.core import config
from stockmeta.core.credentials import CredentialStore, parse_credentials
from stockmeta.core.csv_export import eligible_rows, estimate_csv_size, format_size
from stockmeta.core.exceptions import StockMetaError
from stockmeta.core.processing import NO_CREDENTIALS_NOTICE
from stockmeta.core.session import Session
from stockmeta.utils.config_manager import load_config, save_config
from stockmeta.utils.logger import mask_key, setup_logging, shutdown_logging

logger = logging.getLogger(__name__)

SHORT_ID_LENGTH = 8


# ============================================================================
# HELPERS
# ============================================================================

def resolve_row_ids(session: Session, tokens: List[str]) -> List[str]:
    """
    Map id prefixes to full row ids.

    Raises:
        StockMetaError: If a prefix matches no row or more than one.
    """
    ids = [row.id for row in session.results.rows()]
    resolved = []
    for token in tokens:
        matches = [row_id for row_id in ids if row_id.startswith(token)]
        if not matches:
            raise StockMetaError(f"No row matches id '{token}'")
        if len(matches) > 1:
            raise StockMetaError(f"Id '{token}' is ambiguous ({len(matches)} rows)")
        resolved.append(matches[0])
    return resolved


def _print_summary(summary):
    for line in summary.messages():
        print(line)


# ============================================================================
# COMMANDS
# ============================================================================

def cmd_keys(session: Session, args) -> int:
    store = session.credentials

    if args.keys_action == "set":
        raw = "\n".join(args.values) if args.values else sys.stdin.read()
        keys = parse_credentials(raw)
        if not keys:
            print("API key cannot be empty", file=sys.stderr)
            return 1
        for key in keys:
            result = CredentialStore.validate_format(key)
            if not result.valid:
                print(f"{mask_key(key)}: {result.reason}", file=sys.stderr)
                return 1
        store.save("\n".join(keys))
        print(f"Saved {len(keys)} API key(s)")
        return 0

    if args.keys_action == "show":
        keys = store.credentials()
        if not keys:
            print("No API key configured")
            return 0
        for position, key in enumerate(keys):
            print(f"[{position}] {mask_key(key)}")
        return 0

    if args.keys_action == "remove":
        store.remove()
        print("API key removed")
        return 0

    if args.keys_action == "test":
        keys = parse_credentials("\n".join(args.values)) if args.values else store.credentials()
        if not keys:
            print(NO_CREDENTIALS_NOTICE, file=sys.stderr)
            return 1
        failures = 0
        for key in keys:
            result = store.test_connectivity(key)
            if result.valid:
                model = session.resolver.resolve(key)
                print(f"{mask_key(key)}: OK ({model.display_name}, {model.api_variant})")
            else:
                failures += 1
                print(f"{mask_key(key)}: FAILED - {result.reason}")
        return 1 if failures else 0

    return 2


def cmd_add(session: Session, args) -> int:
    result = session.results.add_files(Path(p) for p in args.files)
    for row in result.added:
        print(f"Added {row.id[:SHORT_ID_LENGTH]} {row.filename}")
    for path, reason in result.rejected:
        print(f"Rejected {path}: {reason}", file=sys.stderr)
    return 0 if result.added or not result.rejected else 1


def cmd_list(session: Session, args) -> int:
    rows = session.results.rows()
    if not rows:
        print("No images queued")
        return 0

    for row in rows:
        mark = "*" if row.selected else " "
        line = f"{mark} {row.id[:SHORT_ID_LENGTH]}  {row.status.value:<10} {row.filename}"
        if row.error:
            line += f"  ({row.error})"
        print(line)
        if args.details and row.title:
            print(f"      Title: {row.title}")
            print(f"      Keywords: {row.keywords}")
            for warning in row.warnings:
                print(f"      ! {warning}")

    counts = session.results.counts()
    print(", ".join(f"{count} {status}" for status, count in counts.items()))
    return 0


def _cmd_select(session: Session, args, selected: bool) -> int:
    if args.all:
        session.results.set_all_selected(selected)
        print(f"{'Selected' if selected else 'Deselected'} all rows")
        return 0
    if not args.ids:
        print("Give row ids or --all", file=sys.stderr)
        return 2
    updated = sum(
        1 for row_id in dict.fromkeys(resolve_row_ids(session, args.ids))
        if session.results.set_selected(row_id, selected)
    )
    print(f"{'Selected' if selected else 'Deselected'} {updated} row(s)")
    return 0


def cmd_select(session: Session, args) -> int:
    return _cmd_select(session, args, True)


def cmd_deselect(session: Session, args) -> int:
    return _cmd_select(session, args, False)


def cmd_remove(session: Session, args) -> int:
    removed = sum(1 for row_id in resolve_row_ids(session, args.ids) if session.results.remove(row_id))
    print(f"Removed {removed} row(s)")
    return 0


def cmd_clear_processed(session: Session, args) -> int:
    removed = session.results.clear_processed()
    print(f"Cleared {removed} processed row(s)")
    return 0


def cmd_generate(session: Session, args) -> int:
    rows = session.rows_for_generation(retry_failed=args.retry_failed, selected_only=args.selected)
    bar = tqdm(total=len(rows), desc="Generating", unit="img", disable=args.no_progress or not rows)
    state = {"settled": 0, "summary": None}

    def on_progress(snapshot):
        delta = snapshot.settled - state["settled"]
        if delta > 0:
            bar.update(delta)
            state["settled"] = snapshot.settled
        bar.set_postfix(done=snapshot.completed, failed=snapshot.failed)

    def on_complete(summary):
        state["summary"] = summary

    session.start_generation(
        retry_failed=args.retry_failed,
        selected_only=args.selected,
        on_progress=on_progress,
        on_complete=on_complete,
    )
    try:
        while session.orchestrator.is_running():
            time.sleep(0.2)
    except KeyboardInterrupt:
        print("\nCancelling after the current image...", file=sys.stderr)
        session.abort_generation()
        session.orchestrator.thread.join()
    finally:
        bar.close()

    summary = state["summary"]
    if summary is None:
        print("Generation did not complete; see the log for details", file=sys.stderr)
        return 1

    _print_summary(summary)
    if not summary.started:
        return 1
    return 0 if summary.failed == 0 and not summary.cancelled else 1


def cmd_export(session: Session, args) -> int:
    rows = session.results.rows()
    count = len(eligible_rows(rows))
    path = session.export_csv(Path(args.path) if args.path else None)
    print(f"Exported {count} row(s) ({format_size(estimate_csv_size(rows))}) to {path}")
    return 0


def cmd_config(session: Optional[Session], args) -> int:
    settings = load_config()
    if args.config_action == "set":
        try:
            settings.update(args.key, args.value)
        except KeyError:
            print(f"Unknown setting: {args.key}. Known: {', '.join(settings.field_names())}", file=sys.stderr)
            return 2
        except ValueError as e:
            print(f"Invalid value for {args.key}: {e}", file=sys.stderr)
            return 2
        if not save_config(settings):
            print("Failed to save configuration", file=sys.stderr)
            return 1

    for name in settings.field_names():
        print(f"{name} = {getattr(settings, name)}")
    return 0


# ============================================================================
# PARSER
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stockmeta",
        description=f"{config.APP_NAME}: generate Adobe Stock metadata with Gemini",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show debug logging on the console"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    keys = sub.add_parser("keys", help="Manage Gemini API keys")
    keys.add_argument("keys_action", choices=["set", "show", "remove", "test"])
    keys.add_argument("values", nargs="*", help="Keys for 'set'/'test' (stdin for 'set' when omitted)")
    keys.set_defaults(func=cmd_keys)

    add = sub.add_parser("add", help="Queue image files")
    add.add_argument("files", nargs="+")
    add.set_defaults(func=cmd_add)

    lst = sub.add_parser("list", help="List queued rows")
    lst.add_argument("--details", "-d", action="store_true", help="Show generated metadata")
    lst.set_defaults(func=cmd_list)

    for name, func in (("select", cmd_select), ("deselect", cmd_deselect)):
        p = sub.add_parser(name, help=f"{name.capitalize()} rows for generation")
        p.add_argument("ids", nargs="*")
        p.add_argument("--all", action="store_true")
        p.set_defaults(func=func)

    remove = sub.add_parser("remove", help="Remove rows")
    remove.add_argument("ids", nargs="+")
    remove.set_defaults(func=cmd_remove)

    clear = sub.add_parser("clear-processed", help="Remove all non-pending rows")
    clear.set_defaults(func=cmd_clear_processed)

    gen = sub.add_parser("generate", help="Generate metadata for queued rows")
    mode = gen.add_mutually_exclusive_group()
    mode.add_argument("--selected", action="store_true", help="Only selected pending rows")
    mode.add_argument("--retry-failed", action="store_true", help="Resubmit failed rows")
    gen.add_argument("--no-progress", action="store_true", help="Hide the progress bar")
    gen.set_defaults(func=cmd_generate)

    export = sub.add_parser("export", help="Write the metadata CSV")
    export.add_argument("path", nargs="?", help=f"Output file or directory (default {config.DEFAULT_CSV_FILENAME})")
    export.set_defaults(func=cmd_export)

    cfg = sub.add_parser("config", help="Show or change settings")
    cfg_sub = cfg.add_subparsers(dest="config_action", required=True)
    cfg_sub.add_parser("show")
    cfg_set = cfg_sub.add_parser("set")
    cfg_set.add_argument("key")
    cfg_set.add_argument("value")
    cfg.set_defaults(func=cmd_config)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(console_level=logging.DEBUG if args.verbose else logging.WARNING)
    logger.info(f"Command: {args.command}")

    if args.command == "config":
        try:
            return cmd_config(None, args)
        finally:
            shutdown_logging()

    session = None
    try:
        session = Session(load_config())
        return args.func(session, args)
    except StockMetaError as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        logger.critical(f"Fatal error in {args.command}: {e}", exc_info=True)
        raise
    finally:
        if session is not None:
            session.close()
        shutdown_logging()


if __name__ == "__main__":
    sys.exit(main())
