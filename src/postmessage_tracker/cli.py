import argparse
import asyncio
import sys
from typing import List, Optional

from .blocklist import LIST_KEYS
from .config import AppConfig, load_config
from .errors import InvalidBlocklistFile
from .identity import extract_source_url
from .logger import setup_logging
from .persistence import JsonFileBackend, decode_tab_id
from .reporter import ListenerReporter
from .server import run_server
from .service import AggregationService
from .settings import SettingsStore

KINDS = list(LIST_KEYS)


def build_service(config: AppConfig) -> AggregationService:
    """Wire an aggregation service over the configured state and settings files."""
    settings = SettingsStore(
        JsonFileBackend(config.storage.settings_path),
        defaults={"dedupeEnabled": config.tracker.dedupe_enabled, "log_url": config.tracker.log_url},
    )
    reporter = ListenerReporter(lambda: settings.current.log_url, timeout=config.tracker.report_timeout)
    return AggregationService(
        JsonFileBackend(config.storage.state_path),
        settings,
        reporter=reporter,
        debounce=config.storage.debounce_seconds,
    )


def _one_line(text: str, width: int = 100) -> str:
    flat = " ".join(text.split())
    return flat if len(flat) <= width else flat[: width - 3] + "..."


def list_listeners(service: AggregationService, tab: Optional[str], show_all: bool) -> int:
    tab_ids = [decode_tab_id(tab)] if tab is not None else service.store.tab_ids()
    shown = hidden = 0
    for tab_id in tab_ids:
        records = service.listeners(tab_id)
        if not records:
            continue
        print(f"Tab {tab_id}:")
        for record in records:
            match = service.block_reason(record)
            if match is not None and not show_all:
                hidden += 1
                continue
            mark = f" [blocked by {match.kind}: {_one_line(match.value, 40)}]" if match else ""
            print(f"  {record.frame_path or 'unknown'} {record.domain}{mark}")
            print(f"    source: {extract_source_url(record) or record.stack_line or 'unknown'}")
            print(f"    code:   {_one_line(record.code)}")
            shown += 1
    if not shown and not hidden:
        print("No listeners recorded.")
    elif hidden:
        print(f"{hidden} blocked listener(s) hidden; use --all to show them.")
    return 0


def export_blocklist(service: AggregationService, kind: str, path: str) -> int:
    text = service.blocklists.export_json(kind)
    if path == "-":
        print(text)
    else:
        with open(path, "w", encoding="utf-8") as f:
            f.write(text)
        print(f"Exported {len(service.blocklists.entries(kind))} {kind} rule(s) to {path}")
    return 0


def import_blocklist(service: AggregationService, kind: str, path: str) -> int:
    try:
        if path == "-":
            text = sys.stdin.read()
        else:
            with open(path, "r", encoding="utf-8") as f:
                text = f.read()
        count = service.blocklists.import_json(kind, text)
    except (OSError, InvalidBlocklistFile) as e:
        print(f"Error importing file: {e}", file=sys.stderr)
        return 1
    print(f"Imported {count} {kind} rule(s)")
    return 0


def run_command(args: argparse.Namespace, service: AggregationService) -> int:
    if args.command == "list":
        return list_listeners(service, args.tab, args.all)
    if args.command == "export":
        return export_blocklist(service, args.kind, args.file)
    if args.command == "import":
        return import_blocklist(service, args.kind, args.file)
    if args.command == "dedupe":
        service.set_dedupe(args.state == "on")
        print(f"Dedupe {'enabled' if service.dedupe_enabled else 'disabled'}")
        return 0
    if args.command == "block":
        added = service.blocklists.add(args.kind, args.value)
        print(f"Added {args.kind} rule" if added else f"{args.kind} rule already present")
        return 0
    if args.command == "unblock":
        removed = service.blocklists.remove(args.kind, args.value)
        print(f"Removed {args.kind} rule" if removed else f"No such {args.kind} rule")
        return 0 if removed else 1
    raise ValueError(f"Unknown command: {args.command}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="postmessage-tracker", description="Track cross-document message listeners across browser tabs"
    )
    parser.add_argument("--config", metavar="PATH", help="Path to a YAML configuration file")

    subparsers = parser.add_subparsers(dest="command", required=True, help="Available commands")

    # --- Serve command ---
    parser_serve = subparsers.add_parser("serve", help="Run the aggregation server")
    parser_serve.add_argument("--host", help="Interface to bind (default from config)")
    parser_serve.add_argument("--port", type=int, help="Port to bind (default from config)")

    # --- List command ---
    parser_list = subparsers.add_parser("list", help="Show recorded listeners")
    parser_list.add_argument("--tab", help="Only show this tab")
    parser_list.add_argument("--all", action="store_true", help="Include blocked listeners")

    # --- Blocklist commands ---
    parser_export = subparsers.add_parser("export", help="Export a blocklist to a JSON file")
    parser_export.add_argument("kind", choices=KINDS)
    parser_export.add_argument("file", help="Output file, or - for stdout")

    parser_import = subparsers.add_parser("import", help="Replace a blocklist from a JSON export file")
    parser_import.add_argument("kind", choices=KINDS)
    parser_import.add_argument("file", help="Input file, or - for stdin")

    parser_block = subparsers.add_parser("block", help="Add a blocklist rule")
    parser_block.add_argument("kind", choices=KINDS)
    parser_block.add_argument("value")

    parser_unblock = subparsers.add_parser("unblock", help="Remove a blocklist rule")
    parser_unblock.add_argument("kind", choices=KINDS)
    parser_unblock.add_argument("value")

    parser_dedupe = subparsers.add_parser("dedupe", help="Turn listener deduplication on or off")
    parser_dedupe.add_argument("state", choices=["on", "off"])

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config = load_config(args.config)
    setup_logging(config.logging)

    service = build_service(config)
    if args.command == "serve":
        host = args.host or config.server.host
        port = args.port or config.server.port
        try:
            asyncio.run(run_server(service, host, port))
        except KeyboardInterrupt:
            print("\nInterrupted by user. Exiting.")
        return 0

    service.start()
    try:
        return run_command(args, service)
    finally:
        service.close(flush=True)


