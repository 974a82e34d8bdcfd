import argparse
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

from tqdm import tqdm

from . import config
from .database.store import Store, read_template
from .exchange import DateTimeMode, ExportOptions, export_csv, import_csv
from .merge import CheckoutEngine, MergeEngine
from .progress import ProgressRun
from .results import Result
from .sync import SchemaSynchronizer


def setup_logging(log_dir: Path, verbose: bool):
    """Sets up logging to both console and a file in the log directory."""
    log_level = logging.DEBUG if verbose else logging.INFO

    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / config.LOG_FILE_NAME

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            logging.FileHandler(log_file, encoding='utf-8'),
            logging.StreamHandler(sys.stdout)
        ]
    )


def parse_renames(pairs: Optional[List[str]]) -> Dict[str, str]:
    renames = {}
    for pair in pairs or []:
        old, sep, new = pair.partition("=")
        if not sep or not old or not new:
            raise argparse.ArgumentTypeError(f"Expected OLD=NEW, got {pair!r}")
        renames[old.strip()] = new.strip()
    return renames


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Camera-trap metadata store tools")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    p.add_argument("--log-dir", type=Path, default=Path("."), help="Directory for the log file")
    sub = p.add_subparsers(dest="command", required=True)

    c = sub.add_parser("create", help="Create a new store from a template file")
    c.add_argument("store", type=Path)
    c.add_argument("template", type=Path)
    c.add_argument("--root-folder", default=None, help="Root folder name (default: the store's folder)")

    s = sub.add_parser("sync", help="Bring a store's schema in line with a template file")
    s.add_argument("store", type=Path)
    s.add_argument("template", type=Path)
    s.add_argument("--rename", action="append", metavar="OLD=NEW", help="Confirm that a removed field was renamed")
    s.add_argument("--dry-run", action="store_true", help="Report the differences without changing the store")
    s.add_argument("--keep-cosmetic", action="store_true", help="Keep the store's labels, defaults and ordering")

    m = sub.add_parser("merge", help="Merge a store into another")
    m.add_argument("destination", type=Path)
    m.add_argument("source", type=Path)
    m.add_argument("--prefix", default="", help="Folder of the source relative to the destination root")
    m.add_argument("--levels-to-ignore", type=int, default=None,
                   help="Destination folder levels above the source (default: depth of the prefix)")
    m.add_argument("--replace", action="store_true", help="Remove destination records under the prefix first")

    k = sub.add_parser("checkout", help="Extract one folder of a store into a new store")
    k.add_argument("store", type=Path)
    k.add_argument("prefix")
    k.add_argument("destination", type=Path)

    e = sub.add_parser("export", help="Export records to CSV")
    e.add_argument("store", type=Path)
    e.add_argument("csv", type=Path)
    e.add_argument("--date-mode", choices=[mode.value for mode in DateTimeMode], default=DateTimeMode.COMBINED.value)
    e.add_argument("--root-folder", action="store_true", help="Prepend a RootFolder column")
    e.add_argument("--space-before-dates", action="store_true")

    i = sub.add_parser("import", help="Update records from a CSV file")
    i.add_argument("store", type=Path)
    i.add_argument("csv", type=Path)

    d = sub.add_parser("duplicates", help="List (RelativePath, File) keys held by several records")
    d.add_argument("store", type=Path)

    return p.parse_args(argv)


def run_with_progress(run: ProgressRun, desc: str) -> Result:
    with tqdm(total=100, desc=desc, unit="%") as bar:
        for event in run:
            bar.n = event.percent
            bar.set_postfix_str(event.message)
            bar.refresh()
    return run.result


def report(result: Result) -> int:
    """Logs the diagnostics of a result and returns the process exit code."""
    for d in result.diagnostics:
        if d.kind.fatal and not result.ok:
            logging.error(d.message)
        else:
            logging.warning(d.message)
    if not result.ok:
        logging.error(f"Failed: {result.error.value}")
        return 1
    return 0


def open_store(path: Path) -> Optional[Store]:
    opened = Store.open(path)
    if not opened.ok:
        report(opened)
        return None
    return opened.value


def cmd_create(args) -> int:
    template = read_template(args.template)
    if not template.ok:
        return report(template)
    root_folder = args.root_folder if args.root_folder is not None else args.store.resolve().parent.name
    created = Store.create(args.store, template.value.schema, template.value.levels, root_folder=root_folder)
    if created.ok:
        created.value.close()
    return report(created)


def cmd_sync(args) -> int:
    template = read_template(args.template)
    if not template.ok:
        return report(template)
    store = open_store(args.store)
    if store is None:
        return 1
    with store:
        result = SchemaSynchronizer(template.value.schema).synchronize(
            store.records,
            renames=parse_renames(args.rename),
            adopt_cosmetic=not args.keep_cosmetic,
            dry_run=args.dry_run,
        )
    if result.ok:
        lines = result.value.lines()
        for line in lines:
            logging.info(line)
        if not lines:
            logging.info("The store already matches the template.")
        elif args.dry_run:
            logging.info("Dry run: no changes were made.")
    return report(result)


def cmd_merge(args) -> int:
    store = open_store(args.destination)
    if store is None:
        return 1
    with store:
        run = MergeEngine(store).merge(args.source, args.prefix, args.levels_to_ignore, args.replace)
        result = run_with_progress(run, "Merging")
    if result.ok:
        summary = result.value
        logging.info(f"Merged {summary.records_added} records ({summary.records_replaced} replaced), "
                     f"{summary.detections_added} detections, {summary.level_rows_added} folder rows")
    return report(result)


def cmd_checkout(args) -> int:
    store = open_store(args.store)
    if store is None:
        return 1
    with store:
        result = run_with_progress(CheckoutEngine(store).checkout(args.prefix, args.destination), "Checking out")
    if result.ok:
        logging.info(f"Checked out {result.value.records} records to {args.destination}")
    return report(result)


def cmd_export(args) -> int:
    store = open_store(args.store)
    if store is None:
        return 1
    options = ExportOptions(
        date_mode=DateTimeMode(args.date_mode),
        include_root_folder=args.root_folder,
        space_before_dates=args.space_before_dates,
    )
    with store:
        result = run_with_progress(export_csv(store.records, args.csv, options=options), "Exporting")
    if result.ok:
        logging.info(f"Wrote {result.value} records to {args.csv}")
    return report(result)


def cmd_import(args) -> int:
    store = open_store(args.store)
    if store is None:
        return 1
    with store:
        result = run_with_progress(import_csv(store.records, args.csv), "Importing")
    if result.value is not None:
        summary = result.value
        logging.info(f"Updated {summary.rows_updated} of {summary.rows_read} rows; "
                     f"{summary.rows_unmatched} rows matched no record")
    return report(result)


def cmd_duplicates(args) -> int:
    store = open_store(args.store)
    if store is None:
        return 1
    with store:
        keys = sorted(store.records.find_duplicate_keys())
        for relative_path, file in keys:
            ids = store.records.ids_for_key(relative_path, file)
            print(f"{relative_path}{config.PATH_SEPARATOR if relative_path else ''}{file}\t{len(ids)} records")
    logging.info(f"{len(keys)} duplicated files")
    return 0


COMMANDS = {
    "create": cmd_create,
    "sync": cmd_sync,
    "merge": cmd_merge,
    "checkout": cmd_checkout,
    "export": cmd_export,
    "import": cmd_import,
    "duplicates": cmd_duplicates,
}


def main(argv=None):
    args = parse_args(argv)
    setup_logging(args.log_dir.resolve(), args.verbose)
    logging.info(f"=== camtrap-db {args.command} ===")

    try:
        code = COMMANDS[args.command](args)
    except KeyboardInterrupt:
        logging.warning("Operation cancelled by user.")
        code = 1
    except (FileExistsError, ValueError, argparse.ArgumentTypeError) as e:
        logging.error(str(e))
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
