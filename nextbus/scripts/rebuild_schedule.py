# nextbus/scripts/rebuild_schedule.py
from __future__ import annotations

import argparse
import json
import logging
import sys

from nextbus.services.feed_source import GtfsDirectorySource, GtfsZipSource, default_source
from nextbus.services.schedule_builder import rebuild_from_settings


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(description="Rebuild scheduled arrivals from a static GTFS feed.")
    src = ap.add_mutually_exclusive_group()
    src.add_argument("--gtfs-dir", help="unpacked GTFS directory (default: GTFS_RAW_DIR)")
    src.add_argument("--url", help="GTFS zip URL (default: GTFS_URL)")
    ap.add_argument("--store", help="store snapshot path (default: STORE_PATH)")
    args = ap.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.gtfs_dir:
        source = GtfsDirectorySource(args.gtfs_dir)
    elif args.url:
        source = GtfsZipSource(args.url)
    else:
        source = default_source()

    report = rebuild_from_settings(source, store_path=args.store)
    print(json.dumps(report.to_dict(), indent=2, ensure_ascii=False))
    if not report.ok:
        print("Rebuild failed.", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
