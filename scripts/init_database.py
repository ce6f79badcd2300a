"""Initialize the analysis database schema and the local media root.

Optionally registers a gemstone with its declared metadata so media can be
ingested for it right away.
"""

from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path

# Ensure src/ is on sys.path so we can import shared logging and DB helpers.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_ROOT = PROJECT_ROOT / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.append(str(SRC_ROOT))

from gem_insight.config import load_settings  # noqa: E402
from gem_insight.db import Gemstone, open_primary_session  # noqa: E402
from utils.logging import get_logger  # noqa: E402

LOGGER = get_logger(__name__)


def _init_database(target: str) -> None:
    session = open_primary_session(target)
    session.close()
    LOGGER.info("init_database_ok", extra={"target": target})


def _register_gemstone(target: str, args: argparse.Namespace) -> None:
    now = time.time()
    with open_primary_session(target) as session, session.begin():
        row = session.get(Gemstone, args.gemstone_id)
        if row is None:
            row = Gemstone(gemstone_id=args.gemstone_id, created_at=now)
            session.add(row)
        row.serial_number = args.serial_number or row.serial_number
        row.name = args.name or row.name
        row.cut = args.cut or row.cut
        row.color = args.color or row.color
        if args.weight_carats is not None:
            row.weight_carats = args.weight_carats
        row.updated_at = now
    LOGGER.info("gemstone_registered", extra={"gemstone_id": args.gemstone_id})


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Initialize the analysis database and media root.")
    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="Database URL or path. Defaults to databases.primary_url in settings.yaml.",
    )
    parser.add_argument("--gemstone-id", type=str, default=None, help="Register (or update) this gemstone.")
    parser.add_argument("--serial-number", type=str, default=None)
    parser.add_argument("--name", type=str, default=None)
    parser.add_argument("--cut", type=str, default=None, help="Declared cut, e.g. 'oval'.")
    parser.add_argument("--color", type=str, default=None, help="Declared color, e.g. 'blue'.")
    parser.add_argument("--weight-carats", type=float, default=None)
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = load_settings()
    target = args.db or settings.databases.primary_url
    _init_database(target)

    if settings.storage.backend == "local":
        media_root = Path(settings.storage.local_root)
        media_root.mkdir(parents=True, exist_ok=True)
        LOGGER.info("init_media_root_ok", extra={"root": str(media_root.resolve())})

    if args.gemstone_id:
        _register_gemstone(target, args)

    LOGGER.info("init_complete", extra={"target": target})


if __name__ == "__main__":
    main()
