"""Ingest roster exports from disk without going through the web app.

Usage:
    python scripts/ingest_file.py 671_20250810_2040utc.xlsx [more files...]
    python scripts/ingest_file.py --uploaded-by cli exports/*.xlsx

Files are processed in the order given. Each gets its own uploads record and
is linked to the active season, exactly like an HTTP upload.

Requirements: DATABASE_URL in .env (or environment).
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

# Allow running from project root
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from dotenv import load_dotenv  # type: ignore

load_dotenv()

from realm_common.db.engine import Database
from realm_common.ingest.errors import IngestionError
from realmwatch.config import get_settings
from realmwatch.services.upload_service import process_upload

logger = logging.getLogger("ingest_file")


async def main(paths: list[Path], uploaded_by: str) -> int:
    settings = get_settings()
    database = Database(settings.database_url, echo=settings.database_echo).open()
    failures = 0
    try:
        for path in paths:
            try:
                summary = await process_upload(
                    database,
                    path.read_bytes(),
                    path.name,
                    uploaded_by=uploaded_by,
                    options=settings.ingest_options(),
                )
            except IngestionError as exc:
                logger.error("%s: %s %s", path.name, exc.message, exc.details or "")
                failures += 1
                continue
            print(json.dumps(summary.as_dict(), indent=2))
    finally:
        await database.close()
    return 1 if failures else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("paths", nargs="+", type=Path)
    parser.add_argument("--uploaded-by", default="cli")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    sys.exit(asyncio.run(main(args.paths, args.uploaded_by)))
