"""Import pre-printed QR stickers into the inventory pool.

Usage: python seed_qrcodes.py QR_codes.csv

The CSV needs "Tag ID", "QR Code Data" and "Website URL" columns (snake_case
headers tag_code, qr_code_data, website_url are accepted too).
"""

import argparse
import csv
import logging
import sys
from typing import Dict, Iterator, TextIO

from config import settings, setup_logging
from database import db, ensure_indexes
from inventory import QRInventory

logger = logging.getLogger(__name__)


def read_rows(handle: TextIO) -> Iterator[Dict[str, str]]:
    for row in csv.DictReader(handle):
        tag_code = (row.get("Tag ID") or row.get("tag_code") or "").strip()
        if not tag_code:
            continue
        yield {
            "tag_code": tag_code.upper(),
            "qr_code_data": (row.get("QR Code Data") or row.get("qr_code_data") or "").strip(),
            "website_url": (row.get("Website URL") or row.get("website_url") or "").strip(),
        }


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Seed the QR code inventory from a CSV file.")
    parser.add_argument("csv_file", type=argparse.FileType("r", encoding="utf-8-sig"))
    args = parser.parse_args(argv)

    setup_logging(settings.log_level)
    with args.csv_file as handle:
        if db is None:
            logger.error("DATABASE_URL is not set")
            return 1
        ensure_indexes(db)
        inventory = QRInventory(db)
        imported = inventory.import_codes(read_rows(handle))
    stats = inventory.stats()
    print(f"Imported {imported} QR codes. Total: {stats['total']}, Available: {stats['available']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
