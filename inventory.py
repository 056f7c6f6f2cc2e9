"""
Pool of pre-printed QR stickers.

A record moves from available to unavailable exactly once, when the first
activation of a tag claims it. Nothing returns a record to the pool.
"""

import logging
from typing import Any, Dict, Iterable, Optional

from bson import ObjectId
from pymongo import ASCENDING, ReturnDocument
from pymongo.database import Database

from database import create_document, now
from errors import NoQRCodeAvailableError
from schemas import QRCode

logger = logging.getLogger(__name__)


class QRInventory:
    def __init__(self, database: Database):
        self.db = database

    @property
    def collection(self):
        return self.db["qrcode"]

    def claim(self, tag_id: ObjectId) -> dict:
        """
        Claim one available record for `tag_id` and return it.

        The claim is a single conditional update, so two concurrent callers can
        never receive the same record. The oldest inserted record wins. A record
        already claimed for this tag by an interrupted attempt is handed back
        instead of drawing a new one.
        """
        existing = self.collection.find_one(
            {"assigned_tag_id": tag_id, "availability": "unavailable"}
        )
        if existing is not None:
            logger.info("Reusing QR code %s already claimed for tag %s", existing["tag_code"], tag_id)
            return existing

        claimed = self.collection.find_one_and_update(
            {"availability": "available"},
            {"$set": {"availability": "unavailable", "assigned_tag_id": tag_id, "updated_at": now()}},
            sort=[("_id", ASCENDING)],
            return_document=ReturnDocument.AFTER,
        )
        if claimed is None:
            logger.warning("QR inventory exhausted, cannot activate tag %s", tag_id)
            raise NoQRCodeAvailableError()
        logger.info("Claimed QR code %s for tag %s", claimed["tag_code"], tag_id)
        return claimed

    def release(self, qr_id: ObjectId, tag_id: ObjectId) -> bool:
        """Undo a claim that was never published on the tag."""
        result = self.collection.update_one(
            {"_id": qr_id, "assigned_tag_id": tag_id},
            {"$set": {"availability": "available", "assigned_tag_id": None, "updated_at": now()}},
        )
        if result.modified_count:
            logger.info("Released QR code %s claimed for tag %s", qr_id, tag_id)
        return bool(result.modified_count)

    def get(self, qr_id: Optional[ObjectId]) -> Optional[dict]:
        if qr_id is None:
            return None
        return self.collection.find_one({"_id": qr_id})

    def stats(self) -> Dict[str, int]:
        total = self.collection.count_documents({})
        available = self.collection.count_documents({"availability": "available"})
        return {"total": total, "available": available, "unavailable": total - available}

    def import_codes(self, rows: Iterable[Dict[str, Any]]) -> int:
        """Bulk seed records. Rows whose tag_code already exists are skipped."""
        imported = 0
        for row in rows:
            code = QRCode(**row)
            code.tag_code = code.tag_code.strip().upper()
            if self.collection.find_one({"tag_code": code.tag_code}, {"_id": 1}):
                continue
            code.availability = "available"
            code.assigned_tag_id = None
            create_document("qrcode", code, self.db)
            imported += 1
        logger.info("Imported %d QR codes", imported)
        return imported
