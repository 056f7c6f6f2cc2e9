"""Finder flow: public lookup of a scanned tag and owner notification."""

import logging
from typing import Optional

from pymongo.database import Database

from database import create_document, now, to_object_id
from errors import NotFoundError, PetNotFoundError
from notifications import Notifier, PetFound
from schemas import FinderInfo, ScanLog

logger = logging.getLogger(__name__)


class FinderService:
    def __init__(self, database: Database, notifier: Notifier):
        self.db = database
        self.notifier = notifier

    def _active_tag(self, qr_code: str) -> dict:
        tag = self.db["tag"].find_one({
            "qr_code": qr_code.strip().upper(),
            "status": "active",
            "is_active": True,
        })
        if tag is None:
            raise NotFoundError("Tag not found or inactive", "TAG_NOT_FOUND")
        return tag

    def _pet(self, tag: dict) -> dict:
        pet = None
        if tag.get("pet_id") is not None:
            pet = self.db["pet"].find_one({"_id": tag["pet_id"], "tag_id": tag["_id"], "is_active": True})
        if pet is None:
            raise PetNotFoundError()
        return pet

    def lookup(self, qr_code: str, ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> dict:
        tag = self._active_tag(qr_code)
        pet = self._pet(tag)
        owner = self.db["user"].find_one({"_id": pet["owner_id"]}) or {}

        scan = ScanLog(
            pet_id=str(pet["_id"]),
            tag_id=str(tag["_id"]),
            ip_address=ip_address,
            user_agent=user_agent,
        )
        scan_id = create_document("scanlog", scan, self.db)
        logger.info("Tag %s scanned, scan %s", tag["qr_code"], scan_id)

        return {
            "pet": {
                "name": pet.get("name"),
                "breed": pet.get("breed"),
                "age": pet.get("age"),
                "photo_url": pet.get("photo_url"),
                "medical_conditions": pet.get("medical_conditions") or "None",
            },
            "tag": {"qr_code": tag["qr_code"], "status": tag["status"]},
            "owner": {
                "name": owner.get("name"),
                "phone": owner.get("phone"),
                "email": owner.get("email"),
            },
            "scan_id": scan_id,
        }

    def notify_owner(
        self,
        qr_code: str,
        finder_name: str,
        finder_phone: str,
        message: Optional[str] = None,
        location: Optional[str] = None,
        scan_id: Optional[str] = None,
    ) -> dict:
        tag = self._active_tag(qr_code)
        pet = self._pet(tag)
        stamp = now()

        scan_oid = to_object_id(scan_id)
        if scan_oid is not None:
            finder = FinderInfo(name=finder_name, phone=finder_phone, message=message)
            self.db["scanlog"].update_one(
                {"_id": scan_oid, "tag_id": tag["_id"]},
                {"$set": {
                    "location": location,
                    "finder_info": finder.model_dump(),
                    "owner_notified": True,
                    "notified_at": stamp,
                }},
            )

        changes = {"last_seen_at": stamp, "updated_at": stamp}
        if location:
            changes["last_seen_location"] = location
        self.db["pet"].update_one({"_id": pet["_id"]}, {"$set": changes})

        payload = PetFound(
            pet_id=str(pet["_id"]),
            pet_name=pet.get("name", ""),
            finder_name=finder_name,
            finder_phone=finder_phone,
            message=message,
            location=location,
            scan_id=str(scan_oid) if scan_oid else None,
        )
        try:
            self.notifier.notify(str(pet["owner_id"]), payload)
        except Exception:
            logger.exception("Finder notification for pet %s failed", pet["_id"])
        return {"message": "Owner has been notified successfully"}
