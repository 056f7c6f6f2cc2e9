"""
Tag lifecycle: purchase, activation, deactivation, assignment.

Tag, Pet and QRCode documents are updated without multi-document
transactions. Every write that could race is a conditional single-document
update, and writes are ordered so an interrupted operation never leaves a pet
active behind an inactive tag or a tag active without a QR code:

- the QR record is claimed before the tag is activated,
- the pet's tag_id is claimed before the tag side of a link is written,
- a pet is switched active after its tag and inactive before it.
"""

import logging
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

from config import Settings
from database import create_document, get_documents, now, serialize_doc, to_object_id
from errors import (
    ConflictError,
    PetNotFoundError,
    TagNotFoundError,
)
from inventory import QRInventory
from notifications import Notifier, TagActivated
from qr import qr_code_url, render_qr_svg
from schemas import Order, OrderItem, ShippingAddress, Tag

logger = logging.getLogger(__name__)

LIVE_STATUSES = ["active", "pending"]


class TagLifecycle:
    def __init__(self, database: Database, notifier: Notifier, settings: Settings):
        self.db = database
        self.notifier = notifier
        self.settings = settings
        self.inventory = QRInventory(database)

    @property
    def tags(self):
        return self.db["tag"]

    @property
    def pets(self):
        return self.db["pet"]

    # Lookups

    def _owned_tag(self, user_id: str, tag_id: str) -> dict:
        tag_oid, user_oid = to_object_id(tag_id), to_object_id(user_id)
        tag = self.tags.find_one({"_id": tag_oid, "user_id": user_oid}) if tag_oid and user_oid else None
        if tag is None:
            raise TagNotFoundError(tag_id)
        return tag

    def _owned_pet(self, user_id: str, pet_id: Union[str, ObjectId]) -> dict:
        pet_oid, user_oid = to_object_id(pet_id), to_object_id(user_id)
        pet = None
        if pet_oid and user_oid:
            pet = self.pets.find_one({"_id": pet_oid, "owner_id": user_oid, "is_active": True})
        if pet is None:
            raise PetNotFoundError(str(pet_id))
        return pet

    def _live_tag_for_pet(self, pet_oid: ObjectId, exclude: Optional[ObjectId] = None) -> Optional[dict]:
        query: Dict[str, Any] = {
            "pet_id": pet_oid,
            "status": {"$in": LIVE_STATUSES},
            "is_active": True,
        }
        if exclude is not None:
            query["_id"] = {"$ne": exclude}
        return self.tags.find_one(query)

    def _set_pet_status(self, pet_oid: ObjectId, tag_oid: ObjectId, status: str) -> None:
        query: Dict[str, Any] = {"_id": pet_oid, "tag_id": tag_oid}
        if status == "active":
            query["is_active"] = True
        self.pets.update_one(
            query,
            {"$set": {"status": status, "updated_at": now()}},
        )

    def _activate_pet(self, pet_oid: ObjectId, tag_oid: ObjectId) -> None:
        """Switch the pet active, then undo it if its tag left service meanwhile."""
        self._set_pet_status(pet_oid, tag_oid, "active")
        tag = self.tags.find_one({"_id": tag_oid}, {"status": 1, "is_active": 1})
        if tag is None or tag.get("status") != "active" or not tag.get("is_active", True):
            self._set_pet_status(pet_oid, tag_oid, "inactive")

    def _order_cancelled(self, tag: dict) -> bool:
        if tag.get("order_id") is None:
            return False
        order = self.db["order"].find_one({"_id": tag["order_id"]}, {"status": 1})
        return order is not None and order.get("status") == "cancelled"

    def _present(self, tag: dict, qr: Optional[dict] = None) -> dict:
        out = serialize_doc(tag)
        out["qr_code_url"] = qr_code_url(self.settings.qr_base_url, tag.get("qr_code"))
        if qr is None and tag.get("qr_code_id") is not None:
            qr = self.inventory.get(tag["qr_code_id"])
        out["website_url"] = qr.get("website_url") if qr else None
        return out

    # PurchaseTag

    def purchase_tag(
        self,
        user_id: str,
        pet_id: str,
        shipping_address: Union[ShippingAddress, dict],
        quantity: int = 1,
    ) -> dict:
        if quantity < 1:
            raise ConflictError("Quantity must be at least 1", "INVALID_QUANTITY")
        pet = self._owned_pet(user_id, pet_id)
        if self._live_tag_for_pet(pet["_id"]) is not None:
            raise ConflictError("Pet already has an active or pending tag", "TAG_EXISTS")

        # Claiming the pet's tag_id serializes concurrent purchases for it.
        previous_tag = pet.get("tag_id")
        first_tag = ObjectId()
        claim = self.pets.update_one(
            {"_id": pet["_id"], "tag_id": previous_tag, "is_active": True},
            {"$set": {"tag_id": first_tag, "updated_at": now()}},
        )
        if claim.matched_count == 0:
            raise ConflictError("Pet already has an active or pending tag", "TAG_EXISTS")

        price = self.settings.tag_price
        total = round(price * quantity, 2)
        try:
            order = Order(
                user_id=user_id,
                pet_id=str(pet["_id"]),
                tag_id=str(first_tag),
                items=[OrderItem(name="Pet Tag", price=price, quantity=quantity)],
                quantity=quantity,
                status="pending",
                subtotal=total,
                total=total,
                currency=self.settings.currency,
                shipping_address=shipping_address,
            )
            order_id = create_document("order", order, self.db)
            tag_ids = []
            for i in range(quantity):
                # Spare units start unlinked; a pet holds a single tag.
                tag = Tag(
                    user_id=user_id,
                    pet_id=str(pet["_id"]) if i == 0 else None,
                    status="pending",
                    order_id=order_id,
                )
                tag_ids.append(create_document("tag", tag, self.db, _id=first_tag if i == 0 else None))
        except Exception:
            self.pets.update_one(
                {"_id": pet["_id"], "tag_id": first_tag},
                {"$set": {"tag_id": previous_tag, "updated_at": now()}},
            )
            raise

        if previous_tag is not None:
            self.tags.update_one(
                {"_id": previous_tag, "pet_id": pet["_id"]},
                {"$set": {"pet_id": None, "updated_at": now()}},
            )

        logger.info("User %s purchased %d tag(s) for pet %s, order %s", user_id, quantity, pet_id, order_id)
        return {
            "order_id": order_id,
            "tag_id": tag_ids[0],
            "tag_ids": tag_ids,
            "total": total,
            "quantity": quantity,
            "payment_url": f"{self.settings.frontend_url}/payment/{order_id}",
        }

    # ActivateTag

    def activate_tag(self, user_id: str, tag_id: str) -> dict:
        tag = self._owned_tag(user_id, tag_id)
        if tag.get("pet_id") is None:
            raise ConflictError("Tag is not assigned to a pet", "TAG_NOT_ASSIGNED")
        pet = self._owned_pet(user_id, tag["pet_id"])
        if self._order_cancelled(tag):
            raise ConflictError("Tag belongs to a cancelled order", "TAG_ORDER_CANCELLED")

        if tag.get("status") == "active" and tag.get("is_active", True):
            self._activate_pet(pet["_id"], tag["_id"])
            return self._present(tag)

        if tag.get("qr_code_id") is None:
            result = self._first_activation(tag, pet)
        else:
            result = self._reactivate(tag, pet)
        if self._order_cancelled(tag):
            # Cancelled while this activation ran.
            self.retire_order_tags(tag["order_id"])
            raise ConflictError("Tag belongs to a cancelled order", "TAG_ORDER_CANCELLED")
        return result

    def _first_activation(self, tag: dict, pet: dict) -> dict:
        qr = self.inventory.claim(tag["_id"])
        stamp = now()
        published = self.tags.update_one(
            {"_id": tag["_id"], "qr_code_id": None},
            {
                "$set": {
                    "qr_code_id": qr["_id"],
                    "qr_code": qr["tag_code"],
                    "status": "active",
                    "is_active": True,
                    "activated_at": stamp,
                    "deactivated_at": None,
                    "updated_at": stamp,
                }
            },
        )
        current = self.tags.find_one({"_id": tag["_id"]})
        if published.matched_count == 0:
            # A concurrent activation of the same tag published first.
            if current.get("qr_code_id") != qr["_id"]:
                self.inventory.release(qr["_id"], tag["_id"])
            return self._present(current)

        self._activate_pet(pet["_id"], tag["_id"])
        logger.info("Tag %s activated with QR code %s", tag["_id"], qr["tag_code"])
        self._notify_activated(tag, pet)
        return self._present(current, qr)

    def _reactivate(self, tag: dict, pet: dict) -> dict:
        self.tags.update_one(
            {"_id": tag["_id"]},
            {"$set": {"status": "active", "is_active": True, "deactivated_at": None, "updated_at": now()}},
        )
        self._activate_pet(pet["_id"], tag["_id"])
        logger.info("Tag %s re-activated", tag["_id"])
        if self.settings.notify_on_reactivation:
            self._notify_activated(tag, pet)
        return self._present(self.tags.find_one({"_id": tag["_id"]}))

    def _notify_activated(self, tag: dict, pet: dict) -> None:
        payload = TagActivated(pet_id=str(pet["_id"]), pet_name=pet.get("name", ""), tag_id=str(tag["_id"]))
        try:
            self.notifier.notify(str(pet["owner_id"]), payload)
        except Exception:
            logger.exception("Activation notification for tag %s failed", tag["_id"])

    # DeactivateTag

    def deactivate_tag(self, user_id: str, tag_id: str) -> dict:
        tag = self._owned_tag(user_id, tag_id)
        if not tag.get("is_active", True):
            raise ConflictError("Tag is already inactive", "TAG_ALREADY_INACTIVE")
        if tag.get("pet_id") is not None:
            self._set_pet_status(tag["pet_id"], tag["_id"], "inactive")
        stamp = now()
        result = self.tags.update_one(
            {"_id": tag["_id"], "is_active": True},
            {"$set": {"status": "inactive", "is_active": False, "deactivated_at": stamp, "updated_at": stamp}},
        )
        if result.matched_count == 0:
            raise ConflictError("Tag is already inactive", "TAG_ALREADY_INACTIVE")
        if tag.get("pet_id") is not None:
            # An activation may have switched the pet back on in between.
            self._set_pet_status(tag["pet_id"], tag["_id"], "inactive")
        logger.info("Tag %s deactivated", tag_id)
        return self._present(self.tags.find_one({"_id": tag["_id"]}))

    # AssignTag / UnassignTag

    def assign_tag(self, user_id: str, tag_id: str, pet_id: str) -> dict:
        tag = self._owned_tag(user_id, tag_id)
        if tag.get("pet_id") is not None:
            raise ConflictError("Tag is already assigned to a pet", "TAG_ALREADY_ASSIGNED")
        pet = self._owned_pet(user_id, pet_id)
        if pet.get("status") != "inactive":
            raise ConflictError("Pet must be inactive to receive a tag", "PET_NOT_INACTIVE")
        if self._live_tag_for_pet(pet["_id"], exclude=tag["_id"]) is not None:
            raise ConflictError("Pet already has an active or pending tag", "PET_HAS_TAG")

        previous_tag = pet.get("tag_id")
        claim = self.pets.update_one(
            {"_id": pet["_id"], "tag_id": previous_tag, "status": "inactive", "is_active": True},
            {"$set": {"tag_id": tag["_id"], "updated_at": now()}},
        )
        if claim.matched_count == 0:
            raise ConflictError("Pet already has an active or pending tag", "PET_HAS_TAG")

        linked = self.tags.update_one(
            {"_id": tag["_id"], "pet_id": None},
            {"$set": {"pet_id": pet["_id"], "updated_at": now()}},
        )
        if linked.matched_count == 0:
            self.pets.update_one(
                {"_id": pet["_id"], "tag_id": tag["_id"]},
                {"$set": {"tag_id": previous_tag, "updated_at": now()}},
            )
            raise ConflictError("Tag is already assigned to a pet", "TAG_ALREADY_ASSIGNED")

        if previous_tag is not None and previous_tag != tag["_id"]:
            self.tags.update_one(
                {"_id": previous_tag, "pet_id": pet["_id"]},
                {"$set": {"pet_id": None, "updated_at": now()}},
            )
        logger.info("Tag %s assigned to pet %s", tag_id, pet_id)
        return self._present(self.tags.find_one({"_id": tag["_id"]}))

    def unassign_tag(self, user_id: str, tag_id: str) -> dict:
        tag = self._owned_tag(user_id, tag_id)
        pet_oid = tag.get("pet_id")
        if pet_oid is None:
            raise ConflictError("Tag is not assigned to a pet", "TAG_NOT_ASSIGNED")
        self.pets.update_one(
            {"_id": pet_oid, "tag_id": tag["_id"]},
            {"$set": {"tag_id": None, "status": "inactive", "updated_at": now()}},
        )
        result = self.tags.update_one(
            {"_id": tag["_id"], "pet_id": pet_oid},
            {"$set": {"pet_id": None, "updated_at": now()}},
        )
        if result.matched_count == 0:
            raise ConflictError("Tag is not assigned to a pet", "TAG_NOT_ASSIGNED")
        logger.info("Tag %s unassigned from pet %s", tag_id, pet_oid)
        return self._present(self.tags.find_one({"_id": tag["_id"]}))

    # Pets

    def list_pets(self, user_id: str) -> list:
        user_oid = to_object_id(user_id)
        if user_oid is None:
            return []
        out = []
        for pet in get_documents("pet", {"owner_id": user_oid, "is_active": True}, database=self.db):
            tag = self.tags.find_one({"_id": pet["tag_id"]}, {"qr_code": 1, "status": 1}) if pet.get("tag_id") else None
            data = serialize_doc(pet)
            data["tag"] = serialize_doc(tag)
            out.append(data)
        return out

    def remove_pet(self, user_id: str, pet_id: str) -> dict:
        """
        Soft-delete a pet and unlink its tag.

        The pet is retired first. Purchase and assignment only claim pets with
        is_active set, so no new link can appear once this write lands.
        """
        pet = self._owned_pet(user_id, pet_id)
        retired = self.pets.find_one_and_update(
            {"_id": pet["_id"], "is_active": True},
            {"$set": {"is_active": False, "status": "inactive", "updated_at": now()}},
            return_document=ReturnDocument.AFTER,
        )
        if retired is None:
            raise PetNotFoundError(pet_id)

        tag_oid = retired.get("tag_id")
        if tag_oid is not None:
            self.tags.update_one(
                {"_id": tag_oid, "pet_id": pet["_id"]},
                {"$set": {"pet_id": None, "updated_at": now()}},
            )
            self.pets.update_one(
                {"_id": pet["_id"], "tag_id": tag_oid},
                {"$set": {"tag_id": None, "updated_at": now()}},
            )
        logger.info("Pet %s removed by user %s", pet_id, user_id)
        return serialize_doc(self.pets.find_one({"_id": pet["_id"]}))

    # Order side effects

    def retire_order_tags(self, order_oid: ObjectId) -> int:
        """Take every tag bought by a cancelled order out of service."""
        retired = list(self.tags.find({"order_id": order_oid}, {"pet_id": 1}))
        self._deactivate_linked_pets(retired)
        stamp = now()
        self.tags.update_many(
            {"order_id": order_oid},
            {"$set": {"status": "inactive", "is_active": False, "deactivated_at": stamp, "updated_at": stamp}},
        )
        # Pets re-activated between the two writes are switched off again.
        self._deactivate_linked_pets(self.tags.find({"order_id": order_oid}, {"pet_id": 1}))
        if retired:
            logger.info("Retired %d tag(s) of cancelled order %s", len(retired), order_oid)
        return len(retired)

    def _deactivate_linked_pets(self, tags) -> None:
        for tag in tags:
            if tag.get("pet_id") is not None:
                self._set_pet_status(tag["pet_id"], tag["_id"], "inactive")

    # Reads

    def list_tags(self, user_id: str) -> dict:
        user_oid = to_object_id(user_id)
        docs = get_documents("tag", {"user_id": user_oid}, database=self.db) if user_oid else []
        out = []
        for tag in docs:
            pet = self.pets.find_one({"_id": tag["pet_id"]}, {"name": 1, "breed": 1, "photo_url": 1}) if tag.get("pet_id") else None
            order = (
                self.db["order"].find_one({"_id": tag["order_id"]}, {"status": 1, "total": 1, "created_at": 1})
                if tag.get("order_id")
                else None
            )
            out.append({
                "id": str(tag["_id"]),
                "qr_code": tag.get("qr_code"),
                "qr_code_url": qr_code_url(self.settings.qr_base_url, tag.get("qr_code")),
                "status": tag.get("status"),
                "is_active": tag.get("is_active", True),
                "activated_at": tag.get("activated_at"),
                "created_at": tag.get("created_at"),
                "pet": serialize_doc(pet),
                "order": serialize_doc(order),
            })
        return {
            "tags": out,
            "total_tags": len(out),
            "active_count": sum(1 for t in out if t["status"] == "active"),
            "pending_count": sum(1 for t in out if t["status"] == "pending"),
        }

    def get_qr(self, user_id: str, tag_id: str) -> dict:
        tag = self._owned_tag(user_id, tag_id)
        if not tag.get("qr_code"):
            raise ConflictError("Tag has not been activated yet", "TAG_NOT_ACTIVATED")
        url = qr_code_url(self.settings.qr_base_url, tag["qr_code"])
        return {"qr_code": render_qr_svg(url), "qr_code_url": url, "tag_id": str(tag["_id"])}
