"""
Orders: checkout, deferred payment, cancellation, refunds and status updates.

Cancelling an order, for whatever reason, takes the tags it bought out of
service through TagLifecycle.retire_order_tags.
"""

import logging
from typing import Any, Dict, List, Optional, Union

from pymongo.database import Database

from config import Settings
from database import create_document, now, serialize_doc, to_object_id
from errors import ConflictError, NotFoundError, OrderNotFoundError, UpstreamError
from lifecycle import TagLifecycle
from notifications import Notifier, OrderConfirmed, OrderDelivered, OrderShipped
from payments import PaymentProcessor
from schemas import Order, OrderItem, ShippingAddress

logger = logging.getLogger(__name__)

CANCELLABLE = ("pending", "paid")
ORDER_STATUSES = ("pending", "paid", "processing", "shipped", "delivered", "cancelled")


class OrderService:
    def __init__(
        self,
        database: Database,
        lifecycle: TagLifecycle,
        payments: PaymentProcessor,
        notifier: Notifier,
        settings: Settings,
    ):
        self.db = database
        self.lifecycle = lifecycle
        self.payments = payments
        self.notifier = notifier
        self.settings = settings

    @property
    def orders(self):
        return self.db["order"]

    def _owned_order(self, user_id: str, order_id: str) -> dict:
        order_oid, user_oid = to_object_id(order_id), to_object_id(user_id)
        order = self.orders.find_one({"_id": order_oid, "user_id": user_oid}) if order_oid and user_oid else None
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    def _reload(self, order: dict) -> dict:
        return serialize_doc(self.orders.find_one({"_id": order["_id"]}))

    def _pet_name(self, order: dict) -> Optional[str]:
        if not order.get("pet_id"):
            return None
        pet = self.db["pet"].find_one({"_id": order["pet_id"]}, {"name": 1})
        return pet.get("name") if pet else None

    def _notify(self, order: dict, payload) -> None:
        try:
            self.notifier.notify(str(order["user_id"]), payload)
        except Exception:
            logger.exception("Notification for order %s failed", order["_id"])

    def _restock(self, items) -> None:
        for item in items:
            self.db["product"].update_one({"_id": to_object_id(item.product_id)}, {"$inc": {"stock": item.quantity}})

    def _cancel(self, order: dict) -> None:
        stamp = now()
        result = self.orders.update_one(
            {"_id": order["_id"], "status": {"$ne": "cancelled"}},
            {"$set": {"status": "cancelled", "cancelled_at": stamp, "updated_at": stamp}},
        )
        if result.modified_count:
            for item in order.get("items", []):
                if item.get("product_id") is not None:
                    self.db["product"].update_one(
                        {"_id": item["product_id"]}, {"$inc": {"stock": item["quantity"]}}
                    )
            logger.info("Order %s cancelled", order["_id"])
        self.lifecycle.retire_order_tags(order["_id"])

    def cancel_order(self, user_id: str, order_id: str) -> dict:
        order = self._owned_order(user_id, order_id)
        if order.get("status") not in CANCELLABLE:
            raise ConflictError("Order cannot be cancelled", "CANNOT_CANCEL")
        self._cancel(order)
        return self._reload(order)

    def refund_order(self, user_id: str, order_id: str, reason: Optional[str] = None) -> dict:
        order = self._owned_order(user_id, order_id)
        if not order.get("payment_id"):
            raise ConflictError("No payment found for this order", "NO_PAYMENT_ID")
        if order.get("status") == "cancelled":
            raise ConflictError("Order is already cancelled", "ALREADY_CANCELLED")
        # Only one refund may reach the processor per order.
        claimed = self.orders.update_one(
            {"_id": order["_id"], "status": {"$ne": "cancelled"}, "refund_id": None, "refunding": {"$ne": True}},
            {"$set": {"refunding": True, "updated_at": now()}},
        )
        if claimed.matched_count == 0:
            raise ConflictError("Order is already cancelled or being refunded", "ALREADY_CANCELLED")
        try:
            refund = self.payments.refund(
                order["payment_id"], order["total"], order.get("currency", self.settings.currency), reason
            )
        except Exception:
            self.orders.update_one({"_id": order["_id"]}, {"$set": {"refunding": False}})
            raise
        stamp = now()
        self.orders.update_one(
            {"_id": order["_id"]},
            {"$set": {"refunding": False, "refund_id": refund.refund_id, "refunded_at": stamp, "updated_at": stamp}},
        )
        self._cancel(order)
        return {"refund": refund.model_dump(), "order": self._reload(order)}

    def checkout(
        self,
        user_id: str,
        items: List[Dict[str, Any]],
        shipping_address: Union[ShippingAddress, dict],
        source: str,
        pet_id: Optional[str] = None,
    ) -> dict:
        if not items:
            raise ConflictError("Order must contain at least one item", "INVALID_ITEMS")
        products = self.db["product"]
        order_items = []
        subtotal = 0.0
        for item in items:
            quantity = int(item.get("quantity", 1))
            product = products.find_one({"_id": to_object_id(item.get("product_id"))})
            if product is None:
                raise NotFoundError(f"Product {item.get('product_id')} not found", "PRODUCT_NOT_FOUND")
            if not product.get("is_active", True):
                raise ConflictError(f"Product {product['name']} is not available", "PRODUCT_INACTIVE")
            if product.get("availability") == "out_of_stock":
                raise ConflictError(f"Product {product['name']} is out of stock", "OUT_OF_STOCK")
            if product.get("stock") is not None and product["stock"] < quantity:
                raise ConflictError(f"Insufficient stock for {product['name']}", "INSUFFICIENT_STOCK")
            subtotal += product["price"] * quantity
            order_items.append(OrderItem(
                product_id=str(product["_id"]),
                name=product["name"],
                price=product["price"],
                quantity=quantity,
                size=item.get("size"),
                color=item.get("color"),
            ))

        subtotal = round(subtotal, 2)
        tax = round(subtotal * self.settings.tax_rate, 2)
        shipping = 0.0 if subtotal > self.settings.free_shipping_threshold else self.settings.shipping_fee
        total = round(subtotal + tax + shipping, 2)

        # Stock is reserved before the card is charged and handed back on failure.
        reserved = []
        try:
            for item in order_items:
                taken = products.update_one(
                    {"_id": to_object_id(item.product_id), "stock": {"$gte": item.quantity}},
                    {"$inc": {"stock": -item.quantity}},
                )
                if taken.matched_count == 0:
                    raise ConflictError(f"Insufficient stock for {item.name}", "INSUFFICIENT_STOCK")
                reserved.append(item)
            charge = self.payments.charge(total, self.settings.currency, source)
            if not charge.confirmed:
                raise UpstreamError("Payment failed", "PAYMENT_FAILED", 402)
        except Exception:
            self._restock(reserved)
            raise

        order = Order(
            user_id=user_id,
            pet_id=pet_id,
            items=order_items,
            quantity=sum(i.quantity for i in order_items),
            status="paid",
            subtotal=subtotal,
            tax=tax,
            shipping=shipping,
            total=total,
            currency=self.settings.currency,
            shipping_address=shipping_address,
            payment_id=charge.charge_id,
            payment_method=charge.method,
            paid_at=now(),
        )
        order_id = create_document("order", order, self.db)
        logger.info("Checkout by user %s created paid order %s (%.2f)", user_id, order_id, total)
        return serialize_doc(self.orders.find_one({"_id": to_object_id(order_id)}))

    def pay_order(self, user_id: str, order_id: str, source: str) -> dict:
        """Capture the payment a tag purchase deferred."""
        order = self._owned_order(user_id, order_id)
        if order.get("status") != "pending":
            raise ConflictError("Order is not awaiting payment", "ALREADY_PAID")
        currency = order.get("currency", self.settings.currency)
        charge = self.payments.charge(order["total"], currency, source)
        if not charge.confirmed:
            raise UpstreamError("Payment failed", "PAYMENT_FAILED", 402)
        stamp = now()
        result = self.orders.update_one(
            {"_id": order["_id"], "status": "pending"},
            {"$set": {
                "status": "paid",
                "payment_id": charge.charge_id,
                "payment_method": charge.method,
                "paid_at": stamp,
                "updated_at": stamp,
            }},
        )
        if result.matched_count == 0:
            self.payments.refund(charge.charge_id, order["total"], currency, "Order changed during payment")
            raise ConflictError("Order is not awaiting payment", "ALREADY_PAID")
        logger.info("Order %s paid", order_id)
        self._notify(order, OrderConfirmed(order_id=str(order["_id"]), total=order["total"]))
        return self._reload(order)

    def update_status(self, order_id: str, status: str, tracking_number: Optional[str] = None) -> dict:
        if status not in ORDER_STATUSES:
            raise ConflictError(f"Invalid order status: {status}", "INVALID_STATUS")
        order_oid = to_object_id(order_id)
        order = self.orders.find_one({"_id": order_oid}) if order_oid else None
        if order is None:
            raise OrderNotFoundError(order_id)
        old_status = order.get("status")
        if old_status == "cancelled" and status != "cancelled":
            raise ConflictError("Order is already cancelled", "ALREADY_CANCELLED")

        if status == "cancelled":
            self._cancel(order)
            return self._reload(order)

        stamp = now()
        changes: Dict[str, Any] = {"status": status, "updated_at": stamp}
        if tracking_number:
            changes["tracking_number"] = tracking_number
        if status == "shipped":
            changes["shipped_at"] = stamp
        elif status == "delivered":
            changes["delivered_at"] = stamp
        self.orders.update_one({"_id": order["_id"]}, {"$set": changes})
        logger.info("Order %s status %s -> %s", order_id, old_status, status)

        if old_status != status:
            if status == "shipped":
                self._notify(order, OrderShipped(
                    order_id=str(order["_id"]),
                    pet_name=self._pet_name(order),
                    tracking_number=tracking_number or order.get("tracking_number"),
                ))
            elif status == "delivered":
                self._notify(order, OrderDelivered(order_id=str(order["_id"]), pet_name=self._pet_name(order)))
        return self._reload(order)

    def handle_payment_event(self, event: Dict[str, Any]) -> bool:
        """Apply a payment processor webhook event. Returns False when ignored."""
        kind = event.get("type")
        data = event.get("data") or {}
        order_oid = to_object_id(data.get("order_id"))
        order = self.orders.find_one({"_id": order_oid}) if order_oid else None
        if order is None:
            logger.info("Ignoring %s event for unknown order %s", kind, data.get("order_id"))
            return False

        if kind == "payment.completed":
            stamp = now()
            result = self.orders.update_one(
                {"_id": order["_id"], "status": "pending"},
                {"$set": {"status": "paid", "payment_id": data.get("payment_id"), "paid_at": stamp, "updated_at": stamp}},
            )
            if result.modified_count:
                self._notify(order, OrderConfirmed(order_id=str(order["_id"]), total=order["total"]))
            return True
        if kind == "payment.failed":
            if order.get("status") == "pending":
                self._cancel(order)
            return True
        logger.info("Unhandled payment event type: %s", kind)
        return False
