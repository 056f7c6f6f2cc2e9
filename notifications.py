"""
Owner notifications: SMS, email and in-app records.

Delivery is best-effort. A failing channel is logged and never propagates to
the operation that triggered the notification.
"""

import logging
from typing import Annotated, Optional, Protocol, Union, Literal

from pydantic import BaseModel, Field
from pymongo.database import Database

from database import create_document, to_object_id
from errors import NotificationError
from schemas import Notification

logger = logging.getLogger(__name__)


# Payload variants, one per notification kind

class TagActivated(BaseModel):
    kind: Literal["tag_activated"] = "tag_activated"
    pet_id: str
    pet_name: str
    tag_id: str


class PetFound(BaseModel):
    kind: Literal["pet_found"] = "pet_found"
    pet_id: str
    pet_name: str
    finder_name: str
    finder_phone: str
    message: Optional[str] = None
    location: Optional[str] = None
    scan_id: Optional[str] = None


class OrderConfirmed(BaseModel):
    kind: Literal["order_confirmed"] = "order_confirmed"
    order_id: str
    total: float


class OrderShipped(BaseModel):
    kind: Literal["order_shipped"] = "order_shipped"
    order_id: str
    pet_name: Optional[str] = None
    tracking_number: Optional[str] = None


class OrderDelivered(BaseModel):
    kind: Literal["order_delivered"] = "order_delivered"
    order_id: str
    pet_name: Optional[str] = None


NotificationPayload = Annotated[
    Union[TagActivated, PetFound, OrderConfirmed, OrderShipped, OrderDelivered],
    Field(discriminator="kind"),
]


class RenderedMessage(BaseModel):
    title: str
    message: str
    sms: str
    email_subject: str
    email_html: str


def render(payload: NotificationPayload) -> RenderedMessage:
    if isinstance(payload, TagActivated):
        title = "Pet Tag Activated"
        message = f"{payload.pet_name}'s pet tag has been successfully activated."
        sms = (
            f"Great news! {payload.pet_name}'s pet tag has been activated and is now "
            "protecting your pet with our lost pet recovery service."
        )
        return RenderedMessage(
            title=title,
            message=message,
            sms=sms,
            email_subject="Pet Tag Activated",
            email_html=f"<h2>Pet Tag Activated</h2><p>{message}</p>",
        )
    if isinstance(payload, PetFound):
        lines = [
            f"GREAT NEWS! {payload.pet_name} has been found!",
            "",
            f"Finder: {payload.finder_name}",
            f"Phone: {payload.finder_phone}",
        ]
        if payload.message:
            lines.append(f"Message: {payload.message}")
        if payload.location:
            lines.append(f"Location: {payload.location}")
        lines.append("Please contact them ASAP!")
        sms = "\n".join(lines)
        return RenderedMessage(
            title=f"{payload.pet_name} has been found!",
            message=(
                f"{payload.finder_name} found your pet and wants to help return them. "
                f"Contact: {payload.finder_phone}"
            ),
            sms=sms,
            email_subject=f"{payload.pet_name} has been found!",
            email_html="<p>" + "<br>".join(lines) + "</p>",
        )
    if isinstance(payload, OrderConfirmed):
        message = (
            f"Payment confirmed! Your order {payload.order_id} "
            f"({payload.total:.2f}) has been received and will be shipped soon."
        )
        return RenderedMessage(
            title="Order Confirmed",
            message=message,
            sms=message,
            email_subject="Order Confirmation - Pet Tag",
            email_html=f"<h2>Order Confirmation</h2><p>{message}</p>",
        )
    if isinstance(payload, OrderShipped):
        pet = payload.pet_name or "your pet"
        message = f"Your pet tag order for {pet} has shipped!"
        if payload.tracking_number:
            message += f" Tracking: {payload.tracking_number}"
        return RenderedMessage(
            title="Order Shipped",
            message=message,
            sms=message,
            email_subject="Your Pet Tag Order Has Shipped",
            email_html=f"<h2>Your Pet Tag Order Has Shipped</h2><p>{message}</p>",
        )
    pet = payload.pet_name or "your pet"
    message = (
        f"Your pet tag for {pet} has been delivered! "
        "Remember to activate it when you receive it."
    )
    return RenderedMessage(
        title="Order Delivered",
        message=message,
        sms=message,
        email_subject="Your Pet Tag Has Been Delivered",
        email_html=f"<h2>Your Pet Tag Has Been Delivered</h2><p>{message}</p>",
    )


class SmsSender(Protocol):
    def send(self, to: str, body: str) -> None: ...


class EmailSender(Protocol):
    def send(self, to: str, subject: str, html: str) -> None: ...


class LoggingSmsSender:
    """SMS sink that only logs. Swap in a real gateway in deployment."""

    def send(self, to: str, body: str) -> None:
        logger.info("SMS to %s: %s", to, body.splitlines()[0] if body else "")


class LoggingEmailSender:
    def send(self, to: str, subject: str, html: str) -> None:
        logger.info("Email to %s: %s", to, subject)


class Notifier:
    """Dispatches a notification payload to every channel the user can receive."""

    def __init__(self, database: Database, sms: Optional[SmsSender] = None, email: Optional[EmailSender] = None):
        self.db = database
        self.sms = sms or LoggingSmsSender()
        self.email = email or LoggingEmailSender()

    def notify(self, user_id: str, payload: NotificationPayload) -> None:
        try:
            rendered = render(payload)
            user = self.db["user"].find_one({"_id": to_object_id(user_id)})
        except Exception:
            logger.exception("Failed to prepare %s notification for user %s", payload.kind, user_id)
            return
        if user is None:
            logger.warning("Skipping %s notification, user %s not found", payload.kind, user_id)
            return

        if user.get("phone"):
            self._deliver("sms", payload.kind, lambda: self.sms.send(user["phone"], rendered.sms))
        if user.get("email"):
            self._deliver(
                "email",
                payload.kind,
                lambda: self.email.send(user["email"], rendered.email_subject, rendered.email_html),
            )
        self._deliver("in_app", payload.kind, lambda: self._store(user_id, payload, rendered))

    def _store(self, user_id: str, payload: NotificationPayload, rendered: RenderedMessage) -> None:
        data = payload.model_dump(exclude={"kind"}, exclude_none=True)
        record = Notification(
            user_id=user_id,
            type=payload.kind,
            title=rendered.title,
            message=rendered.message,
            data=data,
        )
        create_document("notification", record, self.db)

    def _deliver(self, channel: str, kind: str, send) -> None:
        try:
            send()
        except NotificationError as e:
            logger.warning("%s delivery of %s failed: %s", channel, kind, e.message)
        except Exception:
            logger.exception("%s delivery of %s failed", channel, kind)
