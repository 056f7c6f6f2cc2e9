"""Tests for notification rendering and dispatch."""

from bson import ObjectId
from pydantic import TypeAdapter

from conftest import FailingSender, RecordingEmail, RecordingSms
from errors import NotificationError
from notifications import (
    NotificationPayload,
    Notifier,
    OrderConfirmed,
    OrderDelivered,
    OrderShipped,
    PetFound,
    TagActivated,
    render,
)


class RaisingSms:
    def send(self, to, body):
        raise NotificationError("carrier rejected number")


class TestRender:
    def test_tag_activated(self):
        rendered = render(TagActivated(pet_id="p", pet_name="Max", tag_id="t"))

        assert rendered.title == "Pet Tag Activated"
        assert "Max's pet tag has been activated" in rendered.sms

    def test_pet_found_includes_optional_lines(self):
        rendered = render(PetFound(
            pet_id="p",
            pet_name="Max",
            finder_name="Jane",
            finder_phone="+15550001111",
            message="Found near the park",
            location="Central Park",
        ))

        assert rendered.sms.startswith("GREAT NEWS! Max has been found!")
        assert "Finder: Jane" in rendered.sms
        assert "Message: Found near the park" in rendered.sms
        assert "Location: Central Park" in rendered.sms
        assert rendered.email_subject == "Max has been found!"

    def test_pet_found_without_optional_lines(self):
        rendered = render(PetFound(pet_id="p", pet_name="Max", finder_name="Jane", finder_phone="1"))

        assert "Message:" not in rendered.sms
        assert "Location:" not in rendered.sms

    def test_order_messages(self):
        assert "12.50" in render(OrderConfirmed(order_id="o", total=12.5)).message
        assert "Tracking: 1Z" in render(OrderShipped(order_id="o", pet_name="Max", tracking_number="1Z")).sms
        assert "your pet" in render(OrderDelivered(order_id="o")).sms

    def test_payload_discriminator(self):
        payload = TypeAdapter(NotificationPayload).validate_python(
            {"kind": "order_shipped", "order_id": "o", "tracking_number": "1Z"}
        )

        assert isinstance(payload, OrderShipped)


class TestNotifier:
    def test_all_channels(self, db, make_user):
        user_id = make_user("ext-n", "n@example.com", phone="+15550002222")
        sms, email = RecordingSms(), RecordingEmail()

        Notifier(db, sms, email).notify(user_id, TagActivated(pet_id=str(ObjectId()), pet_name="Max", tag_id=str(ObjectId())))

        assert sms.sent[0][0] == "+15550002222"
        assert email.sent[0][0] == "n@example.com"
        record = db["notification"].find_one({"user_id": ObjectId(user_id)})
        assert record["type"] == "tag_activated"
        assert record["is_read"] is False
        assert record["data"]["pet_name"] == "Max"
        assert "kind" not in record["data"]

    def test_user_without_phone_gets_no_sms(self, db, make_user):
        user_id = make_user("ext-nophone", "np@example.com", phone=None)
        sms = RecordingSms()

        Notifier(db, sms, RecordingEmail()).notify(user_id, OrderConfirmed(order_id="o", total=1.0))

        assert sms.sent == []
        assert db["notification"].count_documents({}) == 1

    def test_failing_channels_are_swallowed(self, db, make_user):
        user_id = make_user("ext-f", "f@example.com")
        email = RecordingEmail()

        Notifier(db, RaisingSms(), email).notify(user_id, OrderConfirmed(order_id="o", total=1.0))
        Notifier(db, FailingSender(), FailingSender()).notify(user_id, OrderConfirmed(order_id="o", total=1.0))

        assert len(email.sent) == 1
        assert db["notification"].count_documents({}) == 2

    def test_unknown_user_is_skipped(self, db):
        sms = RecordingSms()

        Notifier(db, sms, RecordingEmail()).notify(str(ObjectId()), OrderConfirmed(order_id="o", total=1.0))

        assert sms.sent == []
        assert db["notification"].count_documents({}) == 0
