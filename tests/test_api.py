"""HTTP API tests."""

from conftest import ADDRESS, fetch, signed_event


class TestEnvelope:
    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert "live" in response.json()["message"]

    def test_missing_token(self, client):
        response = client.get("/tags")

        assert response.status_code == 401
        assert response.json() == {
            "success": False,
            "error": {"code": "NO_TOKEN", "message": "Access token is required"},
        }

    def test_invalid_token(self, client):
        response = client.get("/tags", headers={"Authorization": "Bearer not-a-jwt"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_TOKEN"

    def test_token_for_unknown_user(self, client):
        import main

        token = main._identity.create_token("ext-nobody")
        response = client.get("/tags", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "USER_NOT_FOUND"

    def test_validation_error(self, client, auth_headers, pet):
        response = client.post(
            "/tags/purchase",
            json={"pet_id": pet, "quantity": 0, "shipping_address": ADDRESS},
            headers=auth_headers,
        )

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"


class TestAuth:
    def test_google_login_creates_user(self, client, db):
        response = client.post("/auth/google", json={"email": "new@example.com", "name": "New"})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user"]["external_id"] == "google:new@example.com"
        tags = client.get("/tags", headers={"Authorization": f"Bearer {data['token']}"})
        assert tags.status_code == 200
        assert tags.json()["data"]["total_tags"] == 0

    def test_google_login_is_idempotent(self, client, db):
        client.post("/auth/google", json={"email": "new@example.com"})
        client.post("/auth/google", json={"email": "new@example.com", "phone": "+15550003333"})

        assert db["user"].count_documents({"email": "new@example.com"}) == 1
        assert db["user"].find_one({"email": "new@example.com"})["phone"] == "+15550003333"


class TestTagRoutes:
    def test_purchase_and_activate(self, client, auth_headers, db, seed_qrcodes):
        pet = client.post("/pets", json={"name": "Max", "breed": "Beagle"}, headers=auth_headers)
        assert pet.status_code == 201
        pet_id = pet.json()["data"]["id"]

        purchase = client.post(
            "/tags/purchase",
            json={"pet_id": pet_id, "quantity": 1, "shipping_address": ADDRESS},
            headers=auth_headers,
        )
        assert purchase.status_code == 201
        tag_id = purchase.json()["data"]["tag_id"]

        empty = client.post(f"/tags/{tag_id}/activate", headers=auth_headers)
        assert empty.status_code == 503
        assert empty.json()["error"]["code"] == "NO_QRCODE_AVAILABLE"

        seed_qrcodes(1)
        activated = client.post(f"/tags/{tag_id}/activate", headers=auth_headers)
        assert activated.status_code == 200
        body = activated.json()
        assert body["success"] is True
        assert body["data"]["status"] == "active"
        assert body["data"]["qr_code"] == "QR000000"
        assert fetch(db, "pet", pet_id)["status"] == "active"

    def test_second_purchase_conflicts(self, client, auth_headers, pet, pending_tag):
        response = client.post(
            "/tags/purchase",
            json={"pet_id": pet, "shipping_address": ADDRESS},
            headers=auth_headers,
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "TAG_EXISTS"

    def test_deactivate_and_qr(self, client, auth_headers, active_tag):
        qr = client.get(f"/tags/{active_tag}/qr", headers=auth_headers)
        assert qr.status_code == 200
        assert qr.json()["data"]["qr_code"].startswith("data:image/svg+xml;base64,")

        first = client.post(f"/tags/{active_tag}/deactivate", headers=auth_headers)
        second = client.post(f"/tags/{active_tag}/deactivate", headers=auth_headers)
        assert first.json()["data"]["status"] == "inactive"
        assert second.status_code == 400
        assert second.json()["error"]["code"] == "TAG_ALREADY_INACTIVE"

    def test_unassign_then_assign(self, client, auth_headers, make_pet, pending_tag):
        buddy = make_pet("Buddy")

        unassigned = client.post(f"/tags/{pending_tag}/unassign", headers=auth_headers)
        assigned = client.post(f"/tags/{pending_tag}/assign", json={"pet_id": buddy}, headers=auth_headers)

        assert unassigned.json()["data"]["pet_id"] is None
        assert assigned.json()["data"]["pet_id"] == buddy

    def test_list_and_remove_pet(self, client, auth_headers, db, make_pet, pet, active_tag):
        make_pet("Buddy")

        listed = client.get("/pets", headers=auth_headers)
        assert sorted(p["name"] for p in listed.json()["data"]) == ["Buddy", "Max"]

        removed = client.delete(f"/pets/{pet}", headers=auth_headers)
        assert removed.status_code == 200
        assert removed.json()["data"]["is_active"] is False
        assert fetch(db, "tag", active_tag)["pet_id"] is None
        assert [p["name"] for p in client.get("/pets", headers=auth_headers).json()["data"]] == ["Buddy"]

        again = client.delete(f"/pets/{pet}", headers=auth_headers)
        assert again.status_code == 404
        assert again.json()["error"]["code"] == "PET_NOT_FOUND"

    def test_unknown_tag(self, client, auth_headers):
        response = client.post("/tags/000000000000000000000000/activate", headers=auth_headers)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "TAG_NOT_FOUND"


class TestOrderRoutes:
    def test_pay_and_refund(self, client, auth_headers, db, pending_tag):
        order_id = str(fetch(db, "tag", pending_tag)["order_id"])

        paid = client.post(f"/orders/{order_id}/pay", json={"source": "tok_visa"}, headers=auth_headers)
        refund = client.post(f"/payments/{order_id}/refund", json={"reason": "lost"}, headers=auth_headers)

        assert paid.json()["data"]["status"] == "paid"
        assert refund.status_code == 200
        assert refund.json()["data"]["order"]["status"] == "cancelled"

    def test_declined_payment(self, client, auth_headers, db, pending_tag):
        order_id = str(fetch(db, "tag", pending_tag)["order_id"])

        response = client.post(f"/orders/{order_id}/pay", json={"source": "decline"}, headers=auth_headers)

        assert response.status_code == 402
        assert response.json()["error"]["code"] == "PAYMENT_FAILED"

    def test_checkout(self, client, auth_headers, product):
        collar = product(price=25.0, stock=3)

        response = client.post(
            "/payments",
            json={"source": "tok_visa", "items": [{"product_id": collar}], "shipping_address": ADDRESS},
            headers=auth_headers,
        )

        assert response.status_code == 201
        assert response.json()["data"]["total"] == 37.0

    def test_cancel(self, client, auth_headers, db, pending_tag):
        order_id = str(fetch(db, "tag", pending_tag)["order_id"])

        response = client.post(f"/orders/{order_id}/cancel", headers=auth_headers)

        assert response.json()["data"]["status"] == "cancelled"
        assert fetch(db, "tag", pending_tag)["is_active"] is False

    def test_payment_webhook(self, client, db, pending_tag):
        order_id = str(fetch(db, "tag", pending_tag)["order_id"])
        body, headers = signed_event({"type": "payment.completed", "data": {"order_id": order_id, "payment_id": "pi_9"}})

        response = client.post("/webhooks/payments", content=body, headers=headers)

        assert response.json()["data"] == {"handled": True}
        assert fetch(db, "order", order_id)["status"] == "paid"

    def test_unsigned_webhook_is_rejected(self, client, db, payments, pending_tag):
        order_id = str(fetch(db, "tag", pending_tag)["order_id"])

        response = client.post(
            "/webhooks/payments",
            json={"type": "payment.completed", "data": {"order_id": order_id, "payment_id": "forged"}},
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_SIGNATURE"
        assert fetch(db, "order", order_id)["status"] == "pending"
        assert payments.charges == []

    def test_webhook_signed_with_wrong_secret(self, client, db, pending_tag):
        order_id = str(fetch(db, "tag", pending_tag)["order_id"])
        body, headers = signed_event({"type": "payment.failed", "data": {"order_id": order_id}}, secret="whsec_other")

        response = client.post("/webhooks/payments", content=body, headers=headers)

        assert response.status_code == 401
        assert fetch(db, "order", order_id)["status"] == "pending"
        assert fetch(db, "tag", pending_tag)["is_active"] is True

    def test_stale_webhook_is_rejected(self, client, db, pending_tag):
        order_id = str(fetch(db, "tag", pending_tag)["order_id"])
        body, headers = signed_event({"type": "payment.completed", "data": {"order_id": order_id}}, timestamp=1)

        response = client.post("/webhooks/payments", content=body, headers=headers)

        assert response.status_code == 401

    def test_webhook_without_configured_secret(self, client, db, settings, pending_tag):
        settings.webhook_secret = None
        body, headers = signed_event({"type": "payment.completed", "data": {"order_id": "x"}})

        response = client.post("/webhooks/payments", content=body, headers=headers)

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "WEBHOOK_NOT_CONFIGURED"


class TestAdminRoutes:
    def test_customer_is_forbidden(self, client, auth_headers):
        response = client.get("/admin/qrcodes/stats", headers=auth_headers)

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "FORBIDDEN"

    def test_qrcode_stats(self, client, admin_headers, seed_qrcodes):
        seed_qrcodes(3)

        response = client.get("/admin/qrcodes/stats", headers=admin_headers)

        assert response.json()["data"] == {"total": 3, "available": 3, "unavailable": 0}

    def test_ship_order(self, client, admin_headers, db, pending_tag):
        order_id = str(fetch(db, "tag", pending_tag)["order_id"])

        response = client.patch(
            f"/admin/orders/{order_id}/status",
            json={"status": "shipped", "tracking_number": "1Z"},
            headers=admin_headers,
        )

        assert response.json()["data"]["tracking_number"] == "1Z"


class TestFinderRoutes:
    def test_lookup_and_notify(self, client, db, active_tag):
        lookup = client.get("/found/qr000000")
        assert lookup.status_code == 200
        scan_id = lookup.json()["data"]["scan_id"]

        notify = client.post(
            "/found/QR000000/notify",
            json={"finder_name": "Jane", "finder_phone": "+15550001111", "scan_id": scan_id},
        )

        assert notify.status_code == 200
        assert fetch(db, "scanlog", scan_id)["owner_notified"] is True

    def test_lookup_unknown(self, client):
        response = client.get("/found/MISSING")

        assert response.status_code == 404
        assert response.json()["success"] is False
