import httpx

from marketplace.services import session_registry

from conftest import ADMIN_KEY

ADMIN = {"X-Admin-Key": ADMIN_KEY}

CHECKOUT = {
    "amount": 25.99,
    "currency": "USD",
    "items": [{"id": "agent_1", "title": "Sales Agent", "price": 25.99}],
    "customerInfo": {"email": "buyer@example.com", "userId": "user_1", "country": "US"},
}


async def checkout_and_pay(client):
    created = (await client.post("/api/payments/create-session", json=CHECKOUT)).json()
    ack = await client.post(
        "/api/payments/unipay/webhook",
        json={"id": "evt_1", "OrderHashID": created["provider_session_id"], "Status": "Success"}
    )
    assert ack.status_code == 200
    return created


def download_request(email_sender, index=0):
    url = httpx.URL(email_sender.sent[index]["download_url"])
    return url.path, dict(url.params)


async def test_health(client):
    response = await client.get("/api/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


class TestCheckout:

    async def test_unipay_end_to_end(self, client, agents, email_sender):
        response = await client.post("/api/payments/create-session", json=CHECKOUT)

        assert response.status_code == 200
        session = response.json()
        assert session["provider"] == "unipay"
        assert session["provider_session_id"] == "hash_1"
        assert session["normalized_amount"] == "68.87"
        assert session["normalized_currency"] == "GEL"
        assert session["payment_url"] == "https://pay.unipay.test/checkout/1"
        order_id = session["internal_order_id"]

        webhook = {"id": "evt_1", "OrderHashID": "hash_1", "Status": "Success"}
        first = await client.post("/api/payments/unipay/webhook", json=webhook)
        second = await client.post("/api/payments/unipay/webhook", json=webhook)

        assert first.json() == {"received": True, "processed": True, "outcome": "success"}
        assert second.json() == {"received": True, "duplicate": True}
        assert len(email_sender.sent) == 1

        order = (await client.get(f"/api/orders/{order_id}")).json()
        assert order["order"]["status"] == "completed"
        assert order["order"]["delivery_status"] == "completed"
        assert order["order"]["total"] == "25.99"
        assert "template_access_tokens" not in order["order"]
        assert order["sessions"][0]["status"] == "success"

        invoices = (await client.get(f"/api/invoices/order/{order_id}")).json()
        assert invoices["count"] == 1
        assert invoices["invoices"][0]["total_amount"] == "25.99"

        user_orders = (await client.get("/api/orders/user/user_1")).json()
        assert [o["id"] for o in user_orders["orders"]] == [order_id]

    async def test_create_session_validation(self, client):
        response = await client.post("/api/payments/create-session", json={**CHECKOUT, "items": []})

        assert response.status_code == 422

    async def test_status_lookup(self, client, agents):
        created = await checkout_and_pay(client)

        by_session = (await client.get(f"/api/payments/status/{created['provider_session_id']}")).json()
        by_order = (await client.get(
            f"/api/payments/status/{created['internal_order_id']}", params={"type": "order"}
        )).json()
        missing = await client.get("/api/payments/status/nothing")

        assert by_session["sessions"][0]["status"] == "success"
        assert by_session["order"]["id"] == created["internal_order_id"]
        assert by_order["sessions"][0]["provider_session_id"] == created["provider_session_id"]
        assert missing.status_code == 404

    async def test_status_lookup_hides_download_tokens(self, client, agents, email_sender):
        created = await checkout_and_pay(client)

        response = await client.get(
            f"/api/payments/status/{created['internal_order_id']}", params={"type": "order"}
        )

        token = download_request(email_sender)[1]["token"]
        assert response.json()["order"]["delivery_status"] == "completed"
        assert "template_access_tokens" not in response.json()["order"]
        assert token not in response.text

    async def test_paypal_create_and_capture(self, client, agents, email_sender):
        created = (await client.post("/api/payments/paypal/create-order", json=CHECKOUT)).json()

        response = await client.post("/api/payments/paypal/capture", json={"orderID": created["provider_session_id"]})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "success"
        assert body["capture_id"] == "CAPTURE-1"
        assert body["order"]["delivery_status"] == "completed"
        assert body["order"]["templates"] == [{"agent_id": "agent_1", "agent_name": "Sales Agent"}]
        assert len(email_sender.sent) == 1

    async def test_unipay_confirm_order(self, client, agents):
        created = (await client.post("/api/payments/create-session", json=CHECKOUT)).json()

        response = await client.post(
            "/api/payments/unipay/confirm-order",
            json={"orderHashId": created["provider_session_id"], "amount": 68.87}
        )

        assert response.json()["status"] == "confirmed"

    async def test_google_pay(self, client, agents, email_sender):
        response = await client.post("/api/payments/wallet/google/process", json={
            **CHECKOUT,
            "paymentData": {"paymentMethodData": {"tokenizationData": {"token": "gpay-token"}}},
            "metadata": {"orderId": "order_gpay"},
        })

        assert response.status_code == 200
        body = response.json()
        assert body["provider_session_id"] == "gpay_order_gpay"
        assert body["order"]["order_id"] == "order_gpay"
        assert body["order"]["delivery_status"] == "completed"
        assert email_sender.sent[0]["order_id"] == "order_gpay"

    async def test_cancelled_wallet_session_is_not_processed(self, client, agents, email_sender, session_factory):
        wallet_body = {
            **CHECKOUT,
            "paymentData": {"paymentMethodData": {"tokenizationData": {"token": "gpay-token"}}},
            "metadata": {"orderId": "order_gpay"},
        }
        await client.post(
            "/api/payments/create-session", json={**wallet_body, "preferredProvider": "google_direct"}
        )
        async with session_factory() as db:
            await session_registry.update_session_status(db, "gpay_order_gpay", "cancelled")

        response = await client.post("/api/payments/wallet/google/process", json=wallet_body)
        order = await client.get("/api/orders/order_gpay")

        assert response.status_code == 400
        assert response.json()["details"]["status"] == "cancelled"
        assert order.status_code == 404
        assert email_sender.sent == []

    async def test_wallet_rejects_incomplete_payment_data(self, client):
        response = await client.post("/api/payments/wallet/apple/process", json={
            **CHECKOUT,
            "paymentData": {"paymentMethod": {}},
        })

        assert response.status_code == 400
        assert response.json()["error_code"] == "request:invalid"

    async def test_payment_methods(self, client):
        methods = (await client.get("/api/payments/methods", params={"country_code": "de"})).json()

        recommended = [m["id"] for m in methods["methods"] if m["recommended"]]
        assert recommended == ["unipay"]


class TestWebhooks:

    async def test_malformed_body(self, client):
        response = await client.post(
            "/api/payments/unipay/webhook", content=b"{not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400
        assert response.json()["error_code"] == "request:invalid"

    async def test_unknown_provider(self, client):
        response = await client.post("/api/payments/stripe/webhook", json={"id": "evt_1"})

        assert response.status_code == 404

    async def test_invalid_signature(self, client, providers):
        providers["unipay"].webhook_secret = "whsec_test"

        response = await client.post(
            "/api/payments/unipay/webhook",
            json={"id": "evt_1", "OrderHashID": "hash_1", "Status": "Success"},
            headers={"X-UniPay-Signature": "forged"}
        )

        assert response.status_code == 401
        assert response.json()["error_code"] == "webhook:signature_invalid"

    async def test_failed_events_listing(self, client):
        await client.post("/api/payments/unipay/webhook", json={"id": "evt_x", "OrderHashID": "nope", "Status": "Success"})

        unauthorized = await client.get("/api/payments/webhooks/failed")
        listing = (await client.get("/api/payments/webhooks/failed", headers=ADMIN)).json()

        assert unauthorized.status_code == 401
        assert [e["event_id"] for e in listing["events"]] == ["evt_x"]


class TestRedirects:

    async def test_success_redirect_before_webhook_is_pending(self, client, agents):
        created = (await client.post("/api/payments/create-session", json=CHECKOUT)).json()

        response = await client.get(
            "/api/payments/unipay/success", params={"order_id": created["internal_order_id"], "status": "success"}
        )

        assert response.status_code == 303
        location = response.headers["location"]
        assert location.startswith("http://localhost:5173/checkout/success?")
        assert "status=pending" in location

    async def test_paypal_success_redirect_captures(self, client, agents, email_sender):
        await client.post("/api/payments/paypal/create-order", json=CHECKOUT)

        response = await client.get("/api/payments/paypal/success", params={"token": "PP-ORDER-1"})

        assert response.status_code == 303
        assert "status=success" in response.headers["location"]
        assert len(email_sender.sent) == 1

    async def test_cancel_redirect(self, client, agents):
        created = (await client.post("/api/payments/create-session", json=CHECKOUT)).json()

        response = await client.get("/api/payments/unipay/cancel", params={"order_id": created["internal_order_id"]})

        assert response.status_code == 303
        assert response.headers["location"].endswith("/checkout?canceled=true")


class TestTemplates:

    async def test_download_formats(self, client, agents, email_sender):
        await checkout_and_pay(client)
        path, params = download_request(email_sender)

        wrapped = await client.get(path, params=params)
        attachment = await client.get(path, params={**params, "format": "download"})
        text = await client.get(path, params={**params, "format": "text"})

        assert wrapped.status_code == 200
        assert wrapped.json()["template"]["templateContent"] == {"nodes": [{"name": "start"}]}
        assert attachment.headers["content-disposition"] == 'attachment; filename="sales-agent-template.json"'
        assert text.headers["content-type"].startswith("text/plain")

        info = (await client.get(f"/api/templates/access/{params['token']}")).json()
        assert info["access"]["use_count"] == 3
        assert info["is_valid"] is True

    async def test_download_requires_token(self, client):
        response = await client.get("/api/templates/download/agent_1", params={"orderId": "order_1"})

        assert response.status_code == 400

    async def test_download_with_mismatched_order(self, client, agents, email_sender):
        await checkout_and_pay(client)
        path, params = download_request(email_sender)

        response = await client.get(path, params={**params, "orderId": "order_other"})

        assert response.status_code == 403
        assert response.json()["details"]["reason"] == "mismatch"

    async def test_order_templates_require_matching_email(self, client, agents):
        created = await checkout_and_pay(client)
        order_id = created["internal_order_id"]

        listing = await client.get(f"/api/templates/order/{order_id}", params={"email": "BUYER@example.com"})
        mismatch = await client.get(f"/api/templates/order/{order_id}", params={"email": "thief@example.com"})

        assert listing.json()["template_count"] == 1
        assert mismatch.status_code == 403

    async def test_revoke_requires_admin_key(self, client, agents, email_sender):
        await checkout_and_pay(client)
        path, params = download_request(email_sender)

        denied = await client.post(f"/api/templates/revoke/{params['token']}", json={})
        revoked = await client.post(
            f"/api/templates/revoke/{params['token']}", json={"reason": "chargeback"}, headers=ADMIN
        )
        download = await client.get(path, params=params)

        assert denied.status_code == 401
        assert revoked.json()["reason"] == "chargeback"
        assert download.status_code == 403
        assert download.json()["details"]["reason"] == "revoked"

    async def test_stats(self, client, agents):
        await checkout_and_pay(client)

        stats = (await client.get("/api/templates/stats", headers=ADMIN)).json()

        assert stats["stats"]["totalAccesses"] == 1


class TestRefunds:

    async def test_refund_revokes_access(self, client, agents, email_sender):
        created = await checkout_and_pay(client)
        path, params = download_request(email_sender)
        refund_body = {"orderHashId": created["provider_session_id"], "reason": "customer_request"}

        denied = await client.post("/api/payments/unipay/refund", json=refund_body)
        response = await client.post("/api/payments/unipay/refund", json=refund_body, headers=ADMIN)

        assert denied.status_code == 401
        assert response.status_code == 200
        body = response.json()
        assert body["amount"] == "68.87"
        assert body["currency"] == "GEL"
        assert body["refund_id"] == f"unipay_{created['provider_session_id']}"
        assert body["order_status"] == "refunded"

        order = (await client.get(f"/api/orders/{created['internal_order_id']}")).json()["order"]
        assert order["refund_amount"] == "25.99"
        assert order["currency"] == "USD"

        download = await client.get(path, params=params)
        assert download.status_code == 403
        assert download.json()["details"]["revokedReason"] == "order_refunded"

        invoice = (await client.get(f"/api/invoices/order/{created['internal_order_id']}")).json()["invoices"][0]
        assert invoice["status"] == "refunded"
        assert invoice["status_metadata"]["refundAmount"] == "25.99"
        assert invoice["status_metadata"]["providerRefundCurrency"] == "GEL"

        again = await client.post("/api/payments/unipay/refund", json=refund_body, headers=ADMIN)
        assert again.status_code == 400

    async def test_refund_wrong_provider(self, client, agents):
        created = await checkout_and_pay(client)

        response = await client.post(
            "/api/payments/paypal/refund",
            json={"orderHashId": created["provider_session_id"]},
            headers=ADMIN
        )

        assert response.status_code == 400


class TestInvoices:

    async def test_invoice_endpoints(self, client, agents):
        created = await checkout_and_pay(client)
        invoice = (await client.get(f"/api/invoices/order/{created['internal_order_id']}")).json()["invoices"][0]

        by_id = await client.get(f"/api/invoices/{invoice['id']}")
        by_number = await client.get(f"/api/invoices/number/{invoice['invoice_number']}")
        search = (await client.get("/api/invoices", params={"customer_email": "buyer@example.com"})).json()
        export = await client.get("/api/invoices/export", headers=ADMIN)
        stats = (await client.get("/api/invoices/stats", headers=ADMIN)).json()

        assert by_id.json()["invoice_number"] == invoice["invoice_number"]
        assert by_number.json()["id"] == invoice["id"]
        assert search["count"] == 1
        assert export.headers["content-type"].startswith("text/csv")
        assert invoice["invoice_number"] in export.text
        assert stats["total_invoices"] == 1

    async def test_status_update_validation(self, client, agents):
        created = await checkout_and_pay(client)
        invoice = (await client.get(f"/api/invoices/order/{created['internal_order_id']}")).json()["invoices"][0]

        invalid = await client.patch(f"/api/invoices/{invoice['id']}/status", json={"status": "archived"}, headers=ADMIN)
        valid = await client.patch(f"/api/invoices/{invoice['id']}/status", json={"status": "disputed"}, headers=ADMIN)

        assert invalid.status_code == 400
        assert invalid.json()["error_code"] == "status:invalid"
        assert valid.json()["status"] == "disputed"

    async def test_missing_invoice(self, client):
        response = await client.get("/api/invoices/inv_missing")

        assert response.status_code == 404
        assert response.json()["error_code"] == "resource:not_found"
