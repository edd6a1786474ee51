import stripe

import payments


def fill_cart(client, headers, *lines):
    for product, quantity in lines:
        res = client.post("/cart", json={"product_id": product["id"], "quantity": quantity}, headers=headers)
        assert res.status_code == 200, res.text


def test_checkout_empty_cart(client, user_headers):
    assert client.post("/checkout", json={"payment_method": "direct"}, headers=user_headers).status_code == 400


def test_direct_checkout_records_completed_payments(client, user_headers, make_product, mongo):
    a = make_product(title="A", price=10, stock=5)
    b = make_product(title="B", price=2.5, stock=5)
    fill_cart(client, user_headers, (a, 2), (b, 3))

    res = client.post("/checkout", json={"payment_method": "direct"}, headers=user_headers)
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "completed"
    assert body["total"] == 27.5
    assert body["currency"] == "php"
    assert [p["amount"] for p in body["payments"]] == [20, 7.5]
    assert {p["metadata"]["checkout_id"] for p in body["payments"]} == {body["checkout_id"]}
    assert all(p["payment_method"] == "direct" for p in body["payments"])

    assert client.get("/cart", headers=user_headers).json()["items"] == []
    assert client.get(f"/products/{a['id']}").json()["stock"] == 3
    assert client.get(f"/products/{b['id']}").json()["stock"] == 2


def test_direct_checkout_can_be_disabled(client, user_headers, make_product, monkeypatch):
    monkeypatch.setattr(payments, "ALLOW_DIRECT_CHECKOUT", False)
    fill_cart(client, user_headers, (make_product(), 1))
    assert client.post("/checkout", json={"payment_method": "direct"}, headers=user_headers).status_code == 400


def test_checkout_rejects_insufficient_stock_and_unavailable(client, admin_headers, user_headers, make_product, mongo):
    product = make_product(stock=1)
    fill_cart(client, user_headers, (product, 2))
    res = client.post("/checkout", json={"payment_method": "direct"}, headers=user_headers)
    assert res.status_code == 400
    assert "Insufficient stock" in res.json()["detail"]

    client.put(f"/products/{product['id']}", json={"is_active": False}, headers=admin_headers)
    assert client.post("/checkout", json={"payment_method": "direct"}, headers=user_headers).status_code == 400
    assert mongo["payment"].count_documents({}) == 0


def test_card_checkout_creates_pending_rows(client, user_headers, make_product, fake_stripe, mongo):
    product = make_product(price=19.99)
    fill_cart(client, user_headers, (product, 3))

    res = client.post("/checkout", json={"payment_method": "card"}, headers=user_headers)
    body = res.json()
    assert body["status"] == "pending"
    assert body["client_secret"] == "pi_test_1_secret"
    assert fake_stripe.created[0]["amount"] == 5997
    assert fake_stripe.created[0]["currency"] == "php"
    assert fake_stripe.created[0]["metadata"]["checkout_id"] == body["checkout_id"]
    assert mongo["payment"].find_one()["stripe_payment_intent_id"] == "pi_test_1"
    # cart stays until the payment is confirmed
    assert len(client.get("/cart", headers=user_headers).json()["items"]) == 1


def test_confirm_completes_after_provider_success(client, user_headers, make_product, fake_stripe):
    product = make_product(stock=4)
    fill_cart(client, user_headers, (product, 1))
    client.post("/checkout", json={"payment_method": "card"}, headers=user_headers)

    fake_stripe.statuses["pi_test_1"] = "succeeded"
    res = client.post("/payments/confirm", json={"payment_intent_id": "pi_test_1"}, headers=user_headers)
    body = res.json()
    assert body["updated"] == 1
    assert body["payments"][0]["status"] == "completed"
    assert body["payments"][0]["stripe_charge_id"] == "ch_pi_test_1"
    assert body["payments"][0]["product"]["title"] == "Trail Runner"
    assert client.get("/cart", headers=user_headers).json()["items"] == []
    assert client.get(f"/products/{product['id']}").json()["stock"] == 3

    # a second confirmation changes nothing
    again = client.post("/payments/confirm", json={"payment_intent_id": "pi_test_1"}, headers=user_headers)
    assert again.json()["updated"] == 0


def test_confirm_marks_failed_and_leaves_processing_pending(client, user_headers, make_product, fake_stripe):
    fill_cart(client, user_headers, (make_product(), 1))
    client.post("/checkout", json={"payment_method": "card"}, headers=user_headers)

    fake_stripe.statuses["pi_test_1"] = "processing"
    res = client.post("/payments/confirm", json={"payment_intent_id": "pi_test_1"}, headers=user_headers)
    assert res.json()["payments"][0]["status"] == "pending"

    fake_stripe.statuses["pi_test_1"] = "requires_payment_method"
    fake_stripe.errors["pi_test_1"] = {"code": "card_declined"}
    res = client.post("/payments/confirm", json={"payment_intent_id": "pi_test_1"}, headers=user_headers)
    assert res.json()["payments"][0]["status"] == "failed"


def test_confirm_before_card_entry_keeps_payment_pending(client, user_headers, make_product, fake_stripe, webhook):
    product = make_product(stock=4)
    fill_cart(client, user_headers, (product, 1))
    client.post("/checkout", json={"payment_method": "card"}, headers=user_headers)

    res = client.post("/payments/confirm", json={"payment_intent_id": "pi_test_1"}, headers=user_headers)
    assert res.json()["intent_status"] == "requires_payment_method"
    assert res.json()["payments"][0]["status"] == "pending"

    assert webhook("payment_intent.succeeded", id="pi_test_1").json()["updated"] == 1
    assert client.get("/payments", headers=user_headers).json()["items"][0]["status"] == "completed"
    assert client.get(f"/products/{product['id']}").json()["stock"] == 3
    assert client.get("/cart", headers=user_headers).json()["items"] == []


def test_retry_after_failed_charge_completes(client, user_headers, make_product, fake_stripe, webhook):
    fill_cart(client, user_headers, (make_product(), 1))
    client.post("/checkout", json={"payment_method": "card"}, headers=user_headers)

    assert webhook("payment_intent.payment_failed", id="pi_test_1").json()["updated"] == 1
    assert client.get("/payments", headers=user_headers).json()["items"][0]["status"] == "failed"

    assert webhook("payment_intent.succeeded", id="pi_test_1", latest_charge="ch_retry").json()["updated"] == 1
    payment = client.get("/payments", headers=user_headers).json()["items"][0]
    assert payment["status"] == "completed"
    assert payment["stripe_charge_id"] == "ch_retry"


def test_admin_cannot_revive_failed_payment(client, admin_headers, user_headers, make_product, fake_stripe, webhook):
    fill_cart(client, user_headers, (make_product(), 1))
    client.post("/checkout", json={"payment_method": "card"}, headers=user_headers)
    webhook("payment_intent.payment_failed", id="pi_test_1")
    payment_id = client.get("/payments", headers=user_headers).json()["items"][0]["id"]
    res = client.patch(f"/admin/payments/{payment_id}", json={"status": "completed"}, headers=admin_headers)
    assert res.status_code == 409


def test_confirm_only_own_intents(client, user_headers, register_user, make_product, fake_stripe):
    fill_cart(client, user_headers, (make_product(), 1))
    client.post("/checkout", json={"payment_method": "card"}, headers=user_headers)
    other_headers, _ = register_user("other@example.com")
    res = client.post("/payments/confirm", json={"payment_intent_id": "pi_test_1"}, headers=other_headers)
    assert res.status_code == 404


def test_buy_now_intent(client, user_headers, make_product, fake_stripe):
    product = make_product(price=40, stock=2)
    res = client.post("/payments/intent", json={"product_id": product["id"], "quantity": 2}, headers=user_headers)
    assert res.status_code == 200
    body = res.json()
    assert body["client_secret"] == "pi_test_1_secret"
    assert body["payment"]["amount"] == 80
    assert body["payment"]["status"] == "pending"
    assert fake_stripe.created[0]["amount"] == 8000

    too_many = client.post("/payments/intent", json={"product_id": product["id"], "quantity": 3}, headers=user_headers)
    assert too_many.status_code == 400


def test_card_payments_unconfigured(client, user_headers, make_product, monkeypatch):
    monkeypatch.setattr(payments, "STRIPE_SECRET_KEY", None)
    fill_cart(client, user_headers, (make_product(), 1))
    assert client.post("/checkout", json={"payment_method": "card"}, headers=user_headers).status_code == 503


def test_provider_error_is_bad_gateway(client, user_headers, make_product, fake_stripe, monkeypatch, mongo):
    def broken(**kwargs):
        raise stripe.APIConnectionError("network down")

    monkeypatch.setattr(stripe.PaymentIntent, "create", broken)
    fill_cart(client, user_headers, (make_product(), 1))
    assert client.post("/checkout", json={"payment_method": "card"}, headers=user_headers).status_code == 502
    assert mongo["payment"].count_documents({}) == 0


def test_webhook_rejects_bad_signature(webhook):
    assert webhook("payment_intent.succeeded", signature="forged", id="pi_test_1").status_code == 400


def test_webhook_success_then_refund(client, user_headers, make_product, fake_stripe, webhook):
    fill_cart(client, user_headers, (make_product(), 1))
    client.post("/checkout", json={"payment_method": "card"}, headers=user_headers)

    res = webhook("payment_intent.succeeded", id="pi_test_1", latest_charge="ch_1")
    assert res.json() == {"received": True, "updated": 1}
    assert client.get("/cart", headers=user_headers).json()["items"] == []

    res = webhook("charge.refunded", id="ch_1", payment_intent="pi_test_1")
    assert res.json()["updated"] == 1
    history = client.get("/payments", headers=user_headers).json()
    assert history["items"][0]["status"] == "refunded"


def test_webhook_ignores_unrelated_events(webhook):
    assert webhook("customer.created", id="cus_1").json() == {"received": True, "updated": 0}


def test_payment_history(client, user_headers, register_user, make_product):
    a = make_product(title="Alpha", price=10)
    b = make_product(title="Beta", price=5)
    fill_cart(client, user_headers, (a, 1), (b, 2))
    client.post("/checkout", json={"payment_method": "direct"}, headers=user_headers)

    res = client.get("/payments", headers=user_headers).json()
    assert res["meta"]["total_items"] == 2
    assert res["summary"] == {"total_spent": 20, "completed_count": 2}
    assert {p["product"]["title"] for p in res["items"]} == {"Alpha", "Beta"}

    assert client.get("/payments", params={"q": "beta"}, headers=user_headers).json()["meta"]["total_items"] == 1
    assert client.get("/payments", params={"status": "failed"}, headers=user_headers).json()["items"] == []

    payment_id = res["items"][0]["id"]
    assert client.get(f"/payments/{payment_id}", headers=user_headers).status_code == 200
    other_headers, _ = register_user("other@example.com")
    assert client.get(f"/payments/{payment_id}", headers=other_headers).status_code == 404
    assert client.get("/payments", headers=other_headers).json()["items"] == []


def test_profile_stats(client, user_headers, make_product):
    nike = make_product(title="Nike One", brand="Nike", price=10)
    nike2 = make_product(title="Nike Two", brand="Nike", price=20)
    vans = make_product(title="Vans One", brand="Vans", price=30)
    fill_cart(client, user_headers, (nike, 1), (nike2, 1), (vans, 1))
    client.post("/checkout", json={"payment_method": "direct"}, headers=user_headers)

    stats = client.get("/profile/stats", headers=user_headers).json()
    assert stats["total_purchases"] == 3
    assert stats["total_spent"] == 60
    assert stats["favorite_brands"] == ["Nike", "Vans"]
    assert len(stats["recent_purchases"]) == 3
