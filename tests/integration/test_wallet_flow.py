def _balance(client, user_id):
    return client.get(f"/wallets/{user_id}").json()["balance"]


def test_payout_with_insufficient_funds(client):
    response = client.post("/merchant/1/payouts", json={"recipient_id": 2, "amount": "10.00"})

    assert response.status_code == 400
    body = response.json()
    assert body["status"] == "error"
    assert body["data"]["code"] == "INSUFFICIENT_FUNDS"
    assert _balance(client, 1) == "5.00"
    assert _balance(client, 2) == "0.00"
    assert client.get("/audit-logs", params={"user_id": 1}).json() == []


def test_payout_flow(client):
    response = client.post("/merchant/1/payouts", json={"recipient_id": 2, "amount": "4.25"})

    assert response.status_code == 200
    payout = response.json()["data"]["payout"]
    assert payout["amount"] == "4.25"
    assert payout["merchant_balance"] == "0.75"
    assert _balance(client, 1) == "0.75"
    assert _balance(client, 2) == "4.25"

    notifications = client.get("/users/2/notifications").json()
    assert notifications[0]["message"] == "You received a payout of 4.25 INR."
    logs = client.get("/audit-logs", params={"action": "process_payout"}).json()
    assert logs[0]["details"]["reference"] == payout["reference"]


def test_payout_replayed_with_idempotency_key(client):
    headers = {"Idempotency-Key": "payout-2024-06-01"}

    first = client.post(
        "/merchant/1/payouts",
        json={"recipient_id": 2, "amount": "2.00"},
        headers=headers,
    )
    second = client.post(
        "/merchant/1/payouts",
        json={"recipient_id": 2, "amount": "2.00"},
        headers=headers,
    )

    assert first.status_code == second.status_code == 200
    assert second.json() == first.json()
    assert _balance(client, 1) == "3.00"
    assert _balance(client, 2) == "2.00"


def test_idempotency_key_reused_for_a_tip(client):
    headers = {"Idempotency-Key": "shared"}
    client.post("/merchant/1/payouts", json={"recipient_id": 2, "amount": "1.00"}, headers=headers)

    response = client.post(
        "/customer/3/tips",
        json={"staff_id": 2, "amount": "5.00"},
        headers=headers,
    )

    assert response.status_code == 409
    assert response.json()["data"]["code"] == "IDEMPOTENCY_CONFLICT"
    assert _balance(client, 3) == "100.00"


def test_payout_amount_validation(client):
    response = client.post("/merchant/1/payouts", json={"recipient_id": 2, "amount": "1.234"})

    assert response.status_code == 400
    assert response.json()["data"]["code"] == "VALIDATION_ERROR"


def test_tip_flow(client):
    response = client.post(
        "/customer/3/tips",
        json={"staff_id": 2, "amount": "15.00", "booking_id": 42},
    )

    assert response.status_code == 200
    assert response.json()["data"]["tip"]["customer_balance"] == "85.00"
    assert _balance(client, 2) == "15.00"
    assert client.get("/users/3/points").json()["active_points"] == 5
    assert client.get("/users/2/notifications").json()[0]["message"] == (
        "You received a tip of 15.00 INR for booking MT-0042."
    )


def test_top_up_flow(client, payment_verifier):
    payload = {
        "amount": "100.00",
        "razorpay_order_id": "order_9A33XWu170gUtm",
        "razorpay_payment_id": "pay_29QQoUBi66xm2f",
        "razorpay_signature": "9ef4dffbfd84f1318f6739a3ce19f9d85851857ae648f114332d8401e0949a3d",
    }

    first = client.post("/customer/3/wallet/top-ups", json=payload)
    second = client.post("/customer/3/wallet/top-ups", json=payload)

    assert first.status_code == 200
    assert first.json()["data"]["wallet"]["balance"] == "200.00"
    assert second.status_code == 200
    assert second.json()["message"] == "Top-up already applied"
    assert _balance(client, 3) == "200.00"
    assert client.get("/users/3/points").json()["active_points"] == 2


def test_top_up_with_bad_signature(client, payment_verifier):
    payment_verifier.valid = False

    response = client.post(
        "/customer/3/wallet/top-ups",
        json={
            "amount": "100.00",
            "razorpay_order_id": "order_1",
            "razorpay_payment_id": "pay_1",
            "razorpay_signature": "forged",
        },
    )

    assert response.status_code == 400
    assert response.json()["data"]["code"] == "PAYMENT_VERIFICATION_FAILED"
    assert _balance(client, 3) == "100.00"


def test_unknown_wallet(client):
    response = client.get("/wallets/999")

    assert response.status_code == 404
    assert response.json()["data"]["code"] == "NOT_FOUND"
