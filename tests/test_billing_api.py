ADMIN = {"x-admin-token": "test-admin-token"}


def test_admin_grant_and_balance(client) -> None:
    r = client.post('/v1/admin/credits/grant', json={"user_id": "u-42", "amount": 100, "note": "starter pack"}, headers=ADMIN)
    assert r.status_code == 200
    assert r.json()['data']['credits'] == 100

    rb = client.get('/v1/credits/u-42')
    assert rb.status_code == 200
    data = rb.json()['data']
    assert data['balance']['credits'] == 100
    assert data['balance']['total_earned'] == 100
    tx = data['recent_transactions'][0]
    assert (tx['kind'], tx['amount'], tx['balance_after']) == ("recharge", 100, 100)


def test_gift_grant_is_recorded_as_gift(client) -> None:
    r = client.post('/v1/admin/credits/grant', json={"user_id": "u-1", "amount": 5, "kind": "gift"}, headers=ADMIN)
    assert r.status_code == 200
    assert client.get('/v1/credits/u-1').json()['data']['recent_transactions'][0]['kind'] == "gift"


def test_grant_rejects_refund_kind_and_bad_amount(client) -> None:
    r = client.post('/v1/admin/credits/grant', json={"user_id": "u-1", "amount": 5, "kind": "refund"}, headers=ADMIN)
    assert r.status_code == 422

    r = client.post('/v1/admin/credits/grant', json={"user_id": "u-1", "amount": 0}, headers=ADMIN)
    assert r.status_code == 400
    assert r.json()['error']['code'] == "INVALID_INPUT"


def test_admin_auth_required(client) -> None:
    r = client.post('/v1/admin/credits/grant', json={"user_id": "u-1", "amount": 10})
    assert r.status_code == 401
    r = client.get('/v1/admin/queues/stats', headers={"x-admin-token": "wrong"})
    assert r.status_code == 401


def test_check_credits(client) -> None:
    client.post('/v1/admin/credits/grant', json={"user_id": "u-1", "amount": 3}, headers=ADMIN)

    ok = client.get('/v1/credits/u-1/check', params={"amount": 2}).json()['data']
    short = client.get('/v1/credits/u-1/check', params={"amount": 5}).json()['data']

    assert ok == {"sufficient": True, "balance": 3, "required": 2, "shortfall": 0}
    assert short['sufficient'] is False
    assert short['shortfall'] == 2


def test_unknown_user_has_empty_balance(client) -> None:
    data = client.get('/v1/credits/nobody').json()['data']
    assert data['balance']['credits'] == 0
    assert data['recent_transactions'] == []
