import re
import time

from fastapi.testclient import TestClient

from conftest import new_address
from main import create_app

ALICE = {"Authorization": "Bearer tok-alice"}
BOB = {"Authorization": "Bearer tok-bob"}


def create(client, headers=None, **fields):
    body = {"currency": "USD", "message": "Enjoy", "amount_fiat": 50}
    body.update(fields)
    resp = client.post("/cards", json=body, headers=headers or {})
    assert resp.status_code == 200, resp.text
    return resp.json()


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
    assert resp.json()["timestamp"]


def test_sol_price(client):
    assert client.get("/sol-price").json() == {"sol_usd": 150.0, "price_usd": 150.0}


def test_create_and_read_card(client):
    created = create(client)
    assert re.fullmatch(r"\d{6}", created["cvv"])
    assert len(created["public_id"]) == 8
    assert created["deposit_address"]

    resp = client.get(f"/cards/{created['public_id']}")
    assert resp.status_code == 200
    card = resp.json()
    assert card["currency"] == "USD"
    assert card["funded"] is False and card["locked"] is False
    assert "cvv" not in card and "cvv_hash" not in card and "deposit_secret" not in card


def test_create_validation_errors(client):
    missing = client.post("/cards", json={"message": "no currency"})
    assert missing.status_code == 400
    assert "currency" in missing.json()["error"]

    extra = client.post("/cards", json={"currency": "USD", "cvv": "123456"})
    assert extra.status_code == 400

    blank = client.post("/cards", json={"currency": "  "})
    assert blank.status_code == 400
    assert blank.json() == {"error": "currency is required"}


def test_unknown_card_is_404(client):
    resp = client.get("/cards/NOPE2345")
    assert resp.status_code == 404
    assert resp.json() == {"error": "Card not found"}
    assert client.post("/cards/NOPE2345/lock").status_code == 404


def test_lock_twice(client):
    created = create(client)
    first = client.post(f"/cards/{created['public_id']}/lock").json()
    second = client.post(f"/cards/{created['public_id']}/lock").json()
    assert first["already_locked"] is False
    assert second == {"success": True, "public_id": created["public_id"], "already_locked": True}


def test_sync_status_and_balance(client, chain):
    created = create(client)
    chain.balances[created["deposit_address"]] = 500_000_000

    synced = client.post(f"/sync-card-funding/{created['public_id']}").json()
    assert synced["funded"] is True
    assert synced["lamports"] == 500_000_000

    status = client.get(f"/card-status/{created['public_id']}").json()
    assert status["funded"] is True
    assert status["balance"]["sol"] == 0.5

    balance = client.get(f"/card-balance/{created['public_id']}").json()
    assert balance["lamports"] == 500_000_000


def test_sync_chain_failure_is_502(client, chain):
    created = create(client)
    chain.fail_reads = True
    resp = client.post(f"/sync-card-funding/{created['public_id']}")
    assert resp.status_code == 502
    assert resp.json() == {"error": "Blockchain request failed"}


def test_claim_flow(client, chain, treasury):
    created = create(client)
    public_id = created["public_id"]
    chain.balances[created["deposit_address"]] = 1_000_000_000
    destination = new_address()

    not_locked = client.post("/claim-card", json={"public_id": public_id, "cvv": created["cvv"], "destination_wallet": destination})
    assert not_locked.status_code == 409

    client.post(f"/cards/{public_id}/lock")
    wrong = "000000" if created["cvv"] != "000000" else "111111"
    bad_cvv = client.post("/claim-card", json={"public_id": public_id, "cvv": wrong, "destination_wallet": destination})
    assert bad_cvv.status_code == 403
    assert bad_cvv.json() == {"error": "Invalid CVV for this card"}

    bad_dest = client.post("/claim-card", json={"public_id": public_id, "cvv": created["cvv"], "destination_wallet": "nope"})
    assert bad_dest.status_code == 400

    resp = client.post("/claim-card", json={"public_id": public_id, "cvv": created["cvv"], "destination_wallet": destination})
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["success"] is True
    assert body["signature"] == "sig1"
    assert body["destination_wallet"] == destination
    assert abs(body["tax_sol"] - 0.015) < 1e-9

    again = client.post("/claim-card", json={"public_id": public_id, "cvv": created["cvv"], "destination_wallet": destination})
    assert again.status_code == 409
    assert again.json() == {"error": "Card has already been claimed"}
    assert len(chain.sent) == 1


def test_user_cards_require_auth(client):
    resp = client.get("/user/cards")
    assert resp.status_code == 401
    assert resp.json() == {"error": "Not authenticated"}
    assert client.get("/user/cards", headers={"Authorization": "Bearer expired"}).status_code == 401


def test_user_dashboard(client):
    owned = create(client, headers=ALICE)
    create(client, headers=ALICE)
    create(client)

    cards = client.get("/user/cards", headers=ALICE).json()
    assert len(cards) == 2
    assert client.get("/user/cards", headers=BOB).json() == []

    assert client.delete(f"/user/cards/{owned['public_id']}", headers=BOB).status_code == 404
    assert client.delete(f"/user/cards/{owned['public_id']}", headers=ALICE).json()["success"] is True
    assert len(client.get("/user/cards", headers=ALICE).json()) == 1
    # the record survives the dashboard delete
    assert client.get(f"/cards/{owned['public_id']}").status_code == 200


def test_edit_before_lock_only(client):
    owned = create(client, headers=ALICE)
    path = f"/cards/{owned['public_id']}"

    assert client.patch(path, json={"message": "x"}).status_code == 401
    assert client.patch(path, json={"message": "x"}, headers=BOB).status_code == 401
    assert client.patch(path, json={"cvv": "1"}, headers=ALICE).status_code == 400

    edited = client.patch(path, json={"message": "Updated", "amount_fiat": 75}, headers=ALICE)
    assert edited.status_code == 200
    assert edited.json()["message"] == "Updated"
    assert edited.json()["amount_fiat"] == 75

    client.post(f"{path}/lock")
    assert client.patch(path, json={"message": "late"}, headers=ALICE).status_code == 409


def test_operator_refund(client, chain, store):
    created = create(client, refund_wallet=new_address())
    path = f"/cards/{created['public_id']}/refund"

    assert client.post(path).status_code == 401
    assert client.post(path, headers={"X-Operator-Key": "wrong"}).status_code == 401
    assert client.post(path, headers={"X-Operator-Key": "op-key"}).status_code == 409

    chain.balances[created["deposit_address"]] = 1_000_000
    store.update_metadata(created["public_id"], {"expires_at": time.time() - 10}, time.time())
    resp = client.post(path, headers={"X-Operator-Key": "op-key"})
    assert resp.status_code == 200, resp.text
    assert resp.json()["status"] == "refunded"
    assert client.get(f"/cards/{created['public_id']}").json()["refunded"] is True


def test_stats_metrics_activity(client, chain):
    first = create(client, amount_fiat=20)
    create(client, amount_fiat=30)
    chain.balances[first["deposit_address"]] = 1_000_000_000
    client.post(f"/sync-card-funding/{first['public_id']}")

    assert client.get("/stats").json() == {"total_funded": 50.0, "total_burned": 0.0}
    metrics = client.get("/public-metrics").json()
    assert metrics["total_cards"] == 2
    assert metrics["funded_cards"] == 1
    events = client.get("/public-activity", params={"limit": 2}).json()["events"]
    assert len(events) == 2
    assert events[0]["kind"] == "funded"
    assert "*" in events[0]["card"]


def test_unknown_post_route_uses_error_envelope(client):
    resp = client.post("/nope")
    assert resp.status_code in (404, 405)
    assert "error" in resp.json()


def test_spa_fallback(settings, store, chain, prices, notifier, auth, tmp_path):
    (tmp_path / "index.html").write_text("<html>cryptocards</html>")
    (tmp_path / "assets").mkdir()
    (tmp_path / "assets" / "app.js").write_text("console.log('hi')")
    settings.frontend_dist = str(tmp_path)
    spa = TestClient(create_app(settings=settings, store=store, chain=chain, prices=prices, notifier=notifier, auth=auth))

    assert "cryptocards" in spa.get("/claim/ABCD2345").text
    assert "console.log" in spa.get("/assets/app.js").text
    assert "cryptocards" in spa.get("/../../etc/passwd").text
    assert spa.get("/health").json()["status"] == "ok"


def test_spa_fallback_without_build(client):
    resp = client.get("/some/page")
    assert resp.status_code == 404
    assert resp.json() == {"error": "Not found"}


def test_auth_me_and_update_email(client, auth):
    me = client.get("/auth/me", headers=ALICE)
    assert me.status_code == 200
    assert me.json()["user"] == {"id": "user-alice", "username": "alice", "email": "alice@example.com"}

    updated = client.post("/auth/update-email", json={"email": "new@example.com"}, headers=ALICE)
    assert updated.status_code == 200
    assert updated.json()["user"]["email"] == "new@example.com"
    assert client.post("/auth/update-email", json={"email": "bad"}, headers=ALICE).status_code == 400
    assert client.post("/auth/update-email", json={"email": "a@b.c"}).status_code == 401


def test_auth_update_username(client):
    taken = client.post("/auth/update-username", json={"username": "bob"}, headers=ALICE)
    assert taken.status_code == 400
    invalid = client.post("/auth/update-username", json={"username": "a b"}, headers=ALICE)
    assert invalid.status_code == 400
    ok = client.post("/auth/update-username", json={"username": "alice_2"}, headers=ALICE)
    assert ok.json()["user"]["username"] == "alice_2"


def test_auth_email_change(client, auth):
    resp = client.post("/auth/email-change-request", json={"email": "next@example.com"}, headers=ALICE)
    assert resp.status_code == 200
    assert auth.email_changes[0][:2] == ("tok-alice", "next@example.com")

    auth.users_by_token["tok-alice"]["email"] = "next@example.com"
    done = client.post("/auth/email-change-complete", headers=ALICE)
    assert done.json()["user"]["email"] == "next@example.com"


def test_auth_register_and_login(client, auth, notifier):
    resp = client.post("/auth/register", json={"username": "carol", "password": "secret"})
    assert resp.status_code == 200
    assert resp.json()["user"]["username"] == "carol"
    assert auth.created[0]["email"] == "carol+noemail@cryptocards.local"
    assert any("carol" in m for m in notifier.messages)

    dup = client.post("/auth/register", json={"username": "Carol", "password": "secret"})
    assert dup.status_code == 400

    login = client.post("/auth/login", json={"username": "alice", "password": "pw"})
    assert login.status_code == 200
    assert login.json()["token"] == "fresh-token"
    assert client.post("/auth/login", json={"username": "alice", "password": "nope"}).status_code == 401
    assert client.post("/auth/login", json={"username": "ghost", "password": "pw"}).status_code == 401


def test_forgot_password(client, auth):
    assert client.post("/auth/forgot-password", json={"email": "alice@example.com"}).json() == {"success": True}
    assert auth.resets == ["alice@example.com"]
    assert client.post("/auth/forgot-password", json={"email": "nope"}).status_code == 400
