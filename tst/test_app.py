import pytest

from conftest import tx

ALICE = ("alice", "correct horse")
BOB = ("bob", "battery staple")


@pytest.fixture
def alice(client):
    resp = client.post("/createaccount", json={"username": ALICE[0], "password": ALICE[1]})
    assert resp.status_code == 201, resp.text
    return ALICE


def _statuses(resp):
    return {r["address"]: r["status"] for r in resp.json()["results"]}


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_create_account_twice(client, alice):
    resp = client.post("/createaccount", json={"username": "alice", "password": "other"})
    assert resp.status_code == 409, resp.text
    assert resp.json()["code"] == 1001


def test_password_is_stored_hashed(client, store, alice):
    account = store.get_account("alice")
    assert account.password_hash != ALICE[1]
    assert account.password_hash.startswith("$2")


def test_requests_need_valid_credentials(client, alice):
    resp = client.get("/getaccountinfo")
    assert resp.status_code == 401
    assert resp.json() == {"code": 1002, "message": "Invalid username or password"}

    resp = client.get("/getaccountinfo", auth=("alice", "wrong"))
    assert resp.status_code == 401
    assert resp.json()["code"] == 1002

    resp = client.get("/getaccountinfo", auth=("mallory", "whatever"))
    assert resp.status_code == 401


def test_add_addresses_and_account_info(client, provider, alice):
    provider.set("A", 500, [tx("h1", 1, 500)])
    provider.set("B", 250, [tx("h2", 3, 100), tx("h3", 4, 150)])

    resp = client.post("/addaddresses", json={"addresses": ["A", "B", "A"]}, auth=alice)
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert [r["status"] for r in body["results"]] == ["ADDED", "ADDED", "ALREADY_TRACKED"]
    assert body["failed"] == 0

    info = client.get("/getaccountinfo", auth=alice).json()
    assert info["username"] == "alice"
    assert info["balance"] == 750
    assert info["transaction_count"] == 3
    by_address = {a["address"]: a for a in info["addresses"]}
    assert by_address["B"]["balance"] == 250
    assert [t["hash"] for t in by_address["B"]["transactions"]] == ["h2", "h3"]


def test_add_batch_continues_past_provider_failure(client, store, provider, alice):
    provider.set("A", 500, [tx("h1", 1, 500)])
    provider.set("C", 10, [tx("h9", 2, 10)])
    provider.unavailable.add("B")

    resp = client.post("/addaddresses", json={"addresses": ["A", "B", "C"]}, auth=alice)

    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert _statuses(resp) == {"A": "ADDED", "B": "ERROR", "C": "ADDED"}
    assert body["processed"] == 2
    assert body["failed"] == 1
    assert "unavailable" in body["results"][1]["detail"]
    assert store.get_address("B") is None


def test_address_owned_by_another_account(client, provider, alice):
    client.post("/createaccount", json={"username": BOB[0], "password": BOB[1]})
    provider.set("A", 500, [tx("h1", 1, 500)])
    client.post("/addaddresses", json={"addresses": ["A"]}, auth=alice)

    resp = client.post("/addaddresses", json={"addresses": ["A"]}, auth=BOB)
    assert _statuses(resp) == {"A": "ALREADY_TRACKED"}

    resp = client.request("DELETE", "/removeaddresses", json={"addresses": ["A"]}, auth=BOB)
    assert _statuses(resp) == {"A": "NOT_TRACKED"}

    assert client.get("/getaccountinfo", auth=alice).json()["balance"] == 500
    assert client.get("/getaccountinfo", auth=BOB).json()["addresses"] == []


def test_remove_addresses(client, store, provider, alice):
    provider.set("A", 500, [tx("h1", 1, 500)])
    client.post("/addaddresses", json={"addresses": ["A"]}, auth=alice)

    resp = client.request("DELETE", "/removeaddresses", json={"addresses": ["A", "Z"]}, auth=alice)

    assert resp.status_code == 200, resp.text
    assert _statuses(resp) == {"A": "REMOVED", "Z": "NOT_TRACKED"}
    assert store.count_transactions("A") == 0
    info = client.get("/getaccountinfo", auth=alice).json()
    assert info["balance"] == 0
    assert info["transaction_count"] == 0


def test_update_account_refreshes_every_address(client, provider, alice):
    provider.set("A", 500, [tx("h1", 1, 500)])
    provider.set("B", 100, [tx("h2", 1, 100)])
    client.post("/addaddresses", json={"addresses": ["A", "B"]}, auth=alice)

    provider.set("A", 300, [tx("h1", 1, 500), tx("h3", 2, -200)])
    resp = client.put("/updateaccount", auth=alice)

    assert resp.status_code == 200, resp.text
    assert _statuses(resp) == {"A": "UPDATED", "B": "NO_CHANGE"}
    assert ("A", 1) in provider.calls
    info = client.get("/getaccountinfo", auth=alice).json()
    assert info["balance"] == 400
    assert info["transaction_count"] == 3


def test_update_account_full_resync(client, provider, alice):
    provider.set("A", 500, [tx("h1", 1, 500)])
    client.post("/addaddresses", json={"addresses": ["A"]}, auth=alice)

    provider.set("A", 700, [tx("h2", 2, 200), tx("h1", 1, 500)])
    resp = client.put("/updateaccount", params={"full": "true"}, auth=alice)

    assert resp.json()["results"][0]["new_transactions"] == 2
    info = client.get("/getaccountinfo", auth=alice).json()
    assert info["balance"] == 700
    assert [t["hash"] for t in info["addresses"][0]["transactions"]] == ["h2", "h1"]


def test_address_details(client, provider, alice):
    provider.set("A", 500, [tx("h1", 1, 500)])
    client.post("/addaddresses", json={"addresses": ["A"]}, auth=alice)

    resp = client.get("/addresses/A", auth=alice)
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["balance"] == 500
    assert body["transaction_count"] == 1
    assert body["sync_status"] == "DONE"
    assert body["last_synced_at"] is not None


def test_address_details_not_found(client, provider, alice):
    client.post("/createaccount", json={"username": BOB[0], "password": BOB[1]})
    provider.set("A", 500, [tx("h1", 1, 500)])
    client.post("/addaddresses", json={"addresses": ["A"]}, auth=alice)

    assert client.get("/addresses/missing", auth=alice).status_code == 404
    resp = client.get("/addresses/A", auth=BOB)
    assert resp.status_code == 404
    assert resp.json()["code"] == 2001
