# tests/test_api.py

import base64

import pytest
from fastapi.testclient import TestClient
from nacl.public import PrivateKey

import chat_node.main as main_mod
from chat_node.address import mailbox_id, profile_address


@pytest.fixture
def client():
    with TestClient(main_mod.app) as c:
        yield c


@pytest.fixture
def node_wallet(client):
    return client.get("/identity").json()["wallet"]


def test_identity(client):
    body = client.get("/identity").json()
    assert body["profile"] == profile_address(body["wallet"])
    assert len(base64.b64decode(body["encryption_public_key"])) == 32


def test_identity_is_stable(client):
    assert client.get("/identity").json() == client.get("/identity").json()


def test_mailbox_lookup(client, node_wallet, bob):
    body = client.get(f"/mailbox/{bob.public_key}").json()
    assert body["mailbox"] == mailbox_id(node_wallet, bob.public_key)
    assert set(body["participants"]) == {node_wallet, bob.public_key}
    assert body["exists"] is False


def test_mailbox_bad_address(client):
    r = client.get("/mailbox/not-an-address")
    assert r.status_code == 400
    assert r.json()["type"] == "InvalidKeyMaterial"


def test_send_and_read(client, node_wallet, bob):
    r = client.post("/messages", data={"receiver": bob.public_key, "message": "hello"})
    assert r.status_code == 200
    sent = r.json()
    assert sent["mailbox"] == mailbox_id(node_wallet, bob.public_key)

    assert client.get(f"/mailbox/{bob.public_key}").json()["exists"] is True
    assert client.get("/history").json()["history"] == [bob.public_key]

    messages = client.get(f"/conversations/{bob.public_key}").json()["messages"]
    assert [(m["text"], m["is_sender"], m["failed"]) for m in messages] == [("hello", True, False)]


def test_send_box_message(client, bob):
    peer_key = base64.b64encode(PrivateKey.generate().public_key.encode()).decode()
    r = client.post(
        "/messages",
        data={"receiver": bob.public_key, "message": "sealed", "scheme": "box", "peer_public_key": peer_key},
    )
    assert r.status_code == 200

    messages = client.get(f"/conversations/{bob.public_key}").json()["messages"]
    assert [(m["text"], m["scheme"]) for m in messages] == [("sealed", "box")]


def test_send_attachment(client, bob):
    r = client.post(
        "/messages",
        data={"receiver": bob.public_key},
        files={"file": ("pic.png", b"\x89PNG-bytes", "image/png")},
    )
    assert r.status_code == 200

    [msg] = client.get(f"/conversations/{bob.public_key}").json()["messages"]
    assert msg["text"] == "File attachment"
    blob = client.get(f"/attachments/{msg['image']}")
    assert blob.status_code == 200
    assert blob.content == b"\x89PNG-bytes"


def test_missing_attachment(client):
    r = client.get(f"/attachments/{'0' * 64}")
    assert r.status_code == 502


def test_invalid_scheme(client, bob):
    r = client.post("/messages", data={"receiver": bob.public_key, "message": "x", "scheme": "rot13"})
    assert r.status_code == 400


def test_upload_too_large(client, bob, monkeypatch):
    monkeypatch.setattr(main_mod, "MAX_UPLOAD_SIZE", 10)
    r = client.post("/messages", data={"receiver": bob.public_key, "message": "x" * 100})
    assert r.status_code == 413


def test_nicknames(client, bob):
    r = client.post("/nicknames", json={"wallet": bob.public_key, "nickname": "bobby"})
    assert r.status_code == 404

    assert client.post("/profile").status_code == 200
    assert client.post("/nicknames", json={"wallet": bob.public_key, "nickname": "bobby"}).status_code == 200
    assert client.get("/nicknames").json()["nicknames"] == [
        {"wallet": bob.public_key, "nickname": "bobby"}
    ]

    r = client.post("/nicknames", json={"wallet": bob.public_key, "nickname": "b" * 40})
    assert r.status_code == 409
    assert r.json()["code"] == 6001


def test_empty_lists(client):
    assert client.get("/nicknames").json() == {"nicknames": []}
    assert client.get("/history").json() == {"history": []}


def test_send_box_unusable_peer_key(client, bob):
    zero_key = base64.b64encode(bytes(32)).decode()
    r = client.post(
        "/messages",
        data={"receiver": bob.public_key, "message": "x", "scheme": "box", "peer_public_key": zero_key},
    )
    assert r.status_code == 400
    assert r.json()["type"] == "InvalidKeyMaterial"
