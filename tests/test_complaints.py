from conftest import admin_headers


def test_buyer_files_and_lists_complaint(client, make_buyer, make_seller):
    buyer = make_buyer()
    seller = make_seller()

    res = client.post(
        f"/api/complaints/buyer/{buyer['id']}",
        data={"accused_id": seller["id"], "message": "Rice arrived wet"},
        files={"image": ("proof.jpg", b"\xff\xd8\xff jpeg", "image/jpeg")},
    )
    assert res.status_code == 201
    complaint = res.json()
    assert complaint["status"] == "PENDING"
    assert complaint["complainant_id"] == buyer["id"]
    assert complaint["image"].endswith(".jpg")

    mine = client.get(f"/api/complaints/buyer/{buyer['id']}").json()
    assert len(mine) == 1
    assert mine[0]["accused"]["business_name"] == "Karim Traders"
    assert mine[0]["complainant"]["name"] == "Rahim"
    assert len(client.get("/api/buyer-complaints").json()) == 1
    assert client.get("/api/seller-complaints").json() == []


def test_seller_complaint_requires_known_buyer(client, make_seller):
    seller = make_seller()
    res = client.post(
        f"/api/complaints/seller/{seller['id']}",
        data={"accused_id": "64b7f0c2a1b2c3d4e5f60718", "message": "Never paid"},
    )
    assert res.status_code == 404


def test_complaint_without_message_is_rejected(client, make_buyer, make_seller):
    buyer = make_buyer()
    seller = make_seller()
    res = client.post(f"/api/complaints/seller/{seller['id']}", data={"accused_id": buyer["id"]})
    assert res.status_code == 400


def test_admin_resolves_complaint(client, db, make_buyer, make_seller):
    buyer = make_buyer()
    seller = make_seller()
    complaint = client.post(
        f"/api/complaints/seller/{seller['id']}",
        data={"accused_id": buyer["id"], "message": "Never paid"},
    ).json()

    res = client.put(
        f"/api/admin/complaints/seller/{complaint['id']}",
        json={"status": "RESOLVED", "response": "Buyer warned"},
        headers=admin_headers(client, db),
    )

    assert res.status_code == 200
    assert res.json()["status"] == "RESOLVED"
    assert res.json()["response"] == "Buyer warned"
    listed = client.get(f"/api/complaints/seller/{seller['id']}").json()
    assert listed[0]["accused"]["name"] == "Rahim"


def test_complaint_without_accused_is_a_validation_error(client, db, make_buyer):
    buyer = make_buyer()
    res = client.post(f"/api/complaints/buyer/{buyer['id']}", data={"message": "Rice arrived wet"})
    assert res.status_code == 400
    assert res.json()["error"].startswith("accused_id")
    assert db["buyercomplaint"].count_documents({}) == 0


def test_complaint_collections_accept_posts(client, make_buyer, make_seller):
    buyer = make_buyer()
    seller = make_seller()

    res = client.post(
        "/api/buyer-complaints",
        data={"complainant_id": buyer["id"], "accused_id": seller["id"], "message": "Late delivery"},
    )
    assert res.status_code == 201
    assert res.json()["complainant_id"] == buyer["id"]

    res = client.post(
        "/api/seller-complaints",
        data={"complainant_id": seller["id"], "accused_id": buyer["id"], "message": "Refused parcel"},
    )
    assert res.status_code == 201
    assert res.json()["accused_id"] == buyer["id"]

    assert len(client.get(f"/api/complaints/buyer/{buyer['id']}").json()) == 1
    assert len(client.get(f"/api/complaints/seller/{seller['id']}").json()) == 1


def test_complaint_collection_post_requires_complainant(client, make_seller):
    seller = make_seller()
    res = client.post("/api/buyer-complaints", data={"accused_id": seller["id"], "message": "Late delivery"})
    assert res.status_code == 400
