from types import SimpleNamespace

import pytest

import services
from conftest import order_payload
from errors import InsufficientStock, NotFound, ValidationError


@pytest.fixture
def parties(make_buyer, make_seller):
    return make_buyer(), make_seller()


def stock_of(db, product_id):
    return services.products.get(db, product_id)["stock"]


def test_order_decrements_stock(client, db, parties, make_product):
    buyer, seller = parties
    product = make_product(seller["id"], stock=5)

    res = client.post("/api/orders", json=order_payload(buyer["id"], seller["id"], [(product["id"], 2, 20)]))

    assert res.status_code == 201
    body = res.json()
    assert body["status"] == "ORDER_PLACED"
    assert body["total_price"] == 20
    assert stock_of(db, product["id"]) == 3


def test_insufficient_stock_rolls_back_every_line(client, db, parties, make_product):
    buyer, seller = parties
    rice = make_product(seller["id"], name="Rice", stock=5)
    dal = make_product(seller["id"], name="Dal", stock=1)

    res = client.post("/api/orders", json=order_payload(
        buyer["id"], seller["id"], [(rice["id"], 2, 20), (dal["id"], 3, 30)]
    ))

    assert res.status_code == 409
    assert "Insufficient stock" in res.json()["error"]
    assert stock_of(db, rice["id"]) == 5
    assert stock_of(db, dal["id"]) == 1
    assert db["order"].count_documents({}) == 0


def test_only_one_order_gets_the_last_unit(db, parties, make_product):
    buyer, seller = parties
    product = make_product(seller["id"], stock=1)
    payload = order_payload(buyer["id"], seller["id"], [(product["id"], 1, 10)])

    outcomes = []
    for _ in range(2):
        try:
            services.place_order(db, payload, use_transaction=False)
            outcomes.append("ok")
        except InsufficientStock:
            outcomes.append("rejected")

    assert outcomes == ["ok", "rejected"]
    assert stock_of(db, product["id"]) == 0


def test_total_must_match_line_subtotals(db, parties, make_product):
    buyer, seller = parties
    product = make_product(seller["id"])
    payload = order_payload(buyer["id"], seller["id"], [(product["id"], 2, 20)])
    payload["total_price"] = 25

    with pytest.raises(ValidationError):
        services.place_order(db, payload)
    assert stock_of(db, product["id"]) == 5


def test_order_for_unknown_product_is_not_found(client, parties):
    buyer, seller = parties
    res = client.post("/api/orders", json=order_payload(
        buyer["id"], seller["id"], [("64b7f0c2a1b2c3d4e5f60718", 1, 10)]
    ))
    assert res.status_code == 404


def test_order_without_lines_is_rejected(client, parties):
    buyer, seller = parties
    res = client.post("/api/orders", json=order_payload(buyer["id"], seller["id"], []))
    assert res.status_code == 400


def test_buyer_orders_include_line_products(client, db, parties, make_product):
    buyer, seller = parties
    product = make_product(seller["id"])
    services.place_order(db, order_payload(buyer["id"], seller["id"], [(product["id"], 1, 10)]))

    res = client.get(f"/api/buyers/{buyer['id']}/orders")

    assert res.status_code == 200
    orders = res.json()
    assert len(orders) == 1
    assert orders[0]["ordered_products"][0]["product"]["name"] == "Miniket Rice"


def test_order_status_accepts_any_enumerated_value(client, db, parties, make_product):
    buyer, seller = parties
    product = make_product(seller["id"])
    order = services.place_order(db, order_payload(buyer["id"], seller["id"], [(product["id"], 1, 10)]))

    res = client.put(f"/api/orders/{order['id']}/status", json={"status": "DELIVERED"})
    assert res.json()["status"] == "DELIVERED"
    res = client.put(f"/api/orders/{order['id']}/status", json={"status": "PROCESSING"})
    assert res.json()["status"] == "PROCESSING"
    res = client.put(f"/api/orders/{order['id']}/status", json={"status": "LOST"})
    assert res.status_code == 400


def test_missing_buyer_is_not_found(db, make_seller, make_product):
    seller = make_seller()
    product = make_product(seller["id"])
    with pytest.raises(NotFound):
        services.place_order(db, order_payload("64b7f0c2a1b2c3d4e5f60718", seller["id"], [(product["id"], 1, 10)]))


class FakeSession:
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def with_transaction(self, callback):
        return callback(self)


class RecordingCollection:
    """Passes calls through to mongomock and notes the session of every write."""

    def __init__(self, collection, writes):
        self._collection = collection
        self._writes = writes

    def __getattr__(self, name):
        return getattr(self._collection, name)

    def update_one(self, filter, update, session=None):
        self._writes.append(("update_one", session))
        return self._collection.update_one(filter, update)

    def insert_one(self, document, session=None):
        self._writes.append(("insert_one", session))
        return self._collection.insert_one(document)


class TransactionalDb:
    def __init__(self, db):
        self._db = db
        self.writes = []
        self.session = FakeSession()
        self.client = SimpleNamespace(start_session=lambda: self.session)

    def __getitem__(self, name):
        return RecordingCollection(self._db[name], self.writes)


@pytest.fixture
def released(monkeypatch):
    calls = []
    monkeypatch.setattr(services, "_release", lambda db, reserved: calls.append(list(reserved)))
    return calls


def test_transactional_order_writes_inside_session(db, parties, make_product, released):
    buyer, seller = parties
    rice = make_product(seller["id"], name="Rice", stock=5)
    dal = make_product(seller["id"], name="Dal", stock=5)
    tdb = TransactionalDb(db)

    order = services.place_order(
        tdb, order_payload(buyer["id"], seller["id"], [(rice["id"], 2, 20), (dal["id"], 1, 10)]),
        use_transaction=True,
    )

    assert order["status"] == "ORDER_PLACED"
    assert [name for name, _ in tdb.writes] == ["update_one", "update_one", "insert_one"]
    assert all(session is tdb.session for _, session in tdb.writes)
    assert stock_of(db, rice["id"]) == 3
    assert released == []


def test_transactional_order_leaves_rollback_to_the_server(db, parties, make_product, released):
    buyer, seller = parties
    rice = make_product(seller["id"], name="Rice", stock=5)
    dal = make_product(seller["id"], name="Dal", stock=1)
    tdb = TransactionalDb(db)

    with pytest.raises(InsufficientStock):
        services.place_order(
            tdb, order_payload(buyer["id"], seller["id"], [(rice["id"], 2, 20), (dal["id"], 3, 30)]),
            use_transaction=True,
        )

    assert [name for name, _ in tdb.writes] == ["update_one", "update_one"]
    assert all(session is tdb.session for _, session in tdb.writes)
    assert released == []
    # the fake session has no server to abort, so the first decrement stays
    assert stock_of(db, rice["id"]) == 3
    assert db["order"].count_documents({}) == 0
