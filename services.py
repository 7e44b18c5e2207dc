"""
Entity services: CRUD per collection plus the marketplace rules that sit on
top of it (order placement with stock reservation, one review per buyer and
product, rating averages, account status changes).
"""
import logging
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel
from pydantic import ValidationError as SchemaError
from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import schemas
import settings
from auth import get_password_hash
from database import create_document, find_by_ids, get_documents, now, serialize, to_object_id
from errors import Conflict, InsufficientStock, NotFound, ValidationError
from pipeline import Pipeline

logger = logging.getLogger(__name__)

NEWEST_FIRST = [("created_at", DESCENDING)]


def validate(schema: Type[BaseModel], data: Dict[str, Any]) -> BaseModel:
    try:
        return schema.model_validate(data)
    except SchemaError as exc:
        first = exc.errors()[0]
        field = ".".join(str(p) for p in first["loc"])
        message = first["msg"]
        raise ValidationError(f"{field}: {message}" if field else message) from exc


class EntityService:
    """Create, read, update and delete documents of one collection."""

    def __init__(self, collection: str, schema: Type[BaseModel], label: str,
                 duplicate_message: Optional[str] = None):
        self.collection = collection
        self.schema = schema
        self.label = label
        self.duplicate_message = duplicate_message or f"{label} already exists"

    def create(self, db: Database, fields: Dict[str, Any]) -> dict:
        model = validate(self.schema, fields)
        try:
            new_id = create_document(db, self.collection, model)
        except DuplicateKeyError:
            raise Conflict(self.duplicate_message)
        logger.info("Created %s %s", self.collection, new_id)
        return self.get(db, new_id)

    def get_raw(self, db: Database, doc_id: str) -> dict:
        oid = to_object_id(doc_id)
        doc = db[self.collection].find_one({"_id": oid}) if oid else None
        if not doc:
            raise NotFound(f"{self.label} not found")
        return doc

    def get(self, db: Database, doc_id: str) -> dict:
        return serialize(self.get_raw(db, doc_id))

    def list(self, db: Database, filter_dict: Optional[dict] = None, limit: Optional[int] = None,
             sort: Optional[List[tuple]] = None) -> List[dict]:
        return serialize(get_documents(db, self.collection, filter_dict, limit, sort))

    def update(self, db: Database, doc_id: str, fields: Dict[str, Any]) -> dict:
        current = self.get_raw(db, doc_id)
        changes = {k: v for k, v in fields.items() if k in self.schema.model_fields}
        if not changes:
            return serialize(current)
        merged = {k: current[k] for k in self.schema.model_fields if k in current}
        merged.update(changes)
        model = validate(self.schema, merged)
        dumped = model.model_dump()
        updates = {k: dumped[k] for k in changes}
        updates["updated_at"] = now()
        try:
            db[self.collection].update_one({"_id": current["_id"]}, {"$set": updates})
        except DuplicateKeyError:
            raise Conflict(self.duplicate_message)
        return self.get(db, doc_id)

    def delete(self, db: Database, doc_id: str) -> dict:
        oid = to_object_id(doc_id)
        result = db[self.collection].delete_one({"_id": oid}) if oid else None
        if result is None or result.deleted_count == 0:
            raise NotFound(f"{self.label} not found")
        logger.info("Deleted %s %s", self.collection, doc_id)
        return {"message": f"{self.label} deleted successfully"}

    def count(self, db: Database) -> int:
        return db[self.collection].count_documents({})


buyers = EntityService("buyer", schemas.Buyer, "Buyer", "Email already registered")
sellers = EntityService("seller", schemas.Seller, "Seller", "Email already registered")
admins = EntityService("admin", schemas.Admin, "Admin", "Email already registered")
products = EntityService("product", schemas.Product, "Product")
orders = EntityService("order", schemas.Order, "Order")
reviews = EntityService("review", schemas.Review, "Review", "You have already reviewed this product")
transactions = EntityService("transaction", schemas.Transaction, "Transaction")
buyer_complaints = EntityService("buyercomplaint", schemas.BuyerComplaint, "Complaint")
seller_complaints = EntityService("sellercomplaint", schemas.SellerComplaint, "Complaint")

ACCOUNTS = {"buyer": buyers, "seller": sellers, "admin": admins}
COMPLAINTS = {"buyer": buyer_complaints, "seller": seller_complaints}


def _loader(db: Database, collection: str):
    return lambda ids: find_by_ids(db, collection, ids)


def _first(records: List[dict]) -> Optional[dict]:
    return serialize(records[0]) if records else None


# ========== ACCOUNTS ==========

def register_account(db: Database, kind: str, fields: Dict[str, Any], password: Optional[str]) -> dict:
    if not password:
        raise ValidationError("password: Field required")
    data = dict(fields)
    if data.get("email"):
        data["email"] = str(data["email"]).strip().lower()
    data["password_hash"] = get_password_hash(password)
    return ACCOUNTS[kind].create(db, data)


def set_status(service: EntityService, db: Database, doc_id: str, status: Optional[str]) -> dict:
    """Overwrite an account status. Any enumerated status may follow any other."""
    if not status:
        raise ValidationError("status: Field required")
    return service.update(db, doc_id, {"status": status})


def ensure_default_admin(db: Database) -> None:
    if not settings.DEFAULT_ADMIN_EMAIL or not settings.DEFAULT_ADMIN_PASSWORD:
        return
    email = settings.DEFAULT_ADMIN_EMAIL.lower()
    if db["admin"].find_one({"email": email}):
        return
    register_account(db, "admin", {"email": email, "name": "Administrator"}, settings.DEFAULT_ADMIN_PASSWORD)
    logger.info("Bootstrapped admin account %s", email)


# ========== PRODUCTS ==========

def create_product(db: Database, fields: Dict[str, Any], uploaded_image: Optional[str] = None) -> dict:
    data = dict(fields)
    if uploaded_image:
        data["image"] = uploaded_image
    elif not data.get("image"):
        raise ValidationError("Image is required")
    product = validate(schemas.Product, data)
    sellers.get_raw(db, product.seller_id)
    return products.create(db, product.model_dump())


def list_products(db: Database, limit: Optional[int] = None, seller_id: Optional[str] = None) -> List[dict]:
    filter_dict = {"seller_id": seller_id} if seller_id else None
    rows = (
        Pipeline(get_documents(db, "product", filter_dict, limit, NEWEST_FIRST))
        .lookup(_loader(db, "seller"), "seller_id", "seller")
        .run()
    )
    for row in rows:
        row["seller"] = _first(row["seller"])
    return serialize(rows)


def get_product(db: Database, product_id: str) -> dict:
    product = products.get(db, product_id)
    seller = find_by_ids(db, "seller", [product["seller_id"]])
    product["seller"] = _first(seller)
    return product


# ========== ORDERS ==========

def _reserve_and_insert(db: Database, order: schemas.Order, session=None) -> str:
    reserved: List[schemas.OrderedProduct] = []
    try:
        for item in order.ordered_products:
            result = db["product"].update_one(
                {"_id": to_object_id(item.product_id), "stock": {"$gte": item.quantity}},
                {"$inc": {"stock": -item.quantity}, "$set": {"updated_at": now()}},
                session=session,
            )
            if result.modified_count == 0:
                raise InsufficientStock(item.product_id, item.quantity)
            reserved.append(item)
        return create_document(db, "order", order, session=session)
    except Exception:
        # a transaction is rolled back by the server, plain writes are undone here
        if session is None:
            _release(db, reserved)
        raise


def _release(db: Database, reserved: List[schemas.OrderedProduct]) -> None:
    for item in reserved:
        db["product"].update_one(
            {"_id": to_object_id(item.product_id)},
            {"$inc": {"stock": item.quantity}, "$set": {"updated_at": now()}},
        )
    if reserved:
        logger.warning("Released stock for %d order lines", len(reserved))


def place_order(db: Database, payload: Dict[str, Any], use_transaction: Optional[bool] = None) -> dict:
    """Persist an order and decrement stock for every line as one unit.

    Either every line's stock is reserved and the order stored, or nothing
    changes and InsufficientStock / ValidationError / NotFound is raised.
    """
    order = validate(schemas.Order, payload)
    buyers.get_raw(db, order.buyer_id)
    sellers.get_raw(db, order.seller_id)
    wanted = {item.product_id for item in order.ordered_products}
    found = {str(p["_id"]) for p in find_by_ids(db, "product", wanted)}
    missing = sorted(wanted - found)
    if missing:
        raise NotFound(f"Product not found: {missing[0]}")

    if settings.ORDER_TRANSACTIONS if use_transaction is None else use_transaction:
        with db.client.start_session() as session:
            order_id = session.with_transaction(lambda s: _reserve_and_insert(db, order, s))
    else:
        order_id = _reserve_and_insert(db, order)
    logger.info("Placed order %s for buyer %s (%d lines)", order_id, order.buyer_id, len(order.ordered_products))
    return orders.get(db, order_id)


def _attach_line_products(db: Database, rows: List[dict]) -> List[dict]:
    ids = [item["product_id"] for row in rows for item in row.get("ordered_products", [])]
    by_id = {str(p["_id"]): serialize(p) for p in find_by_ids(db, "product", ids)}
    for row in rows:
        for item in row.get("ordered_products", []):
            item["product"] = by_id.get(item["product_id"])
    return rows


def orders_for(db: Database, party_field: str, party_id: str) -> List[dict]:
    rows = orders.list(db, {party_field: party_id}, sort=NEWEST_FIRST)
    return _attach_line_products(db, rows)


def create_transaction(db: Database, fields: Dict[str, Any]) -> dict:
    transaction = validate(schemas.Transaction, fields)
    orders.get_raw(db, transaction.order_id)
    return transactions.create(db, transaction.model_dump())


# ========== REVIEWS ==========

def has_reviewed(db: Database, buyer_id: str, product_id: str) -> bool:
    return db["review"].find_one({"buyer_id": buyer_id, "product_id": product_id}) is not None


def create_review(db: Database, fields: Dict[str, Any], uploaded_image: Optional[str] = None) -> dict:
    data = dict(fields)
    data["image"] = uploaded_image or data.get("image")
    review = validate(schemas.Review, data)
    buyers.get_raw(db, review.buyer_id)
    products.get_raw(db, review.product_id)
    orders.get_raw(db, review.order_id)
    if has_reviewed(db, review.buyer_id, review.product_id):
        raise Conflict(reviews.duplicate_message)
    return reviews.create(db, review.model_dump())


def average_rating(rows: List[dict]) -> float:
    ratings = [r["rating"] for r in rows if r.get("rating") is not None]
    if not ratings:
        return 0
    return sum(ratings) / len(ratings)


def product_reviews(db: Database, product_id: str) -> Dict[str, Any]:
    rows = (
        Pipeline(get_documents(db, "review", {"product_id": product_id}, sort=NEWEST_FIRST))
        .lookup(_loader(db, "buyer"), "buyer_id", "buyer")
        .run()
    )
    for row in rows:
        row["buyer"] = _first(row["buyer"])
    return {"reviews": serialize(rows), "averageRating": average_rating(rows)}


def buyer_reviews(db: Database, buyer_id: str) -> List[dict]:
    rows = (
        Pipeline(get_documents(db, "review", {"buyer_id": buyer_id}, sort=NEWEST_FIRST))
        .lookup(_loader(db, "product"), "product_id", "product")
        .run()
    )
    for row in rows:
        row["product"] = _first(row["product"])
    return serialize(rows)


# ========== COMPLAINTS ==========

def file_complaint(db: Database, kind: str, complainant_id: str, fields: Dict[str, Any],
                   uploaded_image: Optional[str] = None) -> dict:
    # buyers complain about sellers and sellers about buyers
    complainant, accused = (buyers, sellers) if kind == "buyer" else (sellers, buyers)
    data = dict(fields, complainant_id=complainant_id)
    data["image"] = uploaded_image or data.get("image")
    complaint = validate(COMPLAINTS[kind].schema, data)
    complainant.get_raw(db, complaint.complainant_id)
    accused.get_raw(db, complaint.accused_id)
    return COMPLAINTS[kind].create(db, complaint.model_dump())


def list_complaints(db: Database, kind: str, complainant_id: Optional[str] = None) -> List[dict]:
    complainant, accused = ("buyer", "seller") if kind == "buyer" else ("seller", "buyer")
    filter_dict = {"complainant_id": complainant_id} if complainant_id else None
    rows = (
        Pipeline(get_documents(db, COMPLAINTS[kind].collection, filter_dict, sort=NEWEST_FIRST))
        .lookup(_loader(db, complainant), "complainant_id", "complainant")
        .lookup(_loader(db, accused), "accused_id", "accused")
        .run()
    )
    for row in rows:
        row["complainant"] = _first(row["complainant"])
        row["accused"] = _first(row["accused"])
    return serialize(rows)


def respond_to_complaint(db: Database, kind: str, complaint_id: str, status: Optional[str],
                         response: Optional[str]) -> dict:
    changes = {k: v for k, v in (("status", status), ("response", response)) if v is not None}
    if not changes:
        raise ValidationError("status or response is required")
    return COMPLAINTS[kind].update(db, complaint_id, changes)


# ========== STATISTICS ==========

def statistics(db: Database) -> Dict[str, int]:
    return {
        "totalProducts": products.count(db),
        "totalSellers": sellers.count(db),
        "totalBuyers": buyers.count(db),
    }


def dashboard(db: Database) -> Dict[str, int]:
    return {
        "totalProducts": products.count(db),
        "totalBuyers": buyers.count(db),
        "totalSellers": sellers.count(db),
        "totalOrders": orders.count(db),
        "totalTransactions": transactions.count(db),
        "buyerComplaints": buyer_complaints.count(db),
        "sellerComplaints": seller_complaints.count(db),
    }
