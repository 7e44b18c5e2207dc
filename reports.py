"""
Transaction reports for a buyer or a seller.

Candidate transactions are narrowed in MongoDB (orders of the party, then
transactions pointing at those orders); the join, projection and sort run
through `pipeline.Pipeline` so the report shape does not depend on the store.
"""
import logging
from collections import Counter
from typing import Any, Dict, List

from pymongo.database import Database

from database import find_by_ids, serialize
from pipeline import Pipeline

logger = logging.getLogger(__name__)


def _loader(db: Database, collection_name: str):
    return lambda ids: find_by_ids(db, collection_name, ids)


def _candidate_transactions(db: Database, party_field: str, party_id: str) -> List[dict]:
    order_ids = [str(o["_id"]) for o in db["order"].find({party_field: party_id}, {"_id": 1})]
    if not order_ids:
        return []
    return list(db["transaction"].find({"order_id": {"$in": order_ids}}))


def _total_amount(rows: List[dict]) -> float:
    return Pipeline(rows).reduce(lambda total, row: total + float(row.get("amount") or 0), 0.0)


def buyer_report(db: Database, buyer_id: str) -> Dict[str, Any]:
    rows = (
        Pipeline(_candidate_transactions(db, "buyer_id", buyer_id))
        .lookup(_loader(db, "order"), "order_id", "order")
        .unwind("order")
        .match({"order.buyer_id": buyer_id})
        .lookup(_loader(db, "product"), "order.ordered_products.product_id", "products")
        .project({
            "transaction_id": lambda r: str(r["_id"]),
            "order_id": "order_id",
            "amount": "amount",
            "payment_type": "payment_type",
            "status": "status",
            "order_status": "order.status",
            "order_date": "order.created_at",
            "products": lambda r: serialize(r["products"]),
            "shipping_address": "order.shipping_address",
            "billing_address": "order.billing_address",
            "created_at": "created_at",
        })
        .sort("created_at", descending=True)
        .run()
    )
    statuses = Counter(row["status"] for row in rows)
    logger.debug("Buyer %s report: %d transactions", buyer_id, len(rows))
    return {
        "transactions": rows,
        "summary": {
            "total_transactions": len(rows),
            "total_amount": _total_amount(rows),
            "successful_transactions": statuses["SUCCESS"],
            "pending_transactions": statuses["PENDING"],
            "failed_transactions": statuses["FAILED"],
        },
    }


def seller_report(db: Database, seller_id: str) -> Dict[str, Any]:
    rows = (
        Pipeline(_candidate_transactions(db, "seller_id", seller_id))
        .lookup(_loader(db, "order"), "order_id", "order")
        .unwind("order")
        .match({"order.seller_id": seller_id})
        .lookup(_loader(db, "buyer"), "order.buyer_id", "buyer")
        .unwind("buyer")
        .project({
            "transaction_id": lambda r: str(r["_id"]),
            "order_id": "order_id",
            "amount": "amount",
            "payment_type": "payment_type",
            "status": "status",
            "order_status": "order.status",
            "order_date": "order.created_at",
            "buyer_name": "buyer.name",
            "buyer_phone": "buyer.phone",
            "shipping_address": "order.shipping_address",
            "created_at": "created_at",
        })
        .sort("created_at", descending=True)
        .run()
    )
    statuses = Counter(row["status"] for row in rows)
    payment_types = Counter(row["payment_type"] for row in rows)
    logger.debug("Seller %s report: %d transactions", seller_id, len(rows))
    return {
        "transactions": rows,
        "summary": {
            "total_transactions": len(rows),
            "total_amount": _total_amount(rows),
            "by_status": {
                "successful": statuses["SUCCESS"],
                "pending": statuses["PENDING"],
                "failed": statuses["FAILED"],
            },
            "by_payment_type": {
                "cash": payment_types["CASH"],
                "card": payment_types["CARD"],
            },
        },
    }
