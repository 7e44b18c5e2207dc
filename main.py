import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, File, Form, Query, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel
from pymongo.database import Database
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import database
import reports
import services
import settings
from auth import authenticate, create_access_token, get_password_hash, require_admin
from database import ensure_indexes, get_db, serialize
from errors import MarketplaceError, NotFound
from storage import BlobStore, get_blob_store

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("haatbazar")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        try:
            ensure_indexes(database.db)
            services.ensure_default_admin(database.db)
        except PyMongoError as exc:
            logger.error("Database setup failed: %s", exc)
    logger.info("HaatBazar API started")
    yield


app = FastAPI(title="HaatBazar API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

os.makedirs(settings.UPLOAD_DIR, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=settings.UPLOAD_DIR), name="uploads")


# Error handling
@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request, exc: MarketplaceError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request, exc: RequestValidationError):
    first = exc.errors()[0]
    field = ".".join(str(p) for p in first["loc"] if p not in ("body", "query", "path"))
    message = f"{field}: {first['msg']}" if field else first["msg"]
    return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)


@app.exception_handler(PyMongoError)
async def store_error_handler(request, exc: PyMongoError):
    if exc.timeout:
        logger.warning("Store timeout on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=503, content={"error": "Service temporarily unavailable"})
    logger.exception("Store error on %s", request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.exception_handler(Exception)
async def unhandled_error_handler(request, exc: Exception):
    logger.exception("Unhandled error on %s", request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def _present(**fields) -> Dict[str, Any]:
    return {k: v for k, v in fields.items() if v is not None}


# Routes
@app.get("/")
def root():
    return {"message": "HaatBazar API is running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if settings.DATABASE_URL else "❌ Not Set",
        "database_name": settings.DATABASE_NAME,
        "connection_status": "Not Connected",
        "collections": [],
    }
    if database.db is None:
        return response
    try:
        response["collections"] = database.db.list_collection_names()[:10]
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
    except PyMongoError as e:
        response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    return response


@app.get("/api/statistics")
def get_statistics(db: Database = Depends(get_db)):
    return services.statistics(db)


# Auth endpoints
class LoginPayload(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class BuyerRegister(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    password: Optional[str] = None
    billing_address: Optional[str] = None
    shipping_address: Optional[str] = None
    nid: Optional[str] = None


def _login(db: Database, kind: str, body: LoginPayload):
    account = authenticate(db, kind, body.email, body.password)
    token = create_access_token({"sub": str(account["_id"]), "kind": kind})
    return {**serialize(account), "access_token": token, "token_type": "bearer"}


@app.post("/api/auth/buyer/login")
def buyer_login(body: LoginPayload, db: Database = Depends(get_db)):
    return _login(db, "buyer", body)


@app.post("/api/auth/seller/login")
def seller_login(body: LoginPayload, db: Database = Depends(get_db)):
    return _login(db, "seller", body)


@app.post("/api/auth/admin/login")
def admin_login(body: LoginPayload, db: Database = Depends(get_db)):
    return _login(db, "admin", body)


@app.post("/api/auth/buyer/register", status_code=201)
def register_buyer(body: BuyerRegister, db: Database = Depends(get_db)):
    fields = body.model_dump(exclude={"password"}, exclude_none=True)
    return services.register_account(db, "buyer", fields, body.password)


@app.post("/api/auth/seller/register", status_code=201)
def register_seller(
    email: str = Form(...),
    password: str = Form(...),
    business_name: str = Form(...),
    division: str = Form(...),
    phone: str = Form(...),
    address: Optional[str] = Form(None),
    nid: Optional[str] = Form(None),
    tin_id: Optional[str] = Form(None),
    tin_doc: Optional[UploadFile] = File(None, alias="tinDoc"),
    db: Database = Depends(get_db),
    blobs: BlobStore = Depends(get_blob_store),
):
    doc, doc_type = blobs.read_document(tin_doc)
    fields = _present(
        email=email, business_name=business_name, division=division, phone=phone,
        address=address, nid=nid, tin_id=tin_id, tin_doc=doc, tin_doc_type=doc_type,
    )
    return services.register_account(db, "seller", fields, password)


class AdminCreate(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None
    password: Optional[str] = None


@app.post("/api/admin/admins", status_code=201, dependencies=[Depends(require_admin)])
def create_admin(body: AdminCreate, db: Database = Depends(get_db)):
    fields = body.model_dump(exclude={"password"}, exclude_none=True)
    return services.register_account(db, "admin", fields, body.password)


# Buyer endpoints
def _account_changes(email, password, **fields) -> Dict[str, Any]:
    changes = _present(**fields)
    if email is not None:
        changes["email"] = email.strip().lower()
    if password:
        changes["password_hash"] = get_password_hash(password)
    return changes


def _update_with_image(service, db: Database, doc_id: str, changes: Dict[str, Any],
                       previous: Optional[str], uploaded: Optional[str], blobs: BlobStore) -> dict:
    """Apply an update that may carry a freshly saved image.

    The new file is removed if the update fails; the replaced file is removed
    once the update is stored.
    """
    try:
        updated = service.update(db, doc_id, changes)
    except MarketplaceError:
        blobs.remove(uploaded)
        raise
    if updated.get("image") != previous:
        blobs.remove(previous)
    return updated


@app.get("/api/buyers")
def list_buyers(db: Database = Depends(get_db)):
    return services.buyers.list(db)


@app.get("/api/buyers/{buyer_id}")
def get_buyer(buyer_id: str, db: Database = Depends(get_db)):
    return services.buyers.get(db, buyer_id)


@app.put("/api/buyers/{buyer_id}")
def update_buyer(
    buyer_id: str,
    name: Optional[str] = Form(None),
    email: Optional[str] = Form(None),
    phone: Optional[str] = Form(None),
    billing_address: Optional[str] = Form(None),
    shipping_address: Optional[str] = Form(None),
    nid: Optional[str] = Form(None),
    password: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    db: Database = Depends(get_db),
    blobs: BlobStore = Depends(get_blob_store),
):
    current = services.buyers.get_raw(db, buyer_id)
    uploaded = blobs.save_image(image)
    changes = _account_changes(
        email, password, name=name, phone=phone, billing_address=billing_address,
        shipping_address=shipping_address, nid=nid, image=uploaded,
    )
    return _update_with_image(services.buyers, db, buyer_id, changes, current.get("image"), uploaded, blobs)


@app.get("/api/buyers/{buyer_id}/orders")
def buyer_orders(buyer_id: str, db: Database = Depends(get_db)):
    return services.orders_for(db, "buyer_id", buyer_id)


@app.get("/api/buyers/{buyer_id}/reviews")
def buyer_reviews(buyer_id: str, db: Database = Depends(get_db)):
    return services.buyer_reviews(db, buyer_id)


# Seller endpoints
@app.get("/api/sellers")
def list_sellers(db: Database = Depends(get_db)):
    return services.sellers.list(db)


@app.get("/api/sellers/{seller_id}")
def get_seller(seller_id: str, db: Database = Depends(get_db)):
    return services.sellers.get(db, seller_id)


@app.put("/api/sellers/{seller_id}")
def update_seller(
    seller_id: str,
    email: Optional[str] = Form(None),
    business_name: Optional[str] = Form(None),
    division: Optional[str] = Form(None),
    phone: Optional[str] = Form(None),
    address: Optional[str] = Form(None),
    nid: Optional[str] = Form(None),
    tin_id: Optional[str] = Form(None),
    password: Optional[str] = Form(None),
    tin_doc: Optional[UploadFile] = File(None, alias="tinDoc"),
    image: Optional[UploadFile] = File(None),
    db: Database = Depends(get_db),
    blobs: BlobStore = Depends(get_blob_store),
):
    current = services.sellers.get_raw(db, seller_id)
    doc, doc_type = blobs.read_document(tin_doc)
    uploaded = blobs.save_image(image)
    changes = _account_changes(
        email, password, business_name=business_name, division=division, phone=phone,
        address=address, nid=nid, tin_id=tin_id, tin_doc=doc, tin_doc_type=doc_type,
        image=uploaded,
    )
    return _update_with_image(services.sellers, db, seller_id, changes, current.get("image"), uploaded, blobs)


@app.get("/api/sellers/{seller_id}/tin-doc")
def get_seller_tin_doc(seller_id: str, db: Database = Depends(get_db)):
    seller = services.sellers.get_raw(db, seller_id)
    if not seller.get("tin_doc"):
        raise NotFound("TIN document not found")
    return Response(
        content=bytes(seller["tin_doc"]),
        media_type=seller.get("tin_doc_type") or "application/octet-stream",
    )


@app.get("/api/sellers/{seller_id}/products")
def seller_products(seller_id: str, db: Database = Depends(get_db)):
    return services.list_products(db, seller_id=seller_id)


@app.get("/api/sellers/{seller_id}/orders")
def seller_orders(seller_id: str, db: Database = Depends(get_db)):
    return services.orders_for(db, "seller_id", seller_id)


# Product endpoints
@app.get("/api/products")
def list_products(limit: Optional[int] = Query(None, ge=1), db: Database = Depends(get_db)):
    return services.list_products(db, limit=limit)


@app.post("/api/products", status_code=201)
def create_product(
    name: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    subcategory: Optional[str] = Form(None),
    seller_id: Optional[str] = Form(None),
    division: Optional[str] = Form(None),
    unit: Optional[str] = Form(None),
    price_per_unit: Optional[str] = Form(None),
    stock: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    image_url: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    db: Database = Depends(get_db),
    blobs: BlobStore = Depends(get_blob_store),
):
    fields = _present(
        name=name, category=category, subcategory=subcategory, seller_id=seller_id,
        division=division, unit=unit, price_per_unit=price_per_unit, stock=stock,
        description=description, image=image_url,
    )
    uploaded = blobs.save_image(image)
    try:
        return services.create_product(db, fields, uploaded)
    except MarketplaceError:
        blobs.remove(uploaded)
        raise


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    return services.get_product(db, product_id)


@app.put("/api/products/{product_id}")
def update_product(
    product_id: str,
    name: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    subcategory: Optional[str] = Form(None),
    division: Optional[str] = Form(None),
    unit: Optional[str] = Form(None),
    price_per_unit: Optional[str] = Form(None),
    stock: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    image_url: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    db: Database = Depends(get_db),
    blobs: BlobStore = Depends(get_blob_store),
):
    current = services.products.get_raw(db, product_id)
    uploaded = blobs.save_image(image)
    changes = _present(
        name=name, category=category, subcategory=subcategory, division=division,
        unit=unit, price_per_unit=price_per_unit, stock=stock, description=description,
        image=uploaded or image_url,
    )
    return _update_with_image(services.products, db, product_id, changes, current.get("image"), uploaded, blobs)


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, db: Database = Depends(get_db), blobs: BlobStore = Depends(get_blob_store)):
    product = services.products.get_raw(db, product_id)
    ack = services.products.delete(db, product_id)
    blobs.remove(product.get("image"))
    return ack


@app.get("/api/products/{product_id}/reviews")
def product_reviews(product_id: str, db: Database = Depends(get_db)):
    return services.product_reviews(db, product_id)


# Orders
@app.post("/api/orders", status_code=201)
def create_order(payload: Dict[str, Any] = Body(...), db: Database = Depends(get_db)):
    return services.place_order(db, payload)


class StatusPayload(BaseModel):
    status: Optional[str] = None


@app.put("/api/orders/{order_id}/status")
def update_order_status(order_id: str, body: StatusPayload, db: Database = Depends(get_db)):
    return services.set_status(services.orders, db, order_id, body.status)


# Transactions
@app.post("/api/transactions", status_code=201)
def create_transaction(payload: Dict[str, Any] = Body(...), db: Database = Depends(get_db)):
    return services.create_transaction(db, payload)


@app.get("/api/transactions/buyer/{buyer_id}")
def buyer_transactions(buyer_id: str, db: Database = Depends(get_db)):
    return reports.buyer_report(db, buyer_id)


@app.get("/api/transactions/seller/{seller_id}")
def seller_transactions(seller_id: str, db: Database = Depends(get_db)):
    return reports.seller_report(db, seller_id)


# Reviews
@app.post("/api/reviews", status_code=201)
def create_review(
    buyer_id: Optional[str] = Form(None),
    product_id: Optional[str] = Form(None),
    order_id: Optional[str] = Form(None),
    rating: Optional[str] = Form(None),
    comment: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    db: Database = Depends(get_db),
    blobs: BlobStore = Depends(get_blob_store),
):
    fields = _present(buyer_id=buyer_id, product_id=product_id, order_id=order_id, rating=rating or None, comment=comment)
    uploaded = blobs.save_image(image)
    try:
        return services.create_review(db, fields, uploaded)
    except MarketplaceError:
        blobs.remove(uploaded)
        raise


@app.get("/api/reviews/check")
def check_review(buyer_id: str, product_id: str, db: Database = Depends(get_db)):
    return {"hasReviewed": services.has_reviewed(db, buyer_id, product_id)}


# Complaints
def _file_complaint(kind: str, complainant_id: str, accused_id, message, image, db, blobs):
    fields = _present(accused_id=accused_id, message=message)
    uploaded = blobs.save_image(image)
    try:
        return services.file_complaint(db, kind, complainant_id, fields, uploaded)
    except MarketplaceError:
        blobs.remove(uploaded)
        raise


@app.post("/api/complaints/buyer/{buyer_id}", status_code=201)
def file_buyer_complaint(
    buyer_id: str,
    accused_id: Optional[str] = Form(None),
    message: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    db: Database = Depends(get_db),
    blobs: BlobStore = Depends(get_blob_store),
):
    return _file_complaint("buyer", buyer_id, accused_id, message, image, db, blobs)


@app.get("/api/complaints/buyer/{buyer_id}")
def buyer_complaints(buyer_id: str, db: Database = Depends(get_db)):
    return services.list_complaints(db, "buyer", buyer_id)


@app.post("/api/complaints/seller/{seller_id}", status_code=201)
def file_seller_complaint(
    seller_id: str,
    accused_id: Optional[str] = Form(None),
    message: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    db: Database = Depends(get_db),
    blobs: BlobStore = Depends(get_blob_store),
):
    return _file_complaint("seller", seller_id, accused_id, message, image, db, blobs)


@app.get("/api/complaints/seller/{seller_id}")
def seller_complaints(seller_id: str, db: Database = Depends(get_db)):
    return services.list_complaints(db, "seller", seller_id)


@app.get("/api/buyer-complaints")
def all_buyer_complaints(db: Database = Depends(get_db)):
    return services.list_complaints(db, "buyer")


@app.post("/api/buyer-complaints", status_code=201)
def create_buyer_complaint(
    complainant_id: Optional[str] = Form(None),
    accused_id: Optional[str] = Form(None),
    message: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    db: Database = Depends(get_db),
    blobs: BlobStore = Depends(get_blob_store),
):
    return _file_complaint("buyer", complainant_id, accused_id, message, image, db, blobs)


@app.get("/api/seller-complaints")
def all_seller_complaints(db: Database = Depends(get_db)):
    return services.list_complaints(db, "seller")


@app.post("/api/seller-complaints", status_code=201)
def create_seller_complaint(
    complainant_id: Optional[str] = Form(None),
    accused_id: Optional[str] = Form(None),
    message: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    db: Database = Depends(get_db),
    blobs: BlobStore = Depends(get_blob_store),
):
    return _file_complaint("seller", complainant_id, accused_id, message, image, db, blobs)


# Admin endpoints
class ComplaintResponse(BaseModel):
    status: Optional[str] = None
    response: Optional[str] = None


@app.get("/api/admin/dashboard", dependencies=[Depends(require_admin)])
def admin_dashboard(db: Database = Depends(get_db)):
    return services.dashboard(db)


@app.put("/api/admin/sellers/{seller_id}/status", dependencies=[Depends(require_admin)])
def update_seller_status(seller_id: str, body: StatusPayload, db: Database = Depends(get_db)):
    return services.set_status(services.sellers, db, seller_id, body.status)


@app.put("/api/admin/buyers/{buyer_id}/status", dependencies=[Depends(require_admin)])
def update_buyer_status(buyer_id: str, body: StatusPayload, db: Database = Depends(get_db)):
    return services.set_status(services.buyers, db, buyer_id, body.status)


@app.put("/api/admin/complaints/{kind}/{complaint_id}", dependencies=[Depends(require_admin)])
def respond_to_complaint(kind: str, complaint_id: str, body: ComplaintResponse, db: Database = Depends(get_db)):
    if kind not in services.COMPLAINTS:
        raise NotFound("Complaint not found")
    return services.respond_to_complaint(db, kind, complaint_id, body.status, body.response)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
