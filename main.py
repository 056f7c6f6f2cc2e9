import logging
import os
from contextlib import asynccontextmanager
from typing import Optional, List, Dict, Any

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pymongo.database import Database

from config import Settings, settings, setup_logging
from database import create_document, db, ensure_indexes, now, serialize_doc, to_object_id
from errors import AuthError, DatabaseUnavailableError, PetTagError
from finder import FinderService
from identity import IdentityProvider, JWTIdentityProvider
from inventory import QRInventory
from lifecycle import TagLifecycle
from notifications import Notifier
from orders import OrderService
from payments import PaymentProcessor, build_processor, verify_webhook
from schemas import User, Pet, ShippingAddress

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.log_level)
    if db is not None:
        ensure_indexes(db)
    yield


app = FastAPI(title="Pet Tag API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_identity = JWTIdentityProvider(settings.jwt_secret, settings.jwt_expires_minutes)
_payments = build_processor(settings.stripe_secret_key)


# Response envelope

def ok(data: Any = None) -> Dict[str, Any]:
    return {"success": True, "data": data}


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": {"code": code, "message": message}},
    )


@app.exception_handler(PetTagError)
async def pettag_error_handler(request: Request, exc: PetTagError):
    return _error(exc.status_code, exc.code, exc.message)


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException):
    return _error(exc.status_code, "HTTP_ERROR", str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    return _error(422, "VALIDATION_ERROR", first.get("msg", "Invalid request"))


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error(500, "INTERNAL_ERROR", "Internal server error")


# Collaborators

def get_settings() -> Settings:
    return settings


def get_db() -> Database:
    if db is None:
        raise DatabaseUnavailableError()
    return db


def get_identity_provider() -> IdentityProvider:
    return _identity


def get_payments() -> PaymentProcessor:
    return _payments


def get_notifier(database: Database = Depends(get_db)) -> Notifier:
    return Notifier(database)


def get_lifecycle(
    database: Database = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    cfg: Settings = Depends(get_settings),
) -> TagLifecycle:
    return TagLifecycle(database, notifier, cfg)


def get_orders(
    database: Database = Depends(get_db),
    lifecycle: TagLifecycle = Depends(get_lifecycle),
    payments: PaymentProcessor = Depends(get_payments),
    notifier: Notifier = Depends(get_notifier),
    cfg: Settings = Depends(get_settings),
) -> OrderService:
    return OrderService(database, lifecycle, payments, notifier, cfg)


def get_finder(database: Database = Depends(get_db), notifier: Notifier = Depends(get_notifier)) -> FinderService:
    return FinderService(database, notifier)


def current_user(
    authorization: Optional[str] = Header(None),
    database: Database = Depends(get_db),
    identity: IdentityProvider = Depends(get_identity_provider),
) -> dict:
    if not authorization:
        raise AuthError("Access token is required", "NO_TOKEN")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise AuthError("Invalid Authorization header", "INVALID_TOKEN")
    verified = identity.verify(token.strip())
    user = database["user"].find_one({"external_id": verified.external_user_id, "is_active": True})
    if user is None:
        raise AuthError("User not found", "USER_NOT_FOUND")
    return user


def admin_user(user: dict = Depends(current_user)) -> dict:
    if user.get("role") != "admin":
        raise AuthError("Admin only", "FORBIDDEN", 403)
    return user


def _uid(user: dict) -> str:
    return str(user["_id"])


# Auth stub (Google-ready): client passes the provider identity for now
class AuthPayload(BaseModel):
    email: str
    name: Optional[str] = None
    phone: Optional[str] = None
    external_id: Optional[str] = None


@app.post("/auth/google")
def auth_google(payload: AuthPayload, database: Database = Depends(get_db)):
    col = database["user"]
    existing = col.find_one({"email": payload.email})
    if existing:
        changes = {"name": payload.name, "phone": payload.phone, "updated_at": now()}
        if not existing.get("external_id"):
            changes["external_id"] = payload.external_id or f"google:{payload.email}"
        col.update_one({"_id": existing["_id"]}, {"$set": changes})
        user = col.find_one({"_id": existing["_id"]})
    else:
        user_model = User(
            provider="google",
            external_id=payload.external_id or f"google:{payload.email}",
            email=payload.email,
            name=payload.name,
            phone=payload.phone,
        )
        user_id = create_document("user", user_model, database)
        user = col.find_one({"_id": to_object_id(user_id)})
    token = _identity.create_token(user["external_id"])
    return ok({"token": token, "user": serialize_doc(user)})


# Pet profiles (minimal: the lifecycle needs a pet to attach tags to)
class PetPayload(BaseModel):
    name: str
    breed: Optional[str] = None
    age: Optional[int] = Field(None, ge=0, le=30)
    medical_conditions: Optional[str] = None
    photo_url: Optional[str] = None


@app.post("/pets", status_code=201)
def create_pet(p: PetPayload, user: dict = Depends(current_user), database: Database = Depends(get_db)):
    pet_model = Pet(owner_id=_uid(user), **p.model_dump())
    pet_id = create_document("pet", pet_model, database)
    return ok(serialize_doc(database["pet"].find_one({"_id": to_object_id(pet_id)})))


@app.get("/pets")
def list_pets(user: dict = Depends(current_user), lifecycle: TagLifecycle = Depends(get_lifecycle)):
    return ok(lifecycle.list_pets(_uid(user)))


@app.delete("/pets/{pet_id}")
def delete_pet(pet_id: str, user: dict = Depends(current_user), lifecycle: TagLifecycle = Depends(get_lifecycle)):
    return ok(lifecycle.remove_pet(_uid(user), pet_id))


# Tags
class PurchasePayload(BaseModel):
    pet_id: str
    quantity: int = Field(1, ge=1, le=10)
    shipping_address: ShippingAddress


class AssignPayload(BaseModel):
    pet_id: str


@app.get("/tags")
def list_tags(user: dict = Depends(current_user), lifecycle: TagLifecycle = Depends(get_lifecycle)):
    return ok(lifecycle.list_tags(_uid(user)))


@app.post("/tags/purchase", status_code=201)
def purchase_tag(p: PurchasePayload, user: dict = Depends(current_user), lifecycle: TagLifecycle = Depends(get_lifecycle)):
    return ok(lifecycle.purchase_tag(_uid(user), p.pet_id, p.shipping_address, p.quantity))


@app.post("/tags/{tag_id}/activate")
def activate_tag(tag_id: str, user: dict = Depends(current_user), lifecycle: TagLifecycle = Depends(get_lifecycle)):
    return ok(lifecycle.activate_tag(_uid(user), tag_id))


@app.post("/tags/{tag_id}/deactivate")
def deactivate_tag(tag_id: str, user: dict = Depends(current_user), lifecycle: TagLifecycle = Depends(get_lifecycle)):
    return ok(lifecycle.deactivate_tag(_uid(user), tag_id))


@app.post("/tags/{tag_id}/assign")
def assign_tag(tag_id: str, p: AssignPayload, user: dict = Depends(current_user), lifecycle: TagLifecycle = Depends(get_lifecycle)):
    return ok(lifecycle.assign_tag(_uid(user), tag_id, p.pet_id))


@app.post("/tags/{tag_id}/unassign")
def unassign_tag(tag_id: str, user: dict = Depends(current_user), lifecycle: TagLifecycle = Depends(get_lifecycle)):
    return ok(lifecycle.unassign_tag(_uid(user), tag_id))


@app.get("/tags/{tag_id}/qr")
def tag_qr(tag_id: str, user: dict = Depends(current_user), lifecycle: TagLifecycle = Depends(get_lifecycle)):
    return ok(lifecycle.get_qr(_uid(user), tag_id))


# Orders and payments
class PayPayload(BaseModel):
    source: str


class RefundPayload(BaseModel):
    reason: Optional[str] = None


class CheckoutItem(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    size: Optional[str] = None
    color: Optional[str] = None


class CheckoutPayload(BaseModel):
    source: str
    items: List[CheckoutItem]
    shipping_address: ShippingAddress
    pet_id: Optional[str] = None


class StatusPayload(BaseModel):
    status: str
    tracking_number: Optional[str] = None


@app.post("/orders/{order_id}/cancel")
def cancel_order(order_id: str, user: dict = Depends(current_user), orders: OrderService = Depends(get_orders)):
    return ok(orders.cancel_order(_uid(user), order_id))


@app.post("/orders/{order_id}/pay")
def pay_order(order_id: str, p: PayPayload, user: dict = Depends(current_user), orders: OrderService = Depends(get_orders)):
    return ok(orders.pay_order(_uid(user), order_id, p.source))


@app.post("/payments", status_code=201)
def checkout(p: CheckoutPayload, user: dict = Depends(current_user), orders: OrderService = Depends(get_orders)):
    items = [i.model_dump() for i in p.items]
    return ok(orders.checkout(_uid(user), items, p.shipping_address, p.source, p.pet_id))


@app.post("/payments/{order_id}/refund")
def refund_order(order_id: str, p: RefundPayload, user: dict = Depends(current_user), orders: OrderService = Depends(get_orders)):
    return ok(orders.refund_order(_uid(user), order_id, p.reason))


@app.post("/webhooks/payments")
async def payment_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    cfg: Settings = Depends(get_settings),
    orders: OrderService = Depends(get_orders),
):
    event = verify_webhook(await request.body(), stripe_signature, cfg.webhook_secret)
    handled = orders.handle_payment_event(event)
    return ok({"handled": handled})


# Admin
@app.patch("/admin/orders/{order_id}/status")
def update_order_status(order_id: str, p: StatusPayload, admin: dict = Depends(admin_user), orders: OrderService = Depends(get_orders)):
    return ok(orders.update_status(order_id, p.status, p.tracking_number))


@app.get("/admin/qrcodes/stats")
def qrcode_stats(admin: dict = Depends(admin_user), database: Database = Depends(get_db)):
    return ok(QRInventory(database).stats())


# Finder (public)
class FinderNotifyPayload(BaseModel):
    finder_name: str
    finder_phone: str
    message: Optional[str] = None
    location: Optional[str] = None
    scan_id: Optional[str] = None


@app.get("/found/{qr_code}")
def found_lookup(qr_code: str, request: Request, finder: FinderService = Depends(get_finder)):
    ip = request.client.host if request.client else None
    return ok(finder.lookup(qr_code, ip, request.headers.get("user-agent")))


@app.post("/found/{qr_code}/notify")
def found_notify(qr_code: str, p: FinderNotifyPayload, finder: FinderService = Depends(get_finder)):
    return ok(finder.notify_owner(qr_code, **p.model_dump()))


@app.get("/test")
def test_database():
    resp = {
        "backend": "✅ Running",
        "database": "❌ Not Available" if db is None else "✅ Connected",
        "collections": [],
    }
    try:
        if db is not None:
            resp["collections"] = db.list_collection_names()
    except Exception as e:
        resp["database"] = f"⚠️ {str(e)[:80]}"
    return resp


@app.get("/")
def root():
    return {"message": "Pet tag backend is live"}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
