import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pymongo.database import Database
from pymongo.errors import PyMongoError

import config
import database
from client import ClientContext, ClientRegistry
from errors import (ConfigurationError, ConflictError, InputError, MarketplaceError, NotFoundError, PaymentError,
                    SessionError, StatusTransitionError, StoreError)
from identity import OtpService, normalize_phone
from live_feed import LiveFeed
from orders import OrderService
from payments import PaymentBridge, RazorpayGateway
from schemas import ChatThread, Crop, Message, Order, Profile
from session_resolver import ResolvedSession
from stores import ChatStore, CropStore, OrderStore, ProfileStore

logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger("farm2market")


# ----------------------
# Service wiring
# ----------------------
class Services:
    """Everything the routes need, built around one database handle."""

    def __init__(self, db: Database, gateway: Optional[RazorpayGateway] = None):
        self.db = db
        self.feed = LiveFeed()
        self.profiles = ProfileStore(db)
        self.chats = ChatStore(db, self.feed)
        self.crops = CropStore(db)
        self.orders = OrderStore(db)
        self.otp = OtpService(db)
        self.order_service = OrderService(self.orders, self.crops)
        self.payments = PaymentBridge(gateway or RazorpayGateway(), self.order_service, self.crops)
        self.clients = ClientRegistry(self.profiles, self.chats)


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        if database.db is None:
            raise HTTPException(status_code=503, detail="Database not configured")
        try:
            database.ensure_indexes(database.db)
        except PyMongoError:
            logger.exception("ensure_indexes_failed")
        _services = Services(database.db)
    return _services


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    if _services is not None:
        _services.clients.shutdown()


app = FastAPI(title="Farm2Market API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ----------------------
# Error mapping
# ----------------------
ERROR_STATUS = {
    InputError: 400,
    SessionError: 401,
    NotFoundError: 404,
    ConflictError: 409,
    StatusTransitionError: 409,
    PaymentError: 502,
    StoreError: 503,
    ConfigurationError: 503,
}


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    status = next((code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 500)
    if status >= 500:
        logger.error("request_failed path=%s error=%s", request.url.path, exc)
    return JSONResponse(status_code=status, content={"detail": str(exc)})


# ----------------------
# Auth dependencies
# ----------------------
def bearer_token(authorization: Optional[str]) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Unauthorized")
    return authorization.split(" ", 1)[1].strip()


def get_client(authorization: Optional[str] = Header(None), services: Services = Depends(get_services)) -> ClientContext:
    ctx = services.clients.get(bearer_token(authorization))
    if ctx is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return ctx


def get_current_user(ctx: ClientContext = Depends(get_client)) -> ResolvedSession:
    current = ctx.resolver.current
    if current.needs_profile:
        raise HTTPException(status_code=403, detail="Complete your profile first")
    if not current.is_authenticated:
        raise HTTPException(status_code=401, detail="Not signed in")
    return current


def require_role(*roles: str):
    def checker(current: ResolvedSession = Depends(get_current_user)) -> ResolvedSession:
        if current.role not in roles:
            raise HTTPException(status_code=403, detail="Forbidden")
        return current

    return checker


def dump(items) -> List[Dict[str, Any]]:
    return [i.model_dump() for i in items]


# ----------------------
# Health & tooling
# ----------------------
@app.get("/")
def read_root():
    return {"message": "Farm2Market API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if config.DATABASE_URL else "❌ Not Set",
        "database_name": "✅ Set" if config.DATABASE_NAME else "❌ Not Set",
        "payments": "✅ Razorpay configured" if config.RAZORPAY_KEY_ID and config.RAZORPAY_KEY_SECRET else "⚠️ Simulated",
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        if database.db is not None:
            response["collections"] = database.db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
    except Exception as e:
        response["database"] = f"⚠️ Connected but error: {str(e)[:80]}"
    return response


@app.get("/schema")
def get_schema():
    def model_fields(model) -> Dict[str, Any]:
        return {name: str(field.annotation) for name, field in model.model_fields.items()}

    return {
        "profile": model_fields(Profile),
        "crop": model_fields(Crop),
        "chat": model_fields(ChatThread),
        "message": model_fields(Message),
        "order": model_fields(Order),
    }


# ----------------------
# Phone auth & profile
# ----------------------
class OtpRequestBody(BaseModel):
    phone: str


class OtpVerifyBody(BaseModel):
    phone: str
    code: str = Field(..., min_length=4, max_length=8)


class ProfileBody(BaseModel):
    name: str
    role: str


@app.post("/auth/otp/request")
def request_otp(body: OtpRequestBody, services: Services = Depends(get_services)):
    phone = normalize_phone(body.phone)
    code = services.otp.issue(phone)
    out: Dict[str, Any] = {"sent": True, "phone": phone}
    if config.OTP_DEBUG:
        out["debug_code"] = code
    return out


@app.post("/auth/otp/verify")
def verify_otp(body: OtpVerifyBody, services: Services = Depends(get_services)):
    phone = normalize_phone(body.phone)
    if not services.otp.verify(phone, body.code):
        raise HTTPException(status_code=401, detail="Invalid or expired code")
    ctx = services.clients.connect(phone)
    return {"token": ctx.token, "session": ctx.resolver.current.as_dict()}


@app.get("/me")
def me(ctx: ClientContext = Depends(get_client)):
    return ctx.resolver.current.as_dict()


@app.post("/auth/profile")
def save_profile(body: ProfileBody, ctx: ClientContext = Depends(get_client)):
    return ctx.resolver.save_profile(body.name, body.role).as_dict()


@app.post("/auth/signout")
def sign_out(ctx: ClientContext = Depends(get_client), services: Services = Depends(get_services)):
    services.clients.disconnect(ctx.token)
    return {"signed_out": True}


# ----------------------
# Crops
# ----------------------
class CropBody(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    price_per_kg: float = Field(..., gt=0)
    quantity_kg: float = Field(..., ge=0)
    image_url: Optional[str] = None
    location: Optional[str] = None


class CropUpdateBody(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price_per_kg: Optional[float] = Field(None, gt=0)
    quantity_kg: Optional[float] = Field(None, ge=0)
    image_url: Optional[str] = None
    location: Optional[str] = None
    available: Optional[bool] = None


def owned_crop(crop_id: str, current: ResolvedSession, services: Services) -> Crop:
    crop = services.crops.get(crop_id)
    if crop is None:
        raise HTTPException(status_code=404, detail="Crop not found")
    if current.role != "admin" and crop.farmer_id != current.profile_id:
        raise HTTPException(status_code=403, detail="Not your crop")
    return crop


@app.get("/crops")
def list_crops(
    q: Optional[str] = Query(None),
    farmer_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=200),
    services: Services = Depends(get_services),
):
    return dump(services.crops.list_available(q=q, farmer_id=farmer_id, limit=limit))


@app.get("/crops/{crop_id}")
def get_crop(crop_id: str, services: Services = Depends(get_services)):
    crop = services.crops.get(crop_id)
    if crop is None:
        raise HTTPException(status_code=404, detail="Crop not found")
    return crop.model_dump()


@app.get("/my/crops")
def my_crops(current: ResolvedSession = Depends(require_role("farmer")), services: Services = Depends(get_services)):
    return dump(services.crops.list_for_farmer(current.profile_id))


@app.post("/crops")
def create_crop(body: CropBody, current: ResolvedSession = Depends(require_role("farmer")), services: Services = Depends(get_services)):
    crop = services.crops.insert(current.profile_id, body.model_dump())
    logger.info("crop_created crop_id=%s farmer_id=%s", crop.id, current.profile_id)
    return crop.model_dump()


@app.patch("/crops/{crop_id}")
def update_crop(crop_id: str, body: CropUpdateBody, current: ResolvedSession = Depends(require_role("farmer", "admin")), services: Services = Depends(get_services)):
    owned_crop(crop_id, current, services)
    changes = body.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="Nothing to update")
    return services.crops.update(crop_id, changes).model_dump()


@app.delete("/crops/{crop_id}")
def delete_crop(crop_id: str, current: ResolvedSession = Depends(require_role("farmer", "admin")), services: Services = Depends(get_services)):
    owned_crop(crop_id, current, services)
    services.crops.delete(crop_id)
    return {"id": crop_id, "deleted": True}


# ----------------------
# Chats
# ----------------------
class ChatBody(BaseModel):
    farmer_id: str
    crop_id: Optional[str] = None


class MessageBody(BaseModel):
    body: str


def participant_thread(ctx: ClientContext, chat_id: str, profile_id: str) -> ChatThread:
    thread = ctx.chat.load_thread(chat_id)
    if thread is None:
        raise HTTPException(status_code=404, detail="Chat not found")
    if profile_id not in (thread.buyer_id, thread.farmer_id):
        raise HTTPException(status_code=403, detail="Not your chat")
    return thread


def feed_payload(chat_id: str, messages) -> Dict[str, Any]:
    return {"chat_id": chat_id, "messages": [m.model_dump(mode="json") for m in messages]}


@app.get("/chats")
def list_chats(ctx: ClientContext = Depends(get_client), current: ResolvedSession = Depends(get_current_user)):
    return dump(ctx.chat.list_threads_for(current.profile_id))


@app.post("/chats")
def open_or_create_chat(body: ChatBody, ctx: ClientContext = Depends(get_client),
                        current: ResolvedSession = Depends(get_current_user), services: Services = Depends(get_services)):
    if body.farmer_id == current.profile_id:
        raise HTTPException(status_code=400, detail="You cannot chat with yourself")
    if body.crop_id:
        crop = services.crops.get(body.crop_id)
        if crop is None or crop.farmer_id != body.farmer_id:
            raise HTTPException(status_code=404, detail="Crop not found for this farmer")
    thread = ctx.chat.find_or_create_thread(current.profile_id, body.farmer_id, body.crop_id)
    return thread.model_dump()


@app.post("/chats/close")
def close_chat(ctx: ClientContext = Depends(get_client)):
    ctx.chat.close_thread()
    return {"closed": True}


@app.post("/chats/{chat_id}/open")
def open_chat(chat_id: str, ctx: ClientContext = Depends(get_client), current: ResolvedSession = Depends(get_current_user)):
    participant_thread(ctx, chat_id, current.profile_id)
    return feed_payload(chat_id, ctx.chat.open_thread(chat_id))


@app.get("/chats/{chat_id}/messages")
def chat_messages(chat_id: str, ctx: ClientContext = Depends(get_client), current: ResolvedSession = Depends(get_current_user)):
    participant_thread(ctx, chat_id, current.profile_id)
    if ctx.chat.active_thread_id != chat_id:
        ctx.chat.open_thread(chat_id)
    return feed_payload(chat_id, ctx.chat.messages)


@app.post("/chats/{chat_id}/messages")
def send_message(chat_id: str, body: MessageBody, ctx: ClientContext = Depends(get_client),
                 current: ResolvedSession = Depends(get_current_user)):
    participant_thread(ctx, chat_id, current.profile_id)
    msg = ctx.chat.send(chat_id, current.profile_id, body.body)
    return msg.model_dump()


@app.websocket("/ws/chats/{chat_id}")
async def chat_feed(websocket: WebSocket, chat_id: str, token: str = Query(...), services: Services = Depends(get_services)):
    ctx = services.clients.get(token)
    current = ctx.resolver.current if ctx else None
    if current is None or not current.is_authenticated:
        await websocket.close(code=4401)
        return
    try:
        await run_in_threadpool(participant_thread, ctx, chat_id, current.profile_id)
    except HTTPException:
        await websocket.close(code=4403)
        return

    await websocket.accept()
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()
    remove = ctx.chat.add_listener(lambda cid, msgs: loop.call_soon_threadsafe(queue.put_nowait, (cid, msgs)))

    async def pump():
        while True:
            cid, msgs = await queue.get()
            if cid == chat_id:
                await websocket.send_json(feed_payload(chat_id, msgs))

    sender = asyncio.create_task(pump())
    try:
        if ctx.chat.active_thread_id != chat_id:
            await run_in_threadpool(ctx.chat.open_thread, chat_id)
        await websocket.send_json(feed_payload(chat_id, ctx.chat.messages))
        while True:
            text = await websocket.receive_text()
            try:
                await run_in_threadpool(ctx.chat.send, chat_id, current.profile_id, text)
            except MarketplaceError as e:
                await websocket.send_json({"chat_id": chat_id, "error": str(e)})
    except WebSocketDisconnect:
        logger.info("chat_ws_disconnected chat_id=%s", chat_id)
    finally:
        remove()
        sender.cancel()
        with suppress(asyncio.CancelledError):
            await sender


# ----------------------
# Orders & payments
# ----------------------
class CheckoutBody(BaseModel):
    crop_id: str
    quantity: float = Field(..., gt=0)
    delivery_address: str


class ConfirmBody(BaseModel):
    razorpay_payment_id: str
    razorpay_signature: str


class OrderStatusBody(BaseModel):
    status: str = Field(..., pattern="^(pending|paid|delivered|cancelled)$")


def visible_order(order_id: str, current: ResolvedSession, services: Services) -> Order:
    order = services.order_service.get(order_id)
    if current.role != "admin" and current.profile_id not in (order.buyer_id, order.farmer_id):
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@app.post("/orders/checkout")
def checkout(body: CheckoutBody, current: ResolvedSession = Depends(require_role("buyer", "admin")), services: Services = Depends(get_services)):
    result = services.payments.checkout(current.profile_id, body.crop_id, body.quantity, body.delivery_address, contact=current.phone)
    return result.as_dict()


@app.post("/orders/{order_id}/confirm")
def confirm_payment(order_id: str, body: ConfirmBody, current: ResolvedSession = Depends(get_current_user), services: Services = Depends(get_services)):
    order = visible_order(order_id, current, services)
    if order.buyer_id != current.profile_id:
        raise HTTPException(status_code=403, detail="Only the buyer can confirm payment")
    return services.payments.confirm(order_id, body.razorpay_payment_id, body.razorpay_signature).model_dump()


@app.post("/orders/{order_id}/cancel")
def cancel_order(order_id: str, current: ResolvedSession = Depends(get_current_user), services: Services = Depends(get_services)):
    visible_order(order_id, current, services)
    return services.payments.cancel(order_id).model_dump()


@app.get("/orders")
def my_orders(current: ResolvedSession = Depends(get_current_user), services: Services = Depends(get_services)):
    return dump(services.order_service.list_for(current.profile_id, current.role))


@app.patch("/orders/{order_id}/status")
def update_order_status(order_id: str, body: OrderStatusBody, current: ResolvedSession = Depends(get_current_user), services: Services = Depends(get_services)):
    order = visible_order(order_id, current, services)
    if current.role != "admin":
        if body.status == "paid":
            raise HTTPException(status_code=403, detail="Orders are marked paid by the payment flow")
        if body.status == "delivered" and current.profile_id != order.farmer_id:
            raise HTTPException(status_code=403, detail="Only the farmer can mark delivery")
    return services.order_service.transition(order_id, body.status).model_dump()


@app.get("/farmer/stats")
def farmer_stats(current: ResolvedSession = Depends(require_role("farmer")), services: Services = Depends(get_services)):
    return services.order_service.farmer_stats(current.profile_id)


# ----------------------
# Admin console
# ----------------------
class AdminProfileBody(BaseModel):
    phone: str
    name: Optional[str] = None
    role: Optional[str] = Field(None, pattern="^(admin|farmer|buyer)$")


class AdminProfileUpdateBody(BaseModel):
    phone: Optional[str] = None
    name: Optional[str] = None
    role: Optional[str] = Field(None, pattern="^(admin|farmer|buyer)$")


class AdminCropBody(CropBody):
    farmer_id: str


admin_only = require_role("admin")


@app.get("/admin/profiles")
def admin_list_profiles(_: ResolvedSession = Depends(admin_only), services: Services = Depends(get_services)):
    return dump(services.profiles.list())


@app.post("/admin/profiles")
def admin_create_profile(body: AdminProfileBody, _: ResolvedSession = Depends(admin_only), services: Services = Depends(get_services)):
    phone = normalize_phone(body.phone)
    if services.profiles.find_by_phone(phone):
        raise HTTPException(status_code=409, detail="Phone already registered")
    profile = services.profiles.upsert(Profile(id=database.new_id(), phone=phone, name=body.name, role=body.role))
    return profile.model_dump()


@app.patch("/admin/profiles/{profile_id}")
def admin_update_profile(profile_id: str, body: AdminProfileUpdateBody, _: ResolvedSession = Depends(admin_only), services: Services = Depends(get_services)):
    changes = body.model_dump(exclude_unset=True)
    if changes.get("phone"):
        changes["phone"] = normalize_phone(changes["phone"])
    profile = services.profiles.update(profile_id, changes)
    if profile is None:
        raise HTTPException(status_code=404, detail="Profile not found")
    services.clients.refresh_profile(profile_id)
    return profile.model_dump()


@app.delete("/admin/profiles/{profile_id}")
def admin_delete_profile(profile_id: str, _: ResolvedSession = Depends(admin_only), services: Services = Depends(get_services)):
    if not services.profiles.delete(profile_id):
        raise HTTPException(status_code=404, detail="Profile not found")
    services.clients.refresh_profile(profile_id)
    return {"id": profile_id, "deleted": True}


@app.get("/admin/crops")
def admin_list_crops(_: ResolvedSession = Depends(admin_only), services: Services = Depends(get_services)):
    return dump(services.crops.list())


@app.post("/admin/crops")
def admin_create_crop(body: AdminCropBody, _: ResolvedSession = Depends(admin_only), services: Services = Depends(get_services)):
    farmer = services.profiles.get(body.farmer_id)
    if farmer is None or farmer.role != "farmer":
        raise HTTPException(status_code=400, detail="farmer_id must belong to a farmer")
    fields = body.model_dump(exclude={"farmer_id"})
    return services.crops.insert(body.farmer_id, fields).model_dump()


@app.get("/admin/orders")
def admin_list_orders(_: ResolvedSession = Depends(admin_only), services: Services = Depends(get_services)):
    return dump(services.orders.list())


@app.get("/admin/stats")
def admin_stats(_: ResolvedSession = Depends(admin_only), services: Services = Depends(get_services)):
    return {
        "profiles": services.profiles.count(),
        "crops": services.crops.count(),
        "orders": services.orders.count(),
        "clients": len(services.clients),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
