import logging
from datetime import datetime
from typing import List, Optional, Dict, Any

from fastapi import FastAPI, HTTPException, Depends, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from auth import AuthService, public_user
from checkout import CheckoutError, get_delivery_date, place_order, cancel_order, subscribe
from config import CUTOFF_HOUR, LOG_LEVEL, PORT
from database import KeyValueStore, get_store
from queries import (
    approved_vendors, pending_vendors, products_with_vendor, subscriptions_with_vendor,
    order_details, user_activity, vendor_revenue, find_dangling_references,
)
from repositories import Repositories
from schemas import (
    AuthResult, PublicUser, ApprovalStatus, OrderStatus, SubscriptionStatus,
    SubscriptionType, DeliveryStatus,
)

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="Milk Delivery API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_repos = None
_auth = None


def get_repos() -> Repositories:
    global _repos
    if _repos is None:
        _repos = Repositories(get_store())
    return _repos


def get_auth(repos: Repositories = Depends(get_repos)) -> AuthService:
    global _auth
    if _auth is None:
        _auth = AuthService(repos.users, KeyValueStore())
    return _auth


def get_current_user(auth: AuthService = Depends(get_auth)) -> PublicUser:
    user = auth.get_current_user()
    if user is None:
        raise HTTPException(status_code=401, detail="Not logged in")
    return user


def require_admin(user: PublicUser = Depends(get_current_user)) -> PublicUser:
    if user.role != "admin":
        raise HTTPException(status_code=403, detail="Admins only")
    return user


def require_seller(user: PublicUser = Depends(get_current_user)) -> PublicUser:
    if user.role not in ("vendor", "admin"):
        raise HTTPException(status_code=403, detail="Vendors only")
    return user


# ----- Models -----
class LoginRequest(BaseModel):
    email: str
    password: str


class SignupRequest(BaseModel):
    email: str
    password: str
    name: str = ""
    role: str = "user"
    phone_number: Optional[str] = None
    profile_info: Dict[str, Any] = Field(default_factory=dict)


class ChangePasswordRequest(BaseModel):
    old_password: str
    new_password: str
    confirm_password: str


class ResetPasswordRequest(BaseModel):
    email: str
    new_password: str
    confirm_password: str
    phone_number: Optional[str] = None


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    phone_number: Optional[str] = None
    profile_info: Optional[Dict[str, Any]] = None


class ApprovalRequest(BaseModel):
    status: ApprovalStatus


class ProductIn(BaseModel):
    name: str
    price: float = Field(..., ge=0)
    vendor_id: Optional[str] = None
    category: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    unit: Optional[str] = None
    image: Optional[str] = None
    image_base64: Optional[str] = None


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    category: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    unit: Optional[str] = None
    image: Optional[str] = None
    image_base64: Optional[str] = None


class PlaceOrderItem(BaseModel):
    product_id: str
    qty: int = Field(1, gt=0)


class PlaceOrderRequest(BaseModel):
    user_id: Optional[str] = None
    vendor_id: str
    items: List[PlaceOrderItem]
    delivery_address: Optional[str] = None
    delivery_time: Optional[str] = None
    payment_method: Optional[str] = None


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class SubscribeRequest(BaseModel):
    user_id: Optional[str] = None
    vendor_id: str
    type: SubscriptionType = "monthly"
    start_date: Optional[datetime] = None
    delivery_time: Optional[str] = None
    preferred_day: Optional[str] = None


class SubscriptionStatusUpdate(BaseModel):
    status: SubscriptionStatus


class VacationRequest(BaseModel):
    vacation_start: str
    vacation_end: str


class DeliveryStatusUpdate(BaseModel):
    status: DeliveryStatus


# ----- Helpers -----

def _auth_or_raise(result: AuthResult, status_code: int = 400) -> AuthResult:
    if not result.success:
        raise HTTPException(status_code=status_code, detail=result.message)
    return result


def _found(record, what: str):
    if not record:
        raise HTTPException(status_code=404, detail=f"{what} not found")
    return record


def _acting_user_id(requested: Optional[str], user: PublicUser) -> str:
    """Only admins may act on behalf of another user."""
    if requested and requested != user.id and user.role != "admin":
        raise HTTPException(status_code=403, detail="Cannot act for another user")
    return requested or user.id


def _check_owner(record: Dict[str, Any], user: PublicUser, what: str):
    if user.role == "admin":
        return
    owner = record.get("vendor_id") if user.role == "vendor" else record.get("user_id")
    if owner != user.id:
        raise HTTPException(status_code=403, detail=f"Not your {what}")


@app.exception_handler(CheckoutError)
def checkout_error_handler(request, exc: CheckoutError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.on_event("startup")
def initialize_store():
    if not get_store().initialize():
        logger.error("Local data is unavailable, will retry on first read")


# ----- Routes -----
@app.get("/")
def read_root():
    return {"message": "Milk Delivery Backend Running"}


@app.get("/api/config")
def get_config():
    now = datetime.now()
    delivery = get_delivery_date(now)
    return {
        "server_time": now.isoformat(),
        "cutoff_hour": CUTOFF_HOUR,
        "expected_delivery_date": delivery.isoformat(),
    }


@app.get("/test")
def test_database(repos: Repositories = Depends(get_repos)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "data_dir": None,
        "collections": {},
    }
    try:
        status = repos.store.status()
        response["data_dir"] = status["data_dir"]
        response["collections"] = status["collections"]
        counts = status["collections"].values()
        if all(isinstance(c, int) for c in counts):
            response["database"] = "✅ Connected & Working"
        else:
            response["database"] = "⚠️  Some collections are missing or unreadable"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    return response


# Auth
@app.post("/api/auth/login", response_model=AuthResult)
def login(req: LoginRequest, auth: AuthService = Depends(get_auth)):
    return _auth_or_raise(auth.login(req.email, req.password), status_code=401)


@app.post("/api/auth/signup", response_model=AuthResult, status_code=201)
def signup(req: SignupRequest, auth: AuthService = Depends(get_auth)):
    _auth_or_raise(auth.signup(req.model_dump()))
    # new accounts start logged in
    return _auth_or_raise(auth.login(req.email, req.password), status_code=401)


@app.post("/api/auth/logout", response_model=AuthResult)
def logout(auth: AuthService = Depends(get_auth)):
    return _auth_or_raise(auth.logout(), status_code=500)


@app.get("/api/auth/me", response_model=PublicUser)
def me(user: PublicUser = Depends(get_current_user)):
    return user


@app.post("/api/auth/password", response_model=AuthResult)
def change_password(req: ChangePasswordRequest, user: PublicUser = Depends(get_current_user),
                    auth: AuthService = Depends(get_auth)):
    return _auth_or_raise(auth.change_password(user.id, req.old_password, req.new_password, req.confirm_password))


@app.post("/api/auth/reset-password", response_model=AuthResult)
def reset_password(req: ResetPasswordRequest, auth: AuthService = Depends(get_auth)):
    return _auth_or_raise(auth.reset_password(req.email, req.new_password, req.confirm_password, req.phone_number))


# Users
@app.put("/api/users/me", response_model=AuthResult)
def update_me(upd: ProfileUpdate, user: PublicUser = Depends(get_current_user),
              auth: AuthService = Depends(get_auth)):
    data = {k: v for k, v in upd.model_dump().items() if v is not None}
    return _auth_or_raise(auth.update_profile(user.id, data))


@app.put("/api/users/me/avatar")
def update_avatar(avatar: str = Query(...), user: PublicUser = Depends(get_current_user),
                  repos: Repositories = Depends(get_repos)):
    if avatar not in {a["value"] for a in repos.users.available_avatars()}:
        raise HTTPException(status_code=400, detail="Unknown avatar")
    if not repos.users.update_avatar(user.id, avatar):
        raise HTTPException(status_code=404, detail="User not found")
    return {"updated": True}


@app.get("/api/avatars")
def list_avatars(repos: Repositories = Depends(get_repos)):
    return repos.users.available_avatars()


@app.get("/api/users", response_model=List[PublicUser])
def list_users(_: PublicUser = Depends(require_admin), repos: Repositories = Depends(get_repos)):
    return [public_user(u) for u in repos.users.get_all()]


@app.get("/api/users/{user_id}/activity")
def get_user_activity(user_id: str, repos: Repositories = Depends(get_repos)):
    _found(repos.users.get_by_id(user_id), "User")
    return user_activity(repos, user_id)


# Vendors
@app.get("/api/vendors", response_model=List[PublicUser])
def list_vendors(repos: Repositories = Depends(get_repos)):
    return [public_user(v) for v in approved_vendors(repos)]


@app.get("/api/vendors/{vendor_id}/revenue")
def get_vendor_revenue(vendor_id: str, repos: Repositories = Depends(get_repos)):
    return {"vendor_id": vendor_id, "revenue": vendor_revenue(repos, vendor_id)}


@app.get("/api/admin/vendors/pending", response_model=List[PublicUser])
def list_pending_vendors(_: PublicUser = Depends(require_admin), repos: Repositories = Depends(get_repos)):
    return [public_user(v) for v in pending_vendors(repos)]


@app.post("/api/admin/vendors/{vendor_id}/approval")
def set_vendor_approval(vendor_id: str, req: ApprovalRequest, _: PublicUser = Depends(require_admin),
                        repos: Repositories = Depends(get_repos)):
    if not repos.users.set_approval_status(vendor_id, req.status):
        raise HTTPException(status_code=404, detail="Vendor not found")
    return {"updated": True, "approval_status": req.status}


@app.get("/api/admin/integrity")
def integrity_report(_: PublicUser = Depends(require_admin), repos: Repositories = Depends(get_repos)):
    issues = find_dangling_references(repos)
    return {"ok": not issues, "issues": [i.model_dump() for i in issues]}


# Products
@app.get("/api/products")
def list_products(category: Optional[str] = None, vendor_id: Optional[str] = None,
                  repos: Repositories = Depends(get_repos)):
    if vendor_id:
        return repos.products.get_by_vendor(vendor_id)
    return products_with_vendor(repos, category=category)


@app.get("/api/products/{product_id}")
def get_product(product_id: str, repos: Repositories = Depends(get_repos)):
    return _found(repos.products.get_by_id(product_id), "Product")


@app.post("/api/products", status_code=201)
def create_product(p: ProductIn, user: PublicUser = Depends(require_seller),
                   repos: Repositories = Depends(get_repos)):
    data = {k: v for k, v in p.model_dump().items() if v is not None}
    if user.role == "vendor":
        data["vendor_id"] = user.id
    created = repos.products.add(data)
    if created is None:
        raise HTTPException(status_code=500, detail="Failed to create product")
    return created


@app.put("/api/products/{product_id}")
def update_product(product_id: str, upd: ProductUpdate, user: PublicUser = Depends(require_seller),
                   repos: Repositories = Depends(get_repos)):
    product = _found(repos.products.get_by_id(product_id), "Product")
    if user.role == "vendor" and product.get("vendor_id") != user.id:
        raise HTTPException(status_code=403, detail="Not your product")
    data = {k: v for k, v in upd.model_dump().items() if v is not None}
    if not data:
        return {"updated": False}
    if not repos.products.update(product_id, data):
        raise HTTPException(status_code=404, detail="Product not found")
    return {"updated": True}


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, user: PublicUser = Depends(require_seller),
                   repos: Repositories = Depends(get_repos)):
    product = _found(repos.products.get_by_id(product_id), "Product")
    if user.role == "vendor" and product.get("vendor_id") != user.id:
        raise HTTPException(status_code=403, detail="Not your product")
    if not repos.products.delete(product_id):
        raise HTTPException(status_code=404, detail="Product not found")
    return {"deleted": True}


# Orders
@app.get("/api/orders")
def list_orders(user_id: Optional[str] = None, vendor_id: Optional[str] = None,
                repos: Repositories = Depends(get_repos)):
    if user_id:
        return repos.orders.get_by_user(user_id)
    if vendor_id:
        return repos.orders.get_by_vendor(vendor_id)
    return repos.orders.get_all()


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, repos: Repositories = Depends(get_repos)):
    return _found(order_details(repos, order_id), "Order")


@app.post("/api/orders/place", status_code=201)
def place_order_route(req: PlaceOrderRequest, user: PublicUser = Depends(get_current_user),
                      repos: Repositories = Depends(get_repos)):
    result = place_order(
        repos, _acting_user_id(req.user_id, user), req.vendor_id, [i.model_dump() for i in req.items],
        delivery_address=req.delivery_address, delivery_time=req.delivery_time,
        payment_method=req.payment_method,
    )
    return {
        "order_id": result["order"]["order_id"],
        "transaction_id": result["transaction"]["transaction_id"],
        "total": result["order"]["total"],
        "delivery_date": result["order"]["delivery_date"],
        "status": result["order"]["status"],
    }


@app.post("/api/orders/{order_id}/status")
def update_order_status(order_id: str, req: OrderStatusUpdate, user: PublicUser = Depends(require_seller),
                        repos: Repositories = Depends(get_repos)):
    _check_owner(_found(repos.orders.get_by_id(order_id), "Order"), user, "order")
    if not repos.orders.update_status(order_id, req.status):
        raise HTTPException(status_code=404, detail="Order not found")
    return {"updated": True, "status": req.status}


@app.post("/api/orders/{order_id}/cancel")
def cancel_order_route(order_id: str, user: PublicUser = Depends(get_current_user),
                       repos: Repositories = Depends(get_repos)):
    if user.role == "vendor":
        _check_owner(_found(repos.orders.get_by_id(order_id), "Order"), user, "order")
    owner = None if user.role in ("vendor", "admin") else user.id
    if not cancel_order(repos, order_id, user_id=owner):
        raise HTTPException(status_code=500, detail="Failed to cancel order")
    return {"cancelled": True}


# Subscriptions
@app.get("/api/subscriptions")
def list_subscriptions(user_id: Optional[str] = None, vendor_id: Optional[str] = None,
                       repos: Repositories = Depends(get_repos)):
    if user_id:
        return subscriptions_with_vendor(repos, user_id)
    if vendor_id:
        return repos.subscriptions.get_by_vendor(vendor_id)
    return repos.subscriptions.get_all()


@app.post("/api/subscriptions/subscribe", status_code=201)
def subscribe_route(req: SubscribeRequest, user: PublicUser = Depends(get_current_user),
                    repos: Repositories = Depends(get_repos)):
    result = subscribe(repos, _acting_user_id(req.user_id, user), req.vendor_id, req.type,
                       start_date=req.start_date, delivery_time=req.delivery_time,
                       preferred_day=req.preferred_day)
    return {
        "subscription_id": result["subscription"]["subscription_id"],
        "transaction_id": result["transaction"]["transaction_id"],
        "end_date": result["subscription"]["end_date"],
        "status": result["subscription"]["status"],
    }


@app.post("/api/subscriptions/{subscription_id}/status")
def update_subscription_status(subscription_id: str, req: SubscriptionStatusUpdate,
                               user: PublicUser = Depends(get_current_user),
                               repos: Repositories = Depends(get_repos)):
    _check_owner(_found(repos.subscriptions.get_by_id(subscription_id), "Subscription"), user, "subscription")
    if not repos.subscriptions.update_status(subscription_id, req.status):
        raise HTTPException(status_code=404, detail="Subscription not found")
    return {"updated": True, "status": req.status}


@app.post("/api/subscriptions/{subscription_id}/vacation")
def set_vacation(subscription_id: str, req: VacationRequest, user: PublicUser = Depends(get_current_user),
                 repos: Repositories = Depends(get_repos)):
    _check_owner(_found(repos.subscriptions.get_by_id(subscription_id), "Subscription"), user, "subscription")
    if not repos.subscriptions.set_vacation(subscription_id, req.vacation_start, req.vacation_end):
        raise HTTPException(status_code=400, detail="Invalid vacation period")
    return {"updated": True}


@app.delete("/api/subscriptions/{subscription_id}/vacation")
def clear_vacation(subscription_id: str, user: PublicUser = Depends(get_current_user),
                   repos: Repositories = Depends(get_repos)):
    _check_owner(_found(repos.subscriptions.get_by_id(subscription_id), "Subscription"), user, "subscription")
    if not repos.subscriptions.clear_vacation(subscription_id):
        raise HTTPException(status_code=404, detail="Subscription not found")
    return {"updated": True}


@app.get("/api/subscriptions/{subscription_id}/deliveries")
def list_deliveries(subscription_id: str, upcoming: bool = False, repos: Repositories = Depends(get_repos)):
    if upcoming:
        return repos.deliveries.get_upcoming(subscription_id)
    return repos.deliveries.get_by_subscription(subscription_id)


@app.post("/api/deliveries/{delivery_id}/status")
def update_delivery_status(delivery_id: str, req: DeliveryStatusUpdate, _: PublicUser = Depends(require_seller),
                           repos: Repositories = Depends(get_repos)):
    if not repos.deliveries.update_status(delivery_id, req.status):
        raise HTTPException(status_code=404, detail="Delivery not found")
    return {"updated": True, "status": req.status}


# Transactions
@app.get("/api/transactions")
def list_transactions(user_id: Optional[str] = None, vendor_id: Optional[str] = None,
                      repos: Repositories = Depends(get_repos)):
    if user_id:
        return repos.transactions.get_by_user(user_id)
    if vendor_id:
        return repos.transactions.get_by_vendor(vendor_id)
    return repos.transactions.get_all()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
