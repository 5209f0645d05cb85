"""
Checkout flows: placing and cancelling orders, subscribing to a vendor.

An order (or subscription) and its transaction are two separate writes; if
the second one fails the first record stays behind and the failure is logged.
"""

import calendar
import logging
from datetime import datetime, timedelta, time, date, timezone
from typing import Any, Dict, List, Optional

from config import CUTOFF_HOUR
from repositories import Repositories

logger = logging.getLogger(__name__)

SUBSCRIPTION_PRICES = {
    "daily": 45.99,
    "weekly": 22.99,
    "monthly": 89.99,
}

CANCELLABLE_STATUSES = ("pending", "processing")


class CheckoutError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def get_delivery_date(now: datetime) -> date:
    cutoff = time(hour=CUTOFF_HOUR, minute=0)
    if now.time() < cutoff:
        return (now + timedelta(days=1)).date()
    else:
        return (now + timedelta(days=2)).date()


def add_months(start: datetime, months: int) -> datetime:
    """Same day ``months`` later, clamped to the last day of that month."""
    index = start.month - 1 + months
    year = start.year + index // 12
    month = index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def calculate_end_date(sub_type: str, start: datetime) -> datetime:
    """daily: 30 days, weekly: 8 weeks, monthly: 3 months, anything else: 1 month."""
    if sub_type == "daily":
        return start + timedelta(days=30)
    if sub_type == "weekly":
        return start + timedelta(days=56)
    if sub_type == "monthly":
        return add_months(start, 3)
    return add_months(start, 1)


def _approved_vendor(repos: Repositories, vendor_id: str) -> Dict[str, Any]:
    vendor = repos.users.get_by_id(vendor_id)
    if vendor is None or vendor.get("role") != "vendor":
        raise CheckoutError(f"Vendor {vendor_id} not found", status_code=404)
    if vendor.get("approval_status") != "approved":
        raise CheckoutError(f"Vendor {vendor_id} is not accepting orders")
    return vendor


def place_order(repos: Repositories, user_id: str, vendor_id: str, items: List[Dict[str, Any]],
                delivery_address: Optional[str] = None, delivery_time: Optional[str] = None,
                payment_method: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Create an order priced from the product records, then its transaction.

    items: [{"product_id": "p1", "qty": 2}, ...]
    """
    if not items:
        raise CheckoutError("No items in order")
    if repos.users.get_by_id(user_id) is None:
        raise CheckoutError(f"User {user_id} not found", status_code=404)
    _approved_vendor(repos, vendor_id)

    catalog = {p.get("product_id"): p for p in repos.products.get_by_vendor(vendor_id)}
    product_ids = []
    quantities = []
    total = 0.0
    for item in items:
        pid = item.get("product_id")
        qty = int(item.get("qty", 1))
        prod = catalog.get(pid)
        if prod is None:
            raise CheckoutError(f"Product {pid} not found", status_code=404)
        if qty < 1:
            raise CheckoutError(f"Quantity for {prod.get('name', pid)} must be at least 1")
        product_ids.append(pid)
        quantities.append(qty)
        total += float(prod.get("price", 0)) * qty
    total = round(total, 2)

    now = now or datetime.now()
    order_data = {
        "user_id": user_id,
        "vendor_id": vendor_id,
        "products": product_ids,
        "quantities": quantities,
        "total": total,
        "delivery_date": get_delivery_date(now).isoformat(),
        "payment_method": payment_method or "Cash on Delivery",
    }
    if delivery_address:
        order_data["delivery_address"] = delivery_address
    if delivery_time:
        order_data["delivery_time"] = delivery_time

    order = repos.orders.add(order_data)
    if order is None:
        raise CheckoutError("Failed to create order", status_code=500)

    transaction = repos.transactions.add({
        "user_id": user_id,
        "vendor_id": vendor_id,
        "amount": total,
        "order_id": order["order_id"],
        "type": "order",
    })
    if transaction is None:
        logger.error("Order %s was created without a transaction", order["order_id"])
        raise CheckoutError("Failed to record transaction", status_code=500)
    return {"order": order, "transaction": transaction}


def cancel_order(repos: Repositories, order_id: str, user_id: Optional[str] = None) -> bool:
    order = repos.orders.get_by_id(order_id)
    if order is None or (user_id is not None and order.get("user_id") != user_id):
        raise CheckoutError("Order not found", status_code=404)
    if order.get("status") not in CANCELLABLE_STATUSES:
        raise CheckoutError("Cannot cancel order in this state")
    return repos.orders.update_status(order_id, "cancelled")


def subscribe(repos: Repositories, user_id: str, vendor_id: str, sub_type: str = "monthly",
              start_date: Optional[datetime] = None, delivery_time: Optional[str] = None,
              preferred_day: Optional[str] = None) -> Dict[str, Any]:
    if sub_type not in SUBSCRIPTION_PRICES:
        raise CheckoutError(f"Unknown subscription type {sub_type}")
    if repos.users.get_by_id(user_id) is None:
        raise CheckoutError(f"User {user_id} not found", status_code=404)
    _approved_vendor(repos, vendor_id)

    # first delivery is tomorrow at the earliest
    start = start_date or datetime.now(timezone.utc) + timedelta(days=1)
    subscription = repos.subscriptions.add({
        "user_id": user_id,
        "vendor_id": vendor_id,
        "type": sub_type,
        "start_date": start.isoformat(),
        "end_date": calculate_end_date(sub_type, start).isoformat(),
        "preferred_day": preferred_day or ("Monday" if sub_type == "weekly" else "Daily"),
        "delivery_time": delivery_time or "06:00 - 08:00",
    })
    if subscription is None:
        raise CheckoutError("Failed to create subscription", status_code=500)

    transaction = repos.transactions.add({
        "user_id": user_id,
        "vendor_id": vendor_id,
        "amount": SUBSCRIPTION_PRICES[sub_type],
        "type": "subscription",
        "reference_id": subscription["subscription_id"],
    })
    if transaction is None:
        logger.error("Subscription %s was created without a transaction", subscription["subscription_id"])
        raise CheckoutError("Failed to record transaction", status_code=500)
    return {"subscription": subscription, "transaction": transaction}
