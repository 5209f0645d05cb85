"""
Cross-collection read helpers. Nothing here writes.
"""

from typing import Any, Dict, List, Optional

from repositories import Repositories
from schemas import ReferenceIssue


def vendor_display_name(vendor: Optional[Dict[str, Any]]) -> Optional[str]:
    if not vendor:
        return None
    return (vendor.get("profile_info") or {}).get("business_name") or vendor.get("name")


def approved_vendors(repos: Repositories) -> List[Dict[str, Any]]:
    return repos.users.get_vendors("approved")


def pending_vendors(repos: Repositories) -> List[Dict[str, Any]]:
    return repos.users.get_vendors("pending")


def vendor_name_for_product(repos: Repositories, product_id: str) -> Optional[str]:
    product = repos.products.get_by_id(product_id)
    if product is None:
        return None
    return vendor_display_name(repos.users.get_by_id(product.get("vendor_id")))


def products_with_vendor(repos: Repositories, category: Optional[str] = None,
                         approved_only: bool = True) -> List[Dict[str, Any]]:
    """Products joined with their vendor's display name.

    With ``approved_only`` the products of vendors that are not approved
    (or no longer exist) are left out.
    """
    vendors = {u.get("id"): u for u in repos.users.get_all() if u.get("role") == "vendor"}
    products = repos.products.get_by_category(category) if category else repos.products.get_all()
    result = []
    for product in products:
        vendor = vendors.get(product.get("vendor_id"))
        if approved_only and (vendor is None or vendor.get("approval_status") != "approved"):
            continue
        result.append({**product, "vendor_name": vendor_display_name(vendor)})
    return result


def subscriptions_with_vendor(repos: Repositories, user_id: str) -> List[Dict[str, Any]]:
    users = {u.get("id"): u for u in repos.users.get_all()}
    result = []
    for sub in repos.subscriptions.get_by_user(user_id):
        vendor = users.get(sub.get("vendor_id"))
        result.append({
            **sub,
            "vendor_name": vendor_display_name(vendor),
            "vendor_address": ((vendor or {}).get("profile_info") or {}).get("address"),
        })
    return result


def order_details(repos: Repositories, order_id: str) -> Optional[Dict[str, Any]]:
    """An order with its vendor and one line per product (quantity defaults to 1)."""
    order = repos.orders.get_by_id(order_id)
    if order is None:
        return None
    products = {p.get("product_id"): p for p in repos.products.get_all()}
    quantities = order.get("quantities") or []
    lines = []
    for index, product_id in enumerate(order.get("products") or []):
        qty = quantities[index] if index < len(quantities) and quantities[index] else 1
        product = products.get(product_id)
        price = float(product.get("price", 0)) if product else None
        lines.append({
            "product_id": product_id,
            "name": product.get("name") if product else None,
            "price": price,
            "quantity": qty,
            "line_total": round(price * qty, 2) if price is not None else None,
        })
    vendor = repos.users.get_by_id(order.get("vendor_id"))
    return {"order": order, "vendor_name": vendor_display_name(vendor), "lines": lines}


def user_activity(repos: Repositories, user_id: str) -> Dict[str, int]:
    subscriptions = repos.subscriptions.get_by_user(user_id)
    return {
        "orders": len(repos.orders.get_by_user(user_id)),
        "subscriptions": len(subscriptions),
        "active_subscriptions": sum(1 for s in subscriptions if s.get("status") == "active"),
    }


def vendor_revenue(repos: Repositories, vendor_id: str) -> float:
    total = 0.0
    for t in repos.transactions.get_by_vendor(vendor_id):
        total += float(t.get("amount", 0))
    return round(total, 2)


def find_dangling_references(repos: Repositories) -> List[ReferenceIssue]:
    """Report references that point at records which do not exist."""
    users = {u.get("id") for u in repos.users.get_all()}
    vendors = {u.get("id") for u in repos.users.get_all() if u.get("role") == "vendor"}
    products = {p.get("product_id") for p in repos.products.get_all()}
    orders = {o.get("order_id") for o in repos.orders.get_all()}
    subscriptions = {s.get("subscription_id") for s in repos.subscriptions.get_all()}

    issues = []

    def check(collection, record, id_field, field, known, value):
        if value is not None and value not in known:
            issues.append(ReferenceIssue(collection=collection, record_id=str(record.get(id_field)),
                                         field=field, missing_id=str(value)))

    for p in repos.products.get_all():
        check("products", p, "product_id", "vendor_id", vendors, p.get("vendor_id"))
    for o in repos.orders.get_all():
        check("orders", o, "order_id", "user_id", users, o.get("user_id"))
        check("orders", o, "order_id", "vendor_id", vendors, o.get("vendor_id"))
        for product_id in o.get("products") or []:
            check("orders", o, "order_id", "products", products, product_id)
    for s in repos.subscriptions.get_all():
        check("subscriptions", s, "subscription_id", "user_id", users, s.get("user_id"))
        check("subscriptions", s, "subscription_id", "vendor_id", vendors, s.get("vendor_id"))
    for t in repos.transactions.get_all():
        check("transactions", t, "transaction_id", "user_id", users, t.get("user_id"))
        check("transactions", t, "transaction_id", "vendor_id", vendors, t.get("vendor_id"))
        check("transactions", t, "transaction_id", "order_id", orders, t.get("order_id"))
    for d in repos.deliveries.get_all():
        check("deliveries", d, "delivery_id", "subscription_id", subscriptions, d.get("subscription_id"))
    return issues
