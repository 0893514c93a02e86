"""Aggregations recomputed from the live order set on every call."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo

from .helpers import parse_iso
from .model.records import PAY_PAID, Order


def email_stats(orders: Iterable[Order]) -> Dict[str, Any]:
    groups: Dict[str, Dict[str, Any]] = {}
    total_orders = 0
    for o in orders:
        total_orders += 1
        g = groups.get(o.contact_info)
        if g is None:
            g = groups[o.contact_info] = {
                "email": o.contact_info,
                "order_count": 0,
                "paid_count": 0,
                "total_amount": 0,
                "first_order_date": o.created_at,
                "last_order_date": o.created_at,
                "orders": [],
            }
        g["order_count"] += 1
        g["total_amount"] += int(o.total_amount)
        if o.payment_status == PAY_PAID:
            g["paid_count"] += 1
        created = parse_iso(o.created_at)
        if created is not None:
            first = parse_iso(g["first_order_date"])
            last = parse_iso(g["last_order_date"])
            if first is None or created < first:
                g["first_order_date"] = o.created_at
            if last is None or created > last:
                g["last_order_date"] = o.created_at
        g["orders"].append(o.public_dict())

    email_list = sorted(
        groups.values(),
        key=lambda g: parse_iso(g["last_order_date"]) or datetime.min.replace(
            tzinfo=timezone.utc
        ),
        reverse=True,
    )
    return {
        "total_orders": total_orders,
        "unique_emails": len(email_list),
        "email_list": email_list,
    }


def _window(orders: List[Order], start: datetime, end: datetime):
    count = 0
    revenue = 0
    for o in orders:
        created = parse_iso(o.created_at)
        if created is not None and start <= created < end:
            count += 1
            revenue += int(o.total_amount)
    return count, revenue


def sales_stats(
    orders: Iterable[Order], tz: str = "Asia/Shanghai",
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """Paid-order counts and revenue (minor units) per calendar window."""
    zone = ZoneInfo(tz)
    now = (now or datetime.now(tz=timezone.utc)).astimezone(zone)
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    yesterday = today - timedelta(days=1)
    tomorrow = today + timedelta(days=1)
    month = today.replace(day=1)

    all_orders = list(orders)
    paid = [o for o in all_orders if o.payment_status == PAY_PAID]
    today_sales, today_revenue = _window(paid, today, tomorrow)
    y_sales, y_revenue = _window(paid, yesterday, today)
    m_sales, m_revenue = _window(paid, month, tomorrow)
    return {
        "today_sales": today_sales,
        "today_revenue": today_revenue,
        "yesterday_sales": y_sales,
        "yesterday_revenue": y_revenue,
        "month_sales": m_sales,
        "month_revenue": m_revenue,
        "total_orders": len(all_orders),
        "unique_customers": len({o.contact_info for o in all_orders}),
    }
