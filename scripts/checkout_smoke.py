#!/usr/bin/env python3
"""
Checkout smoke tests against a running order service.

Run:
  python scripts/checkout_smoke.py

The target database must already contain the product PRODUCT_ID with some
stock, and users USER_ID / ADMIN_ID. Tokens are signed locally with the same
JWT_SECRET the service uses.

Optional env:
  ORDER_BASE=http://localhost:8000
  PRODUCT_ID=1
  USER_ID=1
  ADMIN_ID=2
  COUPON_CODE=SALE10
  DEBUG=1
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import requests

from order_service.auth import issue_token


class Style:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"

    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    BLUE = "\033[94m"
    CYAN = "\033[96m"
    GRAY = "\033[90m"


def section_title(text: str):
    line = "─" * (len(text) + 2)
    print(f"\n{Style.BLUE}┌{line}┐{Style.RESET}")
    print(f"{Style.BLUE}│ {Style.BOLD}{text}{Style.RESET}{Style.BLUE} │{Style.RESET}")
    print(f"{Style.BLUE}└{line}┘{Style.RESET}")


def info(msg: str):
    print(f"{Style.CYAN}ℹ {msg}{Style.RESET}")


def ok(msg: str):
    print(f"{Style.GREEN}✔ {msg}{Style.RESET}")


def fail(msg: str):
    print(f"{Style.RED}✘ {msg}{Style.RESET}")


# =========================
# Config
# =========================

ORDER_BASE = os.getenv("ORDER_BASE", "http://localhost:8000")
PRODUCT_ID = int(os.getenv("PRODUCT_ID", "1"))
USER_ID = int(os.getenv("USER_ID", "1"))
ADMIN_ID = int(os.getenv("ADMIN_ID", "2"))
COUPON_CODE = os.getenv("COUPON_CODE")
DEBUG = os.getenv("DEBUG", "0").strip() in {"1", "true", "True", "YES", "yes"}

USER_HEADERS = {"Authorization": f"Bearer {issue_token(USER_ID, 'smoke@example.com', 'USER')}"}
ADMIN_HEADERS = {"Authorization": f"Bearer {issue_token(ADMIN_ID, 'admin@example.com', 'ADMIN')}"}


@dataclass
class CheckResult:
    name: str
    success: bool
    details: str = ""


def http(method: str, path: str, **kwargs) -> requests.Response:
    kwargs.setdefault("timeout", 8)
    if DEBUG:
        print(f"{Style.GRAY}… {method} {ORDER_BASE}{path} {kwargs.get('json')}{Style.RESET}")
    return requests.request(method, ORDER_BASE + path, **kwargs)


def place_order(quantity: int, coupon: Optional[str] = None) -> requests.Response:
    body: Dict[str, Any] = {
        "items": [{"productId": PRODUCT_ID, "quantity": quantity}] if quantity else [],
        "shippingAddress": "1 Smoke Test Street",
        "paymentMethod": "COD",
    }
    if coupon:
        body["couponCode"] = coupon
    return http("POST", "/orders", json=body, headers=USER_HEADERS)


# =========================
# Checks
# =========================

def check_happy_path() -> Tuple[CheckResult, Optional[int]]:
    section_title("Place Order")
    resp = place_order(1, COUPON_CODE)
    if resp.status_code != 201:
        fail(f"Unexpected status {resp.status_code}: {resp.text}")
        return CheckResult("Place Order", False, resp.text), None

    order = resp.json()
    expected_total = (Decimal(order["subtotal"]) + Decimal(order["shippingFee"])
                      - Decimal(order["discountTotal"]))
    success = Decimal(order["total"]) == expected_total and order["status"] == "PENDING"
    msg = f"order id={order['id']} total={order['total']} discount={order['discountTotal']}"
    (ok if success else fail)(msg)
    return CheckResult("Place Order", success, msg), order["id"]


def check_order_visible(order_id: int) -> CheckResult:
    section_title("Read Back Order")
    detail = http("GET", f"/orders/{order_id}", headers=USER_HEADERS)
    mine = http("GET", "/orders/me", headers=USER_HEADERS)
    success = (
        detail.status_code == 200
        and mine.status_code == 200
        and any(o["id"] == order_id for o in mine.json())
    )
    msg = f"GET /orders/{order_id} -> {detail.status_code}, /orders/me -> {mine.status_code}"
    (ok if success else fail)(msg)
    return CheckResult("Read Back Order", success, msg)


def check_insufficient_stock() -> CheckResult:
    section_title("Insufficient Stock")
    resp = place_order(10 ** 9)
    message = resp.json().get("message", "") if resp.headers.get("content-type", "").startswith("application/json") else ""
    success = resp.status_code == 400 and message.startswith("insufficient stock")
    msg = f"HTTP {resp.status_code}: {message or resp.text}"
    (ok if success else fail)(msg)
    return CheckResult("Insufficient Stock", success, msg)


def check_empty_cart() -> CheckResult:
    section_title("Empty Cart")
    resp = place_order(0)
    success = resp.status_code == 400
    msg = f"HTTP {resp.status_code}: {resp.text}"
    (ok if success else fail)(msg)
    return CheckResult("Empty Cart", success, msg)


def check_cancel_twice(order_id: int) -> CheckResult:
    section_title("Cancel Order Twice")
    statuses = []
    for _ in range(2):
        resp = http("PATCH", f"/orders/{order_id}/status", json={"status": "cancelled"},
                    headers=ADMIN_HEADERS)
        statuses.append((resp.status_code, resp.json().get("status")))
    history = resp.json().get("statusHistory", [])
    restocks = [h for h in history if h.get("toStatus") == "CANCELLED"]
    success = statuses == [(200, "CANCELLED"), (200, "CANCELLED")] and len(restocks) == 2
    msg = f"responses={statuses}, history entries into CANCELLED={len(restocks)}"
    (ok if success else fail)(msg)
    return CheckResult("Cancel Order Twice", success, msg)


def print_results(results: List[CheckResult]):
    print(f"\n{Style.BOLD}================ SMOKE RESULTS ================{Style.RESET}")
    passed = 0
    for r in results:
        color = Style.GREEN if r.success else Style.RED
        print(f"{color}{'✅' if r.success else '❌'} {r.name}{Style.RESET}")
        if r.details:
            print(f"    {Style.DIM}{r.details}{Style.RESET}")
        passed += r.success
    print(f"Total: {len(results)}  |  Passed: {Style.GREEN}{passed}{Style.RESET}  |  "
          f"Failed: {Style.RED}{len(results) - passed}{Style.RESET}\n")
    return passed == len(results)


def main():
    try:
        health = http("GET", "/health")
        health.raise_for_status()
        info(f"Service healthy, capabilities={health.json().get('capabilities')}")
    except requests.exceptions.RequestException as e:
        fail(f"Order service not reachable at {ORDER_BASE}: {e}")
        sys.exit(1)

    results: List[CheckResult] = []
    placed, order_id = check_happy_path()
    results.append(placed)
    if order_id is not None:
        results.append(check_order_visible(order_id))
    results.append(check_insufficient_stock())
    results.append(check_empty_cart())
    if order_id is not None:
        results.append(check_cancel_twice(order_id))

    sys.exit(0 if print_results(results) else 1)


if __name__ == "__main__":
    main()
