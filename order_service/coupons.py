"""Coupon redemption engine.

Checkout never fails because of a coupon: :func:`apply_coupon` turns every
rejection or lookup error into a zero discount. The preview endpoint uses
:func:`preview_coupon`, which reports the rejection reason instead.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from .capabilities import SchemaCapabilities
from .errors import CouponNotApplicableError, NotFoundError, ValidationError
from .models import Coupon, CouponRedemption, CouponType

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0")


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


def _as_utc(moment: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; every stored timestamp is UTC.
    if moment is not None and moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def compute_discount(coupon: Coupon, subtotal: Decimal) -> Decimal:
    """Discount for ``subtotal``, clamped to ``[0, subtotal]``.

    PERCENT coupons take ``value`` percent of the pre-shipping subtotal,
    capped at ``max_discount`` when set. FIXED coupons take ``value``.
    """
    subtotal = Decimal(subtotal)
    if coupon.type == CouponType.PERCENT:
        discount = subtotal * Decimal(coupon.value) / Decimal(100)
        if coupon.max_discount is not None and discount > coupon.max_discount:
            discount = Decimal(coupon.max_discount)
    else:
        discount = Decimal(coupon.value)

    discount = discount.quantize(CENT, rounding=ROUND_HALF_UP)
    return max(ZERO, min(discount, subtotal))


def check_applicable(coupon: Coupon, subtotal: Decimal, now: datetime | None = None) -> None:
    """Raise :class:`CouponNotApplicableError` naming why ``coupon`` cannot be used."""
    now = now or datetime.now(timezone.utc)

    start_at = _as_utc(coupon.start_at)
    end_at = _as_utc(coupon.end_at)
    if start_at is not None and now < start_at:
        raise CouponNotApplicableError("coupon is not active yet")
    if end_at is not None and now > end_at:
        raise CouponNotApplicableError("coupon has expired")
    if coupon.usage_limit is not None and coupon.used_count >= coupon.usage_limit:
        raise CouponNotApplicableError("coupon usage limit reached")
    if Decimal(subtotal) < Decimal(coupon.min_order or 0):
        raise CouponNotApplicableError(
            f"minimum order of {Decimal(coupon.min_order):,.0f} required for this coupon"
        )


def _find_active(db: Session, code: str, lock: bool = False) -> Coupon | None:
    stmt = select(Coupon).where(Coupon.code == code, Coupon.status == "ACTIVE")
    if lock:
        # Serializes redemptions so used_count cannot pass usage_limit.
        stmt = stmt.with_for_update()
    return db.execute(stmt).scalar_one_or_none()


def preview_coupon(
    db: Session, code: str | None, order_total: Decimal, now: datetime | None = None
) -> tuple[Coupon, Decimal]:
    """Validate a code against a cart total without redeeming it."""
    code = normalize_code(code)
    if not code:
        raise ValidationError("coupon code is required")

    coupon = _find_active(db, code)
    if coupon is None:
        raise NotFoundError("coupon does not exist or is no longer active")

    check_applicable(coupon, order_total, now)
    return coupon, compute_discount(coupon, order_total)


def apply_coupon(
    db: Session,
    code: str | None,
    user_id: int,
    subtotal: Decimal,
    order_id: int,
    capabilities: SchemaCapabilities | None = None,
    now: datetime | None = None,
) -> Decimal:
    """Redeem ``code`` for ``order_id`` and return the discount.

    Returns zero when no code is given, the coupon is unknown, inactive,
    outside its validity window, exhausted, below its minimum order, or the
    lookup fails. The used_count increment and the redemption row are written
    in a savepoint of the caller's transaction, so they commit or roll back
    together with the order.
    """
    code = normalize_code(code)
    if not code:
        return ZERO

    capabilities = capabilities or SchemaCapabilities()
    log = logger.bind(code=code, order_id=order_id, user_id=user_id)
    try:
        with db.begin_nested():
            coupon = _find_active(db, code, lock=True)
            if coupon is None:
                log.info("coupon_rejected", reason="unknown or inactive")
                return ZERO

            try:
                check_applicable(coupon, subtotal, now)
            except CouponNotApplicableError as exc:
                log.info("coupon_rejected", reason=exc.user_message)
                return ZERO

            discount = compute_discount(coupon, subtotal)
            coupon.used_count = (coupon.used_count or 0) + 1
            if capabilities.coupon_redemption:
                db.add(
                    CouponRedemption(
                        coupon_id=coupon.id,
                        user_id=user_id,
                        order_id=order_id,
                        discount_amount=discount,
                    )
                )
            db.flush()
    except Exception as exc:
        # Unreadable coupon rows (e.g. an unknown type) count as no coupon.
        log.warning("coupon_apply_failed", error=repr(exc))
        return ZERO

    log.info("coupon_redeemed", discount=str(discount))
    return discount
