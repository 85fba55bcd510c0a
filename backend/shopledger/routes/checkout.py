# Overview: Storefront checkout routes; order placement and discount code checks.

"""
Checkout API Routes

Public storefront actions. The store is named in the request body; the
customer is optional (guest checkout).
"""

from flask import Blueprint, request, jsonify

from ..decorators import api_action
from ..services import discount_service, order_service
from ..services.order_service import CheckoutCommand, CheckoutLine
from ..validation import (
    ValidationError,
    json_object,
    optional_int,
    optional_str,
    require_int,
    require_str,
)


checkout_bp = Blueprint("checkout", __name__, url_prefix="/api/checkout")

# Codes whose amount follows from the order total alone
CART_TOTAL_TYPES = {discount_service.TYPE_PERCENTAGE, discount_service.TYPE_FIXED_AMOUNT}


def _parse_lines(data: dict) -> list[CheckoutLine]:
    raw = data.get("items")
    if not isinstance(raw, list) or not raw:
        raise ValidationError("items must be a non-empty list")
    lines = []
    for entry in raw:
        entry = json_object(entry)
        lines.append(CheckoutLine(
            variant_id=require_int(entry, "variant_id", minimum=1),
            quantity=require_int(entry, "quantity", minimum=1, maximum=10_000),
        ))
    return lines


@checkout_bp.post("/orders")
@api_action("create order")
def create_order_route():
    """
    Place an order.

    Request body:
    {
        "store_id": 1,
        "email": "buyer@example.com",
        "customer_id": 7,                      (optional)
        "items": [{"variant_id": 3, "quantity": 2}],
        "shipping_address": {...},
        "billing_address": {...},              (optional, defaults to shipping)
        "shipping_method": "standard",         (standard | express | overnight)
        "discount_code": "SAVE10",             (optional)
        "payment_method": "card"               (optional)
    }

    Returns:
        201: {success, order}
        400: Invalid input
        404: Unknown store, customer or variant
        409: Discount rejected or insufficient stock
    """
    data = json_object(request.get_json(silent=True))
    shipping_address = data.get("shipping_address")
    billing_address = data.get("billing_address")
    if not isinstance(shipping_address, dict):
        raise ValidationError("shipping_address must be an object")

    cmd = CheckoutCommand(
        store_id=require_int(data, "store_id", minimum=1),
        email=require_str(data, "email"),
        lines=_parse_lines(data),
        shipping_address=shipping_address,
        billing_address=billing_address,
        shipping_method=optional_str(data, "shipping_method", max_length=32) or "standard",
        customer_id=optional_int(data, "customer_id", minimum=1),
        discount_code=optional_str(data, "discount_code", max_length=64),
        payment_method=optional_str(data, "payment_method", max_length=32),
        notes=optional_str(data, "notes", max_length=5000),
    )
    order = order_service.create_order(cmd)
    return jsonify({"success": True, "order": order_service.get_order_detail(order.id)}), 201


@checkout_bp.post("/discounts/validate")
@api_action("validate discount code")
def validate_discount_route():
    """
    Check a discount code against a cart total.

    Request body: {"store_id": 1, "code": "SAVE10", "order_amount": 10000, "customer_id": 7}

    Rule failures are a normal answer: 200 with success=false and the reason.
    discount_amount is only reported for percentage and fixed_amount codes;
    free_shipping and buy_x_get_y depend on the shipping method and cart lines,
    so checkout computes them when the order is placed.
    """
    data = json_object(request.get_json(silent=True))
    store_id = require_int(data, "store_id", minimum=1)
    code = optional_str(data, "code", max_length=64) or ""
    order_amount = optional_int(data, "order_amount", minimum=0)
    customer_id = optional_int(data, "customer_id", minimum=1)

    result = discount_service.validate_discount(store_id, code, customer_id=customer_id, order_amount=order_amount)
    if not result.valid:
        return jsonify({"success": False, "valid": False, "error": result.error}), 200

    body = {"success": True, "valid": True, "discount": result.discount.to_dict()}
    if order_amount is not None and result.discount.type in CART_TOTAL_TYPES:
        body["discount_amount"] = discount_service.calculate_discount_amount(result.discount, order_amount)
    return jsonify(body), 200
