# Overview: Admin discount routes; CRUD, toggle, duplicate and usage ledger checks.

from flask import Blueprint, request, jsonify, g

from ..decorators import require_auth, require_admin, api_action
from ..services import discount_service
from ..services.discount_service import DiscountCommand
from ..validation import (
    int_list,
    json_object,
    optional_bool,
    optional_datetime,
    optional_int,
    optional_str,
    require_int,
    require_str,
)


discounts_bp = Blueprint("discounts", __name__, url_prefix="/api/admin/discounts")


def _command_from_payload(data: dict) -> DiscountCommand:
    combines = json_object(data.get("combines_with"))
    return DiscountCommand(
        code=require_str(data, "code", max_length=64),
        title=require_str(data, "title"),
        type=require_str(data, "type", max_length=24),
        value=optional_int(data, "value", minimum=0) or 0,
        description=optional_str(data, "description", max_length=5000),
        applies_to=optional_str(data, "applies_to", max_length=16) or "all",
        product_ids=int_list(data, "product_ids"),
        collection_ids=int_list(data, "collection_ids"),
        minimum_amount=optional_int(data, "minimum_amount", minimum=0),
        maximum_amount=optional_int(data, "maximum_amount", minimum=0),
        usage_limit=optional_int(data, "usage_limit", minimum=1),
        usage_limit_per_customer=optional_int(data, "usage_limit_per_customer", minimum=1),
        once_per_customer=optional_bool(data, "once_per_customer"),
        prerequisite_quantity=optional_int(data, "prerequisite_quantity", minimum=1),
        entitled_quantity=optional_int(data, "entitled_quantity", minimum=1),
        starts_at=optional_datetime(data, "starts_at"),
        ends_at=optional_datetime(data, "ends_at"),
        status=optional_str(data, "status", max_length=16) or "draft",
        combines_with_product=optional_bool(combines, "product_discounts"),
        combines_with_order=optional_bool(combines, "order_discounts"),
        combines_with_shipping=optional_bool(combines, "shipping_discounts"),
    )


@discounts_bp.get("")
@require_auth
@api_action("list discounts")
def list_discounts_route():
    """Query params: status, search. Statuses are recomputed against the current time."""
    discounts = discount_service.list_discounts(
        g.store_id,
        status=request.args.get("status") or None,
        search=request.args.get("search") or None,
    )
    return jsonify({"success": True, "discounts": [d.to_dict() for d in discounts]}), 200


@discounts_bp.get("/available")
@require_auth
@api_action("list available discounts")
def available_discounts_route():
    order_amount = require_int(request.args.to_dict(), "order_amount", minimum=0)
    result = discount_service.available_discounts(g.store_id, order_amount)
    return jsonify({"success": True, "discounts": result}), 200


@discounts_bp.post("")
@require_auth
@require_admin
@api_action("create discount")
def create_discount_route():
    cmd = _command_from_payload(json_object(request.get_json(silent=True)))
    discount = discount_service.create_discount(g.store_id, cmd, user_id=g.current_user.id)
    return jsonify({"success": True, "discount": discount.to_dict()}), 201


@discounts_bp.get("/<int:discount_id>")
@require_auth
@api_action("load discount")
def get_discount_route(discount_id: int):
    discount = discount_service.get_discount(discount_id, store_id=g.store_id)
    return jsonify({"success": True, "discount": discount.to_dict()}), 200


@discounts_bp.put("/<int:discount_id>")
@require_auth
@require_admin
@api_action("update discount")
def update_discount_route(discount_id: int):
    cmd = _command_from_payload(json_object(request.get_json(silent=True)))
    discount = discount_service.update_discount(discount_id, g.store_id, cmd, user_id=g.current_user.id)
    return jsonify({"success": True, "discount": discount.to_dict()}), 200


@discounts_bp.post("/<int:discount_id>/toggle")
@require_auth
@require_admin
@api_action("toggle discount")
def toggle_discount_route(discount_id: int):
    discount = discount_service.toggle_discount(discount_id, g.store_id, user_id=g.current_user.id)
    return jsonify({"success": True, "discount": discount.to_dict()}), 200


@discounts_bp.post("/<int:discount_id>/duplicate")
@require_auth
@require_admin
@api_action("duplicate discount")
def duplicate_discount_route(discount_id: int):
    discount = discount_service.duplicate_discount(discount_id, g.store_id, user_id=g.current_user.id)
    return jsonify({"success": True, "discount": discount.to_dict()}), 201


@discounts_bp.delete("/<int:discount_id>")
@require_auth
@require_admin
@api_action("delete discount")
def delete_discount_route(discount_id: int):
    discount_service.delete_discount(discount_id, g.store_id, user_id=g.current_user.id)
    return jsonify({"success": True}), 200


@discounts_bp.get("/<int:discount_id>/usage-check")
@require_auth
@api_action("check discount usage")
def usage_check_route(discount_id: int):
    result = discount_service.check_usage_consistency(discount_id, store_id=g.store_id)
    return jsonify({"success": True, **result}), 200
