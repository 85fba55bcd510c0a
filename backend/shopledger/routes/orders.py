# Overview: Admin order routes; detail, timeline, status changes, fulfillment, cancellation and notes.

"""
Order Admin API Routes

SECURITY:
- Every route requires a session; orders are scoped to the session's store
- Cancellation requires the admin role
"""

from flask import Blueprint, request, jsonify, g

from ..decorators import require_auth, require_admin, api_action
from ..services import order_service
from ..services.order_service import UpdateOrderStatusCommand, FulfillLine
from ..validation import (
    ValidationError,
    json_object,
    optional_bool,
    optional_str,
    require_int,
    require_str,
)


orders_bp = Blueprint("orders", __name__, url_prefix="/api/admin/orders")


@orders_bp.get("/<int:order_id>")
@require_auth
@api_action("load order")
def get_order_route(order_id: int):
    detail = order_service.get_order_detail(order_id, store_id=g.store_id)
    return jsonify({"success": True, "order": detail}), 200


@orders_bp.get("/<int:order_id>/timeline")
@require_auth
@api_action("load order timeline")
def get_timeline_route(order_id: int):
    include_internal = request.args.get("include_internal", "true").lower() == "true"
    entries = order_service.get_timeline(order_id, store_id=g.store_id, include_internal=include_internal)
    return jsonify({"success": True, "timeline": [e.to_dict() for e in entries]}), 200


@orders_bp.post("/<int:order_id>/status")
@require_auth
@api_action("update order status")
def update_status_route(order_id: int):
    """
    Request body (every field optional):
    {
        "status": "confirmed",
        "payment_status": "paid",
        "fulfillment_status": "fulfilled",
        "tracking_number": "...", "tracking_url": "...", "carrier": "...",
        "note": "Shown on each timeline entry written by this change"
    }
    """
    data = json_object(request.get_json(silent=True))
    cmd = UpdateOrderStatusCommand(
        order_id=order_id,
        status=optional_str(data, "status", max_length=32),
        payment_status=optional_str(data, "payment_status", max_length=32),
        fulfillment_status=optional_str(data, "fulfillment_status", max_length=32),
        tracking_number=optional_str(data, "tracking_number", max_length=128),
        tracking_url=optional_str(data, "tracking_url", max_length=512),
        carrier=optional_str(data, "carrier", max_length=64),
        note=optional_str(data, "note", max_length=order_service.MAX_NOTE_LENGTH),
    )
    order = order_service.update_order_status(cmd, actor=g.current_user)
    return jsonify({"success": True, "order": order.to_dict()}), 200


@orders_bp.post("/<int:order_id>/fulfill")
@require_auth
@api_action("fulfill order")
def fulfill_route(order_id: int):
    """
    Request body: {"lines": [{"order_item_id": 5, "quantity": 1}]}
    Omit lines to fulfill everything still outstanding.
    """
    data = json_object(request.get_json(silent=True))
    raw_lines = data.get("lines")
    lines = None
    if raw_lines is not None:
        if not isinstance(raw_lines, list):
            raise ValidationError("lines must be a list")
        lines = []
        for entry in raw_lines:
            entry = json_object(entry)
            lines.append(FulfillLine(
                order_item_id=require_int(entry, "order_item_id", minimum=1),
                quantity=require_int(entry, "quantity", minimum=1),
            ))
    order = order_service.fulfill_order(order_id, actor=g.current_user, lines=lines)
    return jsonify({"success": True, "order": order.to_dict()}), 200


@orders_bp.post("/<int:order_id>/cancel")
@require_auth
@require_admin
@api_action("cancel order")
def cancel_route(order_id: int):
    data = json_object(request.get_json(silent=True))
    order = order_service.cancel_order(
        order_id,
        actor=g.current_user,
        reason=optional_str(data, "reason", max_length=255),
    )
    return jsonify({"success": True, "order": order.to_dict()}), 200


@orders_bp.post("/<int:order_id>/notes")
@require_auth
@api_action("add order note")
def add_note_route(order_id: int):
    data = json_object(request.get_json(silent=True))
    entry = order_service.add_order_note(
        order_id,
        g.current_user,
        require_str(data, "note", max_length=order_service.MAX_NOTE_LENGTH),
        is_internal=optional_bool(data, "is_internal", default=True),
    )
    return jsonify({"success": True, "entry": entry.to_dict()}), 201
