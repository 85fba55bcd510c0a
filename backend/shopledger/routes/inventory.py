# Overview: Flask API routes for inventory operations; parses input and returns JSON responses.

# backend/shopledger/routes/inventory.py
"""
Inventory Admin API Routes

Each mutation maps to one explicit command:
- adjust: relative delta with a typed reason
- set-quantity: absolute overwrite with a free-text reason (admin only)
- reorder-settings: thresholds only, never quantity
- bulk-adjust: several adjustments, all-or-nothing
"""

from flask import Blueprint, request, jsonify, g

from ..decorators import require_auth, require_admin, api_action
from ..services import inventory_service
from ..services.inventory_service import (
    AdjustInventoryCommand,
    SetQuantityCommand,
    UpdateReorderSettingsCommand,
)
from ..validation import (
    ValidationError,
    json_object,
    optional_int,
    optional_str,
    require_int,
    require_str,
)


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/admin/inventory")


def _adjust_command(data: dict) -> AdjustInventoryCommand:
    return AdjustInventoryCommand(
        variant_id=require_int(data, "variant_id", minimum=1),
        location_id=require_int(data, "location_id", minimum=1),
        delta=require_int(data, "delta", minimum=-1_000_000, maximum=1_000_000),
        reason_type=require_str(data, "reason_type", max_length=16),
        reason=optional_str(data, "reason"),
        notes=optional_str(data, "notes", max_length=5000),
    )


@inventory_bp.post("/adjust")
@require_auth
@api_action("adjust inventory")
def adjust_route():
    """
    Request body:
    {"variant_id": 3, "location_id": 1, "delta": -2, "reason_type": "damaged", "reason": "...", "notes": "..."}
    """
    cmd = _adjust_command(json_object(request.get_json(silent=True)))
    item = inventory_service.adjust_inventory(cmd, store_id=g.store_id, user_id=g.current_user.id)
    return jsonify({"success": True, "item": item.to_dict()}), 200


@inventory_bp.post("/set-quantity")
@require_auth
@require_admin
@api_action("set inventory quantity")
def set_quantity_route():
    data = json_object(request.get_json(silent=True))
    cmd = SetQuantityCommand(
        variant_id=require_int(data, "variant_id", minimum=1),
        location_id=require_int(data, "location_id", minimum=1),
        quantity=require_int(data, "quantity", minimum=0, maximum=1_000_000),
        reason=require_str(data, "reason"),
    )
    item = inventory_service.set_quantity(cmd, store_id=g.store_id, user_id=g.current_user.id)
    return jsonify({"success": True, "item": item.to_dict()}), 200


@inventory_bp.post("/reorder-settings")
@require_auth
@api_action("update reorder settings")
def reorder_settings_route():
    data = json_object(request.get_json(silent=True))
    cmd = UpdateReorderSettingsCommand(
        variant_id=require_int(data, "variant_id", minimum=1),
        location_id=require_int(data, "location_id", minimum=1),
        reorder_point=optional_int(data, "reorder_point", minimum=0),
        reorder_quantity=optional_int(data, "reorder_quantity", minimum=1),
    )
    item = inventory_service.update_reorder_settings(cmd, store_id=g.store_id)
    return jsonify({"success": True, "item": item.to_dict()}), 200


@inventory_bp.post("/bulk-adjust")
@require_auth
@api_action("bulk adjust inventory")
def bulk_adjust_route():
    """Request body: {"adjustments": [<adjust body>, ...]}. Nothing is applied if any entry fails."""
    data = json_object(request.get_json(silent=True))
    raw = data.get("adjustments")
    if not isinstance(raw, list) or not raw:
        raise ValidationError("adjustments must be a non-empty list")
    commands = [_adjust_command(json_object(entry)) for entry in raw]
    items = inventory_service.bulk_adjust(commands, store_id=g.store_id, user_id=g.current_user.id)
    return jsonify({"success": True, "items": [i.to_dict() for i in items]}), 200


@inventory_bp.get("/low-stock")
@require_auth
@api_action("list low stock")
def low_stock_route():
    location_id = optional_int(request.args.to_dict(), "location_id", minimum=1)
    items = inventory_service.list_low_stock(g.store_id, location_id=location_id)
    return jsonify({"success": True, "items": [i.to_dict() for i in items]}), 200
