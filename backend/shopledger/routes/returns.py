# Overview: Admin return routes; request, approve/reject, process and listing.

"""
Return Admin API Routes

SECURITY:
- Any staff user of the store can log a return request and read returns
- Approve, reject and process require the admin role
"""

from flask import Blueprint, request, jsonify, g

from ..decorators import require_auth, require_admin, api_action
from ..services import return_service
from ..services.return_service import RequestReturnCommand, ReturnLineInput
from ..validation import (
    ValidationError,
    json_object,
    optional_bool,
    optional_int,
    optional_str,
    require_choice,
    require_int,
    require_str,
)


returns_bp = Blueprint("returns", __name__, url_prefix="/api/admin")


@returns_bp.post("/orders/<int:order_id>/returns")
@require_auth
@api_action("request return")
def request_return_route(order_id: int):
    """
    Request body:
    {
        "reason": "damaged",
        "notes": "Box crushed in transit",
        "lines": [{"order_item_id": 5, "quantity": 1, "restockable": false, "reason": "..."}]
    }
    """
    data = json_object(request.get_json(silent=True))
    raw_lines = data.get("lines")
    if not isinstance(raw_lines, list):
        raise ValidationError("lines must be a list")
    lines = []
    for entry in raw_lines:
        entry = json_object(entry)
        lines.append(ReturnLineInput(
            order_item_id=require_int(entry, "order_item_id", minimum=1),
            quantity=require_int(entry, "quantity", minimum=1),
            restockable=optional_bool(entry, "restockable", default=True),
            reason=optional_str(entry, "reason"),
        ))
    cmd = RequestReturnCommand(
        order_id=order_id,
        reason=require_choice(data, "reason", return_service.RETURN_REASONS),
        lines=lines,
        notes=optional_str(data, "notes", max_length=5000),
        customer_id=optional_int(data, "customer_id", minimum=1),
    )
    return_doc = return_service.request_return(cmd, actor=g.current_user)
    return jsonify({"success": True, "return": return_doc.to_dict()}), 201


@returns_bp.get("/returns")
@require_auth
@api_action("list returns")
def list_returns_route():
    returns = return_service.list_returns(
        g.store_id,
        status=request.args.get("status") or None,
        order_id=optional_int(request.args.to_dict(), "order_id", minimum=1),
    )
    return jsonify({"success": True, "returns": [r.to_dict() for r in returns]}), 200


@returns_bp.get("/returns/<int:return_id>")
@require_auth
@api_action("load return")
def get_return_route(return_id: int):
    return_doc = return_service.get_return(return_id, store_id=g.store_id)
    return jsonify({"success": True, "return": return_doc.to_dict()}), 200


@returns_bp.post("/returns/<int:return_id>/approve")
@require_auth
@require_admin
@api_action("approve return")
def approve_return_route(return_id: int):
    return_doc = return_service.approve_return(return_id, actor=g.current_user)
    return jsonify({"success": True, "return": return_doc.to_dict()}), 200


@returns_bp.post("/returns/<int:return_id>/reject")
@require_auth
@require_admin
@api_action("reject return")
def reject_return_route(return_id: int):
    data = json_object(request.get_json(silent=True))
    return_doc = return_service.reject_return(
        return_id,
        actor=g.current_user,
        reason=require_str(data, "reason"),
    )
    return jsonify({"success": True, "return": return_doc.to_dict()}), 200


@returns_bp.post("/returns/<int:return_id>/process")
@require_auth
@require_admin
@api_action("process return")
def process_return_route(return_id: int):
    """Request body: {"resolution": "refund", "payment_id": 12}; payment_id is optional."""
    data = json_object(request.get_json(silent=True))
    return_doc = return_service.process_return(
        return_id,
        require_choice(data, "resolution", return_service.RESOLUTIONS),
        actor=g.current_user,
        payment_id=optional_int(data, "payment_id", minimum=1),
    )
    return jsonify({"success": True, "return": return_doc.to_dict()}), 200
