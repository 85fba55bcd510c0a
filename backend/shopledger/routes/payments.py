# Overview: Flask API routes for payment operations; admin transitions and gateway webhooks.

"""
Payment API Routes

DESIGN:
- Capture and retry are staff actions; void and refunds require admin
- Refunds accept optional line selections for restocking
- Webhook routes are the entry point for the gateway collaborator

Every route answers {success, error?} and never leaks an unhandled exception.
"""

from flask import Blueprint, request, jsonify, g

from ..decorators import require_auth, require_admin, api_action
from ..services import payment_service
from ..services.payment_service import RefundCommand, RefundLineInput
from ..validation import (
    ValidationError,
    int_list,
    json_object,
    optional_bool,
    optional_int,
    optional_str,
    require_int,
    require_str,
)


payments_bp = Blueprint("payments", __name__, url_prefix="/api/admin/payments")
webhooks_bp = Blueprint("payment_webhooks", __name__, url_prefix="/api/webhooks/payments")


# =============================================================================
# ADMIN TRANSITIONS
# =============================================================================

@payments_bp.post("/<int:payment_id>/capture")
@require_auth
@api_action("capture payment")
def capture_route(payment_id: int):
    payment = payment_service.capture_payment(payment_id, actor=g.current_user)
    return jsonify({
        "success": True,
        "payment": payment.to_dict(),
        "summary": payment_service.get_payment_summary(payment.order_id),
    }), 200


@payments_bp.post("/<int:payment_id>/void")
@require_auth
@require_admin
@api_action("void payment")
def void_route(payment_id: int):
    data = json_object(request.get_json(silent=True))
    payment = payment_service.void_payment(
        payment_id,
        actor=g.current_user,
        reason=optional_str(data, "reason", max_length=255),
    )
    return jsonify({"success": True, "payment": payment.to_dict()}), 200


@payments_bp.post("/<int:payment_id>/refund")
@require_auth
@require_admin
@api_action("refund payment")
def refund_route(payment_id: int):
    """
    Refund a captured payment.

    Request body:
    {
        "amount": 5000,            (optional, defaults to the remaining refundable amount)
        "reason": "Damaged item",  (required)
        "notes": "...",            (optional)
        "restock": true,           (optional, requires lines)
        "notify_customer": false,
        "lines": [{"order_item_id": 5, "quantity": 1}]
    }
    """
    data = json_object(request.get_json(silent=True))
    raw_lines = data.get("lines") or []
    if not isinstance(raw_lines, list):
        raise ValidationError("lines must be a list")
    lines = []
    for entry in raw_lines:
        entry = json_object(entry)
        lines.append(RefundLineInput(
            order_item_id=require_int(entry, "order_item_id", minimum=1),
            quantity=require_int(entry, "quantity", minimum=1),
        ))

    cmd = RefundCommand(
        payment_id=payment_id,
        reason=require_str(data, "reason"),
        amount=optional_int(data, "amount", minimum=1),
        notes=optional_str(data, "notes", max_length=5000),
        restock=optional_bool(data, "restock"),
        notify_customer=optional_bool(data, "notify_customer"),
        lines=lines,
    )
    refund = payment_service.refund_payment(cmd, actor=g.current_user)
    return jsonify({
        "success": True,
        "refund": refund.to_dict(),
        "summary": payment_service.get_payment_summary(refund.order_id),
    }), 201


@payments_bp.post("/bulk-refund")
@require_auth
@require_admin
@api_action("bulk refund payments")
def bulk_refund_route():
    """Request body: {"payment_ids": [1, 2], "reason": "..."}"""
    data = json_object(request.get_json(silent=True))
    result = payment_service.bulk_refund(
        int_list(data, "payment_ids"),
        require_str(data, "reason"),
        actor=g.current_user,
    )
    return jsonify({"success": result["failed"] == 0, **result}), 200


@payments_bp.post("/<int:payment_id>/retry")
@require_auth
@api_action("retry payment")
def retry_route(payment_id: int):
    payment = payment_service.retry_failed_payment(payment_id, actor=g.current_user)
    return jsonify({"success": True, "payment": payment.to_dict()}), 201


# =============================================================================
# GATEWAY WEBHOOKS
# =============================================================================

@webhooks_bp.post("/<int:payment_id>/authorized")
@api_action("record payment authorization")
def authorized_webhook(payment_id: int):
    data = json_object(request.get_json(silent=True))
    payment = payment_service.authorize_payment(
        payment_id,
        gateway_transaction_id=optional_str(data, "gateway_transaction_id", max_length=128),
    )
    return jsonify({"success": True, "payment": payment.to_dict()}), 200


@webhooks_bp.post("/<int:payment_id>/failed")
@api_action("record payment failure")
def failed_webhook(payment_id: int):
    data = json_object(request.get_json(silent=True))
    payment = payment_service.fail_payment(
        payment_id,
        message=optional_str(data, "message", max_length=255),
    )
    return jsonify({"success": True, "payment": payment.to_dict()}), 200
