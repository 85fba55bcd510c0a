# Overview: Outbound payment gateway port with a manual stub and bounded retry.

"""
Payment Gateway Port

Services never talk to a processor directly. They call call_gateway(), which
resolves the adapter registered for Payment.gateway and retries transient
outages with bounded exponential backoff.

Gateway calls run inside the service transaction before commit: if the
gateway rejects or stays unavailable, the exception propagates, the service
rolls back, and no local state changes.

IDEMPOTENCY:
Every call carries an idempotency key derived from the ledger state it acts
on (e.g. "refund:<payment id>:<already refunded>"). run_with_retry may re-run
a whole transaction after a failed commit; the second run derives the same
key, and call_gateway answers it from the session's record of completed
calls instead of moving money again. Adapters receive the key too, so a
processor can dedupe across processes.
"""

from __future__ import annotations

import time
import uuid
from typing import Callable, Protocol

from flask import current_app

from ..extensions import db
from shopledger.validation import ConflictError


class GatewayError(ConflictError):
    """Processor declined the operation."""
    pass


class GatewayUnavailableError(Exception):
    """Transient outage; safe to retry."""
    pass


class PaymentGateway(Protocol):
    name: str

    def capture(self, *, transaction_id: str | None, amount: int, currency: str, idempotency_key: str) -> str:
        ...

    def void(self, *, transaction_id: str | None, idempotency_key: str) -> str:
        ...

    def refund(self, *, transaction_id: str | None, amount: int, currency: str, idempotency_key: str) -> str:
        ...


class ManualGateway:
    """Offline/manual payments: every call succeeds with a synthetic reference."""
    name = "manual"

    def __init__(self):
        self.references: dict[str, str] = {}

    def _reference(self, prefix: str, idempotency_key: str) -> str:
        if idempotency_key not in self.references:
            self.references[idempotency_key] = f"{prefix}_{uuid.uuid4().hex[:16]}"
        return self.references[idempotency_key]

    def capture(self, *, transaction_id: str | None, amount: int, currency: str, idempotency_key: str) -> str:
        return transaction_id or self._reference("cap", idempotency_key)

    def void(self, *, transaction_id: str | None, idempotency_key: str) -> str:
        return self._reference("void", idempotency_key)

    def refund(self, *, transaction_id: str | None, amount: int, currency: str, idempotency_key: str) -> str:
        return self._reference("re", idempotency_key)


_GATEWAYS: dict[str, PaymentGateway] = {"manual": ManualGateway()}


def register_gateway(gateway: PaymentGateway) -> None:
    _GATEWAYS[gateway.name] = gateway


def unregister_gateway(name: str) -> None:
    if name != "manual":
        _GATEWAYS.pop(name, None)


def get_gateway(name: str | None) -> PaymentGateway:
    gateway = _GATEWAYS.get(name or "manual")
    if gateway is None:
        raise GatewayError(f"Payment gateway '{name}' is not configured")
    return gateway


def _completed_calls() -> dict:
    # Lives on the session, so it survives the rollback between retries
    return db.session.info.setdefault("gateway_calls", {})


def call_gateway(
    gateway_name: str | None,
    operation: str,
    idempotency_key: str,
    call: Callable[[PaymentGateway, str], str],
) -> str:
    """
    Invoke call(gateway, idempotency_key) with retry on GatewayUnavailableError.

    A key that already completed in this session returns the recorded
    reference without calling the gateway again. Attempts and base backoff
    come from GATEWAY_RETRY_ATTEMPTS and GATEWAY_RETRY_BACKOFF.
    """
    gateway = get_gateway(gateway_name)
    completed = _completed_calls()
    if (gateway.name, idempotency_key) in completed:
        current_app.logger.info("Gateway %s %s already done for %s", gateway.name, operation, idempotency_key)
        return completed[(gateway.name, idempotency_key)]

    attempts = max(1, int(current_app.config.get("GATEWAY_RETRY_ATTEMPTS", 3)))
    backoff = float(current_app.config.get("GATEWAY_RETRY_BACKOFF", 0.2))

    for attempt in range(attempts):
        try:
            reference = call(gateway, idempotency_key)
            completed[(gateway.name, idempotency_key)] = reference
            return reference
        except GatewayUnavailableError:
            if attempt >= attempts - 1:
                current_app.logger.warning(
                    "Gateway %s %s unavailable after %s attempts", gateway.name, operation, attempts
                )
                raise GatewayError(f"Payment gateway unavailable for {operation}; try again later")
            current_app.logger.warning(
                "Gateway %s %s unavailable (attempt %s/%s), retrying",
                gateway.name, operation, attempt + 1, attempts,
            )
            time.sleep(backoff * (2 ** attempt))
