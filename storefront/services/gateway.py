# storefront/services/gateway.py
from __future__ import annotations

import random
import string
import time
from dataclasses import dataclass, field

from flask import current_app


@dataclass
class GatewayResult:
    success: bool
    transaction_id: str | None = None
    response: dict = field(default_factory=dict)
    error: str | None = None


class PaymentGateway:
    """Interface every gateway adapter implements."""

    name = "base"

    def charge(self, payment, token=None) -> GatewayResult:
        raise NotImplementedError

    def refund(self, payment, amount) -> GatewayResult:
        raise NotImplementedError


def _suffix(n=9):
    return "".join(random.choices(string.ascii_lowercase + string.digits, k=n))


def _millis():
    return int(time.time() * 1000)


class SimulatedGateway(PaymentGateway):
    """Randomised stand-in for a card processor."""

    name = "simulated"

    def __init__(self, success_rate: float = 0.95, rng: random.Random | None = None):
        self.success_rate = success_rate
        self.rng = rng or random.Random()

    def _approved(self) -> bool:
        return self.rng.random() < self.success_rate

    def charge(self, payment, token=None) -> GatewayResult:
        if self._approved():
            txn_id = f"TXN_{_millis()}_{_suffix()}"
            return GatewayResult(
                success=True,
                transaction_id=txn_id,
                response={
                    "id": txn_id,
                    "status": "succeeded",
                    "amount": float(payment.amount),
                    "currency": payment.currency,
                    "gateway": self.name,
                },
            )
        return GatewayResult(
            success=False,
            response={"status": "failed", "decline_code": "insufficient_funds", "gateway": self.name},
            error="Insufficient funds",
        )

    def refund(self, payment, amount) -> GatewayResult:
        if self._approved():
            ref_id = f"REF_{_millis()}_{_suffix()}"
            return GatewayResult(
                success=True,
                transaction_id=ref_id,
                response={"id": ref_id, "status": "succeeded", "amount": float(amount), "gateway": self.name},
            )
        return GatewayResult(
            success=False,
            response={"status": "failed", "gateway": self.name},
            error="Refund declined by gateway",
        )


def get_gateway() -> PaymentGateway:
    return current_app.extensions["payment_gateway"]


def failed_transaction_id():
    return f"FAILED_{_millis()}_{_suffix(5)}"
