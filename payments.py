"""
Payment adapter.

The order core only asks the gateway for an intent reference and later records
the success/failure outcome the gateway reports back. ``MockGateway`` stands in
for a real provider; it issues references without any network calls.
"""
import logging
import random
import string
from decimal import Decimal
from typing import Protocol

logger = logging.getLogger(__name__)


class PaymentGateway(Protocol):
    def create_intent(self, order_id: str, amount: Decimal) -> str: ...


class MockGateway:
    prefix = "pi_"

    def create_intent(self, order_id: str, amount: Decimal) -> str:
        reference = self.prefix + "".join(random.choices(string.ascii_letters + string.digits, k=24))
        logger.info("Payment intent %s created for order %s (amount %s)", reference, order_id, amount)
        return reference
