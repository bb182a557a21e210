"""
Payment Rail Gateway
The mobile-money network is an opaque collaborator: it is invoked with an
amount and party identifiers and answers success/failure plus a reference.
The gateway bounds every call with a timeout and retries only idempotent ones.
"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import NamedTuple, Optional

from config import Config
from services.retry_service import RETRY_STRATEGIES, RetryService, call_with_timeout
from utils.exception_handler import ExternalDependencyFailure, OperationTimeout

logger = logging.getLogger(__name__)


class PaymentResult(NamedTuple):
    """Answer from the payment rail"""

    success: bool
    external_reference: Optional[str] = None
    error_message: Optional[str] = None


class PaymentRail(ABC):
    """Port for the external payment network"""

    @abstractmethod
    def capture(self, reference: str, amount: Decimal, payer_id: int) -> PaymentResult:
        """Collect funds from the payer's funding source. Not idempotent."""

    @abstractmethod
    def refund(self, reference: str, amount: Decimal, payee_id: int, idempotency_key: str) -> PaymentResult:
        """Return funds to the payee's original funding source. Idempotent per key."""


class PaymentRailGateway:
    """Timeout and retry policy around a PaymentRail"""

    def __init__(
        self,
        rail: PaymentRail,
        timeout_seconds: Optional[float] = None,
        refund_retry: Optional[dict] = None,
        sleep=None,
    ):
        self.rail = rail
        self.timeout_seconds = timeout_seconds or Config.EXTERNAL_CALL_TIMEOUT_SECONDS
        self.refund_retry = dict(refund_retry or RETRY_STRATEGIES['payment_refund'])
        self.refund_retry.setdefault('max_attempts', Config.EXTERNAL_RETRY_MAX_ATTEMPTS)
        self._sleep = sleep

    def capture(self, reference: str, amount: Decimal, payer_id: int) -> str:
        """
        Capture once. A failed or timed-out capture is surfaced, never repeated,
        because a second attempt could charge the payer twice.

        Returns:
            str: External capture reference
        """
        logger.info(f"💳 PAYMENT_CAPTURE: ref={reference} amount={amount} payer={payer_id}")
        result = call_with_timeout(
            lambda: self.rail.capture(reference, amount, payer_id),
            self.timeout_seconds,
            operation=f"payment capture {reference}",
        )
        if not result.success:
            logger.error(f"❌ PAYMENT_CAPTURE_FAILED: ref={reference}: {result.error_message}")
            raise ExternalDependencyFailure(
                f"Payment capture failed for {reference}: {result.error_message or 'declined'}"
            )
        logger.info(f"✅ PAYMENT_CAPTURED: ref={reference} external={result.external_reference}")
        return result.external_reference

    def refund(self, reference: str, amount: Decimal, payee_id: int, idempotency_key: str) -> str:
        """
        Refund to the original funding source, retried with backoff.

        Returns:
            str: External refund reference
        """

        def attempt_refund() -> str:
            result = call_with_timeout(
                lambda: self.rail.refund(reference, amount, payee_id, idempotency_key),
                self.timeout_seconds,
                operation=f"payment refund {reference}",
            )
            if not result.success:
                raise ExternalDependencyFailure(
                    f"Refund failed for {reference}: {result.error_message or 'rejected'}"
                )
            return result.external_reference

        attempt_refund.__name__ = f"refund[{idempotency_key}]"
        logger.info(f"↩️ PAYMENT_REFUND: ref={reference} amount={amount} payee={payee_id} key={idempotency_key}")

        retry_kwargs = dict(self.refund_retry)
        if self._sleep is not None:
            retry_kwargs['sleep'] = self._sleep
        external_reference = RetryService.retry_sync(
            attempt_refund,
            exceptions=(ExternalDependencyFailure, OperationTimeout),
            **retry_kwargs,
        )
        logger.info(f"✅ PAYMENT_REFUNDED: ref={reference} external={external_reference}")
        return external_reference
