"""
Client side of the external payment rail.

The rail is opaque: we hand it a payout and get back a reference, and the
final outcome arrives later through the confirmation webhook.
"""
import logging
from typing import Optional, Protocol

import requests

from common.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from common.errors import PaymentRailError, PaymentRailUnavailableError
from common.retry import RetryConfig, retry_call
from common.settings import Settings
from ledger_service.models import BankAccount, Payout

logger = logging.getLogger(__name__)

RAIL_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay=0.5,
    max_delay=5.0,
    retryable_exceptions=[requests.ConnectionError, requests.Timeout],
)

RAIL_BREAKER_CONFIG = CircuitBreakerConfig(
    failure_threshold=3,
    reset_timeout=45.0,
    success_threshold=2,
    failure_exceptions=(requests.RequestException,),
)


class PaymentRail(Protocol):
    def submit(self, payout: Payout, destination: BankAccount) -> str:
        ...


class OfflinePaymentRail:
    """Rail used when no rail endpoint is configured; outcomes come from the webhook."""

    def submit(self, payout: Payout, destination: BankAccount) -> str:
        logger.info(f"Queued payout {payout.id} of {payout.amount} {payout.currency} for manual transfer to ****{destination.last4}")
        return f"offline-{payout.id}"


class HttpPaymentRail:
    def __init__(self, base_url: str, timeout: float = 10.0, session: Optional[requests.Session] = None,
                 breaker: Optional[CircuitBreaker] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = session or requests.Session()
        self.breaker = breaker or CircuitBreaker("payment-rail", RAIL_BREAKER_CONFIG)

    def _post(self, payout: Payout, destination: BankAccount) -> requests.Response:
        return self.http.post(
            f"{self.base_url}/payouts",
            json={
                "payout_id": payout.id,
                "vendor_id": payout.vendor_id,
                "amount": payout.amount,
                "currency": payout.currency,
                "method": payout.method,
                "destination": {
                    "holder_name": destination.holder_name,
                    "bank_name": destination.bank_name,
                    "last4": destination.last4,
                    "country": destination.country,
                },
            },
            # the rail deduplicates retried submissions on this key
            headers={"Idempotency-Key": payout.id},
            timeout=self.timeout,
        )

    def submit(self, payout: Payout, destination: BankAccount) -> str:
        """Send the payout and return the rail's reference.

        Raises PaymentRailError when the rail definitely did not take the
        payout: a 4xx answer, or an open breaker that stopped the request
        before it was sent. Timeouts, connection errors, 5xx answers and
        unreadable 2xx bodies raise PaymentRailUnavailableError because the
        rail may have accepted the payout anyway.
        """
        context = {"payout_id": payout.id, "vendor_id": payout.vendor_id}
        try:
            response = self.breaker.call(retry_call, self._post, RAIL_RETRY_CONFIG, payout, destination)
        except requests.RequestException as e:
            raise PaymentRailUnavailableError(f"Payment rail unreachable for payout {payout.id}", original_error=e,
                                              context=context) from e

        if response.status_code >= 500:
            raise PaymentRailUnavailableError(
                f"Payment rail answered HTTP {response.status_code} for payout {payout.id}",
                context={**context, "status_code": response.status_code, "body": response.text[:500]},
            )
        if response.status_code >= 400:
            raise PaymentRailError(
                f"Payment rail rejected payout {payout.id} with HTTP {response.status_code}",
                context={**context, "status_code": response.status_code, "body": response.text[:500]},
            )

        try:
            reference = response.json()["reference"]
        except (ValueError, KeyError) as e:
            raise PaymentRailUnavailableError(f"Bad response from payment rail for payout {payout.id}",
                                              original_error=e, context=context) from e
        return str(reference)


def create_payment_rail(settings: Settings) -> PaymentRail:
    if settings.payment_rail_url:
        return HttpPaymentRail(settings.payment_rail_url, timeout=settings.payment_rail_timeout)
    return OfflinePaymentRail()
