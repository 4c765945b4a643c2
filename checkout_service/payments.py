"""Client side of the payment flow.

The adapter opens the provider's payment UI, turns its callback into either a
provider response or a tagged error, and asks our own server to verify the
reference with the provider. A success callback from the UI is never treated
as proof of payment; only ``VerificationResult.verified`` authorizes a commit.
"""

from __future__ import annotations

import secrets
import string
import time
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Any, Optional

import requests

from .config import (
    CURRENCY,
    HTTP_TIMEOUT_SECONDS,
    PAYMENT_CHANNELS,
    PAYMENT_REFERENCE_PREFIX,
    PAYMENT_VERIFY_TOKEN,
    PAYMENT_VERIFY_URL,
    PAYSTACK_PUBLIC_KEY,
)
from .errors import (
    InvalidRequest,
    PaymentCancelled,
    PaymentDeclined,
    VerificationFailed,
    VerificationUnavailable,
)
from .logger import get_logger
from .pricing import to_minor_units, to_money

logger = get_logger(__name__)

_REFERENCE_ALPHABET = string.ascii_uppercase + string.digits
CANCELLED_STATUSES = {"cancelled", "canceled", "closed", "abandoned"}


@dataclass
class PaymentConfig:
    public_key: str
    email: str
    amount: Decimal
    amount_minor: int
    currency: str
    reference: str
    channels: list[str]
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["amount"] = str(self.amount)
        return data


@dataclass
class ProviderCallback:
    reference: str
    status: str
    transaction: Optional[str] = None
    message: Optional[str] = None


@dataclass
class ProviderResponse:
    reference: str
    status: str
    transaction: Optional[str] = None


@dataclass
class VerificationResult:
    verified: bool
    reference: str
    status: str
    amount: Optional[Decimal] = None
    reason: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)


class PaymentPopup:
    """The provider's payment UI.

    ``open`` blocks until the buyer finishes and returns the provider's
    callback. Closing the UI is reported as a callback with status
    ``"cancelled"`` (or by raising ``PaymentCancelled`` directly).
    """

    def open(self, config: PaymentConfig) -> ProviderCallback:
        raise NotImplementedError


class PaymentGatewayAdapter:
    def __init__(
        self,
        popup: Optional[PaymentPopup] = None,
        *,
        verify_url: str = PAYMENT_VERIFY_URL,
        verify_token: str = PAYMENT_VERIFY_TOKEN,
        public_key: str = PAYSTACK_PUBLIC_KEY,
        currency: str = CURRENCY,
        reference_prefix: str = PAYMENT_REFERENCE_PREFIX,
        channels: Optional[list[str]] = None,
        http: Optional[requests.Session] = None,
        timeout: float = HTTP_TIMEOUT_SECONDS,
    ):
        self.popup = popup
        self.verify_url = verify_url
        self.verify_token = verify_token
        self.public_key = public_key
        self.currency = currency
        self.reference_prefix = reference_prefix
        self.channels = list(channels or PAYMENT_CHANNELS)
        self.http = http or requests.Session()
        self.timeout = timeout

    def generate_reference(self) -> str:
        timestamp = int(time.time() * 1000)
        suffix = "".join(secrets.choice(_REFERENCE_ALPHABET) for _ in range(8))
        return f"{self.reference_prefix}-{timestamp}-{suffix}"

    def build_payment_config(
        self,
        *,
        email: str,
        amount: Any,
        reference: str,
        channels: Optional[list[str]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> PaymentConfig:
        if not email or "@" not in email:
            raise InvalidRequest("Please enter a valid email address.")
        total = to_money(amount)
        if total <= 0:
            raise InvalidRequest("Cart total is invalid.")
        return PaymentConfig(
            public_key=self.public_key,
            email=email,
            amount=total,
            amount_minor=to_minor_units(total),
            currency=self.currency,
            reference=reference,
            channels=list(channels or self.channels),
            metadata={"platform": "ShopUp", **(metadata or {})},
        )

    def initiate_payment(
        self,
        *,
        email: str,
        amount: Any,
        reference: Optional[str] = None,
        channels: Optional[list[str]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ProviderResponse:
        if self.popup is None:
            raise RuntimeError("no payment popup configured")
        config = self.build_payment_config(
            email=email,
            amount=amount,
            reference=reference or self.generate_reference(),
            channels=channels,
            metadata=metadata,
        )
        logger.info("opening payment for %s (%s %s)", config.reference, config.currency, config.amount)
        callback = self.popup.open(config)
        return self.handle_callback(config.reference, callback)

    def handle_callback(self, reference: str, callback: ProviderCallback) -> ProviderResponse:
        status = (callback.status or "").strip().lower()
        if status in CANCELLED_STATUSES:
            raise PaymentCancelled(reference=reference)
        if status != "success":
            raise PaymentDeclined(callback.message or None, reference=reference, provider_status=status)
        if callback.reference != reference:
            logger.warning("callback reference %s does not match %s", callback.reference, reference)
            raise VerificationFailed(reference=reference, reason="reference_mismatch")
        return ProviderResponse(reference=reference, status=status, transaction=callback.transaction)

    def verify_payment(
        self,
        reference: str,
        amount: Any,
        order_context: Optional[dict[str, Any]] = None,
    ) -> VerificationResult:
        """Ask the server to re-check ``reference`` with the provider.

        Raises ``VerificationUnavailable`` when the verifier cannot answer
        (network failure, 5xx); a definite "no" comes back as
        ``verified=False``.
        """
        expected = to_money(amount)
        headers = {
            "Authorization": f"Bearer {self.verify_token}",
            "Content-Type": "application/json",
        }
        body = {
            "reference": reference,
            "amount": float(expected),
            "order_id": str((order_context or {}).get("order_id", "pending")),
        }

        try:
            resp = self.http.post(self.verify_url, json=body, headers=headers, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.error("payment verifier unreachable for %s: %s", reference, e)
            raise VerificationUnavailable(reference=reference) from e

        if resp.status_code >= 500:
            logger.error("payment verifier error %s for %s", resp.status_code, reference)
            raise VerificationUnavailable(reference=reference)

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if resp.status_code != 200:
            return VerificationResult(
                verified=False,
                reference=reference,
                status="failed",
                reason=data.get("error") or f"http_{resp.status_code}",
                raw=data,
            )

        server_amount = data.get("amount")
        amount_value = to_money(server_amount) if server_amount is not None else None
        verified = data.get("verified") is True
        reason = None if verified else (data.get("error") or data.get("status") or "not_verified")

        if verified and amount_value is not None and amount_value != expected:
            logger.warning(
                "amount mismatch for %s: expected %s, provider reported %s",
                reference, expected, amount_value,
            )
            verified = False
            reason = "amount_mismatch"

        return VerificationResult(
            verified=verified,
            reference=reference,
            status=str(data.get("status") or ("success" if verified else "failed")),
            amount=amount_value,
            reason=reason,
            raw=data,
        )
