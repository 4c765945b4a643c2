"""Server-side Paystack calls: transaction verification and webhook signatures."""

from __future__ import annotations

import hashlib
import hmac
from decimal import Decimal
from typing import Any, Optional
from urllib.parse import quote

import requests

from .config import HTTP_TIMEOUT_SECONDS, PAYSTACK_BASE_URL, PAYSTACK_SECRET_KEY


class PaystackNotConfigured(RuntimeError):
    pass


class PaystackUnavailable(RuntimeError):
    pass


class PaystackClient:
    def __init__(
        self,
        secret_key: str = PAYSTACK_SECRET_KEY,
        base_url: str = PAYSTACK_BASE_URL,
        *,
        http: Optional[requests.Session] = None,
        timeout: float = HTTP_TIMEOUT_SECONDS,
    ):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.http = http or requests.Session()
        self.timeout = timeout

    def _headers(self) -> dict[str, str]:
        if not self.secret_key:
            raise PaystackNotConfigured("PAYSTACK_SECRET_KEY is not configured")
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def verify_transaction(self, reference: str) -> tuple[int, dict[str, Any]]:
        """Return (http status, body) of GET /transaction/verify/{reference}."""
        headers = self._headers()
        try:
            resp = self.http.get(
                f"{self.base_url}/transaction/verify/{quote(reference, safe='')}",
                headers=headers,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise PaystackUnavailable(str(e)) from e

        try:
            body = resp.json()
        except ValueError:
            body = {}
        return resp.status_code, body if isinstance(body, dict) else {}


def major_units(amount_minor: Any) -> Optional[Decimal]:
    if amount_minor is None:
        return None
    return (Decimal(str(amount_minor)) / 100).quantize(Decimal("0.01"))


def verify_webhook_signature(raw_body: bytes, signature: Optional[str], secret_key: Optional[str] = None) -> bool:
    """HMAC-SHA512 of the raw request body, hex encoded, keyed with the secret key."""
    secret_key = secret_key or PAYSTACK_SECRET_KEY
    if not signature or not secret_key:
        return False
    expected = hmac.new(secret_key.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, signature)
