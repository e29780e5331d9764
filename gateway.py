"""
Payment Gateway Client for Xendit hosted payments (dynamic QRIS and closed
single-use virtual accounts).
"""

from datetime import timedelta
from typing import Any, Dict, Optional

import httpx

from app_logger import get_logger
from database import utcnow
from errors import PaymentGatewayError, PaymentGatewayTimeoutError
from schemas import Customer, PaymentIntent
from settings import Settings

log = get_logger("gateway")

QR_API_VERSION = "2022-07-31"
VA_TTL = timedelta(hours=24)


class XenditClient:
    def __init__(
        self,
        secret_key: Optional[str],
        base_url: str = "https://api.xendit.co",
        callback_url: Optional[str] = None,
        currency: str = "IDR",
        timeout: float = 15.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.secret_key = secret_key
        self.callback_url = callback_url
        self.currency = currency
        self._client = httpx.Client(base_url=base_url, timeout=timeout, transport=transport)

    @classmethod
    def from_settings(cls, settings: Settings, transport: Optional[httpx.BaseTransport] = None) -> "XenditClient":
        return cls(
            secret_key=settings.xendit_secret_key,
            base_url=settings.xendit_base_url,
            callback_url=settings.callback_url,
            currency=settings.currency,
            timeout=settings.gateway_timeout_seconds,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, endpoint: str, body: Optional[Dict[str, Any]] = None,
                 headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        if not self.secret_key:
            raise PaymentGatewayError("Xendit secret key is not configured")
        try:
            resp = self._client.request(method, endpoint, json=body, headers=headers, auth=(self.secret_key, ""))
        except httpx.TimeoutException as e:
            log.error("xendit %s %s timed out", method, endpoint)
            raise PaymentGatewayTimeoutError(f"Xendit request timed out: {endpoint}") from e
        except httpx.HTTPError as e:
            log.error("xendit %s %s failed: %s", method, endpoint, e)
            raise PaymentGatewayError(f"Xendit request failed: {e}") from e

        if resp.is_error:
            log.error("xendit %s %s returned %d", method, endpoint, resp.status_code)
            raise PaymentGatewayError(
                f"Xendit API error: {resp.status_code} - {resp.text[:200]}", upstream_status=resp.status_code
            )
        return resp.json()

    def create_qris_intent(self, amount: float, reference_id: str, description: Optional[str] = None,
                           customer: Optional[Customer] = None) -> PaymentIntent:
        body: Dict[str, Any] = {
            "reference_id": reference_id,
            "type": "DYNAMIC",
            "currency": self.currency,
            "amount": amount,
            "metadata": {
                "description": description,
                "customer": customer.model_dump(exclude_none=True) if customer else None,
            },
        }
        headers = {"api-version": QR_API_VERSION}
        if self.callback_url:
            headers["webhook-url"] = self.callback_url
        data = self._request("POST", "/qr_codes", body, headers=headers)
        return PaymentIntent(
            id=data["id"],
            reference_id=data.get("reference_id", reference_id),
            method="qris",
            status=data.get("status", "PENDING"),
            amount=data.get("amount", amount),
            currency=data.get("currency", self.currency),
            qr_string=data.get("qr_string"),
            expires_at=data.get("expires_at"),
        )

    def create_virtual_account_intent(self, amount: float, reference_id: str, bank_code: str,
                                      payer_name: Optional[str] = None) -> PaymentIntent:
        body = {
            "external_id": reference_id,
            "bank_code": bank_code,
            "name": payer_name or "Customer",
            "expected_amount": amount,
            "is_closed": True,
            "is_single_use": True,
            "currency": self.currency,
            "expiration_date": (utcnow() + VA_TTL).isoformat(),
        }
        data = self._request("POST", "/callback_virtual_accounts", body)
        return PaymentIntent(
            id=data["id"],
            reference_id=data.get("external_id", reference_id),
            method="virtual-account",
            status=data.get("status", "PENDING"),
            amount=data.get("expected_amount", amount),
            currency=data.get("currency", self.currency),
            account_number=data.get("account_number"),
            bank_code=data.get("bank_code", bank_code),
            expires_at=data.get("expiration_date"),
        )

    def get_payment_status(self, payment_id: str, method: str) -> Dict[str, Any]:
        if method == "qris":
            return self._request("GET", f"/qr_codes/{payment_id}", headers={"api-version": QR_API_VERSION})
        return self._request("GET", f"/callback_virtual_accounts/{payment_id}")
