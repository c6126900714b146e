# ferry_engine/infrastructure/gateway/midtrans_client.py

import base64
import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime

import httpx

from ferry_engine.config import EngineSettings
from ferry_engine.domain.exceptions import GatewayError, InvalidSignatureError
from ferry_engine.domain.state_machine import PaymentStatus

logger = logging.getLogger(__name__)

SANDBOX_SNAP_URL = "https://app.sandbox.midtrans.com/snap/v1/transactions"
PRODUCTION_SNAP_URL = "https://app.midtrans.com/snap/v1/transactions"
SANDBOX_API_URL = "https://api.sandbox.midtrans.com/v2"
PRODUCTION_API_URL = "https://api.midtrans.com/v2"

ENABLED_PAYMENTS = [
    "credit_card",
    "bca_va",
    "bni_va",
    "bri_va",
    "permata_va",
    "other_va",
    "gopay",
    "shopeepay",
    "qris",
]


_STATUS_MAP = {
    "settlement": PaymentStatus.SUCCESS,
    "pending": PaymentStatus.PENDING,
    "authorize": PaymentStatus.PENDING,
    "deny": PaymentStatus.DENY,
    "cancel": PaymentStatus.CANCELLED,
    "expire": PaymentStatus.EXPIRED,
    "failure": PaymentStatus.FAILED,
    "refund": PaymentStatus.REFUNDED,
    "partial_refund": PaymentStatus.REFUNDED,
    "chargeback": PaymentStatus.REFUNDED,
}


def map_transaction_status(
    transaction_status: str | None,
    fraud_status: str | None = None,
) -> PaymentStatus | None:
    """
    Gateway transaction status to internal payment status.
    None means the gateway reported something this engine does not act on.
    """
    status = (transaction_status or "").strip().lower()
    if status == "capture":
        fraud = (fraud_status or "accept").strip().lower()
        if fraud == "accept":
            return PaymentStatus.SUCCESS
        if fraud == "challenge":
            return PaymentStatus.CHALLENGE
        return PaymentStatus.DENY
    return _STATUS_MAP.get(status)


@dataclass(frozen=True)
class SnapTransaction:
    token: str
    redirect_url: str
    raw: dict


def compute_signature(order_id: str, status_code: str, gross_amount: str, server_key: str) -> str:
    """SHA512(order_id + status_code + gross_amount + server_key), hex encoded."""
    payload = f"{order_id}{status_code}{gross_amount}{server_key}"
    return hashlib.sha512(payload.encode("utf-8")).hexdigest()


class MidtransClient:
    """
    Thin HTTP client for the Snap and Core status APIs.
    Every failure surfaces as GatewayError; timeouts and connection
    errors are flagged retryable and never read as a declined payment.
    """

    def __init__(
        self,
        server_key: str,
        is_production: bool = False,
        timeout_seconds: float = 10.0,
        app_url: str = "http://localhost:8000",
        transport: httpx.BaseTransport | None = None,
    ):
        self.server_key = server_key
        self.app_url = app_url.rstrip("/")
        self.snap_url = PRODUCTION_SNAP_URL if is_production else SANDBOX_SNAP_URL
        self.api_url = PRODUCTION_API_URL if is_production else SANDBOX_API_URL
        self._http = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
            headers={"Accept": "application/json"},
        )

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> "MidtransClient":
        return cls(
            server_key=settings.midtrans_server_key,
            is_production=settings.midtrans_is_production,
            timeout_seconds=settings.gateway_timeout_seconds,
            app_url=settings.app_url,
        )

    def close(self) -> None:
        self._http.close()

    # -----------------------------
    # Signatures
    # -----------------------------
    def verify_signature(self, notification: dict) -> None:
        if not self.server_key:
            raise GatewayError("Payment gateway server key is not configured")

        expected = compute_signature(
            str(notification.get("order_id", "")),
            str(notification.get("status_code", "")),
            str(notification.get("gross_amount", "")),
            self.server_key,
        )
        received = str(notification.get("signature_key", ""))
        if not hmac.compare_digest(expected, received):
            raise InvalidSignatureError(
                f"Signature mismatch for order {notification.get('order_id')}"
            )

    # -----------------------------
    # API calls
    # -----------------------------
    def create_transaction(
        self,
        order_id: str,
        amount: int,
        expiry_seconds: int,
        customer: dict,
        item_details: list[dict],
        start_time: datetime,
    ) -> SnapTransaction:
        body = {
            "transaction_details": {
                "order_id": order_id,
                "gross_amount": amount,
            },
            "customer_details": customer,
            "item_details": item_details,
            "expiry": {
                "start_time": start_time.strftime("%Y-%m-%d %H:%M:%S %z"),
                "unit": "second",
                "duration": expiry_seconds,
            },
            "enabled_payments": ENABLED_PAYMENTS,
            "callbacks": {
                "finish": f"{self.app_url}/booking/{order_id}/success",
                "error": f"{self.app_url}/booking/{order_id}/failed",
                "pending": f"{self.app_url}/booking/{order_id}/pending",
            },
        }

        data = self._request("POST", self.snap_url, json=body)
        token = data.get("token")
        redirect_url = data.get("redirect_url")
        if not token or not redirect_url:
            raise GatewayError(
                "Gateway response is missing token or redirect_url",
                body=data,
            )

        logger.info("Opened gateway transaction for order %s", order_id)
        return SnapTransaction(token=token, redirect_url=redirect_url, raw=data)

    def get_transaction_status(self, order_id: str) -> dict:
        data = self._request("GET", f"{self.api_url}/{order_id}/status")
        if "transaction_status" not in data:
            raise GatewayError(
                f"Gateway status response for {order_id} has no transaction_status",
                body=data,
            )
        return data

    def cancel_transaction(self, order_id: str) -> dict:
        return self._request("POST", f"{self.api_url}/{order_id}/cancel")

    def _auth_header(self) -> str:
        if not self.server_key:
            raise GatewayError("Payment gateway server key is not configured")
        encoded = base64.b64encode(f"{self.server_key}:".encode("utf-8")).decode("ascii")
        return f"Basic {encoded}"

    def _request(self, method: str, url: str, json: dict | None = None) -> dict:
        headers = {"Authorization": self._auth_header()}
        try:
            response = self._http.request(method, url, json=json, headers=headers)
        except httpx.TimeoutException as exc:
            logger.warning("Gateway timeout on %s %s", method, url)
            raise GatewayError("Payment gateway timed out", retryable=True) from exc
        except httpx.TransportError as exc:
            logger.warning("Gateway unreachable on %s %s: %s", method, url, exc)
            raise GatewayError("Payment gateway unreachable", retryable=True) from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise GatewayError(
                f"Gateway returned a non-JSON response ({response.status_code})",
                status_code=response.status_code,
                body=response.text,
                retryable=response.status_code >= 500,
            ) from exc

        if response.status_code >= 400 or not isinstance(data, dict):
            logger.warning(
                "Gateway error on %s %s: status=%s",
                method,
                url,
                response.status_code,
            )
            raise GatewayError(
                f"Payment gateway request failed: {response.status_code}",
                status_code=response.status_code,
                body=data,
                retryable=response.status_code >= 500,
            )

        return data
