"""
Payment gateway API client.

Provides async methods for:
- Submitting a payment transaction (returns the gateway reference and pay URL)
- Inquiring a transaction's current status

Requests and push callbacks are signed with HMAC-SHA256 over the raw JSON body,
hex encoded, carried in the ``mac`` header.
"""

import enum
import hashlib
import hmac
import json
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

import httpx
from libs.common.config import get_settings
from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from services.commerce_service.errors import ExternalGatewayError

logger = get_logger(__name__)

SIGNATURE_HEADER = "mac"

SUBMIT_ENDPOINT = "/v1/transactions"
INQUIRY_ENDPOINT = "/v1/transactions/inquiry"

SETTLED_STATUSES = frozenset({"SETLD", "SUCCESS", "00", "PAID"})
FAILED_STATUSES = frozenset({"REJEC", "FAILED"})

_STATUS_KEYS = ("transaction_status", "payment_status", "status")


class GatewayStatus(str, enum.Enum):
    SETTLED = "settled"
    FAILED = "failed"
    PENDING = "pending"


def normalize_status(raw_status: Optional[str]) -> GatewayStatus:
    """Map the gateway's status vocabulary onto settled / failed / pending."""
    if not raw_status:
        return GatewayStatus.PENDING
    value = str(raw_status).strip().upper()
    if value in SETTLED_STATUSES:
        return GatewayStatus.SETTLED
    if value in FAILED_STATUSES:
        return GatewayStatus.FAILED
    return GatewayStatus.PENDING


def extract_status(data: dict) -> Optional[str]:
    """Find the transaction status in a response, top level first, then ``data``."""
    for container in (data, data.get("data") if isinstance(data.get("data"), dict) else {}):
        for key in _STATUS_KEYS:
            value = container.get(key)
            if value not in (None, ""):
                return str(value)
    return None


def sign_payload(body: bytes, secret_key: str) -> str:
    return hmac.new(secret_key.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret_key: str) -> bool:
    """Constant-time check of a push callback's ``mac`` header."""
    if not signature or not secret_key:
        return False
    expected = sign_payload(body, secret_key)
    return hmac.compare_digest(expected, signature.strip().lower())


@dataclass
class SubmissionResult:
    """Result of submitting a transaction."""

    gateway_ref: str
    payment_url: Optional[str]
    raw: dict = field(default_factory=dict)


@dataclass
class InquiryResult:
    """Current status of a transaction as reported by the gateway."""

    status: GatewayStatus
    raw_status: Optional[str]
    gateway_ref: Optional[str]
    raw: dict = field(default_factory=dict)


class GatewayClient:
    """Async client for the payment gateway's transaction APIs."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        merchant_id: Optional[str] = None,
        secret_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.GATEWAY_BASE_URL).rstrip("/")
        self.merchant_id = merchant_id or settings.GATEWAY_MERCHANT_ID
        self.secret_key = secret_key or settings.GATEWAY_SECRET_KEY
        if not self.secret_key:
            raise ValueError("GATEWAY_SECRET_KEY is required")
        self.timeout = timeout or settings.GATEWAY_TIMEOUT_SECONDS
        self.currency = settings.CURRENCY
        self.return_url = settings.GATEWAY_RETURN_URL
        self.callback_url = settings.GATEWAY_CALLBACK_URL
        self._transport = transport

    async def _request(self, endpoint: str, payload: dict) -> dict:
        """POST a signed JSON body and return the decoded response."""
        url = f"{self.base_url}{endpoint}"
        body = json.dumps(payload, separators=(",", ":")).encode()
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign_payload(body, self.secret_key),
        }

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(url, content=body, headers=headers)
        except httpx.TimeoutException as e:
            logger.error("Gateway timeout calling %s", endpoint)
            raise ExternalGatewayError(f"Gateway timed out: {endpoint}") from e
        except httpx.HTTPError as e:
            logger.error("Gateway transport error calling %s: %s", endpoint, e)
            raise ExternalGatewayError(f"Gateway unreachable: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            raise ExternalGatewayError(
                "Gateway returned a non-JSON response",
                status_code=response.status_code,
            ) from e

        if not response.is_success:
            logger.error(f"Gateway API error: {response.status_code} - {data}")
            raise ExternalGatewayError(
                message=data.get("message", "Unknown gateway error")
                if isinstance(data, dict)
                else "Unknown gateway error",
                status_code=response.status_code,
                response_data=data if isinstance(data, dict) else {"body": data},
            )
        if not isinstance(data, dict):
            raise ExternalGatewayError(
                "Gateway response is not an object",
                status_code=response.status_code,
                response_data={"body": data},
            )
        return data

    @staticmethod
    def _field(data: dict, *keys: str) -> Optional[Any]:
        nested = data.get("data") if isinstance(data.get("data"), dict) else {}
        for key in keys:
            for container in (data, nested):
                if container.get(key):
                    return container[key]
        return None

    async def submit_transaction(
        self,
        *,
        merchant_ref_no: str,
        invoice_number: str,
        amount: Decimal,
        user_id: str,
        customer_email: Optional[str] = None,
        payment_method: Optional[str] = None,
    ) -> SubmissionResult:
        """
        Register a transaction with the gateway.

        Returns:
            SubmissionResult with the gateway reference and payment URL

        Raises:
            ExternalGatewayError: on timeout, non-2xx or a response without a reference
        """
        timestamp = utc_now().isoformat()
        data = await self._request(
            SUBMIT_ENDPOINT,
            {
                "merchant_id": self.merchant_id,
                "merchant_ref_no": merchant_ref_no,
                "invoice_number": invoice_number,
                "transaction_amount": str(amount),
                "transaction_currency": self.currency,
                "transaction_date_time": timestamp,
                "transmission_date_time": timestamp,
                "backend_callback_url": self.callback_url,
                "frontend_callback_url": self.return_url,
                "user_id": user_id,
                "user_email": customer_email,
                "payment_method": payment_method,
            },
        )

        gateway_ref = self._field(data, "gateway_ref", "reference")
        if not gateway_ref:
            raise ExternalGatewayError(
                "Gateway response missing transaction reference", response_data=data
            )

        logger.info(
            "Submitted %s to gateway as %s",
            merchant_ref_no,
            gateway_ref,
            extra={"extra_fields": {"merchant_ref_no": merchant_ref_no, "gateway_ref": gateway_ref}},
        )
        return SubmissionResult(
            gateway_ref=str(gateway_ref),
            payment_url=self._field(data, "payment_url", "redirect_url"),
            raw=data,
        )

    async def inquire(
        self,
        merchant_ref_no: str,
        *,
        gateway_ref: Optional[str] = None,
        amount: Optional[Decimal] = None,
    ) -> InquiryResult:
        """Ask the gateway for the current status of a transaction."""
        timestamp = utc_now().isoformat()
        data = await self._request(
            INQUIRY_ENDPOINT,
            {
                "merchant_id": self.merchant_id,
                "merchant_ref_no": merchant_ref_no,
                "gateway_ref": gateway_ref,
                "transaction_amount": str(amount) if amount is not None else None,
                "transmission_date_time": timestamp,
            },
        )
        raw_status = extract_status(data)
        return InquiryResult(
            status=normalize_status(raw_status),
            raw_status=raw_status,
            gateway_ref=self._field(data, "gateway_ref", "reference") or gateway_ref,
            raw=data,
        )
