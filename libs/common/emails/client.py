"""
HTTP client for templated e-mail through the Communications Service.

Rendering lives in the Communications Service; callers only send a template
type and its data. Delivery failures are reported as ``False`` and logged,
never raised, so a committed order is never affected by e-mail problems.

Usage:
    from libs.common.emails.client import get_email_client

    await get_email_client().send_template(
        template_type="commerce_order_shipped",
        to_email="buyer@example.com",
        template_data={"order_number": "ORD-20260101-ABC123"},
    )
"""

from typing import Any, Optional

import httpx
from libs.common.config import get_settings
from libs.common.logging import get_logger

logger = get_logger(__name__)


class EmailClient:
    """Thin async client for the Communications Service template endpoint."""

    def __init__(self, base_url: Optional[str] = None, timeout: float = 10.0):
        settings = get_settings()
        self.base_url = (base_url or settings.COMMUNICATIONS_SERVICE_URL).rstrip("/")
        self.token = settings.COMMUNICATIONS_SERVICE_TOKEN
        self.timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers = {"X-Calling-Service": "commerce"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def send_template(
        self,
        template_type: str,
        to_email: str,
        template_data: dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> bool:
        """
        Send a templated email.

        Args:
            template_type: The template identifier
            to_email: Recipient email address
            template_data: Dict of template variables
            idempotency_key: Forwarded so the receiver can drop duplicates

        Returns:
            True if the Communications Service accepted the email
        """
        payload = {
            "template_type": template_type,
            "to_email": to_email,
            "template_data": template_data,
        }
        headers = self._headers()
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/email/template",
                    json=payload,
                    headers=headers,
                )
        except httpx.HTTPError as e:
            logger.error(f"Failed to reach Communications Service: {e}")
            return False

        if response.status_code != 200:
            logger.error(
                f"Template email API returned {response.status_code}: {response.text}"
            )
            return False

        try:
            return bool(response.json().get("success", False))
        except ValueError:
            logger.error("Template email API returned a non-JSON body")
            return False


# Singleton instance for convenience
_email_client: Optional[EmailClient] = None


def get_email_client() -> EmailClient:
    """Get or create the singleton EmailClient instance."""
    global _email_client
    if _email_client is None:
        _email_client = EmailClient()
    return _email_client
