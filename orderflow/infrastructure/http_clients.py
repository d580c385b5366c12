"""HTTP clients for the cart, payment and notification services.

Each client implements one collaborator protocol from
``orderflow.infrastructure.collaborators`` on top of httpx.
"""

from typing import Any

import httpx
import structlog

from orderflow.domain.value_objects import Address
from orderflow.infrastructure.collaborators import CartSnapshot, PaymentRecord
from orderflow.infrastructure.config import Settings, settings as default_settings

logger = structlog.get_logger()


class CollaboratorClientError(Exception):
    """Error from a collaborator API call."""

    def __init__(self, service: str, message: str, status_code: int | None = None) -> None:
        self.service = service
        self.message = message
        self.status_code = status_code
        super().__init__(f"[{service}] {message}")


class _CollaboratorClient:
    """Shared httpx plumbing for one collaborator service."""

    service = "collaborator"

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        request_id: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize client.

        Args:
            base_url: Service base URL.
            timeout: Request timeout in seconds.
            request_id: Optional request ID for correlation.
            transport: Custom transport (tests pass ``httpx.MockTransport``).
        """
        self.base_url = base_url
        self.timeout = timeout
        self.request_id = request_id
        self.transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            headers = {}
            if self.request_id:
                headers["X-Request-ID"] = self.request_id
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=headers,
                transport=self.transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        allow_not_found: bool = False,
        **kwargs: Any,
    ) -> httpx.Response | None:
        """Send a request and map failures to ``CollaboratorClientError``.

        Returns:
            The response, or None on 404 when ``allow_not_found`` is set.
        """
        try:
            client = await self._get_client()
            response = await client.request(method, path, **kwargs)
        except httpx.RequestError as e:
            logger.error(
                "Collaborator request failed",
                service=self.service,
                path=path,
                error=str(e),
            )
            raise CollaboratorClientError(self.service, f"Request failed: {str(e)}") from e

        if response.status_code == 404 and allow_not_found:
            return None
        if response.status_code >= 400:
            raise CollaboratorClientError(
                self.service,
                f"{method} {path} failed: {response.text}",
                response.status_code,
            )
        return response


class HttpCartClient(_CollaboratorClient):
    """Cart service client."""

    service = "cart"

    async def get_cart(self, cart_id: str) -> CartSnapshot | None:
        """Get cart by ID.

        Returns:
            Cart snapshot if found, None otherwise.

        Raises:
            CollaboratorClientError: On API error (except 404).
        """
        response = await self._request("GET", f"/carts/{cart_id}", allow_not_found=True)
        if response is None:
            return None
        return CartSnapshot.from_api_response(response.json())

    async def clear_cart(self, cart_id: str) -> None:
        await self._request("POST", f"/carts/{cart_id}/clear")


class HttpPaymentClient(_CollaboratorClient):
    """Payment service client."""

    service = "payments"

    async def get_payment(self, payment_id: str) -> PaymentRecord | None:
        response = await self._request("GET", f"/payments/{payment_id}", allow_not_found=True)
        if response is None:
            return None
        return PaymentRecord.from_api_response(response.json())

    async def update_payment_status(
        self, payment_id: str, status: str, actor: str | None = None
    ) -> None:
        await self._request(
            "PATCH",
            f"/payments/{payment_id}",
            json={"status": status, "actor": actor},
        )


class HttpAddressValidator(_CollaboratorClient):
    """Address validation via the cart service.

    The service answers with ``{"errors": [...]}``; an empty list means
    the address is deliverable.
    """

    service = "address-validation"

    async def validate(self, address: Address) -> list[str]:
        response = await self._request("POST", "/addresses/validate", json=address.to_dict())
        return list(response.json().get("errors", []))


class HttpNotifier(_CollaboratorClient):
    """Notification service client.

    Delivery is fire-and-forget: failures are logged and never raised.
    """

    service = "notifications"

    async def notify(self, event: str, payload: dict[str, Any]) -> None:
        try:
            await self._request(
                "POST",
                "/notifications",
                json={"event": event, "payload": payload},
            )
        except CollaboratorClientError as e:
            logger.warning(
                "Notification delivery failed",
                notification_event=event,
                status_code=e.status_code,
                error=e.message,
            )


def build_http_collaborators(
    settings: Settings | None = None,
    request_id: str | None = None,
) -> tuple[HttpCartClient, HttpPaymentClient, HttpAddressValidator, HttpNotifier]:
    """Build HTTP clients for every collaborator from settings."""
    settings = settings or default_settings
    timeout = settings.http_timeout_seconds
    return (
        HttpCartClient(settings.cart_service_url, timeout, request_id),
        HttpPaymentClient(settings.payment_service_url, timeout, request_id),
        HttpAddressValidator(settings.cart_service_url, timeout, request_id),
        HttpNotifier(settings.notification_service_url, timeout, request_id),
    )
