"""Abstract base class for delivery platform adapters."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import httpx

from app.core.errors import ConfigurationMissing, MalformedPayload, PlatformApiError
from app.schemas.delivery import MenuSnapshot, NormalizedOrder, PlatformStoreBindingView
from app.services.delivery.token_manager import TokenManager

logger = logging.getLogger(__name__)


@dataclass
class Ack:
    """Acknowledgement of an outbound platform call."""

    platform: str
    ok: bool = True
    status_code: Optional[int] = None
    data: Any = None


def dig(data: Any, *path: str, default: Any = None) -> Any:
    """Nested dict lookup that tolerates missing or non-dict levels."""
    current = data
    for key in path:
        if not isinstance(current, dict):
            return default
        current = current.get(key)
        if current is None:
            return default
    return current


def as_object(value: Any, what: str) -> Dict[str, Any]:
    """A payload field that must be an object when present; missing means empty."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise MalformedPayload(f"{what} is not an object")
    return value


def as_list(value: Any, what: str) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise MalformedPayload(f"{what} is not a list")
    return value


def parse_quantity(value: Any) -> int:
    """Item quantity; absent means one, anything but a positive whole number is malformed."""
    if value is None or value == "":
        return 1
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise MalformedPayload(f"Invalid item quantity {value!r}")
    try:
        quantity = int(value)
    except (TypeError, ValueError):
        raise MalformedPayload(f"Invalid item quantity {value!r}") from None
    if quantity < 1:
        raise MalformedPayload(f"Invalid item quantity {value!r}")
    return quantity


def to_decimal(value: Any) -> Decimal:
    if value is None or isinstance(value, bool):
        return Decimal("0")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def from_minor_units(value: Any) -> Decimal:
    """Cents (or the currency's minor unit) to a two-place decimal."""
    return (to_decimal(value) / 100).quantize(Decimal("0.01"))


def to_minor_units(value: Any) -> int:
    return int((to_decimal(value) * 100).quantize(Decimal("1")))


def parse_datetime(value: Any) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class PlatformAdapter(ABC):
    """Base interface for delivery platform integrations.

    Adapters are stateless apart from their collaborators: the shared token
    manager and the shared HTTP client. Every outbound call goes through
    ``_call`` so that a 401 triggers one token refresh and retry, and every
    failure surfaces as ``PlatformApiError``.
    """

    platform: str = ""

    def __init__(
        self,
        token_manager: TokenManager,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.token_manager = token_manager
        self.http_client = http_client
        self.timeout = timeout

    def ensure_configured(self, binding: Optional[PlatformStoreBindingView] = None, menu: bool = False):
        """Raise ConfigurationMissing when calls to the platform cannot be made at all."""
        if not self.token_manager.is_configured(self.platform):
            raise ConfigurationMissing(f"{self.platform} OAuth client credentials are not configured")

    # -- outbound plumbing ---------------------------------------------------

    async def _send(self, method: str, url: str, token: str, json: Any = None) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        try:
            if self.http_client is not None:
                return await self.http_client.request(method, url, headers=headers, json=json, timeout=self.timeout)
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await client.request(method, url, headers=headers, json=json)
        except httpx.TimeoutException as e:
            raise PlatformApiError(self.platform, f"{method} {url} timed out") from e
        except httpx.HTTPError as e:
            raise PlatformApiError(self.platform, f"{method} {url} failed: {e}") from e

    async def _request(self, method: str, url: str, token: str, json: Any = None) -> Any:
        """Send one authorized request and return the decoded body."""
        response = await self._send(method, url, token, json)
        if response.status_code >= 400:
            raise PlatformApiError(
                self.platform,
                f"{method} {url} returned HTTP {response.status_code}: {response.text[:200]}",
                upstream_status=response.status_code,
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def _call(self, method: str, url: str, json: Any = None) -> Any:
        async def attempt(token: str):
            return await self._request(method, url, token, json)

        return await self.token_manager.with_token(self.platform, attempt)

    # -- contract ------------------------------------------------------------

    @abstractmethod
    def convert_menu(self, menu: MenuSnapshot) -> Dict[str, Any]:
        """Translate a menu snapshot into the platform's menu document."""

    @abstractmethod
    async def push_menu(
        self,
        external_store_id: str,
        payload: Dict[str, Any],
        binding: Optional[PlatformStoreBindingView] = None,
    ) -> Ack:
        """Upload a converted menu for one store."""

    @abstractmethod
    async def set_item_availability(self, external_store_id: str, item_id: str, suspended: bool) -> Ack:
        """Suspend or resume one item (dish or option) at a store."""

    @abstractmethod
    def ingest_order(self, event: Dict[str, Any]) -> Optional[NormalizedOrder]:
        """Normalize an order webhook event. None for events that carry no order."""

    @abstractmethod
    async def fetch_order(self, order: NormalizedOrder) -> NormalizedOrder:
        """Fetch the full order from the platform for a details-pending order."""

    @abstractmethod
    async def accept_order(self, order: NormalizedOrder) -> Ack:
        """Accept an order on the platform (auto-accept)."""

    def event_id(self, event: Dict[str, Any]) -> Optional[str]:
        """Id used for duplicate detection."""
        value = event.get("event_id") if isinstance(event, dict) else None
        return str(value) if value else None

    def event_timestamp(self, event: Dict[str, Any]) -> Any:
        """Raw event timestamp, if the platform sent one."""
        if not isinstance(event, dict):
            return None
        for key in ("event_time", "timestamp"):
            if event.get(key) is not None:
                return event[key]
        return dig(event, "meta", "timestamp")

    def event_type(self, event: Dict[str, Any]) -> Optional[str]:
        return event.get("event_type") if isinstance(event, dict) else None
