"""
Inbound webhook ingest pipeline.

Every delivery goes through the same ordered checks before its payload is
trusted: signature over the raw bytes, JSON decode of those same bytes,
timestamp freshness, then an atomic duplicate claim on the event id. Only a
delivery that passes all of them reaches the platform adapter.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from pydantic import ValidationError

from app.core.errors import (
    ConfigurationMissing,
    DeliveryIntegrationError,
    DuplicateEvent,
    MalformedPayload,
    ReplayTimestampExpired,
    SignatureInvalid,
    SignatureMissing,
    UnsupportedPlatform,
)
from app.schemas.delivery import IngestOutcome
from app.services.delivery.base import PlatformAdapter
from app.services.delivery.replay_guard import ReplayGuard
from app.services.delivery.signature import SignatureVerifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InboundWebhookEvent:
    """A verified, decoded delivery. Lives only for the duration of a request."""

    platform: str
    event_id: Optional[str]
    event_type: Optional[str]
    timestamp: Any
    raw_body: bytes
    signature: Optional[str]
    payload: Dict[str, Any]


@dataclass
class WebhookRoute:
    """How deliveries for one platform are checked.

    A route without a verifier accepts unsigned deliveries. With
    ``require_event_id`` off, deliveries that carry no event id skip the
    duplicate check instead of being rejected.
    """

    platform: str
    adapter: PlatformAdapter
    verifier: Optional[SignatureVerifier] = None
    check_timestamp: bool = True
    check_duplicate: bool = True
    require_event_id: bool = True


class WebhookIngestPipeline:
    """Runs the verification chain for every registered platform route."""

    def __init__(self, routes: Dict[str, WebhookRoute], replay_guard: ReplayGuard, require_timestamp: bool = False):
        self.routes = dict(routes)
        self.replay_guard = replay_guard
        self.require_timestamp = require_timestamp

    def route(self, platform: str) -> WebhookRoute:
        route = self.routes.get(platform)
        if route is None:
            raise UnsupportedPlatform(platform)
        return route

    def _verify_signature(self, route: WebhookRoute, raw_body: bytes, signature: Optional[str]) -> bool:
        """Returns True when the secondary secret matched."""
        verifier = route.verifier
        if not verifier.configured:
            logger.error(f"{route.platform} webhook secret is not configured; rejecting delivery")
            raise ConfigurationMissing(f"{route.platform} webhook secret is not configured")
        if not signature:
            raise SignatureMissing("Missing webhook signature header")

        check = verifier.verify(raw_body, signature)
        if not check:
            logger.warning(f"Rejected {route.platform} webhook: {check.reason}")
            raise SignatureInvalid("Invalid webhook signature")
        if check.used_secondary:
            logger.warning(
                f"{route.platform} webhook verified with the secondary secret; "
                "finish rotating the sender to the primary secret"
            )
        return check.used_secondary

    @staticmethod
    def _decode(raw_body: bytes) -> Dict[str, Any]:
        try:
            payload = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError) as e:
            raise MalformedPayload(f"Webhook body is not valid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise MalformedPayload("Webhook body must be a JSON object")
        return payload

    def _check_timestamp(self, route: WebhookRoute, timestamp: Any):
        if not route.check_timestamp:
            return
        if timestamp is None and not self.require_timestamp:
            return
        if not self.replay_guard.is_fresh(timestamp):
            raise ReplayTimestampExpired("Webhook timestamp is missing or outside the accepted window")

    def _claim(self, route: WebhookRoute, event_id: Optional[str]) -> Optional[str]:
        """Claim the event id. Returns the dedup key to release on failure."""
        if not route.check_duplicate:
            return None
        if not event_id:
            if route.require_event_id:
                raise MalformedPayload("Webhook event has no event_id")
            return None
        key = f"{route.platform}:{event_id}"
        if not self.replay_guard.claim(key):
            logger.info(f"Duplicate {route.platform} webhook {event_id} ignored")
            raise DuplicateEvent(event_id)
        return key

    def ingest(self, platform: str, raw_body: bytes, signature: Optional[str] = None) -> IngestOutcome:
        route = self.route(platform)

        used_secondary = False
        if route.verifier is not None:
            used_secondary = self._verify_signature(route, raw_body, signature)
        elif not raw_body:
            raise MalformedPayload("Empty webhook body")

        payload = self._decode(raw_body)
        adapter = route.adapter
        event = InboundWebhookEvent(
            platform=platform,
            event_id=adapter.event_id(payload),
            event_type=adapter.event_type(payload),
            timestamp=adapter.event_timestamp(payload),
            raw_body=raw_body,
            signature=signature,
            payload=payload,
        )

        self._check_timestamp(route, event.timestamp)
        claim_key = self._claim(route, event.event_id)

        try:
            order = adapter.ingest_order(event.payload)
        except ValidationError as e:
            self._release(claim_key)
            raise MalformedPayload(f"Webhook order could not be parsed: {e.error_count()} errors") from e
        except DeliveryIntegrationError:
            self._release(claim_key)
            raise
        except (TypeError, ValueError, AttributeError, KeyError) as e:
            # Valid JSON whose fields have the wrong shape
            self._release(claim_key)
            logger.warning(f"Malformed {platform} webhook {event.event_id}: {type(e).__name__}: {e}")
            raise MalformedPayload(f"Webhook order has an unexpected shape: {type(e).__name__}") from e
        except Exception:
            self._release(claim_key)
            logger.exception(f"Unexpected error ingesting {platform} webhook {event.event_id}")
            raise

        logger.info(
            f"Accepted {platform} webhook {event.event_id or '-'} ({event.event_type})"
            + (f" for order {order.platform_order_id}" if order else "")
        )
        return IngestOutcome(
            platform=platform,
            event_id=event.event_id,
            event_type=event.event_type,
            order=order,
            used_secondary_secret=used_secondary,
        )

    def _release(self, claim_key: Optional[str]):
        if claim_key is not None:
            self.replay_guard.release(claim_key)
