"""Error taxonomy for the delivery integration layer.

Every error carries a stable ``kind`` (used in API responses and logs) and
the HTTP status it maps to when it escapes to a request handler.
"""

from typing import Optional


class DeliveryIntegrationError(Exception):
    """Base class for all delivery integration failures."""

    kind = "DeliveryIntegrationError"
    status_code = 500

    def __init__(self, message: str = "", status_code: Optional[int] = None):
        self.message = message or self.kind
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"detail": self.message, "error": self.kind}


# Inbound webhook verification. All terminal for the delivery attempt.

class SignatureMissing(DeliveryIntegrationError):
    kind = "SignatureMissing"
    status_code = 401


class SignatureInvalid(DeliveryIntegrationError):
    kind = "SignatureInvalid"
    status_code = 401


class ReplayTimestampExpired(DeliveryIntegrationError):
    kind = "ReplayTimestampExpired"
    status_code = 401


class DuplicateEvent(DeliveryIntegrationError):
    kind = "DuplicateEvent"
    status_code = 401

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Event {event_id} has already been processed")


class MalformedPayload(DeliveryIntegrationError):
    kind = "MalformedPayload"
    status_code = 400


class ConfigurationMissing(DeliveryIntegrationError):
    """A secret or credential required by the operation is not configured."""

    kind = "ConfigurationMissing"
    status_code = 500


# Outbound calls.

class PlatformApiError(DeliveryIntegrationError):
    """A delivery platform answered with an error or could not be reached."""

    kind = "PlatformApiError"
    status_code = 502

    def __init__(self, platform: str, message: str, upstream_status: Optional[int] = None):
        self.platform = platform
        self.upstream_status = upstream_status
        super().__init__(f"{platform}: {message}")

    @property
    def retryable(self) -> bool:
        # Transport failures and timeouts have no upstream status
        return self.upstream_status is None or self.upstream_status >= 500


class TokenFetchFailed(DeliveryIntegrationError):
    kind = "TokenFetchFailed"
    status_code = 502

    def __init__(self, platform: str, message: str):
        self.platform = platform
        super().__init__(f"Could not obtain {platform} access token: {message}")


# Orchestration.

class NoPlatformEnabled(DeliveryIntegrationError):
    kind = "NoPlatformEnabled"
    status_code = 400

    def __init__(self, brand_id: str, store_id: str):
        super().__init__(f"Store {store_id} of brand {brand_id} has no delivery platform enabled")


class MenuNotFound(DeliveryIntegrationError):
    kind = "MenuNotFound"
    status_code = 404


class UnsupportedPlatform(DeliveryIntegrationError):
    kind = "UnsupportedPlatform"
    status_code = 400

    def __init__(self, platform: str):
        self.platform = platform
        super().__init__(f"Unsupported platform: {platform}")
