"""Tests for the delivery webhook endpoints."""

import json

from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from app.main import app
from app.models.delivery import DeliveryOrder
from app.services.delivery.container import DeliveryServices
from app.services.delivery.signature import compute_signature


API = "/api/v1"
EVT_1 = b'{"event_id":"evt_1","event_type":"orders.notification","meta":{"resource_id":"order_1"}}'

UBER_ORDER_DETAILS = {
    "id": "order_1",
    "display_id": "A1B2C",
    "type": "DELIVERY_BY_UBER",
    "store": {"id": "uber-store-1"},
    "eater": {"first_name": "Mei"},
    "cart": {
        "items": [
            {"id": "dish-noodles", "title": "Beef Noodles", "quantity": 1, "price": {"unit_price": {"amount": 12000}}}
        ]
    },
    "payment": {"charges": {"sub_total": {"amount": 12000}, "total": {"amount": 12000}}},
}

FOODPANDA_ORDER_EVENT = {
    "event_type": "order.created",
    "order": {
        "order_id": "fp-100",
        "order_code": "FP-100",
        "vendor_code": "fp-vendor-1",
        "is_delivery": True,
        "customer": {"name": "Alex"},
        "products": [{"id": "dish-rice", "name": "Pork Rice", "quantity": 2, "price": "90.00"}],
        "order_total": {"subtotal": "180.00", "total_price": "180.00"},
    },
}


def _post_uber(client: TestClient, body: bytes, signature=None):
    headers = {"Content-Type": "application/json"}
    if signature is not None:
        headers["X-Uber-Signature"] = signature
    return client.post(f"{API}/webhooks/ubereats", content=body, headers=headers)


class TestUberEatsWebhook:

    def test_accepted_then_duplicate(self, client: TestClient):
        signature = compute_signature(EVT_1, "s3cret")
        response = _post_uber(client, EVT_1, signature)
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "OK"
        assert data["event_id"] == "evt_1"
        assert data["order_id"] == "order_1"

        response = _post_uber(client, EVT_1, signature)
        assert response.status_code == 401
        assert response.json()["error"] == "DuplicateEvent"

    def test_missing_signature(self, client: TestClient):
        response = _post_uber(client, EVT_1)
        assert response.status_code == 401
        assert response.json()["error"] == "SignatureMissing"

    def test_invalid_signature(self, client: TestClient):
        response = _post_uber(client, EVT_1, "0" * 64)
        assert response.status_code == 401
        assert response.json()["error"] == "SignatureInvalid"

    def test_malformed_body(self, client: TestClient):
        body = b"{not json"
        response = _post_uber(client, body, compute_signature(body, "s3cret"))
        assert response.status_code == 400
        assert response.json()["error"] == "MalformedPayload"

    def test_wrongly_shaped_event(self, client: TestClient):
        body = b'{"event_id":"e1","event_type":"orders.notification","meta":"oops"}'
        response = _post_uber(client, body, compute_signature(body, "s3cret"))
        assert response.status_code == 400
        assert response.json()["error"] == "MalformedPayload"

    def test_non_numeric_quantity(self, client: TestClient):
        order = {**UBER_ORDER_DETAILS, "cart": {"items": [{"id": "dish-rice", "title": "Pork Rice", "quantity": "two"}]}}
        body = json.dumps({"event_id": "e2", "event_type": "orders.notification", "meta": {"resource": order}}).encode()
        response = _post_uber(client, body, compute_signature(body, "s3cret"))
        assert response.status_code == 400
        assert response.json()["error"] == "MalformedPayload"


    def test_unconfigured_secret(self, client: TestClient, settings_factory, session_factory, http_client):
        app.state.delivery = DeliveryServices(
            settings_factory(ubereats_webhook_secret=""), session_factory, http_client
        )
        response = _post_uber(client, EVT_1, compute_signature(EVT_1, "s3cret"))
        assert response.status_code == 500
        assert response.json()["error"] == "ConfigurationMissing"

    def test_order_details_are_fetched_and_stored(
        self, client: TestClient, seeded_store, platform_api, db_session: Session
    ):
        platform_api.responses["/v1/delivery/order/order_1"] = UBER_ORDER_DETAILS
        response = _post_uber(client, EVT_1, compute_signature(EVT_1, "s3cret"))
        assert response.status_code == 200

        order = db_session.query(DeliveryOrder).filter_by(platform="ubereats", platform_order_id="order_1").one()
        assert order.store_id == seeded_store["store_id"]
        assert order.display_id == "A1B2C"
        assert len(order.items) == 1
        # Binding has auto-accept on
        assert order.status == "accepted"
        accept_urls = [str(r.url) for r in platform_api.api_requests() if r.url.path.endswith("/accept")]
        assert accept_urls == ["https://api.uber.com/v1/delivery/order/order_1/accept"]

    def test_fetch_failure_does_not_fail_acknowledgement(self, client: TestClient, platform_api, db_session: Session):
        platform_api.fail_next(platform_api.UBER_API_HOST, 500)
        response = _post_uber(client, EVT_1, compute_signature(EVT_1, "s3cret"))
        assert response.status_code == 200
        assert db_session.query(DeliveryOrder).count() == 0


class TestFoodpandaWebhook:

    def test_order_is_stored_and_accepted(
        self, client: TestClient, seeded_store, platform_api, db_session: Session
    ):
        response = client.post(f"{API}/webhooks/foodpanda", content=json.dumps(FOODPANDA_ORDER_EVENT))
        assert response.status_code == 200
        assert response.json()["order_id"] == "fp-100"

        order = db_session.query(DeliveryOrder).filter_by(platform="foodpanda").one()
        assert order.platform_order_id == "fp-100"
        assert order.brand_id == seeded_store["brand_id"]
        assert order.status == "accepted"
        assert order.accepted_at is not None

        (accept,) = [r for r in platform_api.api_requests() if r.url.path.endswith("/status")]
        assert json.loads(accept.content)["order_status"] == "order_accepted"

    def test_redelivered_order_is_stored_once(self, client: TestClient, seeded_store, db_session: Session):
        body = json.dumps(FOODPANDA_ORDER_EVENT)
        assert client.post(f"{API}/webhooks/foodpanda", content=body).status_code == 200
        assert client.post(f"{API}/webhooks/foodpanda", content=body).status_code == 200
        assert db_session.query(DeliveryOrder).count() == 1

    def test_unknown_vendor_is_stored_unassigned(self, client: TestClient, platform_api, db_session: Session):
        response = client.post(f"{API}/webhooks/foodpanda", content=json.dumps(FOODPANDA_ORDER_EVENT))
        assert response.status_code == 200
        order = db_session.query(DeliveryOrder).one()
        assert order.store_id is None
        assert order.status == "received"
        assert platform_api.api_requests() == []

    def test_malformed_body(self, client: TestClient):
        response = client.post(f"{API}/webhooks/foodpanda", content=b"<xml/>")
        assert response.status_code == 400

    def test_wrongly_shaped_order(self, client: TestClient, db_session: Session):
        body = {"event_type": "order.created", "order": {"order_id": "fp1", "customer": "Alex"}}
        response = client.post(f"{API}/webhooks/foodpanda", json=body)
        assert response.status_code == 400
        assert response.json()["error"] == "MalformedPayload"
        assert db_session.query(DeliveryOrder).count() == 0

    def test_catalog_callback(self, client: TestClient):
        response = client.post(
            f"{API}/webhooks/foodpanda/catalog-callback",
            json={"status": "failed", "message": "invalid product price"},
        )
        assert response.status_code == 200
        assert response.json() == {"status": "OK"}


class TestHealth:

    def test_health(self, client: TestClient):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_readiness_reports_webhook_secret(self, client: TestClient):
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["checks"]["ubereats_webhook_secret"] == "configured"
