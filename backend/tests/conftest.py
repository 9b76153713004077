"""Pytest configuration and fixtures."""

import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from collections import defaultdict
from typing import Generator, List, Optional

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import Settings
from app.core.security import create_access_token
from app.db.base import Base
from app.main import app
# Import all models to ensure they're registered with Base.metadata
from app.models import *
from app.models.delivery import InventoryRecord, PlatformStoreBinding, StoreMenuSnapshot
from app.schemas.delivery import MenuSnapshot
from app.services.delivery.container import DeliveryServices

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"

WEBHOOK_SECRET = "s3cret"
BRAND_ID = "brand-1"
STORE_ID = "store-1"
UBER_STORE_ID = "uber-store-1"
FOODPANDA_VENDOR = "fp-vendor-1"


class FakePlatformApi:
    """Stand-in for the Uber Eats and Foodpanda HTTP APIs behind an httpx.MockTransport.

    Token endpoints hand out numbered tokens. Any other call answers 200
    unless a failure status was queued for its host.
    """

    UBER_AUTH_HOST = "auth.uber.com"
    UBER_API_HOST = "api.uber.com"
    FOODPANDA_HOST = "integration-middleware.as.restaurant-partners.com"

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.token_calls = defaultdict(int)
        self.failures = defaultdict(list)
        self.responses = {}

    def fail_next(self, host: str, status_code: int, times: int = 1):
        self.failures[host].extend([status_code] * times)

    def api_requests(self, host: Optional[str] = None) -> List[httpx.Request]:
        return [
            r for r in self.requests
            if not r.url.path.endswith(("/oauth/v2/token", "/v2/login"))
            and (host is None or r.url.host == host)
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/oauth/v2/token") or path.endswith("/v2/login"):
            platform = "ubereats" if request.url.host == self.UBER_AUTH_HOST else "foodpanda"
            self.token_calls[platform] += 1
            return httpx.Response(
                200,
                json={"access_token": f"{platform}-token-{self.token_calls[platform]}", "expires_in": 3600},
            )
        queued = self.failures.get(request.url.host)
        if queued:
            status_code = queued.pop(0)
            return httpx.Response(status_code, json={"message": f"upstream error {status_code}"})
        if path in self.responses:
            return httpx.Response(200, json=self.responses[path])
        return httpx.Response(200, json={"ok": True})


def make_settings(**overrides) -> Settings:
    values = dict(
        environment="test",
        database_url=TEST_DATABASE_URL,
        ubereats_client_id="uber-client",
        ubereats_client_secret="uber-client-secret",
        ubereats_webhook_secret=WEBHOOK_SECRET,
        foodpanda_username="fp-user",
        foodpanda_password="fp-password",
        foodpanda_chain_code="CHAIN-1",
        foodpanda_callback_url="https://gateway.example.com/api/v1/webhooks/foodpanda/catalog-callback",
        rate_limit_enabled=False,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


def sample_menu_data() -> dict:
    size = {
        "id": "oc-size",
        "name": "Size",
        "input_type": "single",
        "options": [
            {"id": "opt-large", "name": "Large", "price": "20"},
            {"id": "opt-regular", "name": "Regular", "price": "0"},
        ],
    }
    sides = {
        "id": "oc-sides",
        "name": "Sides",
        "input_type": "multiple",
        "options": [
            {"id": "opt-egg", "name": "Braised Egg", "price": "15", "ref_dish_id": "dish-egg", "tags": ["side"]},
            {"id": "opt-tofu", "name": "Tofu", "price": "10"},
        ],
    }
    noodles = {
        "id": "dish-noodles",
        "name": "Beef Noodles",
        "description": "Slow braised beef",
        "base_price": "120",
        "image_url": "https://img.example.com/noodles.jpg",
        "option_categories": [size, sides],
    }
    rice = {
        "id": "dish-rice",
        "name": "Pork Rice",
        "base_price": "100",
        "option_categories": [size],
    }
    hidden = {"id": "dish-hidden", "name": "Secret Dish", "base_price": "999"}
    return {
        "id": "menu-1",
        "name": "All Day",
        "categories": [
            {
                "id": "cat-mains",
                "name": "Mains",
                "items": [
                    {"item_type": "dish", "dish": noodles},
                    {"item_type": "dish", "price_override": "90", "dish": rice},
                    {"item_type": "dish", "is_showing": False, "dish": hidden},
                    {"item_type": "bundle"},
                ],
            },
            {"id": "cat-empty", "name": "Seasonal", "items": []},
        ],
        "business_hours": [
            {"day": 1, "periods": [{"open": "11:00", "close": "14:00"}, {"open": "17:00", "close": "21:00"}]},
            {"day": 0, "is_closed": True},
        ],
    }


@pytest.fixture
def sample_menu() -> MenuSnapshot:
    return MenuSnapshot.model_validate(sample_menu_data())


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    """Create a test database session."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def platform_api() -> FakePlatformApi:
    return FakePlatformApi()


@pytest.fixture
def http_client(platform_api: FakePlatformApi) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(platform_api.handler))


@pytest.fixture
def test_settings() -> Settings:
    return make_settings()


@pytest.fixture
def settings_factory():
    """Build isolated settings with selected overrides."""
    return make_settings


@pytest.fixture
def services(test_settings, session_factory, http_client) -> DeliveryServices:
    return DeliveryServices(test_settings, session_factory, http_client)


@pytest.fixture(scope="function")
def client(services: DeliveryServices) -> Generator[TestClient, None, None]:
    """Test client wired to isolated delivery services.

    The lifespan is not entered, so the services built here are the ones
    the routes see.
    """
    app.state.delivery = services
    # Disable rate limiters during tests to avoid flaky failures
    from app.core.rate_limit import limiter as global_limiter
    global_limiter.enabled = False
    # Don't raise server exceptions so we can test error status codes
    test_client = TestClient(app, raise_server_exceptions=False)
    yield test_client
    global_limiter.enabled = True
    del app.state.delivery


@pytest.fixture
def operator_headers() -> dict:
    token = create_access_token(data={"sub": "1", "email": "owner@example.com", "role": "owner"})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def seeded_store(db_session: Session):
    """A store bound to both platforms, with a published menu and stock records."""
    db_session.add_all([
        PlatformStoreBinding(
            brand_id=BRAND_ID,
            store_id=STORE_ID,
            platform="ubereats",
            external_store_id=UBER_STORE_ID,
            platform_specific={"robocall_enabled": True},
            is_active=True,
            auto_accept=True,
        ),
        PlatformStoreBinding(
            brand_id=BRAND_ID,
            store_id=STORE_ID,
            platform="foodpanda",
            external_store_id=FOODPANDA_VENDOR,
            platform_specific={"chain_code": "CHAIN-1"},
            is_active=True,
            auto_accept=True,
        ),
    ])
    menu = sample_menu_data()
    business_hours = menu.pop("business_hours")
    db_session.add(StoreMenuSnapshot(brand_id=BRAND_ID, store_id=STORE_ID, menu=menu, business_hours=business_hours))
    db_session.add_all([
        InventoryRecord(store_id=STORE_ID, dish_id="dish-noodles", is_sold_out=True),
        InventoryRecord(
            store_id=STORE_ID,
            dish_id="dish-rice",
            is_inventory_tracked=True,
            enable_available_stock=True,
            available_stock=5,
        ),
        InventoryRecord(
            store_id=STORE_ID,
            dish_id="dish-egg",
            is_inventory_tracked=True,
            enable_available_stock=True,
            available_stock=0,
        ),
    ])
    db_session.commit()
    return {
        "brand_id": BRAND_ID,
        "store_id": STORE_ID,
        "ubereats_store_id": UBER_STORE_ID,
        "foodpanda_vendor": FOODPANDA_VENDOR,
    }
