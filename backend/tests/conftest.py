"""
Pytest configuration and fixtures.

Every test gets its own SQLite file database seeded with a small catalog.
"""
from typing import Any, AsyncGenerator, Dict, List

import httpx
import jwt
import pytest
import pytest_asyncio
from sqlalchemy import func, select

from hockeystore.config import Settings
from hockeystore.db.init_db import Database
from hockeystore.db.models import ProductModel
from hockeystore.db.seed import seed_products
from hockeystore.main import create_app
from hockeystore.mocks.mpesa_gateway import MockMpesaGateway
from hockeystore.models.orders import CheckoutRequest
from hockeystore.services.callback_service import CallbackReconciler
from hockeystore.services.checkout_service import CheckoutOrchestrator

JWT_SECRET = "test-jwt-secret-with-at-least-32-bytes"

TEST_CATALOG: List[Dict[str, Any]] = [
    {"id": "stick", "name": "Hockey Stick", "price_cents": 1200000, "stock": 5},
    {"id": "ball", "name": "Hockey Ball", "price_cents": 300000, "stock": 10},
    {"id": "gloves", "name": "Hockey Gloves", "price_cents": 100050, "stock": 1},
]


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Create test settings."""
    return Settings(
        demo_mode=False,
        log_level="DEBUG",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'store.db'}",
        jwt_secret=JWT_SECRET,
        mpesa_consumer_key="consumer_key",
        mpesa_consumer_secret="consumer_secret",
        mpesa_business_shortcode="174379",
        mpesa_passkey="passkey",
        base_url="https://shop.example.com",
        reservation_timeout_seconds=120,
        pending_payment_timeout_seconds=3600,
        sweep_interval_seconds=0,
    )


@pytest_asyncio.fixture
async def database(test_settings) -> AsyncGenerator[Database, Any]:
    """Create test database with the catalog loaded."""
    db = Database(test_settings.database_url)
    await db.create_all()
    await seed_products(db, TEST_CATALOG)
    yield db
    await db.dispose()


@pytest.fixture
def gateway() -> MockMpesaGateway:
    return MockMpesaGateway()


@pytest.fixture
def orchestrator(database, gateway, test_settings) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(database, gateway, test_settings)


@pytest.fixture
def reconciler(database) -> CallbackReconciler:
    return CallbackReconciler(database)


@pytest.fixture
def app(database, gateway, test_settings):
    """App with state wired by hand; the lifespan is not run."""
    application = create_app(test_settings)
    application.state.database = database
    application.state.gateway = gateway
    application.state.scheduler = None
    return application


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """Create test HTTP client."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def make_token(user_id: str = "user_001", role: str = "user", secret: str = JWT_SECRET) -> str:
    return jwt.encode({"id": user_id, "email": f"{user_id}@example.com", "type": role}, secret, algorithm="HS256")


@pytest.fixture
def user_headers() -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_token()}"}


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_token('admin_001', role='admin')}"}


def checkout_request(cart: List[Dict[str, Any]], phone: str = "254708374149") -> CheckoutRequest:
    return CheckoutRequest.model_validate({
        "cart": cart,
        "name": "Jane Wanjiku",
        "email": "jane@example.com",
        "phoneNumber": phone,
    })


async def stock_of(database: Database, product_id: str) -> int:
    async with database.session() as db:
        result = await db.execute(select(ProductModel.stock).where(ProductModel.id == product_id))
        return result.scalar_one()


async def count_rows(database: Database, model) -> int:
    async with database.session() as db:
        result = await db.execute(select(func.count()).select_from(model))
        return result.scalar_one()
