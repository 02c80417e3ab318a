"""Pytest configuration and fixtures."""

import os

# Must be set before brewledger is imported
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["INVENTORY_WORKERS_ENABLED"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "false"

from decimal import Decimal
from typing import Generator, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from brewledger.core.config import InventoryEngineSettings
from brewledger.db.base import Base
from brewledger.db.session import create_db_engine, get_db, make_session_factory
from brewledger.models import Ingredient, MenuItemIngredient, OrderItem
from brewledger.services.notification_service import Notifier

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"

LATTE = 1
AMERICANO = 2
ESPRESSO_SHOT = 3
CINNAMON_LATTE = 4


class RecordingNotifier(Notifier):
    """Keeps every notification for assertions."""

    def __init__(self):
        self.low_stock_batches = []
        self.job_failures = []
        self.clamped = []

    def send_low_stock_batch(self, batch):
        self.low_stock_batches.append(batch)

    def send_job_failure(self, alert):
        self.job_failures.append(alert)

    def send_stock_clamped(self, alert):
        self.clamped.append(alert)


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    engine = create_db_engine(TEST_DATABASE_URL, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine) -> sessionmaker:
    return make_session_factory(db_engine)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    """Create a test database session."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def file_engine(tmp_path):
    """File-backed SQLite engine for tests that need real concurrent connections."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'brewledger.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def engine_config() -> InventoryEngineSettings:
    """Engine settings with short timings for tests."""
    return InventoryEngineSettings(
        stock_policy="strict",
        max_attempts=3,
        backoff_base_seconds=5,
        backoff_max_seconds=60,
        processing_timeout_seconds=120,
        cancel_wait_seconds=0.5,
        cancel_poll_seconds=0.05,
        workers_enabled=False,
        deduction_workers=2,
        queue_poll_seconds=0.05,
        low_stock_sweep_seconds=0.1,
    )


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


def add_ingredient(db: Session, sku: str, name: str, actual_unit: str, quantity,
                   reorder_level=0, display_unit: Optional[str] = None,
                   conversion_rate=None, category: Optional[str] = None,
                   is_available: bool = True) -> Ingredient:
    ingredient = Ingredient(
        sku=sku,
        name=name,
        actual_unit=actual_unit,
        display_unit=display_unit,
        conversion_rate=Decimal(str(conversion_rate)) if conversion_rate is not None else None,
        initial_quantity=Decimal(str(quantity)),
        actual_quantity=Decimal(str(quantity)),
        reorder_level=Decimal(str(reorder_level)),
        cost_per_actual_unit=Decimal("0.01"),
        category=category,
        is_available=is_available,
    )
    db.add(ingredient)
    db.commit()
    db.refresh(ingredient)
    return ingredient


def add_recipe_row(db: Session, menu_item_id: int, ingredient: Ingredient, actual=None,
                   display=None, unit: Optional[str] = None, optional: bool = False) -> MenuItemIngredient:
    row = MenuItemIngredient(
        menu_item_id=menu_item_id,
        ingredient_id=ingredient.id,
        required_actual_amount=Decimal(str(actual)) if actual is not None else None,
        required_display_amount=Decimal(str(display)) if display is not None else None,
        recipe_unit=unit,
        is_optional=optional,
    )
    db.add(row)
    db.commit()
    return row


def add_order(db: Session, order_id: str, *lines) -> List[OrderItem]:
    """``lines`` are ``(menu_item_id, quantity)`` or ``(menu_item_id, quantity, customizations)``."""
    items = []
    for line in lines:
        menu_item_id, quantity = line[0], line[1]
        customizations = line[2] if len(line) > 2 else None
        item = OrderItem(
            order_id=order_id,
            menu_item_id=menu_item_id,
            quantity=quantity,
            customizations=customizations,
        )
        db.add(item)
        items.append(item)
    db.commit()
    return items


def seed_cafe(db: Session) -> dict:
    """A small cafe catalogue.

    Latte: 1 shot espresso (18 g of beans tracked in kg), 200 ml whole milk,
    optional 2 pumps vanilla, optional 1 dash whipped cream (1 dash = 5 g).
    Americano: 2 shots espresso. Espresso: 1 shot.
    Cinnamon latte: latte plus 2 sprinkles of cinnamon.
    """
    beans = add_ingredient(db, "BEANS", "Espresso Beans", "kg", "1.000", reorder_level="0.200",
                           display_unit="shot", category="coffee")
    milk = add_ingredient(db, "MILK", "Whole Milk", "ml", 2000, reorder_level=500,
                          display_unit="cup", category="dairy")
    oat = add_ingredient(db, "OAT", "Oat Milk", "ml", 1000, reorder_level=200,
                         display_unit="cup", category="dairy")
    vanilla = add_ingredient(db, "VANILLA", "Vanilla Syrup", "ml", 500, reorder_level=100,
                             display_unit="pump", category="syrup")
    cream = add_ingredient(db, "CREAM", "Whipped Cream", "g", 300, reorder_level=50,
                           display_unit="dash", conversion_rate=5, category="dairy")
    cinnamon = add_ingredient(db, "CINNAMON", "Cinnamon", "g", 50, reorder_level=10,
                              display_unit="sprinkle", category="spice")

    add_recipe_row(db, LATTE, beans, display=1, unit="shot")
    add_recipe_row(db, LATTE, milk, actual=200)
    add_recipe_row(db, LATTE, vanilla, display=2, unit="pump", optional=True)
    add_recipe_row(db, LATTE, cream, display=1, optional=True)

    add_recipe_row(db, AMERICANO, beans, display=2, unit="shot")

    add_recipe_row(db, ESPRESSO_SHOT, beans, display=1)

    add_recipe_row(db, CINNAMON_LATTE, beans, display=1, unit="shot")
    add_recipe_row(db, CINNAMON_LATTE, milk, actual=200)
    add_recipe_row(db, CINNAMON_LATTE, cinnamon, display=2, unit="sprinkles")

    return {
        "beans": beans,
        "milk": milk,
        "oat": oat,
        "vanilla": vanilla,
        "cream": cream,
        "cinnamon": cinnamon,
    }


@pytest.fixture
def cafe(db_session: Session) -> dict:
    """Seed the cafe catalogue into the in-memory database."""
    return seed_cafe(db_session)


def quantity_of(db: Session, ingredient_id: int) -> Decimal:
    """Current stored quantity, bypassing the session's identity map."""
    db.expire_all()
    return db.get(Ingredient, ingredient_id).actual_quantity


@pytest.fixture(scope="function")
def client(db_session: Session, session_factory, notifier) -> Generator[TestClient, None, None]:
    """Create a test client with database override."""
    from brewledger.main import app
    from brewledger.api.routes.inventory_engine import get_session_factory
    from brewledger.services.notification_service import get_notifier

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_notifier] = lambda: notifier
    # Don't raise server exceptions so we can test error status codes
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    app.dependency_overrides.clear()
