"""Shared fixtures."""

from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from listing_recon.db.models import Base, Component
from listing_recon.match.catalog import CatalogEntry, CatalogIndex
from listing_recon.match.matcher import CatalogMatcher

CATALOG_ROWS = [
    {
        "id": 1, "brand": "Sennheiser", "name": "HD 600", "category": "headphone",
        "price_new": 400, "price_used_min": 250, "price_used_max": 330,
        "specs": {"impedance": 300, "driver_type": "dynamic"},
    },
    {
        "id": 2, "brand": "Sennheiser", "name": "HD 650", "category": "headphone",
        "price_new": 500, "price_used_min": 300, "price_used_max": 400,
    },
    {
        "id": 3, "brand": "Focal", "name": "Clear MG", "category": "headphone",
        "price_new": 1500, "price_used_min": 900, "price_used_max": 1200,
    },
    {
        "id": 4, "brand": "Schiit", "name": "Magni", "category": "amp",
        "price_new": 100, "price_used_min": 60, "price_used_max": 90,
    },
    {
        "id": 5, "brand": "Moondrop", "name": "Blessing 2", "category": "iem",
        "price_new": 320, "price_used_min": 200, "price_used_max": 270,
    },
    {
        "id": 6, "brand": "Audio-Technica", "name": "ATH-M50x", "category": "headphone",
        "price_new": 150, "price_used_min": 80, "price_used_max": 110,
    },
    {
        "id": 7, "brand": "Topping", "name": "E30", "category": "dac",
        "price_new": 130, "price_used_min": 80, "price_used_max": 110,
    },
]


@pytest.fixture
def catalog() -> CatalogIndex:
    return CatalogIndex.from_rows(CATALOG_ROWS)


@pytest.fixture
def matcher(catalog) -> CatalogMatcher:
    return CatalogMatcher(catalog)


@pytest.fixture
def hd600(catalog) -> CatalogEntry:
    return catalog.get(1)


@pytest.fixture
async def session_factory(tmp_path):
    """File-backed sqlite database with all tables created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    try:
        yield factory
    finally:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        await engine.dispose()


@pytest.fixture
async def seeded_factory(session_factory):
    """Database with the test catalog loaded into the components table."""
    async with session_factory() as db:
        for row in CATALOG_ROWS:
            db.add(
                Component(
                    id=row["id"],
                    brand=row["brand"],
                    name=row["name"],
                    category=row["category"],
                    price_new=Decimal(row["price_new"]),
                    price_used_min=Decimal(row["price_used_min"]),
                    price_used_max=Decimal(row["price_used_max"]),
                    specs=row.get("specs"),
                )
            )
        await db.commit()
    return session_factory
