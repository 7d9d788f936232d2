"""
Catalog Seed Script

Creates the schema and loads the hockey catalog with starting stock.

Usage:
    hockeystore-init-db
"""
import asyncio
import logging
from typing import List, Dict, Any

from sqlalchemy import select

from ..config import settings
from .init_db import Database
from .models import ProductModel

logger = logging.getLogger(__name__)


# Prices in KES cents
CATALOG: List[Dict[str, Any]] = [
    {
        "id": "prod_stick_001",
        "name": "Hockey Stick",
        "price_cents": 1200000,
        "stock": 25,
        "image": "images1/sticks2.jpg",
        "description": "High-quality hockey stick for professionals",
    },
    {
        "id": "prod_ball_001",
        "name": "Hockey Ball",
        "price_cents": 300000,
        "stock": 100,
        "image": "images1/balls.jpg",
        "description": "Durable hockey ball for practice",
    },
    {
        "id": "prod_gloves_001",
        "name": "Hockey Gloves",
        "price_cents": 100000,
        "stock": 40,
        "image": "images1/knuckle guard.jpg",
        "description": "Comfortable gloves for better grip",
    },
    {
        "id": "prod_pads_001",
        "name": "Goalers Pad",
        "price_cents": 600000,
        "stock": 10,
        "image": "images1/goalers pads.jpg",
        "description": "Best pads out there",
    },
]


async def seed_products(database: Database, catalog: List[Dict[str, Any]] = CATALOG) -> int:
    """
    Insert catalog products that are not present yet.

    Existing products are left untouched so live stock counters survive a
    re-run.

    Returns:
        Number of products inserted
    """
    inserted = 0
    async with database.transaction() as session:
        for entry in catalog:
            existing = await session.execute(
                select(ProductModel.id).where(ProductModel.id == entry["id"])
            )
            if existing.scalar_one_or_none():
                continue
            session.add(ProductModel(**entry))
            inserted += 1

    logger.info(f"Seeded {inserted} products ({len(catalog) - inserted} already present)")
    return inserted


async def _initialize() -> None:
    database = Database(settings.database_url)
    try:
        await database.create_all()
        await seed_products(database)
    finally:
        await database.dispose()


def main():
    """CLI entry point for initializing and seeding the database."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    asyncio.run(_initialize())


if __name__ == "__main__":
    main()
