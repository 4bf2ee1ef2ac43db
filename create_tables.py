"""
Script to create all database tables.

This script creates all tables defined in the models.
Run this after starting PostgreSQL with Docker.
"""
import asyncio
from flowcredits.database import engine
from flowcredits.models.base import Base

# Import all models to register them with Base
from flowcredits.models.tenant import Tenant  # noqa: F401
from flowcredits.models.payment import Payment  # noqa: F401
from flowcredits.models.credit import ClientBalance, CreditTransaction  # noqa: F401
from flowcredits.models.reservation import Reservation  # noqa: F401
from flowcredits.models.notification import NotificationDelivery  # noqa: F401


async def create_all_tables():
    """Create all tables in the database."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print("All tables created successfully!")


async def drop_all_tables():
    """Drop all tables in the database (for testing)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    print("All tables dropped!")


async def main():
    """Main entry point."""
    print("Creating database tables...")
    await create_all_tables()
    print("Done!")


if __name__ == "__main__":
    asyncio.run(main())
