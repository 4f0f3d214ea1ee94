"""
Database Migration: Create Misfit Reconciliation Tables

Creates the tables the reconciliation engine reads and writes, including
the partial unique index that allows a care ticket to be linked to at most
one transaction.

Run: python migrations/create_misfit_tables.py
"""

import asyncio
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import text

from database import Base, get_engine


# Run after create_all for databases created before the index existed
POST_CREATE_STATEMENTS = [
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_transactions_care_ticket
    ON public.transactions(care_ticket_id)
    WHERE care_ticket_id IS NOT NULL
    """,
]


async def create_tables():
    """Create the misfit reconciliation tables."""
    print("Creating misfit reconciliation tables...")

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        print(f"  ✓ Tables: {', '.join(sorted(Base.metadata.tables))}")

        for i, sql in enumerate(POST_CREATE_STATEMENTS):
            await conn.execute(text(sql))
            print(f"  ✓ Statement {i+1}/{len(POST_CREATE_STATEMENTS)} executed")

    print("\n✅ Misfit reconciliation tables created successfully!")


if __name__ == "__main__":
    asyncio.run(create_tables())
