"""
Database seeding script for cost code reference data.

The billing engine treats cost codes as read-only; this script populates
them. Codes ending in "C" are change-order codes and must be linked to a
change order before an invoice coded to them can be approved.
Run this script after database is set up but before first use.
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from backend.app.db.session import AsyncSessionLocal, engine, Base
from backend.app.models.cost_code import CostCode
from sqlalchemy import select


COST_CODES = [
    ("01100", "General Conditions"),
    ("02100", "Site Work"),
    ("03100", "Concrete"),
    ("03100C", "Concrete - Change Order"),
    ("03122", "Contractor Fee"),
    ("06100", "Rough Carpentry"),
    ("06100C", "Rough Carpentry - Change Order"),
    ("06200", "Finish Carpentry"),
    ("07100", "Waterproofing"),
    ("07200", "Roofing"),
    ("09100", "Drywall"),
    ("09200", "Painting"),
    ("09300", "Flooring"),
    ("15100", "Plumbing"),
    ("15200", "HVAC"),
    ("16100", "Electrical"),
    ("16100C", "Electrical - Change Order"),
]


async def seed_cost_codes():
    """
    Seed cost codes, skipping any code that already exists.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncSessionLocal() as db:
        print("🌱 Starting cost code seeding...")

        result = await db.execute(select(CostCode.code))
        existing = set(result.scalars().all())

        created = 0
        for code, name in COST_CODES:
            if code in existing:
                continue
            db.add(CostCode(code=code, name=name))
            created += 1

        await db.commit()

        print(f"✅ Created {created} cost code(s), {len(existing)} already present")


if __name__ == "__main__":
    asyncio.run(seed_cost_codes())
