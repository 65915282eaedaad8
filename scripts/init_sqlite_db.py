"""Create the simulation_runs schema in a local SQLite file without Alembic.

Usage:
    python scripts/init_sqlite_db.py [--database-url sqlite+aiosqlite:///./greencart.db]
"""
import argparse
import asyncio
import os
import sys

# Add repo root to import path (so `import greencart` works when run as a script)
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from greencart.config import settings  # noqa: E402
from greencart.db.models import Base  # noqa: E402  (registers SimulationRun)
from greencart.db.session import build_engine  # noqa: E402


async def init_db(database_url: str) -> list[str]:
    engine = build_engine(database_url)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    finally:
        await engine.dispose()
    return sorted(Base.metadata.tables)


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--database-url", default=settings.DATABASE_URL)
    args = parser.parse_args()

    if not args.database_url.startswith("sqlite"):
        parser.error("only SQLite URLs are supported; use `alembic upgrade head` for other databases")

    tables = asyncio.run(init_db(args.database_url))
    print(f"initialized {args.database_url}: {', '.join(tables)}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
