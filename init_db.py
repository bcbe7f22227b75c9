"""
Scratch Your Card — init_db.py
One-shot initializer for the SQLite database:
- Ensures schema (PRAGMA + transactions table + indexes)
- Reports how many transactions are already logged
"""

import os
import asyncio

from config import settings  # keeps DB path consistent with app
import db as dbmod


# =========================================================
# Config
# =========================================================
DB_PATH = os.getenv("DB_PATH", settings.DB_PATH)


# =========================================================
# Main
# =========================================================
async def main(db_path: str = DB_PATH) -> int:
    print(f"Using DB_PATH={db_path}")
    conn = await dbmod.connect(db_path)
    try:
        await dbmod.ensure_schema(conn)
        async with conn.execute("SELECT COUNT(*) FROM transactions") as cur:
            row = await cur.fetchone()
    finally:
        await conn.close()
    count = int(row[0]) if row else 0
    print(f"Schema ready; {count} transaction(s) logged")
    return count


if __name__ == "__main__":
    asyncio.run(main())
