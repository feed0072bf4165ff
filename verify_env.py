import asyncio
import os

from dotenv import load_dotenv
import httpx
from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine

from src.core.database import resolve_async_database_url

# 1. Load .env before reading any variable
load_dotenv()

DB_LABELS = {
    "postgresql": "PostgreSQL",
    "mysql": "MySQL",
    "sqlite": "SQLite (testing)",
}

HEALTH_QUERIES = {
    "postgresql": "SELECT version();",
    "mysql": "SELECT VERSION();",
}

REMOTE_SERVICES = {
    "Check-in store": "CHECKIN_API_BASE",
    "Payment processor": "PAYMENT_API_BASE",
}


async def verify_database():
    print("-" * 30)
    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        print("ERROR: DATABASE_URL is not set")
        return False

    try:
        async_url = resolve_async_database_url(db_url)
        url = make_url(async_url)
    except Exception as exc:  # noqa: BLE001 - surface clear setup errors
        print(f"ERROR: unsupported database configuration: {exc}")
        return False

    backend = url.get_backend_name()
    label = DB_LABELS.get(backend, backend)
    print(f"Checking {label} connection...")
    print(f"DSN: {url.render_as_string(hide_password=True)}")

    query = HEALTH_QUERIES.get(backend, "SELECT 1")

    try:
        engine = create_async_engine(async_url, echo=False)
        async with engine.connect() as conn:
            result = await conn.execute(text(query))
            version = result.scalar()
            print(f"OK: {label} reachable, returned {version}")
        await engine.dispose()
        return True
    except Exception as e:  # noqa: BLE001 - surface connection failure
        print(f"FAILED: {label} connection error: {e}")
        return False


async def verify_remote_service(label: str, env_name: str):
    print("-" * 30)
    base_url = os.getenv(env_name)
    if not base_url:
        print(f"ERROR: {env_name} is not set")
        return False

    print(f"Checking {label} at {base_url}...")
    try:
        async with httpx.AsyncClient(base_url=base_url, timeout=5.0) as client:
            response = await client.get("/health")
    except httpx.HTTPError as e:
        print(f"FAILED: {label} unreachable: {e.__class__.__name__}")
        return False

    if response.status_code >= 500:
        print(f"FAILED: {label} returned {response.status_code}")
        return False
    print(f"OK: {label} answered {response.status_code}")
    return True


async def main():
    print("Verifying environment configuration...")

    results = [await verify_database()]
    for label, env_name in REMOTE_SERVICES.items():
        results.append(await verify_remote_service(label, env_name))

    print("-" * 30)
    if all(results):
        print("All core services are configured correctly.")
    else:
        print("WARNING: some connections failed; check your .env file and running services.")

if __name__ == "__main__":
    asyncio.run(main())
