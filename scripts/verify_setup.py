#!/usr/bin/env python3
"""
Setup Verification Script

Validates configuration and connections before running the coordinator.
Run this after setting up your .env file.

Usage:
    python scripts/verify_setup.py
"""

import asyncio
import os
import sys
from pathlib import Path

import httpx
from dotenv import load_dotenv

project_root = Path(__file__).parent.parent

# Load environment variables before the settings module is imported
load_dotenv(project_root / ".env")


def print_header(title: str) -> None:
    """Print section header."""
    print(f"\n{'='*60}")
    print(f" {title}")
    print(f"{'='*60}")


def print_result(name: str, success: bool, message: str = "") -> None:
    """Print check result."""
    status = "[PASS]" if success else "[FAIL]"
    color = "\033[92m" if success else "\033[91m"
    reset = "\033[0m"
    msg = f" - {message}" if message else ""
    print(f"  {color}{status}{reset} {name}{msg}")


def check_env_file() -> bool:
    """Check if .env file exists."""
    exists = (project_root / ".env").exists()
    if exists:
        print_result(".env file", True, "Found")
    else:
        print_result(".env file", False, "File not found (using environment and defaults)")
    return exists


def check_required_vars() -> dict[str, bool]:
    """Check required environment variables."""
    results = {}

    required = [
        ("REDIS_URL", "Session store"),
        ("DATABASE_URL", "Escalation and appointment records"),
        ("CALENDAR_API_URL", "Calendar provider"),
        ("MESSAGING_API_URL", "Messaging provider"),
    ]

    for var, description in required:
        value = os.getenv(var, "")
        if not value:
            print_result(var, False, f"Not set - {description}")
            results[var] = False
        else:
            print_result(var, True, f"Set ({value.split('@')[-1]})")
            results[var] = True

    return results


def check_settings() -> bool:
    """Load settings and show the scheduling policy in effect."""
    try:
        from followup.config import get_settings

        settings = get_settings()
        hours = settings.working_hours
    except (ValueError, KeyError) as e:
        print_result("Settings", False, str(e)[:80])
        return False

    print_result("Timezone", True, settings.clinic_timezone)
    print_result(
        "Working hours",
        True,
        f"{hours.start_of_day:%H:%M}-{hours.end_of_day:%H:%M} on days {sorted(hours.weekdays)}",
    )
    print_result(
        "Candidates",
        True,
        f"{settings.max_candidates} x {settings.slot_duration_minutes} min, "
        f"{settings.candidates_per_day or 'any'} per day",
    )
    print_result("Session TTL", True, f"{settings.session_ttl_hours}h")
    print_result(
        "Reply hints",
        True,
        "enabled" if settings.reply_hints_enabled and settings.anthropic_api_key else "disabled",
    )
    return True


async def check_postgres() -> bool:
    """Verify PostgreSQL connection."""
    from followup.infra.database import check_db_health

    healthy = await check_db_health()
    print_result("PostgreSQL", healthy, "Connection successful" if healthy else "Connection failed")
    return healthy


async def check_redis() -> bool:
    """Verify Redis connection."""
    from followup.infra.redis import check_redis_health

    healthy = await check_redis_health()
    print_result("Redis", healthy, "Connection successful" if healthy else "Connection failed")
    return healthy


async def check_service(name: str, url: str) -> bool:
    """Check if an HTTP collaborator is reachable."""
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.get(f"{url}/health")
    except httpx.HTTPError:
        print_result(name, False, f"Not reachable at {url}")
        return False

    if response.status_code == 200:
        print_result(name, True, f"Reachable at {url}")
        return True
    print_result(name, False, f"Responded with {response.status_code}")
    return False


async def main() -> int:
    """Run all verification checks."""
    print("\n" + "="*60)
    print(" Follow-up Coordinator - Setup Verification")
    print("="*60)

    sys.path.insert(0, str(project_root))

    print_header("Environment File")
    check_env_file()

    print_header("Required Environment Variables")
    var_results = check_required_vars()

    print_header("Scheduling Policy")
    settings_ok = check_settings()

    print_header("Service Connections")
    redis_ok = await check_redis()
    db_ok = await check_postgres()
    calendar_ok = await check_service("Calendar API", os.getenv("CALENDAR_API_URL", "http://localhost:8001"))
    messaging_ok = await check_service("Messaging API", os.getenv("MESSAGING_API_URL", "http://localhost:8002"))

    print_header("Summary")

    if not (settings_ok and redis_ok):
        print("\n  \033[91mCRITICAL: Redis or settings failed; no negotiation can run.\033[0m")
        print()
        return 1
    if not (db_ok and calendar_ok and messaging_ok and all(var_results.values())):
        print("\n  \033[93mWARNING: Some checks failed.\033[0m")
        print("  Affected negotiations will be escalated rather than booked.")
        print()
        return 0

    print("\n  \033[92mAll checks passed!\033[0m")
    print("  You can start the application with:")
    print("    uvicorn followup.main:app --reload")
    print()
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
