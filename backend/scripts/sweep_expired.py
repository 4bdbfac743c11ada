"""
Expire Subscriptions Script

Runs one expiry sweep: current subscriptions whose end date has passed
are marked EXPIRED. Use it from cron when the in-process scheduler is
disabled (EXPIRY_SWEEP_ENABLED=false).

Usage:
    cd backend
    python scripts/sweep_expired.py
"""

import asyncio
import logging
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.config.settings import settings
from app.domain.subscription_service import SubscriptionService
from app.infrastructure.db.database import close_db

logging.basicConfig(level=getattr(logging, settings.log_level.upper()))
logger = logging.getLogger(__name__)


async def main() -> int:
    try:
        expired = await SubscriptionService().sweep_expired()
        logger.info(f"Sweep finished: {expired} subscriptions expired")
        return expired
    finally:
        await close_db()


if __name__ == "__main__":
    asyncio.run(main())
