"""Seed data: platform system wallets and sample accounts."""

import json
import logging
from datetime import timedelta
from decimal import Decimal
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from remitcore.config import Settings, get_settings
from remitcore.database import utcnow
from remitcore.models.account import Account, TransferContact, Wallet

# Path to sample data files
SAMPLE_DATA_DIR = Path(__file__).parent.parent / "sample_data"

logger = logging.getLogger(__name__)


async def _ensure_wallet(db: AsyncSession, owner_id: str, currency: str, balance: Decimal) -> bool:
    result = await db.execute(
        select(Wallet).where(Wallet.owner_id == owner_id, Wallet.currency == currency)
    )
    if result.scalar_one_or_none():
        return False
    db.add(Wallet(owner_id=owner_id, currency=currency, balance=balance, held_amount=Decimal("0")))
    return True


async def seed_system_wallets(db: AsyncSession, settings: Settings) -> None:
    """Create the fee collection wallet for every supported currency."""
    created = 0
    for currency in settings.system_wallet_currencies:
        if await _ensure_wallet(db, settings.fee_wallet_owner_id, currency.upper(), Decimal("0")):
            created += 1
    await db.commit()
    if created:
        logger.info(f"Created {created} system wallet(s) for {settings.fee_wallet_owner_id}")


def load_sample_accounts() -> dict:
    """Load sample accounts from the JSON data file."""
    accounts_file = SAMPLE_DATA_DIR / "accounts.json"
    if not accounts_file.exists():
        logger.warning(f"Sample accounts file not found: {accounts_file}")
        return {}

    with open(accounts_file, "r", encoding="utf-8") as f:
        return json.load(f)


async def seed_sample_accounts(db: AsyncSession) -> None:
    data = load_sample_accounts()
    now = utcnow()

    accounts_created = 0
    for item in data.get("accounts", []):
        user_id = item.get("user_id")
        if not user_id:
            logger.warning("Sample account missing user_id, skipping")
            continue
        if await db.get(Account, user_id) is not None:
            logger.debug(f"Account {user_id} already exists, skipping")
            continue

        db.add(
            Account(
                user_id=user_id,
                role=item.get("role", "CLIENT"),
                verification_tier=item.get("verification_tier", 0),
                plan_tier=item.get("plan_tier", "free"),
                created_at=now - timedelta(days=item.get("age_days", 0)),
            )
        )
        for currency, balance in item.get("wallets", {}).items():
            await _ensure_wallet(db, user_id, currency, Decimal(balance))
        accounts_created += 1

    for item in data.get("contacts", []):
        key = (item["user_id"], item["contact_user_id"])
        if await db.get(TransferContact, key) is None:
            db.add(
                TransferContact(
                    user_id=key[0],
                    contact_user_id=key[1],
                    transfer_count=item.get("transfer_count", 0),
                    is_favorite=item.get("is_favorite", False),
                )
            )

    await db.commit()
    logger.info(f"Seeded {accounts_created} sample account(s)")


async def run_seeds(db: AsyncSession) -> None:
    """Run all seed functions."""
    settings = get_settings()
    await seed_system_wallets(db, settings)
    if settings.seed_sample_accounts:
        await seed_sample_accounts(db)
