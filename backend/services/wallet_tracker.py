from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from models.database import Wallet
from utils.logger import get_logger
from utils.utcnow import utcnow
from utils.validation import is_valid_wallet_address, validate_eth_address

logger = get_logger("wallet_tracker")


def wallet_to_dict(wallet: Wallet) -> dict:
    return {
        "address": wallet.address,
        "label": wallet.label or wallet.address[:10] + "...",
        "is_active": bool(wallet.is_active),
        "created_at": wallet.created_at.isoformat() if wallet.created_at else None,
    }


async def list_wallets(session: AsyncSession, *, active_only: bool = False) -> list[Wallet]:
    query = select(Wallet).order_by(Wallet.created_at.asc())
    if active_only:
        query = query.where(Wallet.is_active.is_(True))
    result = await session.execute(query)
    return list(result.scalars().all())


async def list_active_wallets(session: AsyncSession) -> list[str]:
    """Addresses to poll. Rows with a malformed address are skipped with a warning."""
    addresses: list[str] = []
    for wallet in await list_wallets(session, active_only=True):
        if not is_valid_wallet_address(wallet.address):
            logger.warning("Invalid wallet address format", address=wallet.address)
            continue
        addresses.append(wallet.address.lower())
    return addresses


async def add_wallet(session: AsyncSession, address: str, label: Optional[str] = None) -> Wallet:
    """Register a wallet (stored lower-case). Re-adding an existing one reactivates it."""
    normalized = validate_eth_address(address)

    existing = await session.get(Wallet, normalized)
    if existing is not None:
        existing.is_active = True
        if label:
            existing.label = label
        await session.commit()
        return existing

    wallet = Wallet(address=normalized, label=label, is_active=True, created_at=utcnow())
    session.add(wallet)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        wallet = await session.get(Wallet, normalized)
    logger.info("Added wallet", address=normalized, label=label)
    return wallet


async def set_wallet_active(session: AsyncSession, address: str, is_active: bool) -> bool:
    wallet = await session.get(Wallet, address.strip().lower())
    if wallet is None:
        return False
    wallet.is_active = bool(is_active)
    await session.commit()
    logger.info("Updated wallet status", address=wallet.address, is_active=wallet.is_active)
    return True


async def remove_wallet(session: AsyncSession, address: str) -> bool:
    result = await session.execute(delete(Wallet).where(Wallet.address == address.strip().lower()))
    await session.commit()
    removed = bool(result.rowcount)
    if removed:
        logger.info("Removed wallet", address=address)
    return removed
