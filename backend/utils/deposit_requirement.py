import logging

from config.constants import DEPOSIT_TIER_LADDER
from utils import ledger_store
from utils import payout_eligibility
from utils.money import to_major_units
from utils.payment_control import REASON_DEPOSIT_BREACH, enable_payment, is_deposit_breach
from utils.seller_lock import holds_seller_lock, seller_lock

logger = logging.getLogger(__name__)


def suggest_tier(exposure_minor: int) -> int:
    """Smallest ladder step covering the exposure; the top step if none does."""
    for tier in DEPOSIT_TIER_LADDER:
        if tier * 100 >= exposure_minor:
            return tier
    return DEPOSIT_TIER_LADDER[-1]


def current_tier(collateral_minor: int) -> int:
    covered = [tier for tier in DEPOSIT_TIER_LADDER if tier * 100 <= collateral_minor]
    return covered[-1] if covered else 0


async def evaluate(db, seller_id, prospective_amount: int, currency: str, rates) -> dict:
    """
    Compares the seller's exposure (unfulfilled orders plus the prospective
    amount) with posted collateral, both in the base currency.

    Must run while the caller holds the seller lease. Read and conversion
    errors propagate; there is no default answer.
    """
    if not holds_seller_lock(seller_id):
        raise RuntimeError("Deposit evaluation requires the seller lease")

    exposure = await ledger_store.sum_exposure(db, seller_id, rates)
    if prospective_amount:
        exposure += await rates.to_base(prospective_amount, currency)

    collateral = await ledger_store.sum_collateral(db, seller_id, rates)

    base = rates.base_currency
    result = {
        "requiresDeposit": False,
        "requiredAmount": 0,
        "currentTier": current_tier(collateral),
        "suggestedTier": None,
        "reason": None,
        "currency": base,
        "exposure": to_major_units(exposure),
        "collateral": to_major_units(collateral),
    }

    if exposure <= collateral:
        return result

    shortfall = exposure - collateral
    result.update({
        "requiresDeposit": True,
        "requiredAmount": to_major_units(shortfall),
        "suggestedTier": suggest_tier(exposure),
        "reason": (
            f"Outstanding order exposure {to_major_units(exposure):.2f} {base} "
            f"exceeds deposit collateral {to_major_units(collateral):.2f} {base}"
        ),
    })
    return result


async def check_auto_recovery(db, seller_id, rates) -> bool:
    """
    Re-enables payment for a seller locked for deposit breach once collateral
    covers exposure again. Returns True if payment was re-enabled.
    """
    async with seller_lock(db, seller_id):
        seller = await ledger_store.get_seller(db, seller_id)
        if not seller or not is_deposit_breach(seller):
            return False

        check = await evaluate(db, seller_id, 0, rates.base_currency, rates)
        if check["requiresDeposit"]:
            return False

        await enable_payment(db, seller_id, reason=f"{REASON_DEPOSIT_BREACH}_recovered")
        await payout_eligibility.update(db, seller_id, trigger="deposit_recovered")

    logger.info("DEPOSIT_AUTO_RECOVERY seller=%s", seller_id)
    return True
