from fastapi import APIRouter, Depends

from database import get_db
from utils.money import get_rate_lookup
from utils.notifications import get_notification_sink
from utils.security import verify_cron_secret
from workers.commission_overdue_worker import run_overdue_commission_deduction
from workers.debt_collection_worker import run_debt_collection
from workers.deposit_lot_worker import run_deposit_lot_maturity
from workers.notification_worker import run_notification_dispatch
from workers.subscription_expiry_worker import run_subscription_expiry

router = APIRouter(
    prefix="/api/cron",
    tags=["Cron"],
    dependencies=[Depends(verify_cron_secret)],
)


@router.post("/collect-debts")
async def cron_collect_debts(db=Depends(get_db), rates=Depends(get_rate_lookup)):
    return await run_debt_collection(db, rates)


@router.post("/deduct-overdue-commissions")
async def cron_deduct_overdue_commissions(db=Depends(get_db), rates=Depends(get_rate_lookup)):
    return await run_overdue_commission_deduction(db, rates)


@router.post("/subscription-lifecycle")
async def cron_subscription_lifecycle(db=Depends(get_db)):
    return await run_subscription_expiry(db)


@router.post("/update-deposit-lots-status")
async def cron_update_deposit_lots(db=Depends(get_db)):
    return await run_deposit_lot_maturity(db)


@router.post("/dispatch-notifications")
async def cron_dispatch_notifications(db=Depends(get_db), sink=Depends(get_notification_sink)):
    return await run_notification_dispatch(db, sink)


@router.post("/daily")
async def cron_daily(
    db=Depends(get_db),
    rates=Depends(get_rate_lookup),
    sink=Depends(get_notification_sink),
):
    # Debt collection must run before commission deduction
    return {
        "deposit_lots": await run_deposit_lot_maturity(db),
        "subscriptions": await run_subscription_expiry(db),
        "debt_collection": await run_debt_collection(db, rates),
        "commission_deduction": await run_overdue_commission_deduction(db, rates),
        "notifications": await run_notification_dispatch(db, sink),
    }
