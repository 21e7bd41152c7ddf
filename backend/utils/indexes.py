from pymongo import ASCENDING, DESCENDING
from pymongo.errors import OperationFailure

from utils.idempotency import IDEMPOTENCY_TTL_SECONDS


def _normalize_key_pairs(keys):
    return [(k, v) for k, v in keys]


async def _create_index_safe(collection, keys, **kwargs):
    """
    Create index safely.
    If Mongo reports IndexOptionsConflict/IndexKeySpecsConflict for same key pattern,
    drop the conflicting index and recreate with desired options.
    """
    desired_key = _normalize_key_pairs(keys)
    desired_name = kwargs.get("name")
    try:
        await collection.create_index(keys, **kwargs)
        return
    except OperationFailure as e:
        if getattr(e, "code", None) not in {85, 86}:
            raise

        conflicting_names = []
        async for idx in collection.list_indexes():
            idx_key = _normalize_key_pairs(list(idx.get("key", {}).items()))
            if idx_key == desired_key:
                idx_name = idx.get("name")
                if idx_name and idx_name != desired_name:
                    conflicting_names.append(idx_name)

        for idx_name in conflicting_names:
            await collection.drop_index(idx_name)

        await collection.create_index(keys, **kwargs)


async def ensure_indexes(db):
    # Orders (exposure sums)
    await _create_index_safe(
        db.orders,
        [("seller_id", ASCENDING), ("status", ASCENDING)],
        name="orders_seller_status_idx",
    )
    await _create_index_safe(
        db.orders,
        [("buyer_id", ASCENDING), ("created_at", DESCENDING)],
        name="orders_buyer_created_at_idx",
    )

    # Deposit lots
    await _create_index_safe(
        db.deposit_lots,
        [("seller_id", ASCENDING), ("status", ASCENDING), ("created_at", ASCENDING)],
        name="deposit_lots_seller_status_created_idx",
    )
    await _create_index_safe(
        db.deposit_lots,
        [("payment_provider", ASCENDING), ("provider_reference", ASCENDING)],
        name="deposit_lots_provider_reference_unique",
        unique=True,
    )
    await _create_index_safe(
        db.deposit_lots,
        [("status", ASCENDING), ("refundable_after", ASCENDING)],
        name="deposit_lots_maturity_idx",
    )

    # Seller debts: one debt per cause and originating record
    await _create_index_safe(
        db.seller_debts,
        [("seller_id", ASCENDING), ("status", ASCENDING), ("created_at", ASCENDING)],
        name="seller_debts_seller_status_created_idx",
    )
    for field in ("refund_id", "commission_id", "violation_id"):
        await _create_index_safe(
            db.seller_debts,
            [("cause", ASCENDING), (field, ASCENDING)],
            name=f"seller_debts_cause_{field}_unique",
            unique=True,
            partialFilterExpression={field: {"$type": "objectId"}},
        )
    await _create_index_safe(
        db.debt_collections,
        [("debt_id", ASCENDING), ("created_at", ASCENDING)],
        name="debt_collections_debt_idx",
    )

    # Commission obligations (1:1 with order line)
    await _create_index_safe(
        db.commission_obligations,
        [("order_id", ASCENDING), ("product_id", ASCENDING)],
        name="commission_order_product_unique",
        unique=True,
    )
    await _create_index_safe(
        db.commission_obligations,
        [("status", ASCENDING), ("due_at", ASCENDING)],
        name="commission_status_due_idx",
    )

    # Disputes / refunds
    await _create_index_safe(
        db.order_disputes,
        [("order_id", ASCENDING)],
        name="order_disputes_open_unique",
        unique=True,
        partialFilterExpression={"is_open": True},
    )
    await _create_index_safe(
        db.order_refunds,
        [("dispute_id", ASCENDING)],
        name="order_refunds_dispute_unique",
        unique=True,
        partialFilterExpression={"dispute_id": {"$type": "objectId"}},
    )

    # Payment accounts / subscriptions / violations
    await _create_index_safe(
        db.payment_accounts,
        [("seller_id", ASCENDING), ("is_default", ASCENDING)],
        name="payment_accounts_seller_default_idx",
    )
    await _create_index_safe(
        db.subscriptions,
        [("user_id", ASCENDING), ("status", ASCENDING), ("expires_at", DESCENDING)],
        name="subscriptions_user_status_expires_idx",
    )
    await _create_index_safe(
        db.seller_violations,
        [("seller_id", ASCENDING), ("status", ASCENDING)],
        name="seller_violations_seller_status_idx",
    )

    # Payouts
    await _create_index_safe(
        db.payouts,
        [("seller_id", ASCENDING), ("created_at", DESCENDING)],
        name="payouts_seller_created_idx",
    )

    # Wallet ledger
    await _create_index_safe(
        db.wallet_ledger,
        [("seller_id", ASCENDING), ("currency", ASCENDING)],
        name="wallet_ledger_seller_currency_idx",
    )
    await _create_index_safe(
        db.wallet_ledger,
        [("reference_id", ASCENDING)],
        name="wallet_ledger_reference_idx",
        sparse=True,
    )

    # Idempotency
    await _create_index_safe(
        db.idempotency_keys,
        [("key", ASCENDING), ("scope", ASCENDING)],
        name="idempotency_key_scope_unique",
        unique=True,
    )
    await _create_index_safe(
        db.idempotency_keys,
        [("created_at", ASCENDING)],
        name="idempotency_ttl_idx",
        expireAfterSeconds=IDEMPOTENCY_TTL_SECONDS,
    )

    # Notification queue
    await _create_index_safe(
        db.notification_queue,
        [("status", ASCENDING), ("next_attempt_at", ASCENDING)],
        name="notification_queue_dispatch_idx",
    )

    # Audit
    await _create_index_safe(
        db.audit_logs,
        [("resource_id", ASCENDING), ("timestamp", DESCENDING)],
        name="audit_logs_resource_idx",
    )
