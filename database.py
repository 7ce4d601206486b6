import asyncpg
import json
import logging
import os
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Tuple
import config
import migrations
from app.core.exceptions import Conflict, InsufficientFunds, NotFound
from app.utils.retry import retry_async

logger = logging.getLogger(__name__)

DATABASE_URL = config.DATABASE_URL

# ====================================================================================
# SAFE STARTUP GUARD
# ====================================================================================
# False until init_db() applied migrations. Workers check it before touching the ledger.
# ====================================================================================
DB_READY: bool = False

PAYMENT_PENDING = "PENDING"
PAYMENT_PAID = "PAID"
PAYMENT_FAILED = "FAILED"

# In-progress apply claims older than this are considered abandoned
ACTIVATION_CLAIM_TTL = timedelta(minutes=10)


# ====================================================================================
# UTC HELPERS: DB boundary, TIMESTAMP WITHOUT TIME ZONE holds naive UTC
# ====================================================================================
# All datetime passed TO asyncpg → _to_db_utc. All datetime read FROM DB → _from_db_utc.
# ====================================================================================

def _to_db_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Convert aware UTC datetime to naive UTC for DB storage."""
    if dt is None:
        return None
    assert dt.tzinfo is not None, "Expected timezone-aware datetime"
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Convert naive DB datetime to aware UTC."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc)
    return dt.replace(tzinfo=timezone.utc)


def _row(record: Optional[asyncpg.Record]) -> Optional[Dict[str, Any]]:
    """Record → dict with every TIMESTAMP column made UTC-aware."""
    if record is None:
        return None
    d = dict(record)
    for key, value in d.items():
        if isinstance(value, datetime):
            d[key] = _from_db_utc(value)
    return d


def _rows(records: Iterable[asyncpg.Record]) -> List[Dict[str, Any]]:
    return [_row(r) for r in records]


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ====================================================================================
# DB POOL CONFIG
# ====================================================================================

def _get_pool_config() -> dict:
    """Build asyncpg.create_pool kwargs. Single source of truth for all pool creation."""
    return {
        "min_size": int(os.getenv("DB_POOL_MIN_SIZE", "2")),
        "max_size": int(os.getenv("DB_POOL_MAX_SIZE", "15")),
        "max_inactive_connection_lifetime": 300,
        "timeout": int(os.getenv("DB_POOL_ACQUIRE_TIMEOUT", "10")),
        "command_timeout": int(os.getenv("DB_POOL_COMMAND_TIMEOUT", "30")),
        "init": _init_connection,
    }


async def _init_connection(conn: asyncpg.Connection) -> None:
    """JSONB columns travel as Python dicts."""
    await conn.set_type_codec(
        "jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
    )


if not DATABASE_URL:
    if config.APP_ENV == "prod":
        print(f"ERROR: {config.APP_ENV.upper()}_DATABASE_URL is REQUIRED in PROD!", file=sys.stderr)
        sys.exit(1)
    logger.warning(f"{config.APP_ENV.upper()}_DATABASE_URL is not set - running in degraded mode")

_pool: Optional[asyncpg.Pool] = None


async def get_pool() -> asyncpg.Pool:
    """
    Return the connection pool, creating it on first use.

    Pool creation is retried once on transient Postgres errors.
    """
    global _pool
    if not DATABASE_URL:
        raise RuntimeError(f"{config.APP_ENV.upper()}_DATABASE_URL is not configured")
    if _pool is None:
        pool_config = _get_pool_config()
        _pool = await retry_async(
            lambda: asyncpg.create_pool(DATABASE_URL, **pool_config),
            retries=1,
            base_delay=0.5,
            max_delay=5.0,
            retry_on=(asyncpg.PostgresError, OSError),
        )
        logger.info(
            "DB_POOL_CONFIG min=%s max=%s acquire_timeout=%s command_timeout=%s",
            pool_config["min_size"], pool_config["max_size"],
            pool_config["timeout"], pool_config["command_timeout"],
        )
    return _pool


async def close_pool():
    """Close the connection pool"""
    global _pool, DB_READY
    if _pool:
        await _pool.close()
        _pool = None
        DB_READY = False
        logger.info("Database connection pool closed")


async def init_db() -> bool:
    """
    Create the pool and apply pending migrations.

    Returns:
        True when the ledger is ready
    """
    global DB_READY
    pool = await get_pool()
    await migrations.run_migrations_safe(pool)
    DB_READY = True
    logger.info("DB_READY [migrations applied]")
    return True


@asynccontextmanager
async def _connection(conn: Optional[asyncpg.Connection] = None) -> AsyncIterator[asyncpg.Connection]:
    """Reuse the caller's connection (and its transaction) or borrow one from the pool."""
    if conn is not None:
        yield conn
        return
    pool = await get_pool()
    async with pool.acquire() as acquired:
        yield acquired


async def _advisory_xact_lock(conn: asyncpg.Connection, key: str) -> None:
    """Transaction-scoped lock on a text key (released at COMMIT/ROLLBACK)."""
    await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", key)


# ====================================================================================
# CLIENTS
# ====================================================================================

async def get_client(client_id: int, conn: Optional[asyncpg.Connection] = None) -> Optional[Dict[str, Any]]:
    async with _connection(conn) as c:
        return _row(await c.fetchrow("SELECT * FROM clients WHERE id = $1", client_id))


async def get_client_balance(client_id: int) -> Optional[Decimal]:
    async with _connection() as c:
        return await c.fetchval("SELECT balance FROM clients WHERE id = $1", client_id)


async def set_client_remote_id(
    client_id: int,
    remote_id: str,
    expected_current: Optional[str] = None,
) -> bool:
    """
    Persist the panel subscriber id.

    Written only when the stored value is still `expected_current` (NULL on first
    resolution) or already equals `remote_id`. A stale id is replaced only by the
    caller that observed it.

    Returns:
        True when the stored id equals remote_id afterwards
    """
    async with _connection() as c:
        row = await c.fetchrow(
            """UPDATE clients SET remote_subscriber_id = $2
               WHERE id = $1
                 AND (remote_subscriber_id IS NOT DISTINCT FROM $3 OR remote_subscriber_id = $2)
               RETURNING id""",
            client_id, remote_id, expected_current,
        )
    if row is None:
        logger.warning(
            f"CLIENT_REMOTE_ID_NOT_UPDATED [client_id={client_id}, remote_id={remote_id}, "
            f"expected_current={expected_current}]"
        )
        return False
    return True


async def mark_trial_used(client_id: int) -> bool:
    """false → true only. Returns False when the trial was already used."""
    async with _connection() as c:
        row = await c.fetchrow(
            "UPDATE clients SET trial_used = TRUE WHERE id = $1 AND trial_used = FALSE RETURNING id",
            client_id,
        )
    return row is not None


async def set_client_blocked(client_id: int, blocked: bool = True) -> bool:
    """Blocked clients receive no auto broadcasts. False when the client does not exist."""
    async with _connection() as c:
        updated = await c.fetchval(
            "UPDATE clients SET is_blocked = $2 WHERE id = $1 RETURNING id", client_id, blocked
        )
    return updated is not None


# ====================================================================================
# CATALOG
# ====================================================================================

async def get_tariff(tariff_id: int) -> Optional[Dict[str, Any]]:
    async with _connection() as c:
        return _row(await c.fetchrow("SELECT * FROM tariffs WHERE id = $1", tariff_id))


async def get_proxy_tariff(proxy_tariff_id: int) -> Optional[Dict[str, Any]]:
    async with _connection() as c:
        return _row(await c.fetchrow("SELECT * FROM proxy_tariffs WHERE id = $1", proxy_tariff_id))


# ====================================================================================
# PAYMENTS
# ====================================================================================

async def create_payment(
    client_id: int,
    amount: Decimal,
    provider: str,
    currency: str = "RUB",
    tariff_id: Optional[int] = None,
    proxy_tariff_id: Optional[int] = None,
    extra_option: Optional[Dict[str, Any]] = None,
    promo_code_id: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Insert a PENDING payment for an external gateway."""
    async with _connection() as c:
        row = await c.fetchrow(
            """INSERT INTO payments (client_id, amount, currency, status, provider,
                                     tariff_id, proxy_tariff_id, extra_option, promo_code_id, metadata)
               VALUES ($1, $2, $3, 'PENDING', $4, $5, $6, $7, $8, $9)
               RETURNING *""",
            client_id, amount, currency, provider,
            tariff_id, proxy_tariff_id, extra_option, promo_code_id, metadata,
        )
    payment = _row(row)
    logger.info(
        f"PAYMENT_CREATED [payment_id={payment['id']}, client_id={client_id}, "
        f"provider={provider}, amount={amount}]"
    )
    return payment


async def get_payment(payment_id: int) -> Optional[Dict[str, Any]]:
    async with _connection() as c:
        return _row(await c.fetchrow("SELECT * FROM payments WHERE id = $1", payment_id))


async def get_payment_by_external_id(provider: str, external_id: str) -> Optional[Dict[str, Any]]:
    async with _connection() as c:
        return _row(await c.fetchrow(
            "SELECT * FROM payments WHERE provider = $1 AND external_id = $2",
            provider, external_id,
        ))


async def set_payment_external_id(payment_id: int, external_id: str) -> None:
    async with _connection() as c:
        await c.execute(
            "UPDATE payments SET external_id = $2 WHERE id = $1 AND external_id IS NULL",
            payment_id, external_id,
        )


def is_top_up(payment: Dict[str, Any]) -> bool:
    return (
        payment.get("tariff_id") is None
        and payment.get("proxy_tariff_id") is None
        and payment.get("extra_option") is None
    )


async def _record_payment_promo_usage(conn: asyncpg.Connection, payment: Dict[str, Any]) -> None:
    """Usage row for a DISCOUNT code paid through a gateway. One per payment."""
    await conn.execute(
        """INSERT INTO promo_code_usages (promo_code_id, client_id, payment_id)
           VALUES ($1, $2, $3)
           ON CONFLICT (payment_id) WHERE payment_id IS NOT NULL DO NOTHING""",
        payment["promo_code_id"], payment["client_id"], payment["id"],
    )


async def mark_payment_paid(
    payment_id: int,
    external_id: Optional[str] = None,
) -> Tuple[Optional[Dict[str, Any]], bool]:
    """
    PENDING → PAID in one transaction.

    For a top-up the client balance is credited in the same transaction, so a
    repeated event never credits twice.

    Returns:
        (payment, transitioned). payment is None when it does not exist;
        transitioned is False when the payment was not PENDING.
        A credited top-up carries "new_balance".
    """
    async with _connection() as conn:
        async with conn.transaction():
            current = _row(await conn.fetchrow(
                "SELECT * FROM payments WHERE id = $1 FOR UPDATE", payment_id
            ))
            if current is None:
                return None, False
            if current["status"] != PAYMENT_PENDING:
                return current, False

            payment = _row(await conn.fetchrow(
                """UPDATE payments
                   SET status = 'PAID', paid_at = $2, external_id = COALESCE(external_id, $3)
                   WHERE id = $1 AND status = 'PENDING'
                   RETURNING *""",
                payment_id, _to_db_utc(_now()), external_id,
            ))

            if is_top_up(payment):
                payment["new_balance"] = await conn.fetchval(
                    "UPDATE clients SET balance = balance + $2 WHERE id = $1 RETURNING balance",
                    payment["client_id"], payment["amount"],
                )
            if payment.get("promo_code_id") is not None:
                await _record_payment_promo_usage(conn, payment)

    logger.info(
        f"PAYMENT_MARKED_PAID [payment_id={payment_id}, client_id={payment['client_id']}, "
        f"amount={payment['amount']}, provider={payment['provider']}, top_up={is_top_up(payment)}]"
    )
    return payment, True


async def mark_payment_failed(payment_id: int) -> Optional[Dict[str, Any]]:
    """PENDING → FAILED. None when the payment was not PENDING (or is missing)."""
    async with _connection() as c:
        row = await c.fetchrow(
            "UPDATE payments SET status = 'FAILED' WHERE id = $1 AND status = 'PENDING' RETURNING *",
            payment_id,
        )
    if row is not None:
        logger.info(f"PAYMENT_MARKED_FAILED [payment_id={payment_id}]")
    return _row(row)


async def create_balance_payment(
    client_id: int,
    amount: Decimal,
    currency: str = "RUB",
    tariff_id: Optional[int] = None,
    proxy_tariff_id: Optional[int] = None,
    extra_option: Optional[Dict[str, Any]] = None,
    promo_code: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Debit the balance and create a PAID 'balance' payment atomically.

    Raises:
        NotFound: client missing
        InsufficientFunds: balance < amount (nothing written)
        Conflict: promo code cap reached inside the transaction (nothing written)
    """
    async with _connection() as conn:
        async with conn.transaction():
            await _advisory_xact_lock(conn, f"balance:{client_id}")
            balance = await conn.fetchval(
                "SELECT balance FROM clients WHERE id = $1 FOR UPDATE", client_id
            )
            if balance is None:
                raise NotFound(f"Client {client_id} not found")
            if balance < amount:
                raise InsufficientFunds(
                    f"Insufficient balance: {balance} < {amount} (client={client_id})"
                )

            usage = None
            if promo_code is not None:
                usage = await record_promo_code_usage(
                    promo_code["id"], client_id,
                    max_uses=promo_code.get("max_uses") or 0,
                    max_uses_per_client=promo_code.get("max_uses_per_client") or 0,
                    conn=conn,
                )
                if usage is None:
                    raise Conflict(f"Promo code {promo_code['code']} is no longer available")

            new_balance = await conn.fetchval(
                "UPDATE clients SET balance = balance - $2 WHERE id = $1 RETURNING balance",
                client_id, amount,
            )
            payment = _row(await conn.fetchrow(
                """INSERT INTO payments (client_id, amount, currency, status, provider, paid_at,
                                         tariff_id, proxy_tariff_id, extra_option, promo_code_id, metadata)
                   VALUES ($1, $2, $3, 'PAID', 'balance', $4, $5, $6, $7, $8, $9)
                   RETURNING *""",
                client_id, amount, currency, _to_db_utc(_now()),
                tariff_id, proxy_tariff_id, extra_option,
                promo_code["id"] if promo_code else None, metadata,
            ))
            if usage is not None:
                await conn.execute(
                    "UPDATE promo_code_usages SET payment_id = $2 WHERE id = $1",
                    usage["id"], payment["id"],
                )
            payment["new_balance"] = new_balance

    logger.info(
        f"BALANCE_PAYMENT_COMMITTED [payment_id={payment['id']}, client_id={client_id}, "
        f"amount={amount}, new_balance={new_balance}]"
    )
    return payment


async def claim_entitlement_apply(payment_id: int) -> bool:
    """
    Take the in-progress marker for the apply step.

    Fails while another worker holds a fresh claim or once the payment is applied.
    """
    now = _now()
    async with _connection() as c:
        row = await c.fetchrow(
            """UPDATE payments SET activation_claimed_at = $2
               WHERE id = $1
                 AND status = 'PAID'
                 AND entitlement_applied_at IS NULL
                 AND (activation_claimed_at IS NULL OR activation_claimed_at < $3)
               RETURNING id""",
            payment_id, _to_db_utc(now), _to_db_utc(now - ACTIVATION_CLAIM_TTL),
        )
    return row is not None


async def release_entitlement_claim(payment_id: int) -> None:
    async with _connection() as c:
        await c.execute(
            "UPDATE payments SET activation_claimed_at = NULL WHERE id = $1 AND entitlement_applied_at IS NULL",
            payment_id,
        )


async def mark_entitlement_applied(payment_id: int) -> bool:
    async with _connection() as c:
        row = await c.fetchrow(
            """UPDATE payments SET entitlement_applied_at = $2, activation_claimed_at = NULL
               WHERE id = $1 AND entitlement_applied_at IS NULL
               RETURNING id""",
            payment_id, _to_db_utc(_now()),
        )
    return row is not None


async def get_unapplied_paid_payments(limit: int = 100) -> List[Dict[str, Any]]:
    """PAID payments whose entitlement/proxy/option step never completed (top-ups excluded)."""
    async with _connection() as c:
        return _rows(await c.fetch(
            """SELECT * FROM payments
               WHERE status = 'PAID' AND entitlement_applied_at IS NULL
                 AND num_nonnulls(tariff_id, proxy_tariff_id, extra_option) = 1
               ORDER BY paid_at
               LIMIT $1""",
            limit,
        ))


# ====================================================================================
# REFERRAL CREDITS
# ====================================================================================

async def get_referral_credits(payment_id: int, conn: Optional[asyncpg.Connection] = None) -> List[Dict[str, Any]]:
    async with _connection(conn) as c:
        return _rows(await c.fetch(
            "SELECT * FROM referral_credits WHERE source_payment_id = $1 ORDER BY level",
            payment_id,
        ))


async def record_referral_credits(
    payment_id: int,
    credits: List[Tuple[int, int, Decimal]],
) -> Tuple[List[Dict[str, Any]], bool]:
    """
    Insert (referrer_id, level, amount) credits for a payment and credit balances.

    Runs under a per-payment advisory lock; if credits already exist for the
    payment nothing is written and the existing rows are returned.

    Returns:
        (rows, created)
    """
    try:
        async with _connection() as conn:
            async with conn.transaction():
                await _advisory_xact_lock(conn, f"referral:{payment_id}")
                existing = await get_referral_credits(payment_id, conn=conn)
                if existing:
                    return existing, False

                rows = []
                for referrer_id, level, amount in credits:
                    rows.append(_row(await conn.fetchrow(
                        """INSERT INTO referral_credits (referrer_id, level, amount, source_payment_id)
                           VALUES ($1, $2, $3, $4)
                           RETURNING *""",
                        referrer_id, level, amount, payment_id,
                    )))
                    await conn.execute(
                        "UPDATE clients SET balance = balance + $2 WHERE id = $1",
                        referrer_id, amount,
                    )
                return rows, True
    except asyncpg.UniqueViolationError:
        # Another writer committed between our check and insert
        logger.info(f"REFERRAL_CREDITS_RACE_LOST [payment_id={payment_id}]")
        return await get_referral_credits(payment_id), False


# ====================================================================================
# PROMO GROUPS / PROMO CODES
# ====================================================================================

async def get_promo_group_by_code(code: str) -> Optional[Dict[str, Any]]:
    async with _connection() as c:
        return _row(await c.fetchrow("SELECT * FROM promo_groups WHERE code = $1", code))


async def count_promo_group_activations(promo_group_id: int) -> int:
    async with _connection() as c:
        return await c.fetchval(
            "SELECT COUNT(*) FROM promo_activations WHERE promo_group_id = $1", promo_group_id
        )


async def has_promo_group_activation(promo_group_id: int, client_id: int) -> bool:
    async with _connection() as c:
        return await c.fetchval(
            "SELECT EXISTS(SELECT 1 FROM promo_activations WHERE promo_group_id = $1 AND client_id = $2)",
            promo_group_id, client_id,
        )


async def create_promo_group_activation(
    promo_group_id: int,
    client_id: int,
    max_activations: int,
) -> Optional[Dict[str, Any]]:
    """
    Insert the activation row if the group still has room.

    UNIQUE(promo_group_id, client_id) decides between concurrent attempts of the
    same client; the advisory lock serialises the cap check across clients.

    Returns:
        The activation row, or None when the cap is reached or the client already activated.
    """
    async with _connection() as conn:
        async with conn.transaction():
            await _advisory_xact_lock(conn, f"promo_group:{promo_group_id}")
            if max_activations > 0:
                used = await conn.fetchval(
                    "SELECT COUNT(*) FROM promo_activations WHERE promo_group_id = $1", promo_group_id
                )
                if used >= max_activations:
                    return None
            return _row(await conn.fetchrow(
                """INSERT INTO promo_activations (promo_group_id, client_id)
                   VALUES ($1, $2)
                   ON CONFLICT (promo_group_id, client_id) DO NOTHING
                   RETURNING *""",
                promo_group_id, client_id,
            ))


async def get_promo_code_by_code(code: str) -> Optional[Dict[str, Any]]:
    async with _connection() as c:
        return _row(await c.fetchrow("SELECT * FROM promo_codes WHERE code = $1", code))


async def count_promo_code_usages(promo_code_id: int, client_id: Optional[int] = None) -> int:
    async with _connection() as c:
        if client_id is None:
            return await c.fetchval(
                "SELECT COUNT(*) FROM promo_code_usages WHERE promo_code_id = $1", promo_code_id
            )
        return await c.fetchval(
            "SELECT COUNT(*) FROM promo_code_usages WHERE promo_code_id = $1 AND client_id = $2",
            promo_code_id, client_id,
        )


async def record_promo_code_usage(
    promo_code_id: int,
    client_id: int,
    max_uses: int,
    max_uses_per_client: int,
    conn: Optional[asyncpg.Connection] = None,
) -> Optional[Dict[str, Any]]:
    """
    Capped insert of a usage row (0 = unlimited for either cap).

    The count and the insert are a single statement executed under a per-code
    advisory lock, so N concurrent redemptions of a max_uses=1 code yield one row.
    When `conn` is given the caller's transaction is used.

    Returns:
        The usage row, or None when a cap is reached.
    """
    sql = """INSERT INTO promo_code_usages (promo_code_id, client_id)
             SELECT $1, $2
             WHERE ($3 = 0 OR (SELECT COUNT(*) FROM promo_code_usages WHERE promo_code_id = $1) < $3)
               AND ($4 = 0 OR (SELECT COUNT(*) FROM promo_code_usages
                               WHERE promo_code_id = $1 AND client_id = $2) < $4)
             RETURNING *"""

    if conn is not None:
        await _advisory_xact_lock(conn, f"promo_code:{promo_code_id}")
        return _row(await conn.fetchrow(sql, promo_code_id, client_id, max_uses, max_uses_per_client))

    async with _connection() as c:
        async with c.transaction():
            await _advisory_xact_lock(c, f"promo_code:{promo_code_id}")
            return _row(await c.fetchrow(sql, promo_code_id, client_id, max_uses, max_uses_per_client))


# ====================================================================================
# PROXY SLOTS
# ====================================================================================

async def get_proxy_nodes_for_tariff(proxy_tariff_id: int) -> List[Dict[str, Any]]:
    """
    ONLINE nodes usable for a proxy tariff with their active slot count.

    Nodes linked to the tariff when any are linked, otherwise every ONLINE node.
    """
    async with _connection() as c:
        return _rows(await c.fetch(
            """SELECT n.*,
                      (SELECT COUNT(*) FROM proxy_slots s
                       WHERE s.node_id = n.id AND s.status = 'ACTIVE') AS active_slots
               FROM proxy_nodes n
               WHERE n.status = 'ONLINE'
                 AND (
                     NOT EXISTS (SELECT 1 FROM proxy_tariff_nodes tn WHERE tn.tariff_id = $1)
                     OR n.id IN (SELECT tn.node_id FROM proxy_tariff_nodes tn WHERE tn.tariff_id = $1)
                 )
               ORDER BY n.updated_at, n.id""",
            proxy_tariff_id,
        ))


async def get_proxy_slots_by_payment(payment_id: int) -> List[Dict[str, Any]]:
    async with _connection() as c:
        return _rows(await c.fetch(
            "SELECT * FROM proxy_slots WHERE payment_id = $1 ORDER BY slot_index", payment_id
        ))


async def create_proxy_slots(
    payment: Dict[str, Any],
    proxy_tariff: Dict[str, Any],
    slots: List[Dict[str, Any]],
    expires_at: datetime,
) -> List[Dict[str, Any]]:
    """Insert slots keyed by (payment_id, slot_index); re-runs insert nothing new."""
    async with _connection() as conn:
        async with conn.transaction():
            for slot in slots:
                await conn.execute(
                    """INSERT INTO proxy_slots (payment_id, slot_index, node_id, client_id, proxy_tariff_id,
                                                login, password, expires_at, traffic_limit_bytes, connection_limit)
                       VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                       ON CONFLICT (payment_id, slot_index) DO NOTHING""",
                    payment["id"], slot["slot_index"], slot["node_id"], payment["client_id"],
                    proxy_tariff["id"], slot["login"], slot["password"], _to_db_utc(expires_at),
                    proxy_tariff.get("traffic_limit_bytes"), proxy_tariff.get("connection_limit"),
                )
            return _rows(await conn.fetch(
                "SELECT * FROM proxy_slots WHERE payment_id = $1 ORDER BY slot_index", payment["id"]
            ))


# ====================================================================================
# AUTO BROADCAST
# ====================================================================================

_PAID_EXISTS = "EXISTS (SELECT 1 FROM payments p WHERE p.client_id = c.id AND p.status = 'PAID'{extra})"

# trigger → (predicate, parameter names). Placeholders start at $2 ($1 is rule_id).
_ELIGIBILITY_PREDICATES: Dict[str, Tuple[str, Tuple[str, ...]]] = {
    "after_registration": (
        "c.created_at >= $2 AND c.created_at < $3",
        ("window_start", "since"),
    ),
    "inactivity": (
        "c.created_at < $2 AND NOT " + _PAID_EXISTS.format(extra=" AND p.paid_at >= $2"),
        ("since",),
    ),
    "no_payment": (
        "c.created_at >= $2 AND c.created_at < $3 AND NOT " + _PAID_EXISTS.format(extra=""),
        ("window_start", "since"),
    ),
    "trial_not_connected": (
        "c.created_at < $2 AND NOT c.trial_used AND c.remote_subscriber_id IS NULL",
        ("since",),
    ),
    "trial_used_never_paid": (
        "c.trial_used AND NOT " + _PAID_EXISTS.format(extra=""),
        (),
    ),
    "no_traffic": (
        "c.remote_subscriber_id IS NOT NULL AND c.created_at < $2",
        ("since",),
    ),
    "subscription_expired": (
        """EXISTS (
               SELECT 1 FROM (
                   SELECT p.paid_at + make_interval(days => t.duration_days) AS expire_at
                   FROM payments p JOIN tariffs t ON t.id = p.tariff_id
                   WHERE p.client_id = c.id AND p.status = 'PAID' AND p.paid_at IS NOT NULL
                   ORDER BY p.paid_at DESC
                   LIMIT 1
               ) last_tariff
               WHERE last_tariff.expire_at < $2 AND last_tariff.expire_at <= $3
           )""",
        ("now", "since"),
    ),
}

AUTO_BROADCAST_TRIGGERS = tuple(_ELIGIBILITY_PREDICATES)


async def get_auto_broadcast_rules(enabled_only: bool = True) -> List[Dict[str, Any]]:
    async with _connection() as c:
        if enabled_only:
            return _rows(await c.fetch("SELECT * FROM auto_broadcast_rules WHERE enabled ORDER BY id"))
        return _rows(await c.fetch("SELECT * FROM auto_broadcast_rules ORDER BY id"))


async def get_auto_broadcast_rule(rule_id: int) -> Optional[Dict[str, Any]]:
    async with _connection() as c:
        return _row(await c.fetchrow("SELECT * FROM auto_broadcast_rules WHERE id = $1", rule_id))


async def get_auto_broadcast_candidates(
    rule_id: int,
    trigger_type: str,
    *,
    now: datetime,
    since: datetime,
    window_start: datetime,
) -> List[Dict[str, Any]]:
    """
    Unblocked clients matching the trigger that have no log row for the rule.

    `since` = now − delay_days, `window_start` = now − (delay_days + 1).
    """
    if trigger_type not in _ELIGIBILITY_PREDICATES:
        raise ValueError(f"Unknown auto broadcast trigger: {trigger_type}")
    predicate, param_names = _ELIGIBILITY_PREDICATES[trigger_type]
    values = {"now": now, "since": since, "window_start": window_start}
    params = [_to_db_utc(values[name]) for name in param_names]

    sql = f"""SELECT c.id, c.telegram_id, c.email
              FROM clients c
              WHERE NOT c.is_blocked
                AND NOT EXISTS (
                    SELECT 1 FROM auto_broadcast_logs l WHERE l.rule_id = $1 AND l.client_id = c.id
                )
                AND {predicate}
              ORDER BY c.id"""
    async with _connection() as c:
        return _rows(await c.fetch(sql, rule_id, *params))


async def has_auto_broadcast_log(rule_id: int, client_id: int) -> bool:
    async with _connection() as c:
        return await c.fetchval(
            "SELECT EXISTS(SELECT 1 FROM auto_broadcast_logs WHERE rule_id = $1 AND client_id = $2)",
            rule_id, client_id,
        )


async def insert_auto_broadcast_log(rule_id: int, client_id: int) -> bool:
    """False when the (rule, client) pair was already logged."""
    async with _connection() as c:
        row = await c.fetchrow(
            """INSERT INTO auto_broadcast_logs (rule_id, client_id)
               VALUES ($1, $2)
               ON CONFLICT (rule_id, client_id) DO NOTHING
               RETURNING id""",
            rule_id, client_id,
        )
    return row is not None


# ====================================================================================
# SYSTEM SETTINGS
# ====================================================================================

async def get_system_config(keys: Iterable[str]) -> Dict[str, str]:
    """Values for the requested keys; missing keys are absent from the result."""
    async with _connection() as c:
        rows = await c.fetch(
            "SELECT key, value FROM system_settings WHERE key = ANY($1::text[])", list(keys)
        )
    return {row["key"]: row["value"] for row in rows}


async def get_setting(key: str, default: Optional[str] = None) -> Optional[str]:
    values = await get_system_config([key])
    return values.get(key, default)


async def set_setting(key: str, value: str) -> None:
    async with _connection() as c:
        await c.execute(
            """INSERT INTO system_settings (key, value, updated_at)
               VALUES ($1, $2, $3)
               ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value, updated_at = EXCLUDED.updated_at""",
            key, value, _to_db_utc(_now()),
        )
