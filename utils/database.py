import asyncio
import logging
import os
import time
from typing import Any, Dict, List, Optional

from databases import Database

logger = logging.getLogger(__name__)

# Database URL configuration
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///tribes.db")

database = Database(DATABASE_URL)

# ==============================================================================
# CORE DATABASE AND SCHEMA FUNCTIONS
# ==============================================================================

def is_sqlite(db: Database = None) -> bool:
    db_conn = db or database
    return db_conn.url.dialect == "sqlite"


async def init_database(db: Database = None):
    """Connect and, on SQLite, apply PRAGMA settings for concurrent writers."""
    db_conn = db or database
    if not db_conn.is_connected:
        await db_conn.connect()

    if not is_sqlite(db_conn):
        return

    pragmas = {
        "busy_timeout": 30000,
        "journal_mode": "WAL",
        "synchronous": "NORMAL",
    }

    for key, value in pragmas.items():
        try:
            await db_conn.execute(f"PRAGMA {key}={value};")
        except Exception as e:
            logger.warning(f"Could not set PRAGMA {key}={value}: {e}")


async def comprehensive_database_setup(db: Database = None):
    """Create the payment tables and verify they can be queried."""
    logger.info("🔧 Running database setup and verification...")
    try:
        await create_missing_tables(db)
        await verify_database_integrity(db)
        logger.info("✅ Database setup completed successfully")
        return True
    except Exception as e:
        logger.error(f"❌ Database setup failed: {e}", exc_info=True)
        raise RuntimeError("Critical database setup failed. Application cannot start.")


def _table_schemas(db: Database = None) -> Dict[str, str]:
    serial = "INTEGER PRIMARY KEY AUTOINCREMENT" if is_sqlite(db) else "SERIAL PRIMARY KEY"
    return {
        "workspaces": '''
            CREATE TABLE IF NOT EXISTS workspaces (
                uuid TEXT PRIMARY KEY,
                name TEXT,
                owner_pubkey TEXT NOT NULL,
                created DOUBLE PRECISION
            )
        ''',
        "workspace_user_roles": f'''
            CREATE TABLE IF NOT EXISTS workspace_user_roles (
                id {serial},
                workspace_uuid TEXT NOT NULL,
                pubkey TEXT NOT NULL,
                role TEXT NOT NULL,
                UNIQUE (workspace_uuid, pubkey, role)
            )
        ''',
        "people": '''
            CREATE TABLE IF NOT EXISTS people (
                pubkey TEXT PRIMARY KEY,
                alias TEXT,
                route_hint TEXT DEFAULT ''
            )
        ''',
        "bounties": f'''
            CREATE TABLE IF NOT EXISTS bounties (
                id {serial},
                owner_pubkey TEXT,
                assignee_pubkey TEXT,
                workspace_uuid TEXT NOT NULL,
                title TEXT,
                price BIGINT NOT NULL DEFAULT 0,
                paid BOOLEAN NOT NULL DEFAULT FALSE,
                payment_pending BOOLEAN NOT NULL DEFAULT FALSE,
                payment_failed BOOLEAN NOT NULL DEFAULT FALSE,
                completed BOOLEAN NOT NULL DEFAULT FALSE,
                paid_date DOUBLE PRECISION,
                created DOUBLE PRECISION,
                updated DOUBLE PRECISION
            )
        ''',
        "workspace_budgets": '''
            CREATE TABLE IF NOT EXISTS workspace_budgets (
                workspace_uuid TEXT PRIMARY KEY,
                total_budget BIGINT NOT NULL DEFAULT 0 CHECK (total_budget >= 0),
                created DOUBLE PRECISION,
                updated DOUBLE PRECISION
            )
        ''',
        "payment_history": f'''
            CREATE TABLE IF NOT EXISTS payment_history (
                id {serial},
                bounty_id INTEGER,
                workspace_uuid TEXT NOT NULL,
                amount BIGINT NOT NULL DEFAULT 0,
                payment_type TEXT NOT NULL,
                sender_pubkey TEXT,
                receiver_pubkey TEXT,
                tag TEXT,
                payment_status TEXT NOT NULL,
                error TEXT,
                created DOUBLE PRECISION,
                updated DOUBLE PRECISION
            )
        ''',
        "invoices": '''
            CREATE TABLE IF NOT EXISTS invoices (
                payment_request TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                owner_pubkey TEXT,
                workspace_uuid TEXT,
                bounty_id INTEGER,
                amount BIGINT NOT NULL DEFAULT 0,
                status BOOLEAN NOT NULL DEFAULT FALSE,
                created DOUBLE PRECISION,
                updated DOUBLE PRECISION
            )
        ''',
    }


async def create_missing_tables(db: Database = None):
    """Create all required database tables if they do not already exist."""
    logger.info("🔧 Ensuring all database tables exist...")
    for table_name, schema in _table_schemas(db).items():
        await execute_with_retry(schema, db=db)
    logger.info("✅ All tables are present.")


async def verify_database_integrity(db: Database = None):
    for table_name in _table_schemas(db):
        await execute_with_retry(f"SELECT COUNT(*) FROM {table_name}", db=db)


async def close_database(db: Database = None):
    db_conn = db or database
    if db_conn.is_connected:
        await db_conn.disconnect()
        logger.info("Database connection closed.")


async def execute_with_retry(query, values=None, retries=5, db=None):
    db_conn = db or database
    for attempt in range(retries):
        try:
            return await db_conn.execute(query, values=values)
        except Exception as e:
            if "database is locked" in str(e).lower():
                await asyncio.sleep(0.2 * (attempt + 1))
            else:
                raise e
    raise Exception(f"Failed after {retries} retries: database is locked.")


async def fetch_one_with_retry(query, values=None, retries=5, db=None):
    db_conn = db or database
    for attempt in range(retries):
        try:
            return await db_conn.fetch_one(query, values=values)
        except Exception as e:
            if "database is locked" in str(e).lower():
                await asyncio.sleep(0.2 * (attempt + 1))
            else:
                raise e
    raise Exception(f"Failed after {retries} retries: database is locked.")


def _row(record) -> Optional[Dict[str, Any]]:
    return dict(record) if record is not None else None


# ==============================================================================
# COLLABORATOR LOOKUPS (people, workspaces, roles)
# ==============================================================================

async def get_workspace(workspace_uuid: str, db=None) -> Optional[Dict[str, Any]]:
    db_conn = db or database
    row = await db_conn.fetch_one(
        "SELECT * FROM workspaces WHERE uuid = :uuid",
        values={"uuid": workspace_uuid},
    )
    return _row(row)


async def get_person(pubkey: str, db=None) -> Optional[Dict[str, Any]]:
    db_conn = db or database
    row = await db_conn.fetch_one(
        "SELECT * FROM people WHERE pubkey = :pubkey",
        values={"pubkey": pubkey},
    )
    return _row(row)


async def has_workspace_role(workspace_uuid: str, pubkey: str, role: str, db=None) -> bool:
    db_conn = db or database
    row = await db_conn.fetch_one(
        '''
        SELECT 1 FROM workspace_user_roles
        WHERE workspace_uuid = :workspace_uuid AND pubkey = :pubkey AND role = :role
        ''',
        values={"workspace_uuid": workspace_uuid, "pubkey": pubkey, "role": role},
    )
    return row is not None


# ==============================================================================
# BOUNTIES
# ==============================================================================

async def get_bounty(bounty_id: int, db=None) -> Optional[Dict[str, Any]]:
    db_conn = db or database
    row = await db_conn.fetch_one(
        "SELECT * FROM bounties WHERE id = :id",
        values={"id": bounty_id},
    )
    bounty = _row(row)
    if bounty:
        for flag in ("paid", "payment_pending", "payment_failed", "completed"):
            bounty[flag] = bool(bounty[flag])
    return bounty


async def claim_bounty_payment(bounty_id: int, db=None) -> bool:
    """Atomically mark a bounty as having a payment in flight. False if already paid or pending."""
    row = await fetch_one_with_retry(
        '''
        UPDATE bounties SET payment_pending = TRUE, payment_failed = FALSE, updated = :now
        WHERE id = :id AND paid = FALSE AND payment_pending = FALSE
        RETURNING id
        ''',
        values={"id": bounty_id, "now": time.time()},
        db=db,
    )
    return row is not None


async def release_bounty_claim(bounty_id: int, failed: bool = True, db=None):
    await execute_with_retry(
        '''
        UPDATE bounties SET payment_pending = FALSE, payment_failed = :failed, updated = :now
        WHERE id = :id AND paid = FALSE
        ''',
        values={"id": bounty_id, "failed": failed, "now": time.time()},
        db=db,
    )


async def mark_bounty_paid(bounty_id: int, db=None) -> bool:
    """Set the bounty paid. Returns False when it was already paid."""
    now = time.time()
    row = await fetch_one_with_retry(
        '''
        UPDATE bounties
        SET paid = TRUE, completed = TRUE, payment_pending = FALSE, payment_failed = FALSE,
            paid_date = :now, updated = :now
        WHERE id = :id AND paid = FALSE
        RETURNING id
        ''',
        values={"id": bounty_id, "now": now},
        db=db,
    )
    return row is not None


# ==============================================================================
# BUDGET LEDGER
# ==============================================================================

async def get_workspace_budget(workspace_uuid: str, db=None) -> int:
    db_conn = db or database
    value = await db_conn.fetch_val(
        "SELECT total_budget FROM workspace_budgets WHERE workspace_uuid = :workspace_uuid",
        values={"workspace_uuid": workspace_uuid},
    )
    return int(value or 0)


async def debit_workspace_budget(workspace_uuid: str, amount: int, db=None) -> Optional[int]:
    """
    Conditionally debit a workspace budget.
    Returns the new budget, or None when the budget does not cover the amount.
    """
    if amount <= 0:
        raise ValueError(f"Debit amount must be positive, got {amount}")
    row = await fetch_one_with_retry(
        '''
        UPDATE workspace_budgets
        SET total_budget = total_budget - :amount, updated = :now
        WHERE workspace_uuid = :workspace_uuid AND total_budget >= :amount
        RETURNING total_budget
        ''',
        values={"workspace_uuid": workspace_uuid, "amount": amount, "now": time.time()},
        db=db,
    )
    return int(row["total_budget"]) if row is not None else None


async def credit_workspace_budget(workspace_uuid: str, amount: int, db=None) -> int:
    """Credit a workspace budget, creating the ledger row on first deposit. Returns the new budget."""
    if amount <= 0:
        raise ValueError(f"Credit amount must be positive, got {amount}")
    now = time.time()
    row = await fetch_one_with_retry(
        '''
        INSERT INTO workspace_budgets (workspace_uuid, total_budget, created, updated)
        VALUES (:workspace_uuid, :amount, :now, :now)
        ON CONFLICT (workspace_uuid) DO UPDATE
        SET total_budget = workspace_budgets.total_budget + excluded.total_budget,
            updated = excluded.updated
        RETURNING total_budget
        ''',
        values={"workspace_uuid": workspace_uuid, "amount": amount, "now": now},
        db=db,
    )
    return int(row["total_budget"])


# ==============================================================================
# PAYMENT HISTORY
# ==============================================================================

async def add_payment_history(
    workspace_uuid: str,
    amount: int,
    payment_type: str,
    payment_status: str,
    bounty_id: Optional[int] = None,
    sender_pubkey: str = "",
    receiver_pubkey: str = "",
    tag: str = "",
    error: str = "",
    db=None,
) -> int:
    now = time.time()
    row = await fetch_one_with_retry(
        '''
        INSERT INTO payment_history (
            bounty_id, workspace_uuid, amount, payment_type, sender_pubkey,
            receiver_pubkey, tag, payment_status, error, created, updated
        )
        VALUES (
            :bounty_id, :workspace_uuid, :amount, :payment_type, :sender_pubkey,
            :receiver_pubkey, :tag, :payment_status, :error, :now, :now
        )
        RETURNING id
        ''',
        values={
            "bounty_id": bounty_id,
            "workspace_uuid": workspace_uuid,
            "amount": amount,
            "payment_type": payment_type,
            "sender_pubkey": sender_pubkey,
            "receiver_pubkey": receiver_pubkey,
            "tag": tag,
            "payment_status": payment_status,
            "error": error,
            "now": now,
        },
        db=db,
    )
    return int(row["id"])


async def update_payment_history_status(history_id: int, payment_status: str, error: str = "", db=None):
    await execute_with_retry(
        '''
        UPDATE payment_history SET payment_status = :payment_status, error = :error, updated = :now
        WHERE id = :id
        ''',
        values={"id": history_id, "payment_status": payment_status, "error": error, "now": time.time()},
        db=db,
    )


async def complete_history_by_tag(tag: str, payment_type: str, db=None):
    await execute_with_retry(
        '''
        UPDATE payment_history SET payment_status = 'COMPLETE', updated = :now
        WHERE tag = :tag AND payment_type = :payment_type AND payment_status = 'PENDING'
        ''',
        values={"tag": tag, "payment_type": payment_type, "now": time.time()},
        db=db,
    )


async def complete_bounty_history(bounty_id: int, db=None):
    await execute_with_retry(
        '''
        UPDATE payment_history SET payment_status = 'COMPLETE', updated = :now
        WHERE bounty_id = :bounty_id AND payment_type = 'payment' AND payment_status = 'PENDING'
        ''',
        values={"bounty_id": bounty_id, "now": time.time()},
        db=db,
    )


async def get_pending_bounty_payment(bounty_id: int, db=None) -> Optional[Dict[str, Any]]:
    db_conn = db or database
    row = await db_conn.fetch_one(
        '''
        SELECT * FROM payment_history
        WHERE bounty_id = :bounty_id AND payment_type = 'payment' AND payment_status = 'PENDING'
        ORDER BY id DESC
        ''',
        values={"bounty_id": bounty_id},
    )
    return _row(row)


async def get_last_withdrawal(workspace_uuid: str, db=None) -> Optional[Dict[str, Any]]:
    db_conn = db or database
    row = await db_conn.fetch_one(
        '''
        SELECT * FROM payment_history
        WHERE workspace_uuid = :workspace_uuid AND payment_type = 'withdraw'
          AND payment_status IN ('COMPLETE', 'PENDING')
        ORDER BY created DESC
        ''',
        values={"workspace_uuid": workspace_uuid},
    )
    return _row(row)


async def get_pending_withdrawals(workspace_uuid: str, db=None) -> List[Dict[str, Any]]:
    db_conn = db or database
    rows = await db_conn.fetch_all(
        '''
        SELECT * FROM payment_history
        WHERE workspace_uuid = :workspace_uuid AND payment_type = 'withdraw'
          AND payment_status = 'PENDING'
        ORDER BY created ASC, id ASC
        ''',
        values={"workspace_uuid": workspace_uuid},
    )
    return [_row(row) for row in rows]


async def list_payment_history(workspace_uuid: str, db=None) -> List[Dict[str, Any]]:
    db_conn = db or database
    rows = await db_conn.fetch_all(
        '''
        SELECT * FROM payment_history
        WHERE workspace_uuid = :workspace_uuid
        ORDER BY created DESC, id DESC
        ''',
        values={"workspace_uuid": workspace_uuid},
    )
    return [_row(row) for row in rows]


# ==============================================================================
# INVOICES
# ==============================================================================

async def add_invoice(
    payment_request: str,
    invoice_type: str,
    amount: int,
    workspace_uuid: str = "",
    owner_pubkey: str = "",
    bounty_id: Optional[int] = None,
    db=None,
):
    now = time.time()
    await execute_with_retry(
        '''
        INSERT INTO invoices (
            payment_request, type, owner_pubkey, workspace_uuid, bounty_id, amount, status, created, updated
        )
        VALUES (:payment_request, :type, :owner_pubkey, :workspace_uuid, :bounty_id, :amount, FALSE, :now, :now)
        ''',
        values={
            "payment_request": payment_request,
            "type": invoice_type,
            "owner_pubkey": owner_pubkey,
            "workspace_uuid": workspace_uuid,
            "bounty_id": bounty_id,
            "amount": amount,
            "now": now,
        },
        db=db,
    )


async def get_invoice(payment_request: str, db=None) -> Optional[Dict[str, Any]]:
    db_conn = db or database
    row = await db_conn.fetch_one(
        "SELECT * FROM invoices WHERE payment_request = :payment_request",
        values={"payment_request": payment_request},
    )
    invoice = _row(row)
    if invoice:
        invoice["status"] = bool(invoice["status"])
    return invoice


async def settle_invoice(payment_request: str, db=None) -> Optional[Dict[str, Any]]:
    """
    Flip an invoice from unsettled to settled exactly once.
    Returns the invoice row on the transition, None if it was unknown or already settled.
    """
    row = await fetch_one_with_retry(
        '''
        UPDATE invoices SET status = TRUE, updated = :now
        WHERE payment_request = :payment_request AND status = FALSE
        RETURNING payment_request, type, owner_pubkey, workspace_uuid, bounty_id, amount
        ''',
        values={"payment_request": payment_request, "now": time.time()},
        db=db,
    )
    return _row(row)
