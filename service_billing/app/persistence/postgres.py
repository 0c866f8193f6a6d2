"""
PostgreSQL persistence layer for Billing Service.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

import asyncpg
from shared.errors import ConflictError, StoreError
from shared.logging import get_logger

from ..models import (
    IdentityKind, PrimaryIdentity, SecondaryIdentity, TransactionRecord,
    TransactionStatus, UsagePeriod
)
from .base import BillingStore, WalletAdmission


class PostgreSQLStore(BillingStore):
    """asyncpg-backed store.

    ``wallet_pairs`` holds every bound (wallet_address, chain_id) with a
    primary key, so a pair can never be both a primary and a secondary.
    Identity rows and their wallet_pairs row are written in one transaction.
    """

    def __init__(self, dsn: str):
        self.dsn = dsn
        self.logger = get_logger("billing.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Start the persistence layer."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=2,
                max_size=10,
                command_timeout=30
            )

            await self._create_tables()

            self.logger.info("PostgreSQL store started")

        except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as e:
            self.logger.error("Failed to start PostgreSQL store", error=str(e))
            raise StoreError("PostgreSQL store failed to start", details={"error": str(e)})

    async def stop(self):
        """Stop the persistence layer."""
        if self.pool:
            await self.pool.close()
            self.logger.info("PostgreSQL store stopped")

    @asynccontextmanager
    async def _connection(self, operation: str):
        """Acquire a connection and map driver failures onto store errors."""
        if self.pool is None:
            raise StoreError("PostgreSQL store is not started", details={"operation": operation})
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except asyncpg.UniqueViolationError as e:
            raise ConflictError("Wallet is already registered", details={"operation": operation}) from e
        except asyncpg.ForeignKeyViolationError as e:
            raise ConflictError("Parent identity does not exist", details={"operation": operation}) from e
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as e:
            self.logger.error("PostgreSQL operation failed", operation=operation, error=str(e))
            raise StoreError("Store unavailable", details={"operation": operation, "error": str(e)}) from e

    async def _create_tables(self):
        """Create database tables."""
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS primary_identities (
                    id VARCHAR(64) PRIMARY KEY,
                    wallet_address VARCHAR(42) NOT NULL,
                    chain_id VARCHAR(64) NOT NULL,
                    plan_id VARCHAR(32),
                    trial_started_at TIMESTAMP WITH TIME ZONE,
                    trial_consumed BOOLEAN NOT NULL DEFAULT FALSE,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    UNIQUE (wallet_address, chain_id)
                );
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS secondary_identities (
                    id VARCHAR(64) PRIMARY KEY,
                    wallet_address VARCHAR(42) NOT NULL,
                    chain_id VARCHAR(64) NOT NULL,
                    parent_identity_id VARCHAR(64) NOT NULL
                        REFERENCES primary_identities(id),
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    UNIQUE (wallet_address, chain_id)
                );
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS wallet_pairs (
                    wallet_address VARCHAR(42) NOT NULL,
                    chain_id VARCHAR(64) NOT NULL,
                    kind VARCHAR(16) NOT NULL,
                    identity_id VARCHAR(64) NOT NULL,
                    PRIMARY KEY (wallet_address, chain_id)
                );
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS query_usage (
                    primary_identity_id VARCHAR(64) NOT NULL,
                    month SMALLINT NOT NULL,
                    year SMALLINT NOT NULL,
                    used_count INTEGER NOT NULL DEFAULT 0,
                    updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    PRIMARY KEY (primary_identity_id, month, year)
                );
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS transactions (
                    id VARCHAR(64) PRIMARY KEY,
                    primary_identity_id VARCHAR(64) NOT NULL,
                    amount NUMERIC(20, 2) NOT NULL,
                    status VARCHAR(16) NOT NULL,
                    reference VARCHAR(255),
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
            """)

            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_secondary_parent ON secondary_identities(parent_identity_id);
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_transactions_primary_created
                    ON transactions(primary_identity_id, created_at);
            """)

    # Primary identities

    async def get_primary(self, primary_id: str) -> Optional[PrimaryIdentity]:
        async with self._connection("get_primary") as conn:
            row = await conn.fetchrow("""
                SELECT * FROM primary_identities WHERE id = $1
            """, primary_id)
        return self._row_to_primary(row) if row else None

    async def get_primary_by_wallet(self, wallet_address: str, chain_id: str) -> Optional[PrimaryIdentity]:
        async with self._connection("get_primary_by_wallet") as conn:
            row = await conn.fetchrow("""
                SELECT * FROM primary_identities
                WHERE wallet_address = $1 AND chain_id = $2
            """, wallet_address, chain_id)
        return self._row_to_primary(row) if row else None

    async def create_primary(self, primary: PrimaryIdentity) -> PrimaryIdentity:
        async with self._connection("create_primary") as conn:
            async with conn.transaction():
                await conn.execute("""
                    INSERT INTO wallet_pairs (wallet_address, chain_id, kind, identity_id)
                    VALUES ($1, $2, $3, $4)
                """, primary.wallet_address, primary.chain_id, IdentityKind.PRIMARY.value, primary.id)
                row = await conn.fetchrow("""
                    INSERT INTO primary_identities (
                        id, wallet_address, chain_id, plan_id,
                        trial_started_at, trial_consumed, created_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                    RETURNING *
                """,
                    primary.id, primary.wallet_address, primary.chain_id, primary.plan_id,
                    primary.trial_started_at, primary.trial_consumed, primary.created_at
                )

        self.logger.info("Primary identity created", identity_id=primary.id)
        return self._row_to_primary(row)

    async def set_plan(self, primary_id: str, plan_id: Optional[str]) -> Optional[PrimaryIdentity]:
        async with self._connection("set_plan") as conn:
            row = await conn.fetchrow("""
                UPDATE primary_identities SET plan_id = $2 WHERE id = $1 RETURNING *
            """, primary_id, plan_id)
        return self._row_to_primary(row) if row else None

    async def mark_trial_consumed(self, primary_id: str) -> Optional[PrimaryIdentity]:
        async with self._connection("mark_trial_consumed") as conn:
            row = await conn.fetchrow("""
                UPDATE primary_identities SET trial_consumed = TRUE WHERE id = $1 RETURNING *
            """, primary_id)
        return self._row_to_primary(row) if row else None

    # Secondary identities

    async def get_secondary(self, secondary_id: str) -> Optional[SecondaryIdentity]:
        async with self._connection("get_secondary") as conn:
            row = await conn.fetchrow("""
                SELECT * FROM secondary_identities WHERE id = $1
            """, secondary_id)
        return self._row_to_secondary(row) if row else None

    async def get_secondary_by_wallet(self, wallet_address: str, chain_id: str) -> Optional[SecondaryIdentity]:
        async with self._connection("get_secondary_by_wallet") as conn:
            row = await conn.fetchrow("""
                SELECT * FROM secondary_identities
                WHERE wallet_address = $1 AND chain_id = $2
            """, wallet_address, chain_id)
        return self._row_to_secondary(row) if row else None

    async def list_secondaries(self, primary_id: str) -> List[SecondaryIdentity]:
        async with self._connection("list_secondaries") as conn:
            rows = await conn.fetch("""
                SELECT * FROM secondary_identities
                WHERE parent_identity_id = $1
                ORDER BY created_at ASC
            """, primary_id)
        return [self._row_to_secondary(row) for row in rows]

    async def create_secondary(self, secondary: SecondaryIdentity,
                               admit: Optional[WalletAdmission] = None) -> Optional[SecondaryIdentity]:
        async with self._connection("create_secondary") as conn:
            async with conn.transaction():
                if admit is not None:
                    # Row lock serializes concurrent adds and plan changes for this parent
                    parent = await conn.fetchrow("""
                        SELECT * FROM primary_identities WHERE id = $1 FOR UPDATE
                    """, secondary.parent_identity_id)
                    if parent is None:
                        raise ConflictError(
                            "Parent identity does not exist",
                            details={"parent_identity_id": secondary.parent_identity_id}
                        )
                    rows = await conn.fetch("""
                        SELECT * FROM secondary_identities
                        WHERE parent_identity_id = $1
                        ORDER BY created_at ASC
                    """, secondary.parent_identity_id)
                    if not admit(self._row_to_primary(parent), [self._row_to_secondary(r) for r in rows]):
                        self.logger.info("Secondary identity not admitted",
                                         parent_identity_id=secondary.parent_identity_id)
                        return None

                await conn.execute("""
                    INSERT INTO wallet_pairs (wallet_address, chain_id, kind, identity_id)
                    VALUES ($1, $2, $3, $4)
                """, secondary.wallet_address, secondary.chain_id,
                    IdentityKind.SECONDARY.value, secondary.id)
                row = await conn.fetchrow("""
                    INSERT INTO secondary_identities (
                        id, wallet_address, chain_id, parent_identity_id, created_at
                    ) VALUES ($1, $2, $3, $4, $5)
                    RETURNING *
                """,
                    secondary.id, secondary.wallet_address, secondary.chain_id,
                    secondary.parent_identity_id, secondary.created_at
                )

        self.logger.info("Secondary identity created",
                         identity_id=secondary.id,
                         parent_identity_id=secondary.parent_identity_id)
        return self._row_to_secondary(row)

    async def delete_secondary(self, secondary_id: str) -> bool:
        async with self._connection("delete_secondary") as conn:
            async with conn.transaction():
                row = await conn.fetchrow("""
                    DELETE FROM secondary_identities WHERE id = $1
                    RETURNING wallet_address, chain_id
                """, secondary_id)
                if not row:
                    self.logger.warning("Secondary identity not found for deletion", identity_id=secondary_id)
                    return False
                await conn.execute("""
                    DELETE FROM wallet_pairs WHERE wallet_address = $1 AND chain_id = $2
                """, row['wallet_address'], row['chain_id'])

        self.logger.info("Secondary identity deleted", identity_id=secondary_id)
        return True

    # Usage

    async def get_query_usage(self, primary_id: str, period: UsagePeriod) -> int:
        async with self._connection("get_query_usage") as conn:
            used = await conn.fetchval("""
                SELECT used_count FROM query_usage
                WHERE primary_identity_id = $1 AND month = $2 AND year = $3
            """, primary_id, period.month, period.year)
        return used or 0

    async def reserve_query(self, primary_id: str, period: UsagePeriod,
                            limit: Optional[int]) -> Tuple[bool, int]:
        if limit is not None and limit <= 0:
            return False, await self.get_query_usage(primary_id, period)

        async with self._connection("reserve_query") as conn:
            # The WHERE on the conflict branch makes check and increment one statement
            used = await conn.fetchval("""
                INSERT INTO query_usage (primary_identity_id, month, year, used_count, updated_at)
                VALUES ($1, $2, $3, 1, NOW())
                ON CONFLICT (primary_identity_id, month, year) DO UPDATE SET
                    used_count = query_usage.used_count + 1,
                    updated_at = NOW()
                WHERE $4::int IS NULL OR query_usage.used_count < $4::int
                RETURNING used_count
            """, primary_id, period.month, period.year, limit)

            if used is not None:
                return True, used

            current = await conn.fetchval("""
                SELECT used_count FROM query_usage
                WHERE primary_identity_id = $1 AND month = $2 AND year = $3
            """, primary_id, period.month, period.year)
        return False, current or 0

    async def record_transaction(self, record: TransactionRecord) -> TransactionRecord:
        async with self._connection("record_transaction") as conn:
            row = await conn.fetchrow("""
                INSERT INTO transactions (
                    id, primary_identity_id, amount, status, reference, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (id) DO UPDATE SET
                    status = EXCLUDED.status
                WHERE transactions.primary_identity_id = EXCLUDED.primary_identity_id
                  AND (transactions.status = $7 OR transactions.status = EXCLUDED.status)
                RETURNING *
            """,
                record.id, record.primary_identity_id, record.amount,
                record.status.value, record.reference, record.created_at,
                TransactionStatus.PENDING.value
            )

        # No row back means the conflict branch was filtered out
        if row is None:
            raise ConflictError("Transaction cannot be updated", details={"transaction_id": record.id})
        return self._row_to_transaction(row)

    async def sum_transaction_volume(self, primary_id: str,
                                     start: datetime, end: datetime) -> Decimal:
        async with self._connection("sum_transaction_volume") as conn:
            total = await conn.fetchval("""
                SELECT COALESCE(SUM(amount), 0) FROM transactions
                WHERE primary_identity_id = $1
                  AND status = $2
                  AND created_at >= $3 AND created_at < $4
            """, primary_id, TransactionStatus.SUCCESS.value, start, end)
        return Decimal(total or 0)

    def _row_to_primary(self, row) -> PrimaryIdentity:
        """Convert database row to PrimaryIdentity."""
        return PrimaryIdentity(
            id=row['id'],
            wallet_address=row['wallet_address'],
            chain_id=row['chain_id'],
            plan_id=row['plan_id'],
            trial_started_at=row['trial_started_at'],
            trial_consumed=row['trial_consumed'],
            created_at=row['created_at']
        )

    def _row_to_secondary(self, row) -> SecondaryIdentity:
        """Convert database row to SecondaryIdentity."""
        return SecondaryIdentity(
            id=row['id'],
            wallet_address=row['wallet_address'],
            chain_id=row['chain_id'],
            parent_identity_id=row['parent_identity_id'],
            created_at=row['created_at']
        )

    def _row_to_transaction(self, row) -> TransactionRecord:
        return TransactionRecord(
            id=row['id'],
            primary_identity_id=row['primary_identity_id'],
            amount=Decimal(row['amount']),
            status=TransactionStatus(row['status']),
            reference=row['reference'],
            created_at=row['created_at']
        )

    async def health_check(self) -> bool:
        """Check database health."""
        if self.pool is None:
            return False
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError):
            return False
