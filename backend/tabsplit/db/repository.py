# backend/tabsplit/db/repository.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List

import psycopg
from psycopg.types.json import Jsonb

from tabsplit.domain.ledger import Expense, Transfer
from tabsplit.domain.serialization import expense_from_record, expense_to_record

logger = logging.getLogger(__name__)

# Expected tables:
#
#   expenses (
#       id text PRIMARY KEY,
#       trip_id text NOT NULL,
#       split_type text NOT NULL,
#       record jsonb NOT NULL,
#       created_at timestamptz NOT NULL DEFAULT now(),
#       updated_at timestamptz NOT NULL DEFAULT now()
#   )
#   settled_transfers (
#       id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
#       trip_id text NOT NULL,
#       from_id text NOT NULL,
#       to_id text NOT NULL,
#       amount numeric NOT NULL,
#       created_at timestamptz NOT NULL DEFAULT now()
#   )


@dataclass(frozen=True)
class SettledTransferRecord:
    id: str
    trip_id: str
    from_id: str
    to_id: str
    amount: Decimal

    @property
    def transfer(self) -> Transfer:
        return Transfer(from_id=self.from_id, to_id=self.to_id, amount=self.amount)


class SplitRepository:
    def __init__(self, database_url: str):
        self.database_url = database_url.strip()

    @property
    def enabled(self) -> bool:
        return bool(self.database_url)

    def _connect(self):
        if not self.enabled:
            raise RuntimeError("DATABASE_URL not configured")
        return psycopg.connect(self.database_url)

    def save_expense(self, *, trip_id: str, expense: Expense) -> None:
        """
        Insert or replace the whole expense record (last write wins).
        """
        record = expense_to_record(expense)
        record["trip_id"] = trip_id
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO expenses (id, trip_id, split_type, record)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (id)
                DO UPDATE SET
                    trip_id = EXCLUDED.trip_id,
                    split_type = EXCLUDED.split_type,
                    record = EXCLUDED.record,
                    updated_at = now()
                """,
                (expense.id, trip_id, expense.split_type.value, Jsonb(record)),
            )
            conn.commit()
        logger.info("saved %s expense %s for trip %s", expense.split_type.value, expense.id, trip_id)

    def list_trip_expenses(self, *, trip_id: str) -> List[Expense]:
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                """
                SELECT record
                FROM expenses
                WHERE trip_id = %s
                ORDER BY created_at ASC, id ASC
                """,
                (trip_id,),
            )
            return [expense_from_record(row[0], f"expenses[{idx}]") for idx, row in enumerate(cur.fetchall())]

    def list_settled_transfers(self, *, trip_id: str) -> List[SettledTransferRecord]:
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                """
                SELECT id::text, trip_id, from_id, to_id, amount
                FROM settled_transfers
                WHERE trip_id = %s
                ORDER BY created_at ASC, id ASC
                """,
                (trip_id,),
            )
            return [
                SettledTransferRecord(id=row[0], trip_id=row[1], from_id=row[2], to_id=row[3], amount=Decimal(row[4]))
                for row in cur.fetchall()
            ]

    def record_settled_transfer(self, *, trip_id: str, transfer: Transfer) -> SettledTransferRecord:
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO settled_transfers (trip_id, from_id, to_id, amount)
                VALUES (%s, %s, %s, %s)
                RETURNING id::text
                """,
                (trip_id, transfer.from_id, transfer.to_id, transfer.amount),
            )
            transfer_id = cur.fetchone()[0]
            conn.commit()
        return SettledTransferRecord(
            id=transfer_id,
            trip_id=trip_id,
            from_id=transfer.from_id,
            to_id=transfer.to_id,
            amount=transfer.amount,
        )

    def delete_settled_transfer(self, *, trip_id: str, transfer_id: str) -> bool:
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                """
                DELETE FROM settled_transfers
                WHERE trip_id = %s AND id::text = %s
                """,
                (trip_id, transfer_id),
            )
            deleted = cur.rowcount > 0
            conn.commit()
            return deleted
