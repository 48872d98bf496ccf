"""Reference retail schema for the synced tables.

The host application owns its entity tables; this schema mirrors the
columns the cloud accepts so that a fresh database (``storesync init-db``)
and the test-suite can run the sync engine end to end.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from storesync.core.tables import BOOLEAN_COLUMNS, TableSpec

if TYPE_CHECKING:
    from storesync.client.state import LocalStore

NUMERIC_COLUMNS = frozenset(
    {
        "price", "cost", "stock", "min_stock", "subtotal", "tax", "discount",
        "total", "paid_amount", "refund_amount", "amount", "paid", "value",
        "probability", "store_credit", "purchase_cost",
        "purchased_product_price", "trade_in_value", "difference_paid",
        "default_quantity", "display_order", "total_le", "total_usd",
    }
)

# Columns the application itself treats as mandatory
NOT_NULL_COLUMNS: dict[str, frozenset[str]] = {
    "users": frozenset({"username", "password_hash"}),
}


def _column_ddl(spec: TableSpec, column: str) -> str:
    if column == "id":
        return "id TEXT PRIMARY KEY DEFAULT (lower(hex(randomblob(16))))"
    if column in ("created_at", "updated_at"):
        return f"{column} TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))"
    if column in BOOLEAN_COLUMNS:
        sql_type = "INTEGER"
    elif column in NUMERIC_COLUMNS:
        sql_type = "REAL"
    else:
        sql_type = "TEXT"
    if column in NOT_NULL_COLUMNS.get(spec.name, ()):
        return f"{column} {sql_type} NOT NULL"
    return f"{column} {sql_type}"


def table_ddl(spec: TableSpec) -> str:
    """Build the CREATE TABLE statement of a synced table."""
    columns = [_column_ddl(spec, column) for column in spec.columns]
    columns.append("deleted_at TEXT")
    body = ",\n    ".join(columns)
    return f'CREATE TABLE IF NOT EXISTS "{spec.name}" (\n    {body}\n)'


def create_retail_schema(store: LocalStore) -> None:
    """Create every synced table that does not exist yet."""
    with store.transaction():
        for spec in store.tables:
            store.execute(table_ddl(spec))
