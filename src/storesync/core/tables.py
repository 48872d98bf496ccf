"""Static registry of the synced tables.

Every table that may travel between the local store and the cloud is
declared here, together with what the sync engine needs to know about it:

| Level | Tables                                               |
|-------|------------------------------------------------------|
| 0     | customers, product_models, users, invoice_templates |
| 1     | products, deals                                      |
| 2     | sales, invoices, returns, debts, product_accessories |
| 3     | debt_payments, inventory_items, swaps, boqs          |

Tables are pushed level by level, and in declaration order within a level,
so that parents get a remote id before their children reference it.
"""

from __future__ import annotations

import time
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

# Tables that must never be synced, whatever the caller asks for
EXCLUDED_TABLES: frozenset[str] = frozenset(
    {
        "company_settings",
        "license_activations",
        "license_validations",
        "hardware_snapshots",
        "sync_queue",
        "sync_metadata",
        "id_mapping",
        "pending_remote_changes",
        "schema_version",
    }
)

# Columns holding JSON documents, sent to the cloud as native JSON
JSON_COLUMNS: frozenset[str] = frozenset(
    {
        "items",
        "notes",
        "tags",
        "negotiation_history",
        "stakeholders",
        "bank_details",
        "taxes",
        "backorder_details",
        "colors",
        "storage_options",
        "custom_schema",
    }
)

# Integer flags stored as 0/1 locally and as booleans remotely
BOOLEAN_COLUMNS: frozenset[str] = frozenset(
    {
        "is_active",
        "is_mandatory",
        "has_backorder",
        "is_default",
        "layout_show_logo",
        "layout_show_border",
        "onboarding_completed",
    }
)


def _swap_number() -> str:
    return f"SWAP-{int(time.time() * 1000)}"


@dataclass(frozen=True)
class ForeignKey:
    """A foreign-key field and the table it points at."""

    column: str
    target: str
    required: bool = False


@dataclass(frozen=True)
class TableSpec:
    """Sync metadata for one table.

    Attributes:
        name: Table name, identical locally and remotely (before prefixing).
        level: Dependency level; lower levels are pushed first.
        columns: Columns the remote table accepts.
        foreign_keys: Foreign-key fields, in declaration order.
        has_updated_at: Whether the table carries an updated_at column.
        change_column: Column used to enumerate remote changes.
        natural_key: Alternate unique column usable as a PATCH filter.
        required_fields: Columns that must be non-empty before a push.
        defaults: Values filled in for NOT NULL columns left empty. Callables
            are invoked for each record.
    """

    name: str
    level: int
    columns: tuple[str, ...]
    foreign_keys: tuple[ForeignKey, ...] = ()
    has_updated_at: bool = True
    change_column: str = "updated_at"
    natural_key: str | None = None
    required_fields: tuple[str, ...] = ()
    defaults: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_root(self) -> bool:
        """Root tables have no foreign keys and can always be pushed."""
        return not self.foreign_keys

    @property
    def remote_columns(self) -> frozenset[str]:
        """Columns accepted remotely, including the soft-delete marker."""
        return frozenset(self.columns) | {"deleted_at"}

    def foreign_key(self, column: str) -> ForeignKey | None:
        for fk in self.foreign_keys:
            if fk.column == column:
                return fk
        return None


SYNCED_TABLES: tuple[TableSpec, ...] = (
    # Level 0: no dependencies
    TableSpec(
        name="customers",
        level=0,
        columns=(
            "id", "name", "email", "phone", "address", "created_at", "updated_at",
            "avatar", "city", "state", "zip", "country", "company", "notes",
            "is_active", "store_credit",
        ),
    ),
    TableSpec(
        name="product_models",
        level=0,
        columns=(
            "id", "name", "brand", "category", "description", "image", "colors",
            "storage_options", "is_active", "created_at", "updated_at",
        ),
        defaults={"colors": list, "storage_options": list},
    ),
    TableSpec(
        name="users",
        level=0,
        columns=(
            "id", "username", "password_hash", "full_name", "email", "phone",
            "role", "employee_id", "is_active", "created_at", "updated_at",
            "last_login",
        ),
        required_fields=("username", "password_hash", "full_name"),
        defaults={"role": "cashier", "is_active": True},
    ),
    TableSpec(
        name="invoice_templates",
        level=0,
        columns=(
            "id", "name", "description", "preview", "colors_primary",
            "colors_secondary", "colors_accent", "colors_background",
            "colors_text", "fonts_primary", "fonts_secondary", "fonts_size",
            "layout_header_style", "layout_show_logo", "layout_show_border",
            "layout_item_table_style", "layout_footer_style", "custom_schema",
            "is_default", "created_at", "updated_at",
        ),
    ),
    # Level 1
    TableSpec(
        name="products",
        level=1,
        columns=(
            "id", "name", "description", "price", "cost", "sku", "category",
            "stock", "min_stock", "product_model_id", "storage", "color",
            "created_at", "updated_at", "image", "is_active",
        ),
        foreign_keys=(ForeignKey("product_model_id", "product_models"),),
    ),
    TableSpec(
        name="deals",
        level=1,
        columns=(
            "id", "title", "customer_id", "customer_name", "value",
            "probability", "stage", "expected_close_date", "actual_close_date",
            "source", "priority", "tags", "notes", "negotiation_history",
            "stakeholders", "competitor_info", "created_at", "updated_at",
        ),
        foreign_keys=(ForeignKey("customer_id", "customers"),),
    ),
    # Level 2
    TableSpec(
        name="sales",
        level=2,
        columns=(
            "id", "customer_id", "customer_name", "items", "subtotal", "tax",
            "taxes", "discount", "total", "status", "payment_method", "notes",
            "has_backorder", "backorder_details", "created_at", "updated_at",
            "invoice_id", "invoice_number", "user_id", "cashier_name",
            "cashier_employee_id",
        ),
        foreign_keys=(ForeignKey("customer_id", "customers"),),
        defaults={"items": list, "subtotal": 0, "tax": 0, "discount": 0},
    ),
    TableSpec(
        name="invoices",
        level=2,
        columns=(
            "id", "number", "customer_id", "customer_name", "customer_email",
            "customer_address", "customer_phone", "items", "subtotal", "tax",
            "taxes", "discount", "total", "paid_amount", "status",
            "invoice_type", "currency", "due_date", "notes", "terms",
            "bank_details", "created_at", "updated_at", "sale_id", "user_id",
            "sales_rep_name", "sales_rep_id",
        ),
        foreign_keys=(
            ForeignKey("customer_id", "customers"),
            ForeignKey("sale_id", "sales"),
            ForeignKey("user_id", "users"),
        ),
    ),
    TableSpec(
        name="returns",
        level=2,
        columns=(
            "id", "return_number", "sale_id", "customer_id", "customer_name",
            "items", "subtotal", "tax", "total", "refund_amount",
            "refund_method", "status", "processed_by", "notes", "created_at",
            "updated_at",
        ),
        foreign_keys=(
            ForeignKey("sale_id", "sales"),
            ForeignKey("customer_id", "customers"),
        ),
    ),
    # Debts reference sales, so they follow them
    TableSpec(
        name="debts",
        level=2,
        columns=(
            "id", "customer_id", "amount", "paid", "created_at", "status",
            "description", "items", "sale_id",
        ),
        foreign_keys=(
            ForeignKey("customer_id", "customers"),
            ForeignKey("sale_id", "sales"),
        ),
        has_updated_at=False,
        change_column="created_at",
    ),
    TableSpec(
        name="product_accessories",
        level=2,
        columns=(
            "id", "product_model_id", "accessory_product_id",
            "linked_product_id", "is_mandatory", "default_quantity",
            "display_order", "created_at", "updated_at",
        ),
        foreign_keys=(
            ForeignKey("product_model_id", "product_models", required=True),
            ForeignKey("accessory_product_id", "products", required=True),
            ForeignKey("linked_product_id", "products"),
        ),
    ),
    # Level 3
    TableSpec(
        name="debt_payments",
        level=3,
        columns=("id", "debt_id", "amount", "date", "method"),
        foreign_keys=(ForeignKey("debt_id", "debts", required=True),),
        has_updated_at=False,
        change_column="date",
    ),
    TableSpec(
        name="inventory_items",
        level=3,
        columns=(
            "id", "product_id", "imei", "status", "condition", "sale_id",
            "customer_id", "sold_date", "purchase_cost", "warranty_expiry",
            "notes", "created_at", "updated_at",
        ),
        foreign_keys=(
            ForeignKey("product_id", "products", required=True),
            ForeignKey("customer_id", "customers"),
            ForeignKey("sale_id", "sales"),
        ),
        natural_key="imei",
        defaults={"status": "in_stock", "condition": "new"},
    ),
    TableSpec(
        name="swaps",
        level=3,
        columns=(
            "id", "swap_number", "customer_id", "customer_name",
            "customer_phone", "customer_email", "customer_address", "sale_id",
            "purchased_product_id", "purchased_product_name",
            "purchased_product_price", "trade_in_product_id",
            "trade_in_product_name", "trade_in_imei", "trade_in_condition",
            "trade_in_notes", "trade_in_value", "difference_paid",
            "payment_method", "status", "inventory_item_id", "notes",
            "created_at", "updated_at",
        ),
        foreign_keys=(
            ForeignKey("customer_id", "customers"),
            ForeignKey("sale_id", "sales"),
            ForeignKey("purchased_product_id", "products"),
            ForeignKey("trade_in_product_id", "products"),
            ForeignKey("inventory_item_id", "inventory_items"),
        ),
        natural_key="swap_number",
        defaults={
            "swap_number": _swap_number,
            "status": "completed",
            "difference_paid": 0,
        },
    ),
    TableSpec(
        name="boqs",
        level=3,
        columns=(
            "id", "boq_number", "date", "project_title", "company_name",
            "company_address", "company_phone", "client_name", "client_address",
            "items", "notes", "manager_signature", "total_le", "total_usd",
            "created_at", "updated_at",
        ),
    ),
)

# Foreign keys nested inside JSON documents, translated on the inbound path
NESTED_FOREIGN_KEYS: dict[str, tuple[str, tuple[ForeignKey, ...]]] = {
    "sales": (
        "items",
        (
            ForeignKey("product_id", "products"),
            ForeignKey("inventory_item_id", "inventory_items"),
        ),
    ),
}


class TableRegistry:
    """Lookup of synced tables in dependency order."""

    def __init__(
        self,
        tables: Iterable[TableSpec] = SYNCED_TABLES,
        excluded: Iterable[str] = EXCLUDED_TABLES,
    ) -> None:
        ordered = sorted(tables, key=lambda spec: spec.level)
        self._tables: dict[str, TableSpec] = {spec.name: spec for spec in ordered}
        self._excluded = frozenset(excluded)
        self._order = {name: index for index, name in enumerate(self._tables)}

    def __iter__(self) -> Iterator[TableSpec]:
        return iter(self._tables.values())

    def __contains__(self, name: object) -> bool:
        return name in self._tables

    def __len__(self) -> int:
        return len(self._tables)

    def get(self, name: str) -> TableSpec:
        """Get the spec of a synced table.

        Raises:
            KeyError: If the table is not synced.
        """
        return self._tables[name]

    def is_excluded(self, name: str) -> bool:
        return name in self._excluded

    def is_syncable(self, name: str) -> bool:
        """Check that a table is allow-listed and not deny-listed."""
        return name in self._tables and name not in self._excluded

    @property
    def names(self) -> list[str]:
        """Table names in push order."""
        return list(self._tables)

    @property
    def root_tables(self) -> list[TableSpec]:
        return [spec for spec in self._tables.values() if spec.is_root]

    def order_key(self, name: str) -> int:
        """Sort key placing unknown tables after every known one."""
        return self._order.get(name, len(self._order))


DEFAULT_TABLES = TableRegistry()
