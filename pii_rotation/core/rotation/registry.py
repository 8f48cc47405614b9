"""
Table Registry

Closed, compiled-in mapping of the PII-bearing tables owned by the business
application to their primary key and ciphertext columns. Table and column
names never come from runtime input.
"""
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Tuple

from sqlalchemy import column, table
from sqlalchemy.sql.expression import TableClause


class PiiTable(str, Enum):
    """Known PII tables."""
    USERS = "users"
    CONTACTS = "contacts"
    COMPANIES = "companies"


@dataclass(frozen=True)
class TableSpec:
    """Physical table, its primary key column and its ciphertext columns."""

    table: str
    id_field: str
    fields: Tuple[str, ...]

    def to_clause(self) -> TableClause:
        """Lightweight SQLAlchemy table construct (quoted identifiers, no reflection)."""
        return table(self.table, column(self.id_field), *[column(f) for f in self.fields])


TABLE_REGISTRY: Mapping[PiiTable, TableSpec] = MappingProxyType({
    PiiTable.USERS: TableSpec(
        table="users",
        id_field="id",
        fields=("email",),
    ),
    PiiTable.CONTACTS: TableSpec(
        table="contacts",
        id_field="id",
        fields=(
            "primary_email", "secondary_email", "primary_phone",
            "secondary_phone", "mobile_phone", "fax",
        ),
    ),
    PiiTable.COMPANIES: TableSpec(
        table="companies",
        id_field="id",
        fields=("primary_email", "primary_phone", "fax", "tax_id"),
    ),
})


def get_table_spec(key: PiiTable) -> TableSpec:
    """Return the TableSpec for a registry key."""
    return TABLE_REGISTRY[PiiTable(key)]


def all_table_specs() -> Tuple[TableSpec, ...]:
    """All registered tables, in rotation order."""
    return tuple(TABLE_REGISTRY[key] for key in PiiTable)
