"""
Order Service — Database schema

Tables are declared with SQLAlchemy Core so that the same statements run on
PostgreSQL (asyncpg, production) and SQLite (aiosqlite, tests).

verify_schema() is the one place that checks the database has what the
service needs. It runs once at startup; the store never probes for tables or
falls back to simpler queries at call time.
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    inspect,
)
from sqlalchemy.ext.asyncio import AsyncEngine

from .errors import SchemaError

metadata = MetaData()

orders = Table(
    "orders",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("buyer_id", String(64), nullable=False, index=True),
    Column("seller_id", String(64), nullable=False, index=True),
    Column("item_ref", String(64), nullable=False),
    Column("amount", Integer, nullable=False),
    Column("payment_reference", String(128), nullable=False, unique=True),
    Column("buyer_email", String(255), nullable=False, default=""),
    Column("status", String(32), nullable=False, index=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True)),
    Column("commit_deadline", DateTime(timezone=True), index=True),
    Column("committed_at", DateTime(timezone=True)),
    Column("collected_at", DateTime(timezone=True)),
    Column("cancelled_at", DateTime(timezone=True)),
    Column("completed_at", DateTime(timezone=True)),
    Column("cancellation_reason", Text),
    Column("reminder_sent_at", DateTime(timezone=True)),
)

# Listings owned by the catalogue; this service only flips availability.
books = Table(
    "books",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("available", Boolean, nullable=False, default=True),
    Column("updated_at", DateTime(timezone=True)),
)

order_events = Table(
    "order_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", String(64), nullable=False, index=True),
    Column("event_type", String(64), nullable=False),
    Column("event_data", Text, nullable=False),
    Column("version", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("order_id", "version", name="uq_order_events_version"),
)

settlements = Table(
    "settlements",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("order_id", String(64), nullable=False, index=True),
    Column("kind", String(16), nullable=False),
    Column("amount", Integer, nullable=False),
    Column("recipient_id", String(64), nullable=False),
    Column("payment_reference", String(128), nullable=False),
    Column("status", String(16), nullable=False, index=True),
    Column("attempts", Integer, nullable=False, default=0),
    Column("last_error", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True)),
    UniqueConstraint("order_id", "kind", name="uq_settlements_order_kind"),
)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


async def verify_schema(engine: AsyncEngine) -> None:
    """Raise SchemaError if any table or column declared above is missing."""

    def _missing(sync_conn) -> list[str]:
        inspector = inspect(sync_conn)
        existing = set(inspector.get_table_names())
        problems = []
        for table in metadata.sorted_tables:
            if table.name not in existing:
                problems.append(f"table {table.name}")
                continue
            columns = {c["name"] for c in inspector.get_columns(table.name)}
            problems.extend(
                f"column {table.name}.{c.name}"
                for c in table.columns
                if c.name not in columns
            )
        return problems

    async with engine.connect() as conn:
        problems = await conn.run_sync(_missing)
    if problems:
        raise SchemaError("database schema is missing: " + ", ".join(problems))
