from sqlalchemy import (
    DECIMAL,
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Table,
    Text,
    UniqueConstraint,
    func,
)

metadata = MetaData()

orders_tbl = Table(
    "orders",
    metadata,
    Column("id", Text, primary_key=True),
    Column("user_id", Text, nullable=False, index=True),
    Column("items", JSON, nullable=False),
    Column("total_amount", DECIMAL(12, 2), nullable=False),
    Column("status", Text, nullable=False, index=True),
    Column("version", Integer, nullable=False),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
)

order_statuses_tbl = Table(
    "order_statuses",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", Text, ForeignKey("orders.id"), nullable=False, index=True),
    Column("status", Text, nullable=False),
    Column("version", Integer, nullable=False),
    Column("created_at", DateTime, server_default=func.now()),
)

stock_tbl = Table(
    "stock_levels",
    metadata,
    Column("product_id", Text, primary_key=True),
    Column("on_hand", Integer, nullable=False),
    Column("reserved", Integer, nullable=False, default=0),
    Column("updated_at", DateTime, server_default=func.now()),
    CheckConstraint("reserved >= 0", name="ck_stock_reserved_non_negative"),
    CheckConstraint("reserved <= on_hand", name="ck_stock_reserved_within_on_hand"),
)

reservations_tbl = Table(
    "reservations",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("product_id", Text, nullable=False),
    Column("order_id", Text, nullable=False, index=True),
    Column("quantity", Integer, nullable=False),
    Column("status", Text, nullable=False),
    Column("expires_at", DateTime, nullable=False),
    Column("created_at", DateTime, server_default=func.now()),
    UniqueConstraint("product_id", "order_id", name="uq_reservation_product_order"),
    Index("ix_reservations_status_expires_at", "status", "expires_at"),
)

idempotency_tbl = Table(
    "idempotency_records",
    metadata,
    Column("idempotency_key", Text, primary_key=True),
    Column("fingerprint", Text, nullable=False),
    Column("status", Text, nullable=False),
    Column("result", JSON, nullable=True),
    Column("created_at", DateTime, nullable=False),
    Column("expires_at", DateTime, nullable=False, index=True),
)

payment_attempts_tbl = Table(
    "payment_attempts",
    metadata,
    Column("id", Text, primary_key=True),
    Column("order_id", Text, ForeignKey("orders.id"), nullable=False, index=True),
    # Set while the attempt is non-terminal, NULL afterwards.
    Column("active_order_id", Text, nullable=True, unique=True),
    Column("amount", DECIMAL(12, 2), nullable=False),
    Column("payment_method", Text, nullable=False),
    Column("gateway_reference", Text, nullable=True),
    Column("outcome", Text, nullable=False),
    Column("failure_reason", Text, nullable=True),
    Column("attempt_number", Integer, nullable=False),
    Column("gateway_calls", Integer, nullable=False, default=0),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
)

outbox_tbl = Table(
    "outbox",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("partition_key", Text, nullable=False),
    Column("event_type", Text, nullable=False),
    Column("payload", JSON, nullable=False),
    Column("status", Text, nullable=False),
    Column("created_at", DateTime, server_default=func.now()),
    Column("sent_at", DateTime, nullable=True),
    Index("ix_outbox_status_partition_id", "status", "partition_key", "id"),
)

inbox_tbl = Table(
    "inbox",
    metadata,
    Column("id", Text, primary_key=True),
    Column("message_id", Text, nullable=False, unique=True, index=True),
    Column("event_type", Text, nullable=False),
    Column("payload", JSON, nullable=False),
    Column("status", Text, nullable=False),
    Column("created_at", DateTime, server_default=func.now()),
)
