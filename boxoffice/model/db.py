from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    ForeignKey,
    Index,
    Text,
)


Base = declarative_base()

# ticket status
T_AVAILABLE = "available"
T_RESERVED = "reserved"
T_SOLD = "sold"
T_RELEASED = "released"  # transient: release() goes straight to available

# order status
O_PENDING = "pending"
O_RESERVED = "reserved"
O_PAID = "paid"
O_FAILED = "failed"
O_EXPIRED = "expired"

TERMINAL_STATUSES = frozenset({O_PAID, O_FAILED, O_EXPIRED})


# ----------------------------
# ORM models
# ----------------------------
class TicketCategory(Base):
    __tablename__ = "ticket_categories"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    price = Column(Integer, nullable=False)  # KES, minor units
    capacity = Column(Integer, nullable=False)
    max_per_order = Column(Integer, nullable=True)
    created_at = Column(Float, nullable=False)


class Ticket(Base):
    __tablename__ = "tickets"
    id = Column(Integer, primary_key=True, autoincrement=True)
    category_id = Column(
        String, ForeignKey("ticket_categories.id"), nullable=False
    )
    # available | reserved | sold
    status = Column(String, nullable=False, default=T_AVAILABLE)
    # owning non-terminal (or paid) order; cleared on release
    order_id = Column(String, nullable=True, index=True)
    reserved_at = Column(Float, nullable=True)
    sold_at = Column(Float, nullable=True)

    __table_args__ = (
        Index("tickets_claim_idx", "category_id", "status", "id"),
    )


class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    buyer_id = Column(String, nullable=False)
    category_id = Column(
        String, ForeignKey("ticket_categories.id"), nullable=False
    )
    quantity = Column(Integer, nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="KES")

    # pending | reserved | paid | failed | expired
    status = Column(String, nullable=False, default=O_PENDING)
    correlation_token = Column(String, nullable=False, unique=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)

    # last applied callback
    receipt_id = Column(String, nullable=True)
    last_callback_digest = Column(String, nullable=True)
    result_code = Column(Integer, nullable=True)
    result_desc = Column(Text, nullable=True)

    __table_args__ = (
        Index("orders_status_created_idx", "status", "created_at"),
    )


class OrderTicket(Base):
    # immutable: which tickets an order reserved, kept after release
    __tablename__ = "order_tickets"
    order_id = Column(String, ForeignKey("orders.id"), primary_key=True)
    ticket_id = Column(Integer, ForeignKey("tickets.id"), primary_key=True)


class CallbackRecord(Base):
    __tablename__ = "callback_records"
    correlation_token = Column(String, primary_key=True)
    receipt_id = Column(String, primary_key=True)
    digest = Column(String, nullable=False)
    result_code = Column(Integer, nullable=False)
    outcome = Column(String, nullable=False)
    order_id = Column(String, nullable=True)
    processed_at = Column(Float, nullable=False)


class ReconciliationConflict(Base):
    __tablename__ = "reconciliation_conflicts"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, nullable=True)
    correlation_token = Column(String, nullable=False)
    receipt_id = Column(String, nullable=False)
    # late_confirmation | duplicate_payment | stale_failure | order_not_found
    kind = Column(String, nullable=False)
    detail = Column(Text, nullable=True)
    created_at = Column(Float, nullable=False)
    resolved_at = Column(Float, nullable=True)


async def create_schema(conn) -> None:
    await conn.run_sync(Base.metadata.create_all)
