"""
SQLAlchemy ORM Models for CourtPay

One table: every payment, refund and adjustment is a row in transactions.
Refund rows point at their parent through related_transaction_id.
"""
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, JSON, CheckConstraint, Index
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class TransactionModel(Base):
    """
    ORM model for transactions table.

    version is bumped by every write; status transitions and metadata
    rewrites are compare-and-set on (status, version).
    """
    __tablename__ = "transactions"

    id = Column(String, primary_key=True)
    order_ref = Column(String, nullable=False, unique=True)
    gateway = Column(String, nullable=False)
    user_ref = Column(String, nullable=False, index=True)
    booking_ref = Column(String, index=True)
    amount = Column(Integer, nullable=False)  # VND
    method = Column(String, nullable=False)
    type = Column(String, nullable=False)
    status = Column(String, nullable=False, index=True)
    external_transaction_no = Column(String)
    related_transaction_id = Column(String, ForeignKey("transactions.id"), index=True)
    extra = Column("metadata", JSON, nullable=False, default=dict)
    expires_at = Column(DateTime, nullable=False, index=True)
    pending_events = Column(JSON(none_as_null=True))  # Outbox: owed event names, oldest first; NULL once all published
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("amount > 0", name="amount_positive_check"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'succeeded', 'failed', 'refunded')",
            name="status_check"
        ),
        CheckConstraint("gateway IN ('vnpay', 'payos')", name="gateway_check"),
        Index("idx_transactions_sweep", "status", "type", "expires_at"),
    )
