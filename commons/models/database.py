# commons/models/database.py
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, Date, DateTime, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base, relationship

from commons.models.lifecycle import INITIAL_STATUS, PayoutStatus

Base = declarative_base()

# Largest value a signed 32-bit INT column holds (MySQL INT)
MAX_AMOUNT_CENTS = 2_147_483_647


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Member(Base):
    """Community member who may submit expenses"""
    __tablename__ = "members"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    email = Column(String(320), nullable=False, unique=True, index=True)
    bio = Column(Text)
    website = Column(String(500))
    github = Column(String(500))
    linkedin = Column(String(500))
    twitter = Column(String(500))
    modification_key = Column(String(64), nullable=False, unique=True, index=True)  # bearer credential
    created_at = Column(DateTime, default=utcnow)


class Expense(Base):
    """Reimbursable expense"""
    __tablename__ = "expenses"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(300), nullable=False)
    merchant = Column(String(200))
    category = Column(String(100))
    notes = Column(Text)
    amount_cents = Column(Integer)  # NULL only for receipt intake without a readable total
    currency = Column(String(3), default="USD")
    expense_date = Column(Date)
    receipt_url = Column(String(1000))
    # "metadata" is reserved on declarative classes
    submission_metadata = Column("metadata", JSON)
    submitted_by = Column(Integer, ForeignKey("members.id"), index=True)

    payout_address = Column(String(42))
    payout_status = Column(
        Enum(PayoutStatus, native_enum=False, length=32, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=INITIAL_STATUS,
        index=True,
    )
    payout_tx_hash = Column(String(100))
    payout_amount_cents = Column(Integer)
    payout_date = Column(DateTime)

    approved_by = Column(String(320))
    approved_at = Column(DateTime)
    rejected_by = Column(String(320))
    rejected_at = Column(DateTime)
    rejection_reason = Column(Text)

    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # No delete cascade: images outlive their expense row.
    images = relationship(
        "ExpenseImage",
        lazy="selectin",
        order_by=lambda: [ExpenseImage.created_at, ExpenseImage.id],
    )


class ExpenseImage(Base):
    """Supporting image for an expense (receipt scan, proof of purchase)"""
    __tablename__ = "expense_images"

    id = Column(Integer, primary_key=True, index=True)
    expense_id = Column(Integer, ForeignKey("expenses.id"), nullable=False, index=True)
    image_url = Column(String(1000), nullable=False)
    description = Column(Text)
    image_type = Column(String(50), default="proof")  # proof, receipt, documentation
    uploaded_by = Column(String(320))
    created_at = Column(DateTime, default=utcnow)
