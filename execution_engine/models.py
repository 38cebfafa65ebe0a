"""
Execution Engine - ORM Models.

============================================================
PURPOSE
============================================================
SQLAlchemy ORM models for order history persistence.

TABLES:
- execution_orders: Terminal and active order records
- execution_fills: Fill records, one row per execution delta

AUDIT REQUIREMENTS:
- Every terminal order is persisted
- Every fill is recorded with its fee
- Rows are keyed by the client order ID (idempotency key)

============================================================
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from .types import utcnow


# ============================================================
# BASE
# ============================================================

class Base(DeclarativeBase):
    """Base class for execution ORM models."""
    pass


# ============================================================
# EXECUTION ORDER MODEL
# ============================================================

class ExecutionOrderModel(Base):
    """
    Persisted order record.
    
    Stores the order's request, final state and identifiers.
    """
    
    __tablename__ = "execution_orders"
    
    # Primary key
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    
    # Identifiers
    client_order_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    exchange_order_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    
    # State
    state: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    previous_state: Mapped[Optional[str]] = mapped_column(String(32))
    
    # Order parameters
    symbol: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    side: Mapped[str] = mapped_column(String(8), nullable=False)
    order_type: Mapped[str] = mapped_column(String(16), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False)
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 8))
    reference_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 8))
    reduce_only: Mapped[bool] = mapped_column(Boolean, default=False)
    
    # Fill summary
    filled_quantity: Mapped[Decimal] = mapped_column(Numeric(24, 8), default=Decimal("0"))
    average_fill_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 8))
    total_fee: Mapped[Decimal] = mapped_column(Numeric(24, 8), default=Decimal("0"))
    
    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    
    # Execution metadata
    rationale: Mapped[str] = mapped_column(String(64), default="")
    imported: Mapped[bool] = mapped_column(Boolean, default=False)
    submit_attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    
    # Relationships
    fills: Mapped[List["ExecutionFillModel"]] = relationship(
        "ExecutionFillModel",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="ExecutionFillModel.sequence",
        lazy="selectin",
    )
    
    __table_args__ = (
        Index("ix_execution_orders_symbol_state", "symbol", "state"),
    )


# ============================================================
# EXECUTION FILL MODEL
# ============================================================

class ExecutionFillModel(Base):
    """
    Individual fill record.
    
    One order can have multiple fills.
    """
    
    __tablename__ = "execution_fills"
    
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    
    order_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("execution_orders.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    """Position of the fill within its order."""
    
    trade_id: Mapped[Optional[str]] = mapped_column(String(64))
    
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    side: Mapped[str] = mapped_column(String(8), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False)
    fee: Mapped[Decimal] = mapped_column(Numeric(24, 8), default=Decimal("0"))
    
    filled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    
    order: Mapped["ExecutionOrderModel"] = relationship("ExecutionOrderModel", back_populates="fills")
    
    __table_args__ = (
        Index("ix_execution_fills_symbol_filled", "symbol", "filled_at"),
    )
