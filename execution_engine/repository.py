"""
Execution Engine - Order History Repository.

============================================================
PURPOSE
============================================================
Database operations for order history persistence.

RESPONSIBILITIES:
- Save/update orders with their fills
- Load orders by client order ID
- Query order history by symbol

CRITICAL REQUIREMENTS:
- Every save runs in its own transaction
- Fills are append-only; a re-save adds only new fills

============================================================
USAGE
============================================================
    repository = OrderHistoryRepository.from_url("sqlite+aiosqlite:///orders.db")
    await repository.create_tables()
    
    execution.add_terminal_listener(repository.save_order)

============================================================
"""

import logging
from typing import List, Optional

from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .models import Base, ExecutionFillModel, ExecutionOrderModel
from .types import Fill, OrderRecord, OrderSide, OrderState, OrderType


logger = logging.getLogger(__name__)


# ============================================================
# ORDER HISTORY REPOSITORY
# ============================================================

class OrderHistoryRepository:
    """
    Repository for order history persistence.
    
    Opens a short-lived session per operation.
    """
    
    def __init__(self, engine: AsyncEngine):
        """
        Initialize repository.
        
        Args:
            engine: SQLAlchemy async engine
        """
        self._engine = engine
        self._session_factory = async_sessionmaker(engine, expire_on_commit=False)
    
    @classmethod
    def from_url(cls, database_url: str, echo: bool = False) -> "OrderHistoryRepository":
        """Create a repository with its own engine."""
        return cls(create_async_engine(database_url, echo=echo))
    
    async def create_tables(self) -> None:
        """Create the order history tables if they do not exist."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Order history tables ready")
    
    async def close(self) -> None:
        await self._engine.dispose()
    
    # --------------------------------------------------------
    # ORDER OPERATIONS
    # --------------------------------------------------------
    
    async def save_order(self, order: OrderRecord) -> None:
        """
        Save or update an order and its fills.
        
        Args:
            order: Order record to save
        """
        async with self._session_factory() as session:
            async with session.begin():
                model = await self._get_model(session, order.client_order_id)
                
                if model is None:
                    model = ExecutionOrderModel(
                        client_order_id=order.client_order_id,
                        symbol=order.symbol,
                        side=order.side.value,
                        order_type=order.order_type.value,
                        quantity=order.quantity,
                        price=order.price,
                        reference_price=order.reference_price,
                        reduce_only=order.reduce_only,
                        created_at=order.created_at,
                        rationale=order.rationale,
                        imported=order.imported,
                    )
                    model.fills = []
                    session.add(model)
                
                model.exchange_order_id = order.exchange_order_id
                model.state = order.state.value
                model.previous_state = order.previous_state.value if order.previous_state else None
                model.filled_quantity = order.filled_quantity
                model.average_fill_price = order.average_fill_price
                model.total_fee = order.total_fee
                model.submitted_at = order.submitted_at
                model.updated_at = order.updated_at
                model.submit_attempts = order.submit_attempts
                model.last_error = order.last_error
                
                for sequence, fill in enumerate(order.fills):
                    if sequence < len(model.fills):
                        continue
                    model.fills.append(ExecutionFillModel(
                        sequence=sequence,
                        trade_id=fill.trade_id,
                        symbol=fill.symbol,
                        side=fill.side.value,
                        quantity=fill.quantity,
                        price=fill.price,
                        fee=fill.fee,
                        filled_at=fill.timestamp,
                    ))
        
        logger.debug(
            f"Saved order {order.client_order_id} ({order.state.value}, {len(order.fills)} fills)"
        )
    
    async def get_order(self, client_order_id: str) -> Optional[OrderRecord]:
        """Get order record by client order ID."""
        async with self._session_factory() as session:
            model = await self._get_model(session, client_order_id)
            if model is None:
                return None
            return self._model_to_order(model)
    
    async def get_orders_by_symbol(
        self,
        symbol: str,
        limit: int = 100,
    ) -> List[OrderRecord]:
        """Get orders by symbol, newest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(ExecutionOrderModel)
                .where(ExecutionOrderModel.symbol == symbol)
                .order_by(desc(ExecutionOrderModel.created_at), desc(ExecutionOrderModel.id))
                .limit(limit)
            )
            return [self._model_to_order(m) for m in result.scalars()]
    
    # --------------------------------------------------------
    # CONVERSION
    # --------------------------------------------------------
    
    @staticmethod
    async def _get_model(session: AsyncSession, client_order_id: str) -> Optional[ExecutionOrderModel]:
        result = await session.execute(
            select(ExecutionOrderModel).where(ExecutionOrderModel.client_order_id == client_order_id)
        )
        return result.scalar_one_or_none()
    
    @staticmethod
    def _model_to_order(model: ExecutionOrderModel) -> OrderRecord:
        """Convert model to order record."""
        side = OrderSide(model.side)
        return OrderRecord(
            client_order_id=model.client_order_id,
            symbol=model.symbol,
            side=side,
            quantity=model.quantity,
            order_type=OrderType(model.order_type),
            price=model.price,
            reduce_only=model.reduce_only,
            exchange_order_id=model.exchange_order_id,
            state=OrderState(model.state),
            previous_state=OrderState(model.previous_state) if model.previous_state else None,
            fills=[
                Fill(
                    client_order_id=model.client_order_id,
                    symbol=f.symbol,
                    side=OrderSide(f.side),
                    quantity=f.quantity,
                    price=f.price,
                    fee=f.fee,
                    timestamp=f.filled_at,
                    trade_id=f.trade_id,
                )
                for f in model.fills
            ],
            created_at=model.created_at,
            updated_at=model.updated_at,
            submitted_at=model.submitted_at,
            rationale=model.rationale,
            reference_price=model.reference_price,
            imported=model.imported,
            submit_attempts=model.submit_attempts,
            last_error=model.last_error,
        )
