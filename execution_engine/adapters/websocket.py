"""
Exchange Adapter - BingX Market Stream.

============================================================
PURPOSE
============================================================
WebSocket market data for the BingX swap market, exposed as an
async iterator of Ticks.

FEATURES:
- gzip-compressed frames
- Server "Ping" answered with "Pong"
- bookTicker / lastPrice (/ depth20) subscriptions per symbol
- Receive timeout detects silent connections

The stream does NOT reconnect by itself: a dropped connection
raises StreamDisconnectedError and the market data feed decides
when to subscribe again.

============================================================
"""

import asyncio
import gzip
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, AsyncIterator, Dict, Optional, Sequence

import aiohttp

from core.clock import ClockProtocol, SystemClock
from market_data.types import DepthSnapshot, Tick

from .errors import create_stream_disconnect


logger = logging.getLogger(__name__)


# ============================================================
# CONNECTION STATE
# ============================================================

class ConnectionState(Enum):
    """WebSocket connection states."""
    
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    CLOSING = "CLOSING"


@dataclass
class WebSocketConfig:
    """WebSocket configuration."""
    
    url: str = "wss://open-api-swap.bingx.com/swap-market"
    
    heartbeat_seconds: float = 20.0
    """aiohttp protocol-level ping interval."""
    
    receive_timeout_seconds: float = 60.0
    """No frame for this long counts as a disconnect."""
    
    subscribe_depth: bool = False


@dataclass
class _BookState:
    bid: Optional[Decimal] = None
    ask: Optional[Decimal] = None
    last: Optional[Decimal] = None
    depth: Optional[DepthSnapshot] = None


def _event_time(data: Dict[str, Any], clock: ClockProtocol) -> datetime:
    millis = data.get("E") or data.get("T")
    if millis:
        return datetime.fromtimestamp(int(millis) / 1000, tz=timezone.utc)
    return clock.now()


def _levels(raw: Any) -> tuple:
    return tuple((Decimal(str(p)), Decimal(str(q))) for p, q in (raw or []))


# ============================================================
# MARKET STREAM
# ============================================================

class BingXMarketStream:
    """One subscription = one WebSocket connection for a symbol group."""
    
    def __init__(
        self,
        session_factory,
        config: Optional[WebSocketConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        """
        Args:
            session_factory: Callable returning the aiohttp.ClientSession to use
            config: Connection configuration
            clock: Fallback timestamps when a frame carries none
        """
        self._session_factory = session_factory
        self._config = config or WebSocketConfig()
        self._clock = clock or SystemClock()
        self._state = ConnectionState.DISCONNECTED
    
    @property
    def state(self) -> ConnectionState:
        return self._state
    
    def _channels(self, symbol: str) -> list:
        channels = [f"{symbol}@bookTicker", f"{symbol}@lastPrice"]
        if self._config.subscribe_depth:
            channels.append(f"{symbol}@depth20")
        return channels
    
    async def ticks(self, symbols: Sequence[str]) -> AsyncIterator[Tick]:
        """
        Connect, subscribe and yield Ticks for ``symbols``.
        
        Raises:
            StreamDisconnectedError: On connect failure, close, error or silence
        """
        session: aiohttp.ClientSession = self._session_factory()
        self._state = ConnectionState.CONNECTING
        
        try:
            ws = await session.ws_connect(
                self._config.url,
                heartbeat=self._config.heartbeat_seconds,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._state = ConnectionState.DISCONNECTED
            raise create_stream_disconnect(f"WebSocket connect failed: {e}") from e
        
        self._state = ConnectionState.CONNECTED
        books: Dict[str, _BookState] = {s: _BookState() for s in symbols}
        
        try:
            for symbol in symbols:
                for channel in self._channels(symbol):
                    await ws.send_json({
                        "id": uuid.uuid4().hex,
                        "reqType": "sub",
                        "dataType": channel,
                    })
            logger.info(f"Subscribed market stream for {','.join(symbols)}")
            
            while True:
                try:
                    msg = await ws.receive(timeout=self._config.receive_timeout_seconds)
                except asyncio.TimeoutError:
                    raise create_stream_disconnect(
                        f"No frame for {self._config.receive_timeout_seconds}s"
                    ) from None
                
                if msg.type == aiohttp.WSMsgType.BINARY:
                    text = gzip.decompress(msg.data).decode("utf-8")
                elif msg.type == aiohttp.WSMsgType.TEXT:
                    text = msg.data
                elif msg.type in (
                    aiohttp.WSMsgType.CLOSE,
                    aiohttp.WSMsgType.CLOSING,
                    aiohttp.WSMsgType.CLOSED,
                ):
                    raise create_stream_disconnect(f"WebSocket closed: {msg.extra}")
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    raise create_stream_disconnect(f"WebSocket error: {ws.exception()}")
                else:
                    continue
                
                if text == "Ping":
                    await ws.send_str("Pong")
                    continue
                
                tick = self._parse(json.loads(text), books)
                if tick is not None:
                    yield tick
        except aiohttp.ClientError as e:
            raise create_stream_disconnect(f"WebSocket transport error: {e}") from e
        finally:
            self._state = ConnectionState.CLOSING
            if not ws.closed:
                await ws.close()
            self._state = ConnectionState.DISCONNECTED
    
    def _parse(self, message: Dict[str, Any], books: Dict[str, _BookState]) -> Optional[Tick]:
        """Update book state from one push; return a Tick once bid and ask are known."""
        data_type = message.get("dataType") or ""
        data = message.get("data")
        
        if not data_type or data is None:
            if message.get("code"):
                logger.warning(f"Market stream subscription error: {message.get('msg')}")
            return None
        
        symbol, _, channel = data_type.partition("@")
        book = books.get(symbol)
        if book is None:
            return None
        
        if channel == "bookTicker":
            book.bid = Decimal(str(data["b"]))
            book.ask = Decimal(str(data["a"]))
        elif channel == "lastPrice":
            book.last = Decimal(str(data["c"]))
        elif channel.startswith("depth"):
            book.depth = DepthSnapshot(bids=_levels(data.get("bids")), asks=_levels(data.get("asks")))
            return None
        else:
            return None
        
        if book.bid is None or book.ask is None:
            return None
        
        return Tick(
            symbol=symbol,
            timestamp=_event_time(data, self._clock),
            bid=book.bid,
            ask=book.ask,
            last=book.last if book.last is not None else (book.bid + book.ask) / 2,
            depth=book.depth,
        )
