from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Tuple

from dateutil import parser as date_parser

from errors import InvalidTickError


@dataclass(frozen=True)
class Tick:
    symbol: str
    time: datetime
    price: Decimal
    volume: Decimal
    source: str = 'unknown'

    @property
    def key(self) -> Tuple[str, datetime]:
        return (self.symbol, self.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'time': self.time.isoformat(),
            'price': str(self.price),
            'volume': str(self.volume),
            'source': self.source,
        }


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_time(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return ensure_utc(raw)
    if isinstance(raw, (int, float)):
        # Epoch milliseconds, as most exchange feeds send them
        return datetime.fromtimestamp(raw / 1000, tz=timezone.utc)
    if isinstance(raw, str):
        return ensure_utc(date_parser.isoparse(raw))
    raise ValueError(f"unsupported time value {raw!r}")


def _decimal(raw: Any) -> Decimal:
    if isinstance(raw, Decimal):
        value = raw
    else:
        value = Decimal(str(raw))
    if not value.is_finite():
        raise InvalidOperation(f"non-finite value {raw!r}")
    return value


def parse_tick(event: Dict[str, Any]) -> Tick:
    """Turn an inbound ``{time, symbol, price, volume, source}`` event into a Tick.

    Structural problems raise ``InvalidTickError``. Value checks such as a
    non-positive price are left to the window manager so that the tick can
    still be archived raw.
    """
    if not isinstance(event, dict):
        raise InvalidTickError(f"tick event must be a mapping, got {type(event).__name__}")
    symbol = event.get('symbol')
    if not symbol or not isinstance(symbol, str):
        raise InvalidTickError(f"tick event missing symbol: {event!r}")
    raw_time = event.get('time', event.get('timestamp'))
    try:
        tick_time = parse_time(raw_time)
    except (ValueError, OverflowError, TypeError) as exc:
        raise InvalidTickError(f"bad tick time {raw_time!r}: {exc}", symbol=symbol) from exc
    try:
        price = _decimal(event['price'])
        volume = _decimal(event.get('volume', 0))
    except (KeyError, InvalidOperation, ValueError, TypeError) as exc:
        raise InvalidTickError(f"bad tick price/volume in {event!r}", symbol=symbol, time=tick_time) from exc
    return Tick(
        symbol=symbol,
        time=tick_time,
        price=price,
        volume=volume,
        source=str(event.get('source') or 'unknown'),
    )
