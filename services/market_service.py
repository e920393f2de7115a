"""Symbol metadata and quote persistence backed by the Questrade market endpoints."""
import logging
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from models.market_quote import MarketQuote
from models.person import Person
from models.symbol import Symbol
from services.questrade.errors import PersonNotFoundError, QuestradeError
from services.questrade.questrade_client import QuestradeClient
from utils.common_helpers import num, parse_datetime, to_float, utcnow

logger = logging.getLogger(__name__)

QUOTE_RETENTION_DAYS = 7
MAX_SYMBOL_IDS_PER_REQUEST = 100


def resolve_person_name(db: Session, person_name: Optional[str] = None) -> str:
    """Market calls need some person's credentials; default to the first active person."""
    if person_name:
        return person_name
    person = (
        db.query(Person)
        .filter(Person.is_active.is_(True), Person.has_valid_token.is_(True))
        .order_by(Person.id.asc())
        .first()
    ) or db.query(Person).filter(Person.is_active.is_(True)).order_by(Person.id.asc()).first()
    if person is None:
        raise PersonNotFoundError("No active persons found. Please add a person first.")
    return person.person_name


def upsert_symbol(db: Session, data: Dict[str, Any]) -> Optional[Symbol]:
    symbol_id = data.get("symbolId")
    if symbol_id is None:
        return None
    row = db.query(Symbol).filter(Symbol.symbol_id == int(symbol_id)).first()
    if row is None:
        row = Symbol(symbol_id=int(symbol_id), symbol=data.get("symbol") or "")
        db.add(row)

    row.symbol = data.get("symbol") or row.symbol
    row.description = data.get("description")
    row.security_type = data.get("securityType")
    row.listing_exchange = data.get("listingExchange")
    row.currency = data.get("currency")
    row.is_tradable = bool(data.get("isTradable", True))
    row.is_quotable = bool(data.get("isQuotable", True))
    row.prev_day_close_price = to_float(data.get("prevDayClosePrice"))
    row.high_price_52 = to_float(data.get("highPrice52"))
    row.low_price_52 = to_float(data.get("lowPrice52"))
    row.average_vol_3_months = to_float(data.get("averageVol3Months"))
    row.average_vol_20_days = to_float(data.get("averageVol20Days"))
    row.outstanding_shares = to_float(data.get("outstandingShares"))
    row.eps = to_float(data.get("eps"))
    row.pe = to_float(data.get("pe"))
    row.market_cap = to_float(data.get("marketCap"))
    row.dividend = to_float(data.get("dividend"))
    row.yield_percent = to_float(data.get("yield"))
    row.ex_date = parse_datetime(data.get("exDate"))
    row.dividend_date = parse_datetime(data.get("dividendDate"))
    if data.get("dividendFrequency"):
        row.dividend_frequency = data.get("dividendFrequency")
    row.industry_sector = data.get("industrySector") or None
    row.industry_group = data.get("industryGroup") or None
    row.industry_sub_group = data.get("industrySubGroup") or None
    row.raw = data
    row.last_updated = utcnow()
    return row


def _chunks(values: List[int], size: int) -> Iterable[List[int]]:
    for i in range(0, len(values), size):
        yield values[i:i + size]


def ensure_symbols(
    db: Session,
    client: QuestradeClient,
    person_name: str,
    symbol_ids: Iterable[int],
) -> Dict[int, Symbol]:
    """Return a symbol_id -> Symbol map, fetching unknown ids from Questrade."""
    wanted = sorted({int(s) for s in symbol_ids if s is not None})
    if not wanted:
        return {}

    rows = db.query(Symbol).filter(Symbol.symbol_id.in_(wanted)).all()
    symbol_map = {r.symbol_id: r for r in rows}
    missing = [sid for sid in wanted if sid not in symbol_map]

    for batch in _chunks(missing, MAX_SYMBOL_IDS_PER_REQUEST):
        try:
            data = client.get_symbols(person_name, ids=batch)
        except QuestradeError as exc:
            logger.warning("Symbol lookup failed for %d ids (%s): %s", len(batch), person_name, exc.message)
            continue
        for item in data.get("symbols") or []:
            row = upsert_symbol(db, item)
            if row is not None:
                symbol_map[row.symbol_id] = row
    if missing:
        db.commit()
    return symbol_map


def find_or_fetch_symbols(
    db: Session,
    client: QuestradeClient,
    person_name: str,
    names: List[str],
) -> List[Symbol]:
    names = [n.strip().upper() for n in names if n and n.strip()]
    if not names:
        raise ValueError("At least one symbol is required")

    rows = db.query(Symbol).filter(Symbol.symbol.in_(names)).all()
    if len(rows) < len(names):
        data = client.get_symbols(person_name, names=names)
        known = {r.symbol_id for r in rows}
        for item in data.get("symbols") or []:
            row = upsert_symbol(db, item)
            if row is not None and row.symbol_id not in known:
                rows.append(row)
                known.add(row.symbol_id)
        db.commit()
    return rows


def save_quotes(db: Session, quotes: List[Dict[str, Any]], *, is_snap_quote: bool = False) -> int:
    saved = 0
    for quote in quotes:
        if quote.get("symbolId") is None:
            continue
        db.add(MarketQuote(
            symbol=quote.get("symbol") or "",
            symbol_id=int(quote["symbolId"]),
            bid_price=num(quote.get("bidPrice")),
            ask_price=num(quote.get("askPrice")),
            last_trade_price=num(quote.get("lastTradePrice")),
            open_price=num(quote.get("openPrice")),
            high_price=num(quote.get("highPrice")),
            low_price=num(quote.get("lowPrice")),
            volume=num(quote.get("volume")),
            is_halted=bool(quote.get("isHalted")),
            is_snap_quote=is_snap_quote or bool(quote.get("isSnapQuote")),
            quote_time=utcnow(),
        ))
        saved += 1
    db.commit()
    return saved


def get_snap_quotes(
    db: Session,
    client: QuestradeClient,
    symbols: List[str],
    person_name: Optional[str] = None,
) -> Dict[str, Any]:
    person = resolve_person_name(db, person_name)
    rows = find_or_fetch_symbols(db, client, person, symbols)
    if not rows:
        raise ValueError("Symbols not found")
    data = client.get_snap_quote([r.symbol_id for r in rows], person)
    save_quotes(db, data.get("quotes") or [], is_snap_quote=True)
    return data


def get_candles(
    db: Session,
    client: QuestradeClient,
    symbol_id: int,
    *,
    start_time: str,
    end_time: str,
    interval: str = "OneDay",
    person_name: Optional[str] = None,
) -> Dict[str, Any]:
    person = resolve_person_name(db, person_name)
    return client.get_market_candles(
        symbol_id, person, start_time=start_time, end_time=end_time, interval=interval
    )


def purge_old_quotes(db: Session, days: int = QUOTE_RETENTION_DAYS) -> int:
    cutoff = utcnow() - timedelta(days=days)
    deleted = db.query(MarketQuote).filter(MarketQuote.quote_time < cutoff).delete(synchronize_session="fetch")
    db.commit()
    logger.info("Purged %d market quotes older than %d days", deleted, days)
    return deleted
