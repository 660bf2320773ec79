"""SQLAlchemy database models for the shared market-data store."""

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.sql import func

# SQLite only auto-increments INTEGER PRIMARY KEY columns
BigIntegerPK = BigInteger().with_variant(Integer, "sqlite")

# Sub-dollar quotes carry four decimals; values are handled as floats in Python
Price = Numeric(12, 4, asdecimal=False)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class TickerMetadata(Base):
    """Reference attributes per symbol. Defines the valid universe."""

    __tablename__ = "ticker_metadata"

    ticker = Column(String(20), primary_key=True)
    name = Column(Text, nullable=True)
    primary_exchange = Column(String(20), nullable=True)
    market_cap = Column(Float, nullable=True)
    share_class_shares_outstanding = Column(BigInteger, nullable=True)
    weighted_shares_outstanding = Column(BigInteger, nullable=True)
    avg_volume_10d = Column(Float, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<TickerMetadata(ticker={self.ticker}, exchange={self.primary_exchange})>"


class MarketData(Base):
    """Latest snapshot per symbol.

    Everything except the key is nullable: the trade streamer may create a row
    carrying only price and last_updated for a symbol the snapshot ingestor has
    not written yet.
    """

    __tablename__ = "market_data"

    ticker = Column(String(20), primary_key=True)
    price = Column(Price, nullable=True)
    change_percent = Column(Float, nullable=True)
    volume = Column(Float, nullable=True)
    high = Column(Price, nullable=True)
    low = Column(Price, nullable=True)
    open = Column(Price, nullable=True)
    close = Column(Price, nullable=True)
    day_high = Column(Price, nullable=True)
    last_updated = Column(DateTime(timezone=True), nullable=True)
    avg_daily_volume = Column(Float, nullable=True)

    def __repr__(self) -> str:
        return f"<MarketData(ticker={self.ticker}, price={self.price})>"


class LowFloatTicker(Base):
    """Watch-list entry produced by the low-float filter."""

    __tablename__ = "low_float_tickers"

    ticker = Column(String(20), primary_key=True)
    float_shares = Column("float", Float, nullable=True)
    volume = Column(Float, nullable=True)
    price = Column(Price, nullable=True)
    percent_change = Column(Float, nullable=True)
    rel_vol = Column(Float, nullable=True)
    source = Column(String(50), nullable=True)
    filtered_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_low_float_tickers_filtered_at", "filtered_at"),)

    def __repr__(self) -> str:
        return f"<LowFloatTicker(ticker={self.ticker}, float={self.float_shares})>"


class HodAlert(Base):
    """Append-only high-of-day alert log."""

    __tablename__ = "hod_alerts"

    id = Column(BigIntegerPK, primary_key=True, autoincrement=True)
    symbol = Column(String(20), nullable=False)
    time = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    volume = Column(Float, nullable=True)
    float_shares = Column("float", Float, nullable=True)
    alert_type = Column(String(20), nullable=False, default="HOD")
    price = Column(Price, nullable=True)

    __table_args__ = (Index("ix_hod_alerts_symbol_time", "symbol", "time"),)

    def __repr__(self) -> str:
        return f"<HodAlert(symbol={self.symbol}, time={self.time}, price={self.price})>"


class NewsItem(Base):
    """News articles tagged with at least one ticker."""

    __tablename__ = "news"

    id = Column(String(200), primary_key=True)
    tickers = Column(JSON, nullable=False)
    headline = Column(Text, nullable=False)
    summary = Column(Text, nullable=True)
    url = Column(Text, nullable=False)
    source = Column(String(200), nullable=False)
    published_at = Column(DateTime(timezone=True), nullable=False)
    collected_at = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<NewsItem(id={self.id}, source={self.source})>"


class Ipo(Base):
    """Upcoming and recent listings, one row per ticker and offer date."""

    __tablename__ = "ipos"

    id = Column(BigIntegerPK, primary_key=True, autoincrement=True)
    ticker = Column(String(20), nullable=False)
    name = Column(Text, nullable=False)
    exchange = Column(String(50), nullable=False)
    offer_date = Column(Date, nullable=True)
    offer_price = Column(Price, nullable=True)
    shares = Column(Float, nullable=True)
    status = Column(String(50), nullable=False)
    published_at = Column(DateTime(timezone=True), nullable=False)
    collected_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (UniqueConstraint("ticker", "offer_date", name="uq_ipos_ticker_offer_date"),)

    def __repr__(self) -> str:
        return f"<Ipo(ticker={self.ticker}, offer_date={self.offer_date}, status={self.status})>"
