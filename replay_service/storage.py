"""
Async SQLAlchemy persistence for the replay pipeline.

Tables:
- ``historical_candles``: merged candle + derivatives rows per venue/symbol/timeframe.
- ``replay_states``: one decision per (batch_id, as_of_ms, symbol), plus its outcome.
- ``replay_batches``: durable batch descriptors for the batch registry.
- ``scoreboard_baselines``: saved scoreboard headline metrics.

All functions take an async ``sessionmaker`` and return plain dicts.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    and_,
    delete,
    func,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.future import select
from sqlalchemy.orm import declarative_base, sessionmaker

from historical_replay.candle_loader import MarketRow
from historical_replay.errors import PersistenceError
from historical_replay.schemas import OutcomeLabel

logger = logging.getLogger(__name__)

Base = declarative_base()

DEFAULT_DSN = "sqlite+aiosqlite:///./replay.db"


class HistoricalCandle(Base):
    __tablename__ = "historical_candles"
    __table_args__ = (
        UniqueConstraint("venue", "symbol", "timeframe", "open_time_ms", name="uq_candle_key"),
        Index("ix_candle_lookup", "symbol", "venue", "timeframe", "open_time_ms"),
    )
    id = Column(Integer, primary_key=True, autoincrement=True)
    venue = Column(String, nullable=False)
    symbol = Column(String, nullable=False)
    timeframe = Column(String, nullable=False)
    open_time_ms = Column(BigInteger, nullable=False)
    open = Column(Float, nullable=False)
    high = Column(Float, nullable=False)
    low = Column(Float, nullable=False)
    close = Column(Float, nullable=False)
    volume = Column(Float, default=0.0)
    open_interest = Column(Float, nullable=True)
    funding_rate = Column(Float, nullable=True)
    taker_buy_volume = Column(Float, nullable=True)
    taker_sell_volume = Column(Float, nullable=True)


class ReplayState(Base):
    """
    A decision replayed at a historical instant.

    The outcome columns stay NULL until the labeling job fills them once;
    they are never overwritten afterwards.
    """
    __tablename__ = "replay_states"
    __table_args__ = (
        UniqueConstraint("batch_id", "as_of_ms", "symbol", name="uq_replay_state_key"),
        Index("ix_replay_state_unlabeled", "outcome_label", "as_of_ms"),
    )
    id = Column(Integer, primary_key=True, autoincrement=True)
    batch_id = Column(String, nullable=False, index=True)
    symbol = Column(String, nullable=False, index=True)
    as_of_ms = Column(BigInteger, nullable=False)
    price = Column(Float, nullable=True)
    bias = Column(String, nullable=False)
    confidence = Column(Float, nullable=True)
    primary_regime = Column(String, nullable=True)
    scenario = Column(String, nullable=True)
    config_version = Column(String, nullable=True)
    decision = Column(JSON, nullable=False)
    snapshot_meta = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=func.now())
    outcome_label = Column(String, nullable=True)
    outcome_horizon = Column(String, nullable=True)
    price_change_pct = Column(Float, nullable=True)
    mfe_pct = Column(Float, nullable=True)
    mae_pct = Column(Float, nullable=True)
    outcome_reason = Column(Text, nullable=True)
    labeled_at_ms = Column(BigInteger, nullable=True)


class ReplayBatchRecord(Base):
    __tablename__ = "replay_batches"
    batch_id = Column(String, primary_key=True)
    symbol = Column(String, nullable=False)
    status = Column(String, nullable=False, index=True)
    created_at_ms = Column(BigInteger, nullable=False)
    updated_at_ms = Column(BigInteger, nullable=False)
    descriptor = Column(JSON, nullable=False)


class ScoreboardBaseline(Base):
    __tablename__ = "scoreboard_baselines"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False, index=True)
    created_at_ms = Column(BigInteger, nullable=False)
    filters = Column(JSON, nullable=True)
    metrics = Column(JSON, nullable=False)


def _as_dict(obj, model) -> Dict[str, Any]:
    return {c.name: getattr(obj, c.name) for c in model.__table__.columns}


def get_engine_and_session(dsn=None):
    dsn = dsn or DEFAULT_DSN
    engine = create_async_engine(dsn, echo=False, future=True)
    async_session = sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    return engine, async_session


async def create_engine_and_sessionmaker(dsn=None):
    return get_engine_and_session(dsn)


async def init_models(engine):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# ============================================================================
# HISTORICAL CANDLES
# ============================================================================


async def upsert_candles(sessionmaker, venue: str, symbol: str, timeframe: str, rows: Iterable[MarketRow]) -> int:
    """Insert rows or overwrite the stored row with the same open time.

    Returns:
        Number of rows written.
    """
    rows = list(rows)
    if not rows:
        return 0
    times = [r.time_ms for r in rows]
    async with sessionmaker() as session:
        result = await session.execute(
            select(HistoricalCandle).where(
                HistoricalCandle.venue == venue,
                HistoricalCandle.symbol == symbol,
                HistoricalCandle.timeframe == timeframe,
                HistoricalCandle.open_time_ms.in_(times),
            )
        )
        existing = {c.open_time_ms: c for c in result.scalars().all()}
        for row in rows:
            record = existing.get(row.time_ms)
            if record is None:
                record = HistoricalCandle(venue=venue, symbol=symbol, timeframe=timeframe, open_time_ms=row.time_ms)
                session.add(record)
                existing[row.time_ms] = record
            record.open = row.open
            record.high = row.high
            record.low = row.low
            record.close = row.close
            record.volume = row.volume
            record.open_interest = row.open_interest
            record.funding_rate = row.funding_rate
            record.taker_buy_volume = row.taker_buy_volume
            record.taker_sell_volume = row.taker_sell_volume
        await session.commit()
    return len(rows)


async def get_candles_until(
    sessionmaker, venue: str, symbol: str, timeframe: str, end_ms: int, limit: int
) -> List[Dict[str, Any]]:
    """The ``limit`` most recent rows with open time <= ``end_ms``, ascending."""
    async with sessionmaker() as session:
        result = await session.execute(
            select(HistoricalCandle)
            .where(
                HistoricalCandle.venue == venue,
                HistoricalCandle.symbol == symbol,
                HistoricalCandle.timeframe == timeframe,
                HistoricalCandle.open_time_ms <= end_ms,
            )
            .order_by(HistoricalCandle.open_time_ms.desc())
            .limit(limit)
        )
        rows = [_as_dict(c, HistoricalCandle) for c in result.scalars().all()]
    rows.reverse()
    return rows


async def get_candles_after(
    sessionmaker,
    venue: str,
    symbol: str,
    timeframe: str,
    after_ms: int,
    limit: int,
    until_ms: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """The first ``limit`` rows with open time in ``(after_ms, until_ms]``, ascending."""
    conditions = [
        HistoricalCandle.venue == venue,
        HistoricalCandle.symbol == symbol,
        HistoricalCandle.timeframe == timeframe,
        HistoricalCandle.open_time_ms > after_ms,
    ]
    if until_ms is not None:
        conditions.append(HistoricalCandle.open_time_ms <= until_ms)
    async with sessionmaker() as session:
        result = await session.execute(
            select(HistoricalCandle)
            .where(*conditions)
            .order_by(HistoricalCandle.open_time_ms.asc())
            .limit(limit)
        )
        return [_as_dict(c, HistoricalCandle) for c in result.scalars().all()]


async def get_data_coverage(sessionmaker, symbol: str) -> List[Dict[str, Any]]:
    async with sessionmaker() as session:
        result = await session.execute(
            select(
                HistoricalCandle.venue,
                HistoricalCandle.timeframe,
                func.count(HistoricalCandle.id),
                func.min(HistoricalCandle.open_time_ms),
                func.max(HistoricalCandle.open_time_ms),
            )
            .where(HistoricalCandle.symbol == symbol)
            .group_by(HistoricalCandle.venue, HistoricalCandle.timeframe)
            .order_by(HistoricalCandle.venue, HistoricalCandle.timeframe)
        )
        return [
            {"venue": venue, "timeframe": tf, "count": count, "first_ms": first, "last_ms": last}
            for venue, tf, count, first, last in result.all()
        ]


async def get_latest_candle_time(sessionmaker, symbol: str) -> Optional[int]:
    async with sessionmaker() as session:
        result = await session.execute(
            select(func.max(HistoricalCandle.open_time_ms)).where(HistoricalCandle.symbol == symbol)
        )
        return result.scalar_one_or_none()


# ============================================================================
# REPLAY STATES
# ============================================================================


async def find_replay_state_id(sessionmaker, batch_id: str, as_of_ms: int, symbol: str) -> Optional[int]:
    async with sessionmaker() as session:
        result = await session.execute(
            select(ReplayState.id).where(
                ReplayState.batch_id == batch_id,
                ReplayState.as_of_ms == as_of_ms,
                ReplayState.symbol == symbol,
            )
        )
        return result.scalar_one_or_none()


async def insert_replay_state(sessionmaker, **fields) -> int:
    """
    Persist a replayed decision.

    A concurrent insert of the same (batch_id, as_of_ms, symbol) key loses
    the unique-constraint race; the existing row id is returned instead of
    creating a duplicate.

    Raises:
        PersistenceError: If the store rejects the write for any other reason.
    """
    try:
        async with sessionmaker() as session:
            state = ReplayState(**fields)
            session.add(state)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await find_replay_state_id(
                    sessionmaker, fields["batch_id"], fields["as_of_ms"], fields["symbol"]
                )
                if existing is None:
                    raise
                logger.info(
                    "replay state %s/%s/%s already stored as %s",
                    fields["batch_id"], fields["as_of_ms"], fields["symbol"], existing,
                )
                return existing
            await session.refresh(state)
            return state.id
    except SQLAlchemyError as e:
        raise PersistenceError(f"failed to store replay state: {e}") from e


async def get_replay_state(sessionmaker, state_id: int) -> Optional[Dict[str, Any]]:
    async with sessionmaker() as session:
        result = await session.execute(select(ReplayState).where(ReplayState.id == state_id))
        state = result.scalar_one_or_none()
        return _as_dict(state, ReplayState) if state else None


def _state_filters(batch_id=None, symbol=None, from_ms=None, to_ms=None):
    clauses = []
    if batch_id:
        clauses.append(ReplayState.batch_id == batch_id)
    if symbol:
        clauses.append(ReplayState.symbol == symbol)
    if from_ms is not None:
        clauses.append(ReplayState.as_of_ms >= from_ms)
    if to_ms is not None:
        clauses.append(ReplayState.as_of_ms <= to_ms)
    return clauses


async def list_replay_states(
    sessionmaker,
    batch_id: Optional[str] = None,
    symbol: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[Dict[str, Any]]:
    async with sessionmaker() as session:
        result = await session.execute(
            select(ReplayState)
            .where(*_state_filters(batch_id, symbol))
            .order_by(ReplayState.as_of_ms.asc(), ReplayState.id.asc())
            .offset(offset)
            .limit(limit)
        )
        return [_as_dict(s, ReplayState) for s in result.scalars().all()]


async def get_unlabeled_states(
    sessionmaker,
    matured_before_ms: int,
    symbol: Optional[str] = None,
    batch_id: Optional[str] = None,
    limit: int = 100,
) -> List[Dict[str, Any]]:
    """Oldest unlabeled states whose decision instant is at or before ``matured_before_ms``."""
    async with sessionmaker() as session:
        result = await session.execute(
            select(ReplayState)
            .where(
                ReplayState.outcome_label.is_(None),
                ReplayState.as_of_ms <= matured_before_ms,
                *_state_filters(batch_id, symbol),
            )
            .order_by(ReplayState.as_of_ms.asc())
            .limit(limit)
        )
        return [_as_dict(s, ReplayState) for s in result.scalars().all()]


async def record_outcome(
    sessionmaker,
    state_id: int,
    outcome_label: OutcomeLabel,
    outcome_horizon: str,
    price_change_pct: float,
    mfe_pct: Optional[float],
    mae_pct: Optional[float],
    outcome_reason: str,
    labeled_at_ms: int,
) -> bool:
    """
    Write an outcome onto a state that has none yet.

    Returns:
        True if the row was updated, False if it was already labeled.
    """
    async with sessionmaker() as session:
        result = await session.execute(
            update(ReplayState)
            .where(and_(ReplayState.id == state_id, ReplayState.outcome_label.is_(None)))
            .values(
                outcome_label=OutcomeLabel(outcome_label).value,
                outcome_horizon=outcome_horizon,
                price_change_pct=price_change_pct,
                mfe_pct=mfe_pct,
                mae_pct=mae_pct,
                outcome_reason=outcome_reason,
                labeled_at_ms=labeled_at_ms,
            )
        )
        await session.commit()
        return result.rowcount == 1


async def get_labeled_states(
    sessionmaker,
    batch_id: Optional[str] = None,
    symbol: Optional[str] = None,
    from_ms: Optional[int] = None,
    to_ms: Optional[int] = None,
) -> List[Dict[str, Any]]:
    async with sessionmaker() as session:
        result = await session.execute(
            select(ReplayState)
            .where(ReplayState.outcome_label.is_not(None), *_state_filters(batch_id, symbol, from_ms, to_ms))
            .order_by(ReplayState.as_of_ms.asc())
        )
        return [_as_dict(s, ReplayState) for s in result.scalars().all()]


async def get_labeling_counts(
    sessionmaker,
    batch_id: Optional[str] = None,
    symbol: Optional[str] = None,
    from_ms: Optional[int] = None,
    to_ms: Optional[int] = None,
) -> Dict[str, Any]:
    """Totals and per-label counts for the matching states."""
    async with sessionmaker() as session:
        result = await session.execute(
            select(ReplayState.outcome_label, func.count(ReplayState.id))
            .where(*_state_filters(batch_id, symbol, from_ms, to_ms))
            .group_by(ReplayState.outcome_label)
        )
        counts = {label: n for label, n in result.all()}
    pending = counts.pop(None, 0)
    labeled = sum(counts.values())
    return {"total": labeled + pending, "labeled": labeled, "pending": pending, "breakdown": counts}


# ============================================================================
# BATCH DESCRIPTORS
# ============================================================================


async def upsert_batch(sessionmaker, batch_id: str, symbol: str, status: str, descriptor: Dict[str, Any], now_ms: int) -> None:
    async with sessionmaker() as session:
        record = await session.get(ReplayBatchRecord, batch_id)
        if record is None:
            record = ReplayBatchRecord(batch_id=batch_id, created_at_ms=now_ms)
            session.add(record)
        record.symbol = symbol
        record.status = status
        record.updated_at_ms = now_ms
        record.descriptor = descriptor
        await session.commit()


async def get_batch(sessionmaker, batch_id: str) -> Optional[Dict[str, Any]]:
    async with sessionmaker() as session:
        record = await session.get(ReplayBatchRecord, batch_id)
        return _as_dict(record, ReplayBatchRecord) if record else None


async def list_batches(sessionmaker, status: Optional[str] = None) -> List[Dict[str, Any]]:
    async with sessionmaker() as session:
        query = select(ReplayBatchRecord)
        if status:
            query = query.where(ReplayBatchRecord.status == status)
        result = await session.execute(query.order_by(ReplayBatchRecord.created_at_ms.desc()))
        return [_as_dict(r, ReplayBatchRecord) for r in result.scalars().all()]


# ============================================================================
# SCOREBOARD BASELINES
# ============================================================================


async def insert_baseline(sessionmaker, name: str, filters: Dict[str, Any], metrics: Dict[str, Any], now_ms: int) -> Dict[str, Any]:
    async with sessionmaker() as session:
        baseline = ScoreboardBaseline(name=name, filters=filters, metrics=metrics, created_at_ms=now_ms)
        session.add(baseline)
        await session.commit()
        await session.refresh(baseline)
        return _as_dict(baseline, ScoreboardBaseline)


async def get_baseline(sessionmaker, baseline_id: int) -> Optional[Dict[str, Any]]:
    async with sessionmaker() as session:
        baseline = await session.get(ScoreboardBaseline, baseline_id)
        return _as_dict(baseline, ScoreboardBaseline) if baseline else None


async def list_baselines(sessionmaker) -> List[Dict[str, Any]]:
    async with sessionmaker() as session:
        result = await session.execute(select(ScoreboardBaseline).order_by(ScoreboardBaseline.created_at_ms.desc()))
        return [_as_dict(b, ScoreboardBaseline) for b in result.scalars().all()]


async def delete_baseline(sessionmaker, baseline_id: int) -> bool:
    async with sessionmaker() as session:
        result = await session.execute(delete(ScoreboardBaseline).where(ScoreboardBaseline.id == baseline_id))
        await session.commit()
        return result.rowcount == 1
