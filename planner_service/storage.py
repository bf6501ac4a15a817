import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.future import select
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import get_settings
from .errors import ErrorKind
from .models import AgentType, ContextRecord, NodeExecution, NodeStatus, PlanRun, RunStatus, new_id

Base = declarative_base()


class PlanRunRow(Base):
    __tablename__ = "plan_runs"
    id = Column(String, primary_key=True)
    plan_id = Column(String, index=True, nullable=False)
    graph_definition_version = Column(String, nullable=False)
    status = Column(String, nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    error_kind = Column(String, nullable=True)
    error = Column(Text, nullable=True)
    degraded = Column(JSON, nullable=True)
    failed = Column(JSON, nullable=True)
    parent_run_id = Column(String, nullable=True)


class NodeExecutionRow(Base):
    __tablename__ = "node_executions"
    id = Column(String, primary_key=True)
    run_id = Column(String, index=True, nullable=False)
    agent_type = Column(String, nullable=False)
    attempt = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False)
    input_snapshot = Column(JSON, nullable=True)
    output_snapshot = Column(JSON, nullable=True)
    tokens_in = Column(Integer, default=0)
    tokens_out = Column(Integer, default=0)
    cost_usd = Column(Float, default=0.0)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    error_kind = Column(String, nullable=True)
    error = Column(Text, nullable=True)
    degraded = Column(Boolean, default=False)
    skip_reason = Column(String, nullable=True)
    cache_hit = Column(Boolean, default=False)
    discarded = Column(Boolean, default=False)


class CacheEntryRow(Base):
    __tablename__ = "cache_entries"
    key = Column(String, primary_key=True)
    payload = Column(JSON, nullable=True)
    expires_at = Column(Float, nullable=False)
    ttl_class = Column(String, nullable=False)


class ContextFactRow(Base):
    """Structured side of the context store; the similarity index is derived from it."""
    __tablename__ = "context_facts"
    id = Column(String, primary_key=True)
    scope = Column(String, index=True, nullable=False)
    content_type = Column(String, nullable=False, default="note")
    payload = Column(JSON, nullable=False)
    source_run_id = Column(String, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    searchable = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=func.now())
    updated_at = Column(DateTime(timezone=True), default=func.now(), onupdate=func.now())


class ContextOutboxRow(Base):
    """Durable reconciliation record: one per searchable fact write."""
    __tablename__ = "context_outbox"
    id = Column(String, primary_key=True, default=new_id)
    fact_id = Column(String, index=True, nullable=False)
    fact_version = Column(Integer, nullable=False)
    scope = Column(String, nullable=False)
    embedding = Column(JSON, nullable=False)
    status = Column(String, nullable=False, default="pending")  # pending | done | dead
    attempts = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(Float, nullable=False, default=0.0)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=func.now())


class CostLedgerRow(Base):
    __tablename__ = "cost_ledger"
    __table_args__ = (UniqueConstraint("execution_id", name="uq_cost_ledger_execution"),)
    id = Column(String, primary_key=True, default=new_id)
    run_id = Column(String, index=True, nullable=False)
    execution_id = Column(String, nullable=False)
    agent_type = Column(String, nullable=False)
    tokens_in = Column(Integer, default=0)
    tokens_out = Column(Integer, default=0)
    cost_usd = Column(Float, default=0.0)
    created_at = Column(DateTime(timezone=True), default=func.now())


def _row_dict(row) -> Dict[str, Any]:
    return {c.name: getattr(row, c.name) for c in row.__table__.columns}


async def create_engine_and_sessionmaker(dsn=None):
    dsn = dsn or get_settings().DATABASE_URL
    engine = create_async_engine(dsn, echo=False, future=True)
    async_session = sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    return engine, async_session


async def init_models(engine):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# ============================================================================
# PLAN RUNS AND NODE EXECUTIONS
# ============================================================================

def _run_values(run: PlanRun) -> Dict[str, Any]:
    return dict(
        id=run.id,
        plan_id=run.plan_id,
        graph_definition_version=run.graph_definition_version,
        status=run.status.value,
        started_at=run.started_at,
        completed_at=run.completed_at,
        error_kind=run.error_kind.value if run.error_kind else None,
        error=run.error,
        degraded=list(run.degraded),
        failed=list(run.failed),
        parent_run_id=run.parent_run_id,
    )


async def save_plan_run(sessionmaker, run: PlanRun) -> str:
    async with sessionmaker() as session:
        await session.merge(PlanRunRow(**_run_values(run)))
        await session.commit()
        return run.id


async def get_plan_run(sessionmaker, run_id: str) -> Optional[PlanRun]:
    async with sessionmaker() as session:
        result = await session.execute(select(PlanRunRow).where(PlanRunRow.id == run_id))
        row = result.scalar_one_or_none()
        if not row:
            return None
        return PlanRun(
            id=row.id,
            plan_id=row.plan_id,
            graph_definition_version=row.graph_definition_version,
            status=RunStatus(row.status),
            started_at=row.started_at,
            completed_at=row.completed_at,
            error_kind=ErrorKind(row.error_kind) if row.error_kind else None,
            error=row.error,
            degraded=list(row.degraded or []),
            failed=list(row.failed or []),
            parent_run_id=row.parent_run_id,
        )


async def save_node_execution(sessionmaker, execution: NodeExecution) -> str:
    async with sessionmaker() as session:
        await session.merge(NodeExecutionRow(
            id=execution.id,
            run_id=execution.run_id,
            agent_type=execution.agent_type.value,
            attempt=execution.attempt,
            status=execution.status.value,
            input_snapshot=execution.input_snapshot,
            output_snapshot=execution.output_snapshot,
            tokens_in=execution.tokens_in,
            tokens_out=execution.tokens_out,
            cost_usd=execution.cost_usd,
            started_at=execution.started_at,
            completed_at=execution.completed_at,
            error_kind=execution.error_kind.value if execution.error_kind else None,
            error=execution.error,
            degraded=execution.degraded,
            skip_reason=execution.skip_reason,
            cache_hit=execution.cache_hit,
            discarded=execution.discarded,
        ))
        await session.commit()
        return execution.id


async def get_node_executions(sessionmaker, run_id: str) -> List[NodeExecution]:
    async with sessionmaker() as session:
        result = await session.execute(
            select(NodeExecutionRow).where(NodeExecutionRow.run_id == run_id).order_by(NodeExecutionRow.agent_type.asc())
        )
        out = []
        for row in result.scalars().all():
            out.append(NodeExecution(
                id=row.id,
                run_id=row.run_id,
                agent_type=AgentType(row.agent_type),
                attempt=row.attempt,
                status=NodeStatus(row.status),
                input_snapshot=row.input_snapshot or {},
                output_snapshot=row.output_snapshot,
                tokens_in=row.tokens_in or 0,
                tokens_out=row.tokens_out or 0,
                cost_usd=row.cost_usd or 0.0,
                started_at=row.started_at,
                completed_at=row.completed_at,
                error_kind=ErrorKind(row.error_kind) if row.error_kind else None,
                error=row.error,
                degraded=bool(row.degraded),
                skip_reason=row.skip_reason,
                cache_hit=bool(row.cache_hit),
                discarded=bool(row.discarded),
            ))
        return out


async def sum_node_execution_cost(sessionmaker, run_id: str) -> float:
    async with sessionmaker() as session:
        result = await session.execute(
            select(func.coalesce(func.sum(NodeExecutionRow.cost_usd), 0.0)).where(NodeExecutionRow.run_id == run_id)
        )
        return float(result.scalar_one())


# ============================================================================
# CACHE ENTRIES
# ============================================================================

async def get_cache_entry(sessionmaker, key: str) -> Optional[Dict[str, Any]]:
    async with sessionmaker() as session:
        result = await session.execute(select(CacheEntryRow).where(CacheEntryRow.key == key))
        row = result.scalar_one_or_none()
        return _row_dict(row) if row else None


async def put_cache_entry(sessionmaker, key: str, payload: Any, expires_at: float, ttl_class: str) -> None:
    async with sessionmaker() as session:
        await session.merge(CacheEntryRow(key=key, payload=payload, expires_at=expires_at, ttl_class=ttl_class))
        await session.commit()


async def delete_cache_entry(sessionmaker, key: str) -> None:
    async with sessionmaker() as session:
        row = await session.get(CacheEntryRow, key)
        if row is not None:
            await session.delete(row)
            await session.commit()


# ============================================================================
# CONTEXT FACTS AND OUTBOX
# ============================================================================

async def write_context_fact(
    sessionmaker,
    record: ContextRecord,
    *,
    searchable: bool = True,
) -> ContextRecord:
    """
    Insert or update a structured fact; for searchable facts append an outbox
    row in the same transaction so the similarity index catches up later.

    The returned record carries the stored version.
    """
    async with sessionmaker() as session:
        async with session.begin():
            row = await session.get(ContextFactRow, record.id)
            if row is None:
                row = ContextFactRow(
                    id=record.id,
                    scope=record.scope,
                    content_type=record.content_type,
                    payload=record.payload,
                    source_run_id=record.source_run_id,
                    version=1,
                    searchable=searchable,
                )
                session.add(row)
            else:
                row.scope = record.scope
                row.content_type = record.content_type
                row.payload = record.payload
                row.source_run_id = record.source_run_id
                row.searchable = searchable
                row.version = (row.version or 0) + 1
            record.version = row.version if row.version else 1
            if searchable:
                session.add(ContextOutboxRow(
                    id=new_id(),
                    fact_id=record.id,
                    fact_version=record.version,
                    scope=record.scope,
                    embedding=list(record.embedding),
                    status="pending",
                    attempts=0,
                    next_attempt_at=0.0,
                ))
    return record


def _fact_to_record(row: ContextFactRow) -> ContextRecord:
    return ContextRecord(
        id=row.id,
        scope=row.scope,
        content_type=row.content_type,
        payload=row.payload or {},
        source_run_id=row.source_run_id,
        version=row.version or 1,
    )


async def get_context_facts(sessionmaker, fact_ids: List[str]) -> Dict[str, ContextRecord]:
    if not fact_ids:
        return {}
    async with sessionmaker() as session:
        result = await session.execute(select(ContextFactRow).where(ContextFactRow.id.in_(fact_ids)))
        return {row.id: _fact_to_record(row) for row in result.scalars().all()}


async def find_context_facts(sessionmaker, scope: str, content_type: Optional[str] = None, limit: int = 50) -> List[ContextRecord]:
    async with sessionmaker() as session:
        query = select(ContextFactRow).where(ContextFactRow.scope == scope)
        if content_type:
            query = query.where(ContextFactRow.content_type == content_type)
        query = query.order_by(ContextFactRow.updated_at.desc()).limit(limit)
        result = await session.execute(query)
        return [_fact_to_record(row) for row in result.scalars().all()]


async def fetch_due_outbox(sessionmaker, now: float, limit: int = 50) -> List[Dict[str, Any]]:
    async with sessionmaker() as session:
        result = await session.execute(
            select(ContextOutboxRow)
            .where(ContextOutboxRow.status == "pending")
            .where(ContextOutboxRow.next_attempt_at <= now)
            .order_by(ContextOutboxRow.created_at.asc(), ContextOutboxRow.fact_version.asc())
            .limit(limit)
        )
        return [_row_dict(row) for row in result.scalars().all()]


async def mark_outbox_done(sessionmaker, outbox_id: str) -> None:
    async with sessionmaker() as session:
        row = await session.get(ContextOutboxRow, outbox_id)
        if row is not None:
            row.status = "done"
            row.error = None
            await session.commit()


async def reschedule_outbox(sessionmaker, outbox_id: str, attempts: int, next_attempt_at: float, error: str, dead: bool = False) -> None:
    async with sessionmaker() as session:
        row = await session.get(ContextOutboxRow, outbox_id)
        if row is not None:
            row.attempts = attempts
            row.next_attempt_at = next_attempt_at
            row.error = error
            if dead:
                row.status = "dead"
            await session.commit()


async def list_outbox(sessionmaker, status: Optional[str] = "pending", limit: int = 100) -> List[Dict[str, Any]]:
    async with sessionmaker() as session:
        query = select(ContextOutboxRow)
        if status:
            query = query.where(ContextOutboxRow.status == status)
        query = query.order_by(ContextOutboxRow.created_at.asc()).limit(limit)
        result = await session.execute(query)
        return [_row_dict(row) for row in result.scalars().all()]


async def count_outbox(sessionmaker, status: str = "pending") -> int:
    async with sessionmaker() as session:
        result = await session.execute(select(func.count(ContextOutboxRow.id)).where(ContextOutboxRow.status == status))
        return int(result.scalar_one())


# ============================================================================
# COST LEDGER
# ============================================================================

async def insert_ledger_entry(sessionmaker, *, run_id: str, execution_id: str, agent_type: str, tokens_in: int, tokens_out: int, cost_usd: float) -> str:
    async with sessionmaker() as session:
        row = CostLedgerRow(
            id=new_id(),
            run_id=run_id,
            execution_id=execution_id,
            agent_type=agent_type,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            cost_usd=cost_usd,
            created_at=datetime.datetime.now(datetime.timezone.utc),
        )
        session.add(row)
        await session.commit()
        return row.id


async def sum_ledger(sessionmaker, run_id: str) -> float:
    async with sessionmaker() as session:
        result = await session.execute(
            select(func.coalesce(func.sum(CostLedgerRow.cost_usd), 0.0)).where(CostLedgerRow.run_id == run_id)
        )
        return float(result.scalar_one())


async def sum_ledger_by_agent(sessionmaker, run_id: str) -> Dict[str, float]:
    async with sessionmaker() as session:
        result = await session.execute(
            select(CostLedgerRow.agent_type, func.sum(CostLedgerRow.cost_usd))
            .where(CostLedgerRow.run_id == run_id)
            .group_by(CostLedgerRow.agent_type)
        )
        return {agent: float(total or 0.0) for agent, total in result.all()}
