"""Coach repository: SQLAlchemy implementation of the coach gateway."""

import logging
from datetime import datetime
from typing import Awaitable, Callable, TypeVar

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.models.coach import (
    AdviceRecord,
    CoachSession,
    EvaluationRecord,
    EvaluationStatus,
    RuleSet,
    SessionState,
    Snapshot,
    SnapshotSource,
    TagDefinition,
    TagSeverity,
    next_rule_set_version,
)
from core.rules.gateway_protocol import CoachTransaction
from app.storage.database import (
    AdviceTable,
    Database,
    EvaluationTable,
    RuleSetTable,
    SessionTable,
    SnapshotTable,
    TagDefinitionTable,
    get_database,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _SessionTransaction:
    """CoachTransaction bound to one open AsyncSession."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def create_evaluation(self, record: EvaluationRecord) -> EvaluationRecord:
        self._session.add(
            EvaluationTable(
                id=record.id,
                session_id=record.session_id,
                snapshot_id=record.snapshot_id,
                tag_id=record.tag_id,
                status=record.status.value,
                score=record.score,
                context=record.context,
                job_id=record.job_id,
                created_at=record.created_at,
            )
        )
        await self._session.flush()
        return record

    async def create_advice(self, record: AdviceRecord) -> AdviceRecord:
        self._session.add(
            AdviceTable(
                id=record.id,
                evaluation_id=record.evaluation_id,
                session_state=record.session_state.value,
                headline=record.headline,
                body=record.body,
                created_at=record.created_at,
            )
        )
        await self._session.flush()
        return record

    async def update_session(
        self,
        session_id: str,
        state: SessionState,
        last_evaluated_at: datetime,
    ) -> None:
        stmt = (
            update(SessionTable)
            .where(SessionTable.id == session_id)
            .values(state=state.value, last_evaluated_at=last_evaluated_at)
        )
        await self._session.execute(stmt)


class CoachRepository:
    """Repository for coach rule sets, sessions, snapshots and evaluations."""

    def __init__(self, db: Database | None = None):
        self._db = db

    @property
    def db(self) -> Database:
        if self._db is None:
            self._db = get_database()
        return self._db

    # ------------------------------------------------------------------
    # Reads used by the evaluation job
    # ------------------------------------------------------------------

    async def load_session_with_rule_set_and_tags(
        self, session_id: str
    ) -> CoachSession | None:
        """Load a session with its rule set and ordered tag definitions."""
        async with self.db.session() as session:
            row = await session.get(SessionTable, session_id)
            if row is None:
                return None

            rule_set = None
            if row.rule_set_id is not None:
                rule_set_row = await session.get(RuleSetTable, row.rule_set_id)
                if rule_set_row is not None:
                    stmt = (
                        select(TagDefinitionTable)
                        .where(TagDefinitionTable.rule_set_id == rule_set_row.id)
                        .order_by(TagDefinitionTable.position, TagDefinitionTable.tag_key)
                    )
                    result = await session.execute(stmt)
                    tags = [self._row_to_tag(t) for t in result.scalars().all()]
                    rule_set = self._row_to_rule_set(rule_set_row, tags)

            return self._row_to_session(row, rule_set)

    async def load_snapshot(self, snapshot_id: str) -> Snapshot | None:
        async with self.db.session() as session:
            row = await session.get(SnapshotTable, snapshot_id)
            if row is None:
                return None
            return self._row_to_snapshot(row)

    async def load_latest_snapshot(self, session_id: str) -> Snapshot | None:
        """Most recently captured snapshot for a session."""
        async with self.db.session() as session:
            stmt = (
                select(SnapshotTable)
                .where(SnapshotTable.session_id == session_id)
                .order_by(SnapshotTable.captured_at.desc())
                .limit(1)
            )
            result = await session.execute(stmt)
            row = result.scalar_one_or_none()
            if row is None:
                return None
            return self._row_to_snapshot(row)

    async def has_evaluations_for_job(self, job_id: str) -> bool:
        async with self.db.session() as session:
            stmt = (
                select(func.count())
                .select_from(EvaluationTable)
                .where(EvaluationTable.job_id == job_id)
            )
            result = await session.execute(stmt)
            return (result.scalar() or 0) > 0

    async def run_in_transaction(
        self, fn: Callable[[CoachTransaction], Awaitable[T]]
    ) -> T:
        """Run `fn` inside one database session.

        Database.session() commits when `fn` returns and rolls back if it
        raises, so either every write lands or none does.
        """
        async with self.db.session() as session:
            return await fn(_SessionTransaction(session))

    async def list_evaluations(
        self,
        session_id: str,
        limit: int = 50,
        after: str | None = None,
    ) -> list[EvaluationRecord]:
        """Evaluations for a session, newest first.

        `after` is the ID of the last evaluation of the previous page.
        An unknown cursor yields an empty page.
        """
        async with self.db.session() as session:
            stmt = select(EvaluationTable).where(EvaluationTable.session_id == session_id)

            if after is not None:
                cursor = await session.get(EvaluationTable, after)
                if cursor is None or cursor.session_id != session_id:
                    return []
                stmt = stmt.where(
                    or_(
                        EvaluationTable.created_at < cursor.created_at,
                        and_(
                            EvaluationTable.created_at == cursor.created_at,
                            EvaluationTable.id < cursor.id,
                        ),
                    )
                )

            stmt = stmt.order_by(
                EvaluationTable.created_at.desc(), EvaluationTable.id.desc()
            ).limit(limit)

            result = await session.execute(stmt)
            return [self._row_to_evaluation(row) for row in result.scalars().all()]

    # ------------------------------------------------------------------
    # Writes used by rule authoring and snapshot ingestion
    # ------------------------------------------------------------------

    async def create_rule_set(self, rule_set: RuleSet) -> RuleSet:
        """Insert a rule set and its tags as the next version for owner+name."""
        async with self.db.session() as session:
            stmt = select(func.max(RuleSetTable.version)).where(
                RuleSetTable.name == rule_set.name
            )
            if rule_set.owner_id is None:
                stmt = stmt.where(RuleSetTable.owner_id.is_(None))
            else:
                stmt = stmt.where(RuleSetTable.owner_id == rule_set.owner_id)
            latest = (await session.execute(stmt)).scalar()

            created = rule_set.model_copy(update={"version": next_rule_set_version(latest)})
            session.add(
                RuleSetTable(
                    id=created.id,
                    owner_id=created.owner_id,
                    name=created.name,
                    version=created.version,
                    summary=created.summary,
                    thresholds=created.thresholds,
                )
            )
            await session.flush()

            tags = []
            for position, tag in enumerate(created.tags):
                tag = tag.model_copy(update={"rule_set_id": created.id})
                session.add(
                    TagDefinitionTable(
                        id=tag.id,
                        rule_set_id=created.id,
                        tag_key=tag.tag_key,
                        name=tag.name,
                        severity=tag.severity.value,
                        category=tag.category,
                        description=tag.description,
                        rule=tag.rule,
                        position=position,
                    )
                )
                tags.append(tag)

            logger.info(
                f"Created rule set {created.name} v{created.version} with {len(tags)} tags"
            )
            return created.model_copy(update={"tags": tags})

    async def create_session(self, coach_session: CoachSession) -> CoachSession:
        async with self.db.session() as session:
            session.add(
                SessionTable(
                    id=coach_session.id,
                    rule_set_id=coach_session.rule_set_id,
                    symbol=coach_session.symbol,
                    timeframe_minutes=coach_session.timeframe_minutes,
                    state=coach_session.state.value,
                    started_at=coach_session.started_at,
                    last_evaluated_at=coach_session.last_evaluated_at,
                )
            )
        return coach_session

    async def save_snapshot(self, snapshot: Snapshot) -> Snapshot:
        async with self.db.session() as session:
            session.add(
                SnapshotTable(
                    id=snapshot.id,
                    session_id=snapshot.session_id,
                    source=snapshot.source.value,
                    captured_at=snapshot.captured_at,
                    features=snapshot.features,
                    payload=snapshot.payload,
                )
            )
        return snapshot

    # ------------------------------------------------------------------
    # Row converters
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_tag(row: TagDefinitionTable) -> TagDefinition:
        return TagDefinition(
            id=row.id,
            rule_set_id=row.rule_set_id,
            tag_key=row.tag_key,
            name=row.name,
            severity=TagSeverity(row.severity),
            category=row.category,
            description=row.description,
            rule=row.rule,
        )

    @staticmethod
    def _row_to_rule_set(row: RuleSetTable, tags: list[TagDefinition]) -> RuleSet:
        return RuleSet(
            id=row.id,
            owner_id=row.owner_id,
            name=row.name,
            version=row.version,
            summary=row.summary,
            thresholds=row.thresholds,
            tags=tags,
        )

    @staticmethod
    def _row_to_session(row: SessionTable, rule_set: RuleSet | None) -> CoachSession:
        return CoachSession(
            id=row.id,
            rule_set_id=row.rule_set_id,
            symbol=row.symbol,
            timeframe_minutes=row.timeframe_minutes,
            state=SessionState(row.state),
            started_at=row.started_at,
            last_evaluated_at=row.last_evaluated_at,
            rule_set=rule_set,
        )

    @staticmethod
    def _row_to_snapshot(row: SnapshotTable) -> Snapshot:
        return Snapshot(
            id=row.id,
            session_id=row.session_id,
            source=SnapshotSource(row.source),
            captured_at=row.captured_at,
            features=row.features,
            payload=row.payload,
        )

    @staticmethod
    def _row_to_evaluation(row: EvaluationTable) -> EvaluationRecord:
        return EvaluationRecord(
            id=row.id,
            session_id=row.session_id,
            snapshot_id=row.snapshot_id,
            tag_id=row.tag_id,
            status=EvaluationStatus(row.status),
            score=row.score,
            context=row.context or {},
            job_id=row.job_id,
            created_at=row.created_at,
        )
