"""SQLAlchemy-backed storage for heartbeats, sessions and daily summaries."""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from sqlalchemy import create_engine, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import DisconnectionError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import sessionmaker

from .errors import PersistentStorageError, TransientStorageError
from .model import CodepulseBase, CodingSessionRow, DailySummary, HeartbeatRow, Project
from .records import Heartbeat

log = logging.getLogger('codepulse')

_CLAIM_BATCH = 500

_HEARTBEAT_FIELDS = (
    'user_id', 'project_id', 'entity', 'type', 'category', 'language', 'branch',
    'is_write', 'lines', 'line_additions', 'line_deletions', 'time',
    'machine_name', 'dependencies',
)


def epoch_to_utc(seconds):
    """Epoch seconds -> naive UTC datetime (the storage convention)."""
    return datetime.fromtimestamp(seconds, timezone.utc).replace(tzinfo=None)


def _translate(error):
    if isinstance(error, (OperationalError, DisconnectionError, PoolTimeoutError)):
        return TransientStorageError(f"storage temporarily unavailable: {error}")
    return PersistentStorageError(f"storage failure: {error}")


class HeartbeatStore:
    """Storage collaborator of the ingestion pipeline.

    Usage:
        store = HeartbeatStore('sqlite:////data/codepulse.sqlite')
        store.insert_heartbeats(heartbeats)
        pending = store.pending_heartbeats(user_id, start, end)
        with store.transaction() as db:
            store.claim_heartbeats(db, ids)
            store.add_session(db, session)
            store.increment_daily_summary(db, user_id, day, seconds)

    Every SQLAlchemy error leaves this class as a StorageError subclass.
    """

    SUPPORTED_DIALECTS = ('sqlite', 'postgresql')

    def __init__(self, db_url, engine=None):
        self.db_url = db_url
        self._engine = engine
        self._session_factory = None
        self._init_lock = threading.Lock()

    def _get_engine(self):
        if self._session_factory is None:
            with self._init_lock:
                if self._session_factory is None:
                    self._initialize()
        return self._engine

    def _initialize(self):
        if self._engine is None:
            connect_args = {}
            if self.db_url.startswith('sqlite'):
                connect_args = {'check_same_thread': False, 'timeout': 30}
            self._engine = create_engine(self.db_url, connect_args=connect_args)
        dialect = self._engine.dialect.name
        if dialect not in self.SUPPORTED_DIALECTS:
            raise PersistentStorageError(f"unsupported database dialect: {dialect}")
        try:
            CodepulseBase.metadata.create_all(self._engine)
        except SQLAlchemyError as e:
            log.error(f"[HeartbeatStore] Database init failed: {e}")
            raise _translate(e) from e
        self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)
        log.info(f"[HeartbeatStore] Database initialized: {self._engine.url.render_as_string(hide_password=True)}")

    def _insert(self, model):
        if self._get_engine().dialect.name == 'postgresql':
            return pg_insert(model)
        return sqlite_insert(model)

    @contextmanager
    def transaction(self):
        """Session scope: commit on success, roll back and translate on error."""
        self._get_engine()
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise _translate(e) from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # -- raw heartbeats ----------------------------------------------------

    def ensure_projects(self, db, user_id, branches_by_name):
        """Upsert the user's projects by name. Returns {name: project_id}."""
        if not branches_by_name:
            return {}
        now = datetime.now(timezone.utc).replace(tzinfo=None)
        for name, branch in branches_by_name.items():
            stmt = self._insert(Project.__table__).values(
                user_id=user_id, name=name, branch=branch, created_at=now, updated_at=now)
            stmt = stmt.on_conflict_do_update(
                index_elements=['user_id', 'name'],
                set_={'branch': func.coalesce(stmt.excluded.branch, Project.__table__.c.branch), 'updated_at': now},
            )
            db.execute(stmt)
        rows = db.execute(
            select(Project.name, Project.id).where(
                Project.user_id == user_id, Project.name.in_(list(branches_by_name)))
        ).all()
        return {name: project_id for name, project_id in rows}

    def insert_heartbeats(self, heartbeats):
        """Bulk insert stamped heartbeats, skipping (user, entity, time) duplicates.

        Project names are upserted first so every row carries its project_id.
        Returns the heartbeats as stored (with project_id filled in).
        """
        if not heartbeats:
            return []

        with self.transaction() as db:
            project_ids = {}
            for user_id in {hb.user_id for hb in heartbeats}:
                branches = {}
                for hb in heartbeats:
                    if hb.user_id == user_id and hb.project:
                        branches[hb.project] = hb.branch or branches.get(hb.project)
                for name, project_id in self.ensure_projects(db, user_id, branches).items():
                    project_ids[(user_id, name)] = project_id

            stored = [
                hb.with_project_id(project_ids.get((hb.user_id, hb.project))) if hb.project else hb
                for hb in heartbeats
            ]
            now = datetime.now(timezone.utc).replace(tzinfo=None)
            values = []
            for hb in stored:
                row = {name: getattr(hb, name) for name in _HEARTBEAT_FIELDS}
                row['consumed'] = False
                row['created_at'] = now
                values.append(row)

            stmt = self._insert(HeartbeatRow.__table__).on_conflict_do_nothing(
                index_elements=['user_id', 'entity', 'time'])
            db.execute(stmt, values)

        return stored

    def pending_heartbeats(self, user_id=None, start=None, end=None, received_before=None, limit=None):
        """Unconsumed heartbeats as (row_id, Heartbeat) pairs ordered by time."""
        with self.transaction() as db:
            query = select(HeartbeatRow, Project.name).outerjoin(
                Project, HeartbeatRow.project_id == Project.id
            ).where(HeartbeatRow.consumed.is_(False))
            if user_id is not None:
                query = query.where(HeartbeatRow.user_id == user_id)
            if start is not None:
                query = query.where(HeartbeatRow.time >= start)
            if end is not None:
                query = query.where(HeartbeatRow.time <= end)
            if received_before is not None:
                query = query.where(HeartbeatRow.created_at < received_before)
            query = query.order_by(HeartbeatRow.user_id, HeartbeatRow.time)
            if limit is not None:
                query = query.limit(limit)
            return [(row.id, self._to_record(row, project)) for row, project in db.execute(query).all()]

    def pending_user_ids(self):
        with self.transaction() as db:
            query = select(HeartbeatRow.user_id).where(HeartbeatRow.consumed.is_(False)).distinct()
            return [user_id for (user_id,) in db.execute(query).all()]

    @staticmethod
    def _to_record(row, project_name=None):
        fields = {name: getattr(row, name) for name in _HEARTBEAT_FIELDS}
        return Heartbeat(project=project_name, **fields)

    def claim_heartbeats(self, db, heartbeat_ids):
        """Mark heartbeats consumed. Returns how many were still unconsumed."""
        ids = list(heartbeat_ids)
        claimed = 0
        for i in range(0, len(ids), _CLAIM_BATCH):
            result = db.execute(
                update(HeartbeatRow)
                .where(HeartbeatRow.id.in_(ids[i:i + _CLAIM_BATCH]), HeartbeatRow.consumed.is_(False))
                .values(consumed=True)
            )
            claimed += result.rowcount
        return claimed

    def count_heartbeats(self, user_id=None, consumed=None):
        with self.transaction() as db:
            query = select(func.count(HeartbeatRow.id))
            if user_id is not None:
                query = query.where(HeartbeatRow.user_id == user_id)
            if consumed is not None:
                query = query.where(HeartbeatRow.consumed.is_(consumed))
            return db.execute(query).scalar() or 0

    def prune_consumed(self, retention_days):
        """Delete consumed heartbeats received before the retention window."""
        cutoff = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(days=retention_days)
        with self.transaction() as db:
            result = db.execute(
                HeartbeatRow.__table__.delete().where(
                    HeartbeatRow.consumed.is_(True), HeartbeatRow.created_at < cutoff)
            )
            count = result.rowcount
        if count > 0:
            log.info(f"[HeartbeatStore] Pruned {count} consumed heartbeats")
        return count

    # -- sessions and summaries -------------------------------------------

    def add_session(self, db, session):
        db.add(CodingSessionRow(
            user_id=session.user_id,
            project_id=session.project_id,
            start_time=epoch_to_utc(session.start_time),
            end_time=epoch_to_utc(session.end_time),
            duration=session.duration_seconds,
            branch=session.branch,
            languages=sorted(session.languages),
        ))

    def increment_daily_summary(self, db, user_id, summary_date, seconds):
        """Atomic insert-or-increment of one user's daily total."""
        now = datetime.now(timezone.utc).replace(tzinfo=None)
        stmt = self._insert(DailySummary.__table__).values(
            user_id=user_id,
            summary_date=summary_date,
            total_duration_seconds=seconds,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=['user_id', 'summary_date'],
            set_={
                'total_duration_seconds': DailySummary.__table__.c.total_duration_seconds + stmt.excluded.total_duration_seconds,
                'updated_at': stmt.excluded.updated_at,
            },
        )
        db.execute(stmt)

    def list_sessions(self, user_id):
        with self.transaction() as db:
            return db.execute(
                select(CodingSessionRow)
                .where(CodingSessionRow.user_id == user_id)
                .order_by(CodingSessionRow.start_time)
            ).scalars().all()

    def get_daily_total(self, user_id, summary_date):
        with self.transaction() as db:
            total = db.execute(
                select(DailySummary.total_duration_seconds).where(
                    DailySummary.user_id == user_id, DailySummary.summary_date == summary_date)
            ).scalar()
            return total or 0

    def get_status(self):
        """Row counts across the pipeline tables."""
        with self.transaction() as db:
            heartbeats = db.execute(select(func.count(HeartbeatRow.id))).scalar() or 0
            pending = db.execute(
                select(func.count(HeartbeatRow.id)).where(HeartbeatRow.consumed.is_(False))
            ).scalar() or 0
            sessions = db.execute(select(func.count(CodingSessionRow.id))).scalar() or 0
            users = db.execute(select(func.count(func.distinct(HeartbeatRow.user_id)))).scalar() or 0
        return {
            'heartbeats': heartbeats,
            'pending_heartbeats': pending,
            'sessions': sessions,
            'users': users,
        }

    def dispose(self):
        if self._engine is not None:
            self._engine.dispose()
