import os
import unittest
from datetime import date
from typing import Optional

from sqlalchemy import Boolean, Date, Float, ForeignKey, Integer, String, Text, create_engine, delete
from sqlalchemy.orm import Mapped, mapped_column, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure settings can be initialized in test environments
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")

from crudkit.core.context import CallerContext
from crudkit.db.session import Base, enable_sqlite_savepoints
from crudkit.models.common import IntIdMixin, SoftDeleteMixin, TimestampMixin
from crudkit.services.policy import FieldAuthorizationPolicy, tenant_scope


class Team(IntIdMixin, Base):
    __tablename__ = "test_teams"

    name: Mapped[str] = mapped_column(String(80))


class Ticket(IntIdMixin, TimestampMixin, SoftDeleteMixin, Base):
    __tablename__ = "test_tickets"

    tenant_id: Mapped[int] = mapped_column(Integer, index=True)
    title: Mapped[str] = mapped_column(String(200))
    status: Mapped[str] = mapped_column(String(20), default="open")
    priority: Mapped[int] = mapped_column(Integer, default=0)
    score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    is_urgent: Mapped[bool] = mapped_column(Boolean, default=False)
    due_on: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    team_id: Mapped[Optional[int]] = mapped_column(ForeignKey("test_teams.id"), nullable=True)

    team: Mapped[Optional[Team]] = relationship()


class Tag(Base):
    __tablename__ = "test_tags"

    code: Mapped[str] = mapped_column(String(40), primary_key=True)
    label: Mapped[str] = mapped_column(String(80))


TICKET_POLICY = FieldAuthorizationPolicy(
    filterable_fields={
        "id": {"eq", "in", "nin"},
        "status": {"eq", "ne", "in", "nin"},
        "priority": {"eq", "lt", "lte", "gt", "gte", "between"},
        "title": {"contains", "icontains", "startswith", "endswith"},
        "score": {"isnull", "gte"},
        "is_urgent": {"eq"},
        "due_on": {"eq", "between"},
        "created_at": {"eq", "ne", "gte"},
    },
    sortable_fields={"id", "title", "priority", "created_at"},
    searchable_fields=("title", "notes"),
    default_eager_loads=("team",),
    mandatory_scopes=(tenant_scope(Ticket.tenant_id),),
)

TAG_POLICY = FieldAuthorizationPolicy(
    filterable_fields={"code": {"eq", "in"}, "label": {"icontains"}},
    sortable_fields={"code", "label"},
    searchable_fields=("label",),
)


def caller(tenant_id=1, subject="user-1", **kwargs) -> CallerContext:
    return CallerContext(subject=subject, tenant_id=tenant_id, **kwargs)


class DatabaseTestCase(unittest.TestCase):
    savepoints = False

    @classmethod
    def setUpClass(cls):
        cls.engine = create_engine(
            "sqlite+pysqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        if cls.savepoints:
            # Every session shares the one connection, so tests on this
            # engine must not overlap two open transactions.
            enable_sqlite_savepoints(cls.engine)
        cls.SessionLocal = sessionmaker(bind=cls.engine, autocommit=False, autoflush=False)
        Team.__table__.create(bind=cls.engine)
        Ticket.__table__.create(bind=cls.engine)
        Tag.__table__.create(bind=cls.engine)

    @classmethod
    def tearDownClass(cls):
        Tag.__table__.drop(bind=cls.engine)
        Ticket.__table__.drop(bind=cls.engine)
        Team.__table__.drop(bind=cls.engine)
        cls.engine.dispose()

    def setUp(self):
        with self.SessionLocal() as db:
            db.execute(delete(Ticket))
            db.execute(delete(Team))
            db.execute(delete(Tag))
            db.commit()
        self.db = self.SessionLocal()

    def tearDown(self):
        self.db.close()

    def _seed_ticket(self, **values) -> int:
        values.setdefault("tenant_id", 1)
        values.setdefault("title", "Ticket")
        with self.SessionLocal() as db:
            row = Ticket(**values)
            db.add(row)
            db.commit()
            return row.id

    def _seed_tag(self, code: str, label: str) -> None:
        with self.SessionLocal() as db:
            db.add(Tag(code=code, label=label))
            db.commit()
