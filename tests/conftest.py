import uuid
from datetime import date, timedelta

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.db.base import Base
from app.core.directory.models import User, Project
from app.core.directory.service import Actor
from app.core.timesheets.models import Timesheet, TimeEntry  # noqa
from app.core.approvals.models import ApprovalRecord  # noqa
from app.core.adjustments.models import BillingAdjustment, BillingAdjustmentEvent  # noqa
from app.core.audit.models import AuditLog  # noqa

WEEK1 = date(2026, 2, 2)
WEEK2 = date(2026, 2, 9)


@pytest.fixture
async def engine():
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)

    # pysqlite does not emit BEGIN itself, which breaks SAVEPOINT
    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db(engine) -> AsyncSession:
    factory = async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)
    async with factory() as session:
        yield session
        await session.rollback()


async def _user(db: AsyncSession, name: str, role: str) -> Actor:
    user = User(
        id=uuid.uuid4(),
        email=f"{name}@example.com",
        full_name=name.capitalize(),
        role=role,
        status="active",
        is_deleted=False,
    )
    db.add(user)
    await db.flush()
    return Actor(user_id=user.id, full_name=user.full_name, role=user.role)


@pytest.fixture
async def employee(db) -> Actor:
    return await _user(db, "erin", "employee")


@pytest.fixture
async def lead(db) -> Actor:
    return await _user(db, "lee", "employee")


@pytest.fixture
async def manager(db) -> Actor:
    return await _user(db, "morgan", "manager")


@pytest.fixture
async def boss(db) -> Actor:
    return await _user(db, "blake", "management")


@pytest.fixture
async def admin(db) -> Actor:
    return await _user(db, "ada", "super_admin")


@pytest.fixture
def make_user(db):
    async def factory(name: str, role: str = "employee") -> Actor:
        return await _user(db, name, role)
    return factory


@pytest.fixture
def make_project(db, lead, manager):
    async def factory(
        name: str = "Apollo",
        lead_required: bool = False,
        manager_required: bool = True,
    ) -> Project:
        project = Project(
            id=uuid.uuid4(),
            name=name,
            lead_user_id=lead.user_id,
            manager_user_id=manager.user_id,
            lead_review_required=lead_required,
            manager_review_required=manager_required,
            is_deleted=False,
        )
        db.add(project)
        await db.flush()
        return project
    return factory


@pytest.fixture
async def project(make_project) -> Project:
    return await make_project()


@pytest.fixture
def fill_week(db):
    """Draft timesheet for week_start with hours_per_day on the first `days` days."""
    from app.core.timesheets.schemas import TimesheetCreate, TimeEntryCreate
    from app.core.timesheets.service import create_timesheet, add_entry

    async def factory(
        owner: Actor,
        project: Project,
        week_start: date = WEEK1,
        days: int = 4,
        hours_per_day: float = 8,
        billable: bool = True,
        sheet: Timesheet | None = None,
    ) -> Timesheet:
        if sheet is None:
            sheet = await create_timesheet(db, owner, TimesheetCreate(week_start=week_start))
        for offset in range(days):
            await add_entry(db, owner, sheet.id, TimeEntryCreate(
                project_id=project.id,
                work_date=week_start + timedelta(days=offset),
                hours=hours_per_day,
                is_billable=billable,
            ))
        return sheet
    return factory


@pytest.fixture
def approve_all(db, admin):
    """Drive every current record of a submitted timesheet through all of its required tiers."""
    from app.core.approvals.service import advance_approval, list_approval_records
    from app.core.approvals.models import PENDING

    async def factory(sheet: Timesheet, tiers=("lead", "manager", "management")) -> Timesheet:
        for tier in tiers:
            for record in await list_approval_records(db, sheet.id):
                if record.tier_status(tier) == PENDING:
                    await advance_approval(db, record.id, tier, "approve", admin)
        return sheet
    return factory


@pytest.fixture
def frozen_sheet(db, fill_week, approve_all, boss):
    """Fill, submit, approve on every tier and freeze."""
    from app.core.timesheets.service import submit_timesheet, freeze_if_eligible

    async def factory(owner: Actor, project: Project, **kwargs) -> Timesheet:
        sheet = await fill_week(owner, project, **kwargs)
        await submit_timesheet(db, sheet.id, owner)
        await approve_all(sheet)
        return await freeze_if_eligible(db, sheet.id, boss)
    return factory
