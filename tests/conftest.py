"""
Pytest configuration and fixtures for the AP three-way match core.
"""

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import ap_match.models  # noqa: F401  registers every table on Base.metadata
from ap_match.db.session import Base
from ap_match.models.invoice import Invoice, InvoiceLine
from ap_match.models.matching import (
    ExceptionPriority,
    GlobalMatchStatus,
    MatchException,
    MatchExceptionType,
    MatchResult,
)
from ap_match.models.rbac import Role, UserRole
from ap_match.models.reference import GoodsReceipt, GoodsReceiptLine, ReceiptStatus
from ap_match.services.exception_workflow_service import ExceptionWorkflowService
from ap_match.services.match_service import InvoiceLockManager, MatchService
from ap_match.services.role_directory import FirstCandidatePolicy

from tests.factories import COMPANY_ID, NOW, invoice_line


@pytest.fixture
async def async_engine():
    """Create an in-memory SQLite engine shared by one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Clean up
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
async def async_session(async_engine):
    """Create async session for testing."""
    session_factory = async_sessionmaker(
        async_engine, class_=AsyncSession, expire_on_commit=False
    )

    async with session_factory() as session:
        yield session


@pytest.fixture
def workflow(async_session):
    """Exception workflow with deterministic owner selection."""
    return ExceptionWorkflowService(async_session, selection_policy=FirstCandidatePolicy())


@pytest.fixture
def match_service(async_session, workflow):
    """Match service wired to the deterministic workflow and a private lock manager."""
    return MatchService(
        async_session,
        config_service=workflow.config_service,
        workflow=workflow,
        audit_service=workflow.audit_service,
        lock_manager=InvoiceLockManager(),
    )


@pytest.fixture
def make_invoice(async_session):
    """Persist an invoice with lines."""

    async def _make(lines, company_id=COMPANY_ID, validated=True, **fields) -> Invoice:
        invoice = Invoice(
            company_id=company_id,
            invoice_number=f"INV-{uuid.uuid4().hex[:8]}",
            validated=validated,
            **fields,
        )
        invoice.lines = [InvoiceLine(line_no=index, **line) for index, line in enumerate(lines, start=1)]
        async_session.add(invoice)
        await async_session.commit()
        return invoice

    return _make


@pytest.fixture
def make_receipt(async_session):
    """Persist a goods receipt linked to an invoice."""

    async def _make(invoice, lines, status=ReceiptStatus.CONFIRMED) -> GoodsReceipt:
        receipt = GoodsReceipt(
            company_id=invoice.company_id,
            grn_no=f"GRN-{uuid.uuid4().hex[:8]}",
            invoice_id=invoice.id,
            status=status,
            received_at=NOW,
        )
        receipt.lines = [GoodsReceiptLine(**line) for line in lines]
        async_session.add(receipt)
        await async_session.commit()
        return receipt

    return _make


@pytest.fixture
def grant_role(async_session):
    """Give a user a role in a company, creating the role on first use."""

    async def _grant(user_id, role_name, company_id=COMPANY_ID, is_active=True, expires_at=None) -> UserRole:
        role = (await async_session.execute(select(Role).where(Role.name == role_name))).scalar_one_or_none()
        if role is None:
            role = Role(name=role_name, display_name=role_name.replace("_", " ").title())
            async_session.add(role)
            await async_session.flush()

        assignment = UserRole(
            user_id=user_id,
            role_id=role.id,
            company_id=company_id,
            is_active=is_active,
            expires_at=expires_at,
        )
        async_session.add(assignment)
        await async_session.commit()
        return assignment

    return _grant


@pytest.fixture
def make_match_result(async_session, make_invoice):
    """Persist a blocked match result for a fresh invoice."""

    async def _make(company_id=COMPANY_ID) -> MatchResult:
        invoice = await make_invoice([invoice_line("Widget", 1, 1)], company_id=company_id)
        result = MatchResult(
            company_id=company_id,
            invoice_id=invoice.id,
            global_status=GlobalMatchStatus.BLOCKED,
            evaluated_at=NOW,
        )
        async_session.add(result)
        await async_session.commit()
        return result

    return _make


@pytest.fixture
def make_exception(async_session):
    """Persist a match exception with explicit workflow fields."""

    async def _make(
        match_result,
        exception_type=MatchExceptionType.QUANTITY_VARIANCE,
        impact_amount="500",
        priority=ExceptionPriority.LOW,
        created_at=NOW,
        sla_deadline=None,
        owner_user_id=None,
        owner_role="PURCHASING_ANALYST",
        resolved=False,
    ) -> MatchException:
        exception = MatchException(
            match_result_id=match_result.id,
            company_id=match_result.company_id,
            exception_type=exception_type,
            line_key=f"invoice_line:{uuid.uuid4()}",
            field="Item: Widget",
            impact_amount=Decimal(impact_amount),
            priority=priority,
            created_at=created_at,
            sla_deadline=sla_deadline if sla_deadline is not None else created_at + timedelta(hours=24),
            owner_user_id=owner_user_id,
            owner_role=owner_role,
            resolved=resolved,
        )
        async_session.add(exception)
        await async_session.commit()
        return exception

    return _make
