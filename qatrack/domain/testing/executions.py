from collections.abc import Callable
from datetime import datetime

from loguru import logger
from sqlalchemy import func, update
from sqlalchemy import case as sql_case
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from qatrack.core.exceptions import NotFound, ValidationFailed
from qatrack.core.utils import utcnow
from qatrack.domain.testing.models import (
    Application,
    AppVersion,
    Case,
    CaseExecution,
    CaseStatus,
    ExecutionStatus,
    Suite,
    SuiteExecution,
)
from qatrack.domain.testing.schemas import CaseExecutionDetailOut, ExecutionSummaryOut

# Statuses that keep a suite execution open
_OPEN_STATUSES = (CaseStatus.PENDING, CaseStatus.NOT_TESTED)


class ExecutionService:
    """Runs suites against application versions and records per-test outcomes."""

    def __init__(self, session: AsyncSession, clock: Callable[[], datetime] = utcnow) -> None:
        self.session = session
        self.clock = clock

    async def start(
        self,
        suite_id: int,
        execution_name: str,
        tester_name: str,
        application_id: int,
        version_id: int,
    ) -> tuple[SuiteExecution, int]:
        """Opens a suite execution with one pending test execution per test.

        Test statuses of the suite are reset to pending in the same transaction.

        Returns:
            tuple[SuiteExecution, int]: The execution and the number of tests queued.

        Raises:
            NotFound: If the suite does not exist.
            ValidationFailed: If the suite has no tests, or the application/version pair is invalid.
        """
        if not await self.session.get(Suite, suite_id):
            raise NotFound("Test suite not found")

        test_ids = list((await self.session.exec(select(Case.id).where(Case.suite_id == suite_id))).all())
        if not test_ids:
            raise ValidationFailed(
                "Cannot start execution: No tests defined for this test suite. Please add tests before executing."
            )

        application = await self.session.get(Application, application_id)
        if not application:
            raise ValidationFailed("Application not found")

        version = (
            await self.session.exec(
                select(AppVersion).where(AppVersion.id == version_id, AppVersion.application_id == application_id)
            )
        ).first()
        if not version:
            raise ValidationFailed("Version not found or does not belong to the specified application")

        now = self.clock()
        execution = SuiteExecution(
            suite_id=suite_id,
            execution_name=execution_name,
            tester_name=tester_name,
            application_id=application.id,
            version_id=version.id,
            application_name=application.name,
            application_version=version.version_number,
            started_at=now,
        )
        try:
            self.session.add(execution)
            await self.session.flush()
            for test_id in test_ids:
                self.session.add(
                    CaseExecution(
                        suite_execution_id=execution.id,
                        test_id=test_id,
                        status=CaseStatus.PENDING,
                        executed_at=now,
                    )
                )
            await self.session.exec(
                update(Case).where(Case.suite_id == suite_id).values(status=CaseStatus.PENDING, updated_at=now)
            )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        await self.session.refresh(execution)
        logger.info(
            f"Started execution {execution.id} of suite {suite_id} "
            f"on {application.name} {version.version_number} ({len(test_ids)} tests)"
        )
        return execution, len(test_ids)

    async def record_result(
        self, case_execution_id: int, status: CaseStatus, result_notes: str | None
    ) -> CaseExecution:
        """Stores a test outcome, mirrors it onto the test and closes the suite when nothing is open."""
        execution = await self.session.get(CaseExecution, case_execution_id)
        if not execution:
            raise NotFound("Test execution not found")

        now = self.clock()
        execution.status = status
        execution.result_notes = result_notes
        execution.executed_at = now
        self.session.add(execution)

        test = await self.session.get(Case, execution.test_id)
        if test:
            test.status = status
            test.updated_at = now
            self.session.add(test)

        try:
            await self.session.flush()
            open_count = (
                await self.session.exec(
                    select(func.count(CaseExecution.id)).where(
                        CaseExecution.suite_execution_id == execution.suite_execution_id,
                        CaseExecution.status.in_(_OPEN_STATUSES),
                    )
                )
            ).one()
            if open_count == 0:
                suite_execution = await self.session.get(SuiteExecution, execution.suite_execution_id)
                if suite_execution and suite_execution.status != ExecutionStatus.COMPLETED:
                    suite_execution.status = ExecutionStatus.COMPLETED
                    suite_execution.completed_at = now
                    self.session.add(suite_execution)
                    logger.info(f"Suite execution {suite_execution.id} completed automatically.")
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        await self.session.refresh(execution)
        return execution

    async def complete(self, suite_execution_id: int) -> SuiteExecution:
        execution = await self.session.get(SuiteExecution, suite_execution_id)
        if not execution:
            raise NotFound("Suite execution not found")

        execution.status = ExecutionStatus.COMPLETED
        execution.completed_at = self.clock()
        self.session.add(execution)
        await self.session.commit()
        await self.session.refresh(execution)
        return execution

    async def history(self, suite_id: int) -> list[ExecutionSummaryOut]:
        """Past executions of a suite, newest first, with pass tallies."""
        total = func.count(CaseExecution.id)
        passed = func.count(sql_case((CaseExecution.status == CaseStatus.PASSED, 1)))
        statement = (
            select(SuiteExecution, total, passed)
            .outerjoin(CaseExecution, CaseExecution.suite_execution_id == SuiteExecution.id)
            .where(SuiteExecution.suite_id == suite_id)
            .group_by(SuiteExecution.id)
            .order_by(SuiteExecution.started_at.desc(), SuiteExecution.id.desc())
        )
        rows = (await self.session.exec(statement)).all()
        return [
            ExecutionSummaryOut(**execution.model_dump(), total_tests=total_tests, passed_tests=passed_tests)
            for execution, total_tests, passed_tests in rows
        ]

    async def case_executions(self, suite_execution_id: int) -> list[CaseExecutionDetailOut]:
        suite_execution = await self.session.get(SuiteExecution, suite_execution_id)
        if not suite_execution:
            raise NotFound("Suite execution not found")

        statement = (
            select(CaseExecution, Case)
            .join(Case, Case.id == CaseExecution.test_id)
            .where(CaseExecution.suite_execution_id == suite_execution_id)
            .order_by(Case.short_name)
        )
        rows = (await self.session.exec(statement)).all()
        return [
            CaseExecutionDetailOut(
                id=execution.id,
                suite_execution_id=execution.suite_execution_id,
                test_id=execution.test_id,
                status=execution.status,
                result_notes=execution.result_notes,
                executed_at=execution.executed_at,
                short_name=test.short_name,
                area=test.area,
                manual_tasks=test.manual_tasks,
                expected_results=test.expected_results,
                is_mandatory=test.is_mandatory,
                application_name=suite_execution.application_name,
                application_version=suite_execution.application_version,
            )
            for execution, test in rows
        ]
