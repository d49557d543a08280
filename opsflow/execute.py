"""Workflow execution engine for opsflow definitions."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

from .config import WorkflowConfig
from .constants import EDGE_NEXT
from .contracts import (
    Step,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowStatus,
)
from .errors import (
    ConcurrencyConflict,
    InvalidAction,
    InvalidPayload,
    NotFound,
    OpsflowError,
    StepLimitExceeded,
    TransientCollaboratorFailure,
    UnrecoverableStepFailure,
)
from .persistence import Repository
from .steps import (
    ActionRegistry,
    LoggingNotifier,
    Notifier,
    StepContext,
    StepOutcome,
    has_path,
    runner_for,
)
from .utils import schedule_retry, utcnow

if TYPE_CHECKING:
    from .sync.service import SyncService

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Walks workflow definitions one step at a time.

    Progress is written after every step with a compare-and-set, so an
    execution that another actor changed (cancelled, claimed by a second
    worker) stops walking and the stored record wins.
    """

    def __init__(
        self,
        repository: Repository,
        actions: ActionRegistry | None = None,
        notifier: Notifier | None = None,
        sync: Optional["SyncService"] = None,
        config: WorkflowConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self.actions = actions or ActionRegistry()
        self._notifier = notifier or LoggingNotifier()
        self._sync = sync
        self._config = config or WorkflowConfig()
        self._clock = clock

    async def execute(
        self,
        definition_id: str,
        trigger_payload: Dict[str, Any],
        execution_id: Optional[str] = None,
    ) -> WorkflowExecution:
        """Start (or pick up) an execution of ``definition_id``.

        Re-invoking with the id of an execution that already left ``queued``
        returns the stored record unchanged.
        """
        existing = None
        if execution_id is not None:
            existing = await self._repository.get_execution(execution_id)
            if existing is not None and existing.status != WorkflowStatus.QUEUED:
                logger.debug(f"Execution {execution_id} already {existing.status.value}")
                return existing

        definition = await self._repository.get_definition(definition_id)
        if definition is None or not definition.enabled:
            raise NotFound(
                f"Workflow definition {definition_id} not found or disabled",
                definition_id=definition_id,
            )
        missing = [
            name
            for name in definition.trigger.required_fields
            if not has_path(trigger_payload, name)
        ]
        if missing:
            raise InvalidPayload(
                f"Trigger payload is missing required fields: {', '.join(missing)}",
                definition_id=definition_id,
                missing=missing,
            )

        execution = existing
        if execution is None:
            execution = WorkflowExecution(
                id=execution_id or str(uuid.uuid4()),
                definition_id=definition.id,
                tenant_id=definition.tenant_id,
                current_step_id=definition.entry_step_id,
                bindings=dict(trigger_payload),
                trigger_payload=dict(trigger_payload),
            )
            try:
                execution = await self._repository.create_execution(execution)
            except ConcurrencyConflict:
                execution = await self._repository.get_execution(execution.id)
                if execution.status != WorkflowStatus.QUEUED:
                    return execution

        try:
            execution = await self._repository.update_execution(
                execution.model_copy(update={"status": WorkflowStatus.RUNNING})
            )
        except ConcurrencyConflict:
            logger.info(f"Execution {execution.id} was claimed by another worker")
            return await self._repository.get_execution(execution.id)

        logger.info(
            f"Started execution {execution.id} of {definition.id} "
            f"for tenant {definition.tenant_id}"
        )
        return await self._walk(definition, execution)

    async def resume(
        self, execution_id: str, now: Optional[datetime] = None
    ) -> WorkflowExecution:
        """Continue a waiting execution past its delay once it is due.

        Anything else (not waiting, not yet due, already claimed) is a no-op
        that returns the stored record.
        """
        now = now or self._clock()
        execution = await self._repository.get_execution(execution_id)
        if execution is None:
            raise NotFound(f"Execution {execution_id} not found", execution_id=execution_id)
        if (
            execution.status != WorkflowStatus.WAITING
            or execution.resume_at is None
            or execution.resume_at > now
        ):
            return execution

        definition = await self._repository.get_definition(execution.definition_id)
        if definition is None:
            return await self._fail(
                execution,
                NotFound(f"Workflow definition {execution.definition_id} not found"),
            )

        delay_step = definition.get_step(execution.current_step_id)
        next_id = delay_step.edge(EDGE_NEXT)
        changes: Dict[str, Any] = {"status": WorkflowStatus.RUNNING, "resume_at": None}
        if next_id is None:
            changes.update(status=WorkflowStatus.COMPLETED, completed_at=self._clock())
        else:
            changes["current_step_id"] = next_id
        try:
            execution = await self._repository.update_execution(
                execution.model_copy(update=changes)
            )
        except ConcurrencyConflict:
            logger.debug(f"Execution {execution_id} was resumed concurrently")
            return await self._repository.get_execution(execution_id)

        logger.info(f"Resumed execution {execution_id}")
        if execution.status == WorkflowStatus.COMPLETED:
            logger.info(f"Execution {execution_id} completed")
            return execution
        return await self._walk(definition, execution)

    async def cancel(self, execution_id: str) -> WorkflowExecution:
        """Cancel a queued or waiting execution."""
        while True:
            execution = await self._repository.get_execution(execution_id)
            if execution is None:
                raise NotFound(
                    f"Execution {execution_id} not found", execution_id=execution_id
                )
            if execution.is_terminal:
                return execution
            if execution.status not in (WorkflowStatus.QUEUED, WorkflowStatus.WAITING):
                raise InvalidAction(
                    f"Cannot cancel execution in status {execution.status.value}",
                    execution_id=execution_id,
                )
            try:
                cancelled = await self._repository.update_execution(
                    execution.model_copy(
                        update={
                            "status": WorkflowStatus.CANCELLED,
                            "resume_at": None,
                            "completed_at": self._clock(),
                        }
                    )
                )
            except ConcurrencyConflict:
                continue
            logger.info(f"Cancelled execution {execution_id}")
            return cancelled

    # ------------------------------------------------------------------
    async def _walk(
        self, definition: WorkflowDefinition, execution: WorkflowExecution
    ) -> WorkflowExecution:
        transitions = 0
        try:
            while True:
                if transitions >= self._config.max_transitions:
                    return await self._fail(
                        execution,
                        StepLimitExceeded(
                            f"Execution exceeded {self._config.max_transitions} transitions",
                            execution_id=execution.id,
                        ),
                    )
                transitions += 1

                step = definition.get_step(execution.current_step_id)
                try:
                    outcome = await self._run_step(execution, step)
                except Exception as e:
                    return await self._fail(execution, e)

                bindings = {**execution.bindings, **outcome.bindings}
                path = [*execution.path, step.id]
                next_id = step.edge(outcome.edge) if outcome.edge else None

                if outcome.wait_until is not None:
                    execution = await self._repository.update_execution(
                        execution.model_copy(
                            update={
                                "status": WorkflowStatus.WAITING,
                                "resume_at": outcome.wait_until,
                                "bindings": bindings,
                                "path": path,
                            }
                        )
                    )
                    logger.info(
                        f"Execution {execution.id} waiting at {step.id} "
                        f"until {outcome.wait_until.isoformat()}"
                    )
                    return execution

                if next_id is None:
                    execution = await self._repository.update_execution(
                        execution.model_copy(
                            update={
                                "status": WorkflowStatus.COMPLETED,
                                "bindings": bindings,
                                "path": path,
                                "completed_at": self._clock(),
                            }
                        )
                    )
                    logger.info(f"Execution {execution.id} completed")
                    return execution

                execution = await self._repository.update_execution(
                    execution.model_copy(
                        update={
                            "current_step_id": next_id,
                            "bindings": bindings,
                            "path": path,
                        }
                    )
                )
        except ConcurrencyConflict:
            logger.warning(
                f"Execution {execution.id} changed concurrently; stopping this walk"
            )
            return await self._repository.get_execution(execution.id)

    async def _run_step(self, execution: WorkflowExecution, step: Step) -> StepOutcome:
        run = execution.path.count(step.id) + 1
        await self._repository.mark_step_started(execution.id, step.id, run=run)
        ctx = StepContext(
            execution_id=execution.id,
            tenant_id=execution.tenant_id,
            bindings=dict(execution.bindings),
            now=self._clock(),
            actions=self.actions,
            notifier=self._notifier,
            sync=self._sync,
        )
        policy = self._config.step_retry
        runner = runner_for(step)
        attempt = 0
        while True:
            attempt += 1
            try:
                outcome = await runner.apply(step, ctx)
            except TransientCollaboratorFailure as e:
                if attempt < policy.max_attempts:
                    logger.warning(
                        f"Step {step.id} of {execution.id} failed transiently "
                        f"(attempt {attempt}/{policy.max_attempts}): {e}"
                    )
                    await schedule_retry(attempt, policy)
                    continue
                await self._repository.mark_step_completed(
                    execution.id, step.id, "failed", attempts=attempt, error=str(e), run=run
                )
                raise UnrecoverableStepFailure(
                    f"Step {step.id} failed after {attempt} attempts: {e}",
                    step_id=step.id,
                    attempts=attempt,
                    last_error=str(e),
                ) from e
            except Exception as e:
                await self._repository.mark_step_completed(
                    execution.id, step.id, "failed", attempts=attempt, error=str(e), run=run
                )
                raise

            await self._repository.mark_step_completed(
                execution.id,
                step.id,
                "completed",
                output=outcome.output,
                attempts=attempt,
                run=run,
            )
            return outcome

    async def _fail(
        self, execution: WorkflowExecution, error: Exception
    ) -> WorkflowExecution:
        code = error.code if isinstance(error, OpsflowError) else "step_error"
        logger.error(
            f"Execution {execution.id} failed at {execution.current_step_id}: "
            f"[{code}] {error}"
        )
        try:
            return await self._repository.update_execution(
                execution.model_copy(
                    update={
                        "status": WorkflowStatus.FAILED,
                        "last_error": str(error),
                        "error_code": code,
                        "resume_at": None,
                        "completed_at": self._clock(),
                    }
                )
            )
        except ConcurrencyConflict:
            return await self._repository.get_execution(execution.id)
