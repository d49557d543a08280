"""Campaign execution service.

Campaign state lives only in persisted :class:`CampaignExecution` rows. Every
control command is a compare-and-set on the row's ``version``; a lost race
re-reads the row and decides again, so commands compose with each other and
with the call loop regardless of which instance issued them.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

from .config import CampaignConfig
from .constants import CAMPAIGN_ACTIONS, EVENT_CALL_COMPLETED, EVENT_CAMPAIGN_COMPLETED
from .contracts import (
    CallAttemptRequest,
    CallAttemptResult,
    CallTarget,
    Campaign,
    CampaignExecution,
    CampaignStatus,
    DomainEvent,
)
from .errors import ConcurrencyConflict, InvalidAction, NotFound
from .persistence import Repository
from .telephony import TelephonyClient
from .utils import utcnow

if TYPE_CHECKING:
    from .dispatch import EventPublisher

logger = logging.getLogger(__name__)

Decision = Callable[[Optional[CampaignExecution]], Optional[Dict[str, Any]]]


class CampaignService:
    def __init__(
        self,
        repository: Repository,
        telephony: TelephonyClient,
        config: CampaignConfig | None = None,
        events: Optional["EventPublisher"] = None,
        autorun: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._telephony = telephony
        self._config = config or CampaignConfig()
        self._events = events
        self._autorun = autorun
        self._clock = clock
        self._tasks: Dict[str, asyncio.Task] = {}

    async def _campaign(self, campaign_id: str) -> Campaign:
        campaign = await self._repository.get_campaign(campaign_id)
        if campaign is None:
            raise NotFound(f"Campaign {campaign_id} not found", campaign_id=campaign_id)
        return campaign

    async def _transition(
        self, campaign_id: str, command: str, decide: Decision
    ) -> CampaignExecution:
        """Apply ``decide`` to the latest execution until the write sticks."""
        while True:
            current = await self._repository.get_latest_campaign_execution(campaign_id)
            changes = decide(current)
            if changes is None:
                return current
            changes.update(last_command=command, last_command_at=self._clock())
            try:
                updated = await self._repository.update_campaign_execution(
                    current.model_copy(update=changes)
                )
            except ConcurrencyConflict:
                logger.debug(f"Campaign {campaign_id} {command} raced; re-evaluating")
                continue
            logger.info(
                f"Campaign {campaign_id} {command}: "
                f"{current.status.value} -> {updated.status.value}"
            )
            return updated

    # ------------------------------------------------------------------
    # control commands

    async def start(self, campaign_id: str) -> CampaignExecution:
        """Start the campaign, or return its live execution."""
        campaign = await self._campaign(campaign_id)
        while True:
            current = await self._repository.get_latest_campaign_execution(campaign_id)
            if current is not None and not current.is_terminal:
                if current.status == CampaignStatus.RUNNING:
                    self.ensure_running(current)
                    return current
                if current.status == CampaignStatus.PAUSED:
                    return await self.resume(campaign_id)
                if current.status == CampaignStatus.STOPPING:
                    raise InvalidAction(
                        f"Campaign {campaign_id} is stopping", campaign_id=campaign_id
                    )
            else:
                try:
                    current = await self._repository.create_campaign_execution(
                        CampaignExecution(
                            campaign_id=campaign.id,
                            tenant_id=campaign.tenant_id,
                            last_command="start",
                            last_command_at=self._clock(),
                        )
                    )
                except ConcurrencyConflict:
                    # another start won; return whatever is live now
                    continue

            try:
                running = await self._repository.update_campaign_execution(
                    current.model_copy(update={"status": CampaignStatus.RUNNING})
                )
            except ConcurrencyConflict:
                continue
            logger.info(
                f"Campaign {campaign_id} started execution {running.id} "
                f"with {len(campaign.targets)} target(s)"
            )
            self.ensure_running(running)
            return running

    async def pause(self, campaign_id: str) -> CampaignExecution:
        await self._campaign(campaign_id)

        def decide(current: Optional[CampaignExecution]) -> Optional[Dict[str, Any]]:
            if current is not None and current.status == CampaignStatus.PAUSED:
                return None
            if current is None or current.status != CampaignStatus.RUNNING:
                raise _invalid(campaign_id, "pause", current)
            return {"status": CampaignStatus.PAUSED}

        return await self._transition(campaign_id, "pause", decide)

    async def resume(self, campaign_id: str) -> CampaignExecution:
        await self._campaign(campaign_id)

        def decide(current: Optional[CampaignExecution]) -> Optional[Dict[str, Any]]:
            if current is not None and current.status == CampaignStatus.RUNNING:
                return None
            if current is None or current.status != CampaignStatus.PAUSED:
                raise _invalid(campaign_id, "resume", current)
            return {"status": CampaignStatus.RUNNING}

        execution = await self._transition(campaign_id, "resume", decide)
        self.ensure_running(execution)
        return execution

    async def stop(
        self, campaign_id: str, wait: bool = False, force: bool = False
    ) -> CampaignExecution:
        """Stop the live execution.

        With an attempt in flight the execution moves to ``stopping`` and the
        call loop finalizes it; ``wait`` polls until that happens or
        ``stop_timeout`` elapses. ``force`` finalizes immediately, for
        executions whose loop died mid-call.
        """
        await self._campaign(campaign_id)
        finalized = False

        def decide(current: Optional[CampaignExecution]) -> Optional[Dict[str, Any]]:
            nonlocal finalized
            finalized = False
            if current is not None and current.status == CampaignStatus.STOPPED:
                return None
            if (
                current is not None
                and current.status == CampaignStatus.STOPPING
                and not force
            ):
                return None
            if current is None or current.is_terminal:
                raise _invalid(campaign_id, "stop", current)
            if current.in_flight_target_id is None or force:
                finalized = True
                return {
                    "status": CampaignStatus.STOPPED,
                    "in_flight_target_id": None,
                    "in_flight_since": None,
                    "completed_at": self._clock(),
                }
            return {"status": CampaignStatus.STOPPING}

        execution = await self._transition(campaign_id, "stop", decide)
        if finalized:
            await self._publish_finished(execution)
        if wait and execution.status == CampaignStatus.STOPPING:
            execution = await self._wait_stopped(execution.id)
        return execution

    async def _wait_stopped(self, execution_id: str) -> CampaignExecution:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.stop_timeout
        while True:
            execution = await self._repository.get_campaign_execution(execution_id)
            if execution.is_terminal:
                return execution
            if loop.time() >= deadline:
                logger.warning(
                    f"Campaign execution {execution_id} still {execution.status.value} "
                    f"after {self._config.stop_timeout}s"
                )
                return execution
            await asyncio.sleep(self._config.poll_interval)

    async def control(self, campaign_id: str, action: str) -> CampaignExecution:
        if action not in CAMPAIGN_ACTIONS:
            raise InvalidAction(
                f"Unknown campaign action '{action}'", campaign_id=campaign_id
            )
        handler = getattr(self, action)
        return await handler(campaign_id)

    async def status(self, campaign_id: str) -> Dict[str, Any]:
        """Latest execution snapshot with a progress summary."""
        campaign = await self._campaign(campaign_id)
        execution = await self._repository.get_latest_campaign_execution(campaign_id)
        return {
            "campaign_id": campaign.id,
            "name": campaign.name,
            "execution": execution.model_dump(mode="json") if execution else None,
            "progress": execution.progress(len(campaign.targets)) if execution else None,
        }

    # ------------------------------------------------------------------
    # call loop

    def ensure_running(self, execution: CampaignExecution) -> None:
        """Start the call loop for ``execution`` unless this process already runs it."""
        if not self._autorun or execution.status != CampaignStatus.RUNNING:
            return
        task = self._tasks.get(execution.id)
        if task is not None and not task.done():
            return
        task = asyncio.create_task(self.run(execution.id))
        self._tasks[execution.id] = task
        task.add_done_callback(lambda done: self._forget(execution.id, done))

    def _forget(self, execution_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(execution_id) is task:
            del self._tasks[execution_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"Call loop for {execution_id} crashed: {task.exception()!r}"
            )

    async def join(self, execution_id: str) -> Optional[CampaignExecution]:
        """Wait for this process's call loop of ``execution_id`` to exit."""
        task = self._tasks.get(execution_id)
        if task is not None:
            await task
        return await self._repository.get_campaign_execution(execution_id)

    async def run(self, execution_id: str) -> CampaignExecution:
        """Place calls sequentially while the execution stays ``running``."""
        execution = await self._repository.get_campaign_execution(execution_id)
        if execution is None:
            raise NotFound(
                f"Campaign execution {execution_id} not found", execution_id=execution_id
            )
        campaign = await self._campaign(execution.campaign_id)
        targets = campaign.targets

        while True:
            execution = await self._repository.get_campaign_execution(execution_id)
            if execution.status == CampaignStatus.STOPPING:
                if execution.in_flight_target_id is not None:
                    # the attempt marked in flight never recorded; nothing is running it
                    logger.warning(
                        f"Finalizing stop of {execution_id} with orphaned in-flight "
                        f"target {execution.in_flight_target_id}"
                    )
                return await self._finalize(
                    execution,
                    CampaignStatus.STOPPED,
                    {"in_flight_target_id": None, "in_flight_since": None},
                )
            if execution.status != CampaignStatus.RUNNING:
                logger.info(
                    f"Call loop for {execution_id} exiting ({execution.status.value})"
                )
                return execution
            if execution.cursor >= len(targets):
                return await self._finalize(execution, CampaignStatus.COMPLETED, {})
            if execution.in_flight_target_id is not None:
                if not self._lease_expired(execution):
                    logger.warning(
                        f"Target {execution.in_flight_target_id} of {execution_id} is "
                        "already in flight elsewhere; leaving the loop"
                    )
                    return execution
                await self._abandon_in_flight(execution, targets[execution.cursor])
                continue

            target = targets[execution.cursor]
            try:
                execution = await self._repository.update_campaign_execution(
                    execution.model_copy(
                        update={
                            "in_flight_target_id": target.id,
                            "in_flight_since": self._clock(),
                        }
                    )
                )
            except ConcurrencyConflict:
                continue

            request = CallAttemptRequest(
                campaign_id=campaign.id,
                execution_id=execution.id,
                target=target,
                agent_id=campaign.agent_id,
                attempt_number=execution.attempted + 1,
            )
            result: Optional[CallAttemptResult] = None
            error: Optional[Exception] = None
            try:
                result = await self._telephony.place_call(request)
            except Exception as e:
                logger.error(f"Call to target {target.id} of {execution_id} failed: {e}")
                error = e

            execution = await self._record_attempt(execution_id, result, error)
            await self._publish_call(execution, target, result, error)
            if execution.is_terminal:
                await self._publish_finished(execution)
                return execution
            if self._config.inter_call_delay:
                await asyncio.sleep(self._config.inter_call_delay)

    def _lease_expired(self, execution: CampaignExecution) -> bool:
        if execution.in_flight_since is None:
            return True
        age = (self._clock() - execution.in_flight_since).total_seconds()
        return age >= self._config.in_flight_lease

    async def _abandon_in_flight(
        self, execution: CampaignExecution, target: CallTarget
    ) -> None:
        """Count a call whose worker died as failed and move past it, undialed."""
        logger.warning(
            f"Call to target {execution.in_flight_target_id} of {execution.id} "
            "outlived its lease; recording the outcome as unknown"
        )
        try:
            abandoned = await self._repository.update_campaign_execution(
                execution.model_copy(
                    update={
                        "cursor": execution.cursor + 1,
                        "attempted": execution.attempted + 1,
                        "failed": execution.failed + 1,
                        "in_flight_target_id": None,
                        "in_flight_since": None,
                        "last_error": f"Call to {target.id} lost with its worker",
                    }
                )
            )
        except ConcurrencyConflict:
            # someone else moved the row on; the loop re-reads it
            return
        unknown = CallAttemptResult(success=False, outcome_code="unknown")
        await self._publish_call(abandoned, target, unknown, None)

    async def _record_attempt(
        self,
        execution_id: str,
        result: Optional[CallAttemptResult],
        error: Optional[Exception],
    ) -> CampaignExecution:
        """Fold one attempt's outcome into the latest row, keeping its status."""
        while True:
            current = await self._repository.get_campaign_execution(execution_id)
            changes: Dict[str, Any] = {
                "cursor": current.cursor + 1,
                "attempted": current.attempted + 1,
                "in_flight_target_id": None,
                "in_flight_since": None,
            }
            if result is not None and result.success:
                changes.update(succeeded=current.succeeded + 1, consecutive_failures=0)
            else:
                changes["failed"] = current.failed + 1
            if error is not None:
                failures = current.consecutive_failures + 1
                changes.update(consecutive_failures=failures, last_error=str(error))
                if (
                    failures >= self._config.max_consecutive_failures
                    and current.status != CampaignStatus.STOPPING
                    and not current.is_terminal
                ):
                    logger.error(
                        f"Campaign execution {execution_id} failed after "
                        f"{failures} consecutive errors"
                    )
                    changes.update(status=CampaignStatus.FAILED, completed_at=self._clock())
            if current.status == CampaignStatus.STOPPING:
                changes.update(status=CampaignStatus.STOPPED, completed_at=self._clock())
            try:
                return await self._repository.update_campaign_execution(
                    current.model_copy(update=changes)
                )
            except ConcurrencyConflict:
                continue

    async def _finalize(
        self,
        execution: CampaignExecution,
        status: CampaignStatus,
        extra: Dict[str, Any],
    ) -> CampaignExecution:
        try:
            finished = await self._repository.update_campaign_execution(
                execution.model_copy(
                    update={"status": status, "completed_at": self._clock(), **extra}
                )
            )
        except ConcurrencyConflict:
            # a control command landed first; let the next loop pass decide
            return await self.run(execution.id)
        logger.info(f"Campaign execution {execution.id} {status.value}")
        await self._publish_finished(finished)
        return finished

    async def _publish_call(
        self,
        execution: CampaignExecution,
        target: CallTarget,
        result: Optional[CallAttemptResult],
        error: Optional[Exception],
    ) -> None:
        if self._events is None:
            return
        await self._events.publish(
            DomainEvent(
                type=EVENT_CALL_COMPLETED,
                tenant_id=execution.tenant_id,
                entity_id=target.id,
                payload={
                    "campaign_id": execution.campaign_id,
                    "execution_id": execution.id,
                    "target_id": target.id,
                    "phone": target.phone,
                    "success": bool(result and result.success),
                    "outcome_code": result.outcome_code if result else "error",
                    "duration_seconds": result.duration_seconds if result else 0,
                    "error": str(error) if error else None,
                },
            )
        )

    async def _publish_finished(self, execution: CampaignExecution) -> None:
        if self._events is None:
            return
        await self._events.publish(
            DomainEvent(
                type=EVENT_CAMPAIGN_COMPLETED,
                tenant_id=execution.tenant_id,
                entity_id=execution.campaign_id,
                payload={
                    "campaign_id": execution.campaign_id,
                    "execution_id": execution.id,
                    "status": execution.status.value,
                    "attempted": execution.attempted,
                    "succeeded": execution.succeeded,
                    "failed": execution.failed,
                },
            )
        )


def _invalid(
    campaign_id: str, action: str, current: Optional[CampaignExecution]
) -> InvalidAction:
    state = current.status.value if current else "none"
    return InvalidAction(
        f"Cannot {action} campaign {campaign_id} in state {state}",
        campaign_id=campaign_id,
        action=action,
        status=state,
    )
