"""Step runners for workflow definitions.

Every :class:`~opsflow.contracts.StepKind` has exactly one runner in
``STEP_RUNNERS``. A runner receives the frozen step and a :class:`StepContext`
and returns a :class:`StepOutcome`; it never touches persistence.
"""

from __future__ import annotations

import inspect
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    Optional,
    Protocol,
    Union,
)

from .constants import EDGE_DEFAULT, EDGE_FALSE, EDGE_NEXT, EDGE_TRUE
from .contracts import (
    ActionStep,
    ConditionStep,
    DelayStep,
    NotifyStep,
    Rule,
    Step,
    StepKind,
    SyncToCRMStep,
)
from .errors import NoMatchingBranch, UnrecoverableStepFailure

if TYPE_CHECKING:
    from .sync.service import SyncService

logger = logging.getLogger(__name__)

_MISSING = object()
_TEMPLATE = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")


def resolve_path(data: Any, path: str) -> Any:
    """Follow a dotted path through nested dicts/lists; ``_MISSING`` if absent."""
    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def has_path(data: Any, path: str) -> bool:
    return resolve_path(data, path) is not _MISSING


def render_template(value: Any, bindings: Dict[str, Any]) -> Any:
    """Substitute ``{{path}}`` placeholders from ``bindings``.

    A string that is a single placeholder keeps the bound value's type;
    placeholders embedded in text are stringified, missing ones render empty.
    """
    if isinstance(value, dict):
        return {k: render_template(v, bindings) for k, v in value.items()}
    if isinstance(value, list):
        return [render_template(v, bindings) for v in value]
    if not isinstance(value, str):
        return value

    whole = _TEMPLATE.fullmatch(value.strip())
    if whole:
        resolved = resolve_path(bindings, whole.group(1))
        return None if resolved is _MISSING else resolved

    def _sub(match: re.Match) -> str:
        resolved = resolve_path(bindings, match.group(1))
        return "" if resolved is _MISSING or resolved is None else str(resolved)

    return _TEMPLATE.sub(_sub, value)


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def evaluate_rule(rule: Rule, bindings: Dict[str, Any]) -> bool:
    actual = resolve_path(bindings, rule.field)
    present = actual is not _MISSING and actual is not None and actual != ""
    op = rule.operator

    if op == "exists":
        return present
    if op == "not_exists":
        return not present
    if actual is _MISSING:
        return False
    if op == "equals":
        return actual == rule.value or str(actual) == str(rule.value)
    if op == "not_equals":
        return not (actual == rule.value or str(actual) == str(rule.value))
    if op == "contains":
        if isinstance(actual, (list, tuple, set)):
            return rule.value in actual
        return str(rule.value) in str(actual)

    left, right = _as_number(actual), _as_number(rule.value)
    if left is None or right is None:
        return False
    if op == "greater_than":
        return left > right
    if op == "less_than":
        return left < right
    return False


def evaluate_rules(rules: Iterable[Rule], logic: str, bindings: Dict[str, Any]) -> bool:
    """Combine rules with ``and``/``or``. No rules: ``and`` holds, ``or`` does not."""
    results = (evaluate_rule(rule, bindings) for rule in rules)
    return any(results) if logic == "or" else all(results)


# ----------------------------------------------------------------------
# collaborators

ActionHandler = Callable[[Dict[str, Any], "StepContext"], Union[Any, Awaitable[Any]]]


class ActionRegistry:
    """Named action handlers callable from action steps."""

    def __init__(self) -> None:
        self._handlers: Dict[str, ActionHandler] = {}

    def register(
        self, name: Optional[str] = None
    ) -> Callable[[ActionHandler], ActionHandler]:
        """Decorator registering a handler under ``name`` (default: function name)."""

        def decorator(func: ActionHandler) -> ActionHandler:
            self._handlers[name or func.__name__] = func
            return func

        return decorator

    def add(self, name: str, handler: ActionHandler) -> None:
        self._handlers[name] = handler

    def get(self, name: str) -> ActionHandler:
        try:
            return self._handlers[name]
        except KeyError:
            raise UnrecoverableStepFailure(
                f"No action handler registered for '{name}'", action=name
            ) from None

    def names(self) -> list[str]:
        return sorted(self._handlers)


class Notifier(Protocol):
    async def notify(
        self,
        channel: str,
        recipient: Optional[str],
        message: str,
        context: Dict[str, Any],
    ) -> None: ...


class LoggingNotifier:
    """Notifier that only writes to the log."""

    async def notify(
        self,
        channel: str,
        recipient: Optional[str],
        message: str,
        context: Dict[str, Any],
    ) -> None:
        logger.info(f"[{channel}] to={recipient}: {message}")


@dataclass
class StepContext:
    execution_id: str
    tenant_id: str
    bindings: Dict[str, Any]
    now: datetime
    actions: ActionRegistry
    notifier: Notifier
    sync: Optional["SyncService"] = None


@dataclass
class StepOutcome:
    edge: Optional[str] = EDGE_NEXT
    bindings: Dict[str, Any] = field(default_factory=dict)
    output: Dict[str, Any] = field(default_factory=dict)
    wait_until: Optional[datetime] = None


class StepRunner(Protocol):
    async def apply(self, step: Step, ctx: StepContext) -> StepOutcome: ...


# ----------------------------------------------------------------------
# runners


class ActionRunner:
    async def apply(self, step: ActionStep, ctx: StepContext) -> StepOutcome:
        handler = ctx.actions.get(step.config.action)
        params = render_template(step.config.params, ctx.bindings)
        result = handler(params, ctx)
        if inspect.isawaitable(result):
            result = await result

        if step.config.result_key:
            bindings = {step.config.result_key: result}
        elif isinstance(result, dict):
            bindings = dict(result)
        elif result is not None:
            bindings = {f"{step.id}_result": result}
        else:
            bindings = {}
        return StepOutcome(bindings=bindings, output={"result": result})


class ConditionRunner:
    async def apply(self, step: ConditionStep, ctx: StepContext) -> StepOutcome:
        result = evaluate_rules(step.config.rules, step.config.logic, ctx.bindings)
        label = EDGE_TRUE if result else EDGE_FALSE
        bindings = {f"{step.id}_result": result}

        if not step.next:
            edge = None
        elif step.edge(label) is not None:
            edge = label
        elif step.edge(EDGE_DEFAULT) is not None:
            edge = EDGE_DEFAULT
        else:
            raise NoMatchingBranch(
                f"Condition {step.id} evaluated {label} with no matching edge",
                step_id=step.id,
                outcome=label,
            )
        return StepOutcome(edge=edge, bindings=bindings, output={"result": result})


class DelayRunner:
    async def apply(self, step: DelayStep, ctx: StepContext) -> StepOutcome:
        resume_at = ctx.now + step.config.delta
        return StepOutcome(
            wait_until=resume_at, output={"resume_at": resume_at.isoformat()}
        )


class SyncToCRMRunner:
    async def apply(self, step: SyncToCRMStep, ctx: StepContext) -> StepOutcome:
        if ctx.sync is None:
            raise UnrecoverableStepFailure(
                f"Step {step.id} needs a sync service", step_id=step.id
            )
        entity_id = render_template(step.config.entity_id, ctx.bindings)
        if not entity_id:
            raise UnrecoverableStepFailure(
                f"Step {step.id} resolved an empty entity id", step_id=step.id
            )
        record = await ctx.sync.sync_entity_to_crm(
            ctx.tenant_id,
            step.config.entity_type,
            str(entity_id),
            provider_id=step.config.provider_id,
        )
        return StepOutcome(
            bindings={f"{step.id}_status": record.status.value},
            output={"sync_record_id": record.id, "status": record.status.value},
        )


class NotifyRunner:
    async def apply(self, step: NotifyStep, ctx: StepContext) -> StepOutcome:
        message = render_template(step.config.message, ctx.bindings)
        recipient = render_template(step.config.recipient, ctx.bindings)
        await ctx.notifier.notify(
            step.config.channel,
            recipient,
            message,
            {"execution_id": ctx.execution_id, "tenant_id": ctx.tenant_id},
        )
        return StepOutcome(
            output={"channel": step.config.channel, "recipient": recipient}
        )


STEP_RUNNERS: Dict[StepKind, StepRunner] = {
    StepKind.ACTION: ActionRunner(),
    StepKind.CONDITION: ConditionRunner(),
    StepKind.DELAY: DelayRunner(),
    StepKind.SYNC_TO_CRM: SyncToCRMRunner(),
    StepKind.NOTIFY: NotifyRunner(),
}


def runner_for(step: Step) -> StepRunner:
    return STEP_RUNNERS[StepKind(step.kind)]


__all__ = [
    "ActionRegistry",
    "LoggingNotifier",
    "Notifier",
    "STEP_RUNNERS",
    "StepContext",
    "StepOutcome",
    "evaluate_rule",
    "evaluate_rules",
    "has_path",
    "render_template",
    "resolve_path",
    "runner_for",
]
