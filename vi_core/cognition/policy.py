"""Policy checks for plan steps using a tool blocklist and CEL rules.

Rules are CEL expressions evaluated against a `step` map; a rule that
evaluates true denies the step. CEL is sandboxed: no I/O, no side
effects, deterministic evaluation. Evaluation errors fail closed.
"""

from __future__ import annotations

import concurrent.futures
import logging
from collections import deque
from functools import lru_cache
from typing import Any, Literal

import celpy
from celpy import celtypes

from vi_core.cognition.schemas import PlanStep, PolicyDecision, StepType

logger = logging.getLogger(__name__)

_CEL_ENV = celpy.Environment()
_EVAL_EXECUTOR = concurrent.futures.ThreadPoolExecutor(max_workers=2)
_EVAL_TIMEOUT_SECONDS = 0.1

MAX_DECISION_LOG = 10_000


def _to_cel_value(value: Any) -> Any:
    if isinstance(value, bool):
        return celtypes.BoolType(value)
    if isinstance(value, int):
        return celtypes.IntType(value)
    if isinstance(value, float):
        return celtypes.DoubleType(value)
    if isinstance(value, str):
        return celtypes.StringType(value)
    if isinstance(value, (list, tuple)):
        return celtypes.ListType([_to_cel_value(v) for v in value])
    if isinstance(value, dict):
        return celtypes.MapType({celtypes.StringType(str(k)): _to_cel_value(v) for k, v in value.items()})
    if value is None:
        return celtypes.StringType("")  # CEL has no null
    return celtypes.StringType(str(value))


def build_activation(step: PlanStep, user_id: str | None) -> dict[str, Any]:
    """CEL activation exposing the step as `step` and the caller as `user_id`."""
    return {
        "step": _to_cel_value(
            {
                "type": str(step.type),
                "description": step.description,
                "tool_name": step.tool_name or "",
                "params": step.params,
                "tool_params": step.tool_params,
            }
        ),
        "user_id": _to_cel_value(user_id or ""),
    }


@lru_cache(maxsize=100)
def _compile(expression: str) -> celpy.Runner:
    ast = _CEL_ENV.compile(expression)
    return _CEL_ENV.program(ast)


class PolicyEngine:
    """Authorizes plan steps and keeps a bounded in-process decision log."""

    def __init__(self, blocklist: list[str] | None = None, rules: dict[str, str] | None = None) -> None:
        self.blocklist = {t.strip() for t in (blocklist or []) if t.strip()}
        self.rules = dict(rules or {})
        for name, expression in self.rules.items():
            ok, error = self.validate_expression(expression)
            if not ok:
                raise ValueError(f"Invalid CEL policy rule {name!r}: {error}")
        self._decisions: deque[tuple[str | None, PolicyDecision]] = deque(maxlen=MAX_DECISION_LOG)

    @staticmethod
    def validate_expression(expression: str) -> tuple[bool, str | None]:
        try:
            _compile(expression)
            return True, None
        except Exception as e:
            return False, str(e)

    def authorize(self, action: str, user_id: str | None) -> bool:
        """Coarse authorization for `tool:<name>` and `command_execution` actions."""
        if action.startswith("tool:"):
            tool_name = action[len("tool:"):]
            if tool_name in self.blocklist:
                logger.warning("Tool '%s' is blocklisted for user %s", tool_name, user_id)
                return False
            return True
        if action == "command_execution":
            return bool(user_id)
        return True

    def evaluate_rules(self, step: PlanStep, user_id: str | None) -> str | None:
        """Return the name of the first rule that denies the step, or None."""
        if not self.rules:
            return None
        activation = build_activation(step, user_id)
        for name, expression in self.rules.items():
            try:
                program = _compile(expression)
                future = _EVAL_EXECUTOR.submit(program.evaluate, activation)
                if bool(future.result(timeout=_EVAL_TIMEOUT_SECONDS)):
                    return name
            except concurrent.futures.TimeoutError:
                logger.error("CEL policy rule %s timed out", name)
                return name
            except Exception:
                logger.error("CEL policy rule %s failed to evaluate", name, exc_info=True)
                return name
        return None

    def check_policy(self, step: PlanStep, user_id: str | None) -> PolicyDecision:
        if step.type == StepType.TOOL_CALL:
            tool_name = step.tool_name or "list_tools"
            if not self.authorize(f"tool:{tool_name}", user_id):
                return self.record_decision(
                    "tool_execution", user_id, "deny", f"Not authorized for tool {tool_name}"
                )
            policy_id, allow_reason = "tool_execution", f"Authorized tool {tool_name}"
        else:
            if not self.authorize("command_execution", user_id):
                return self.record_decision(
                    "command_execution", user_id, "deny", "Policy denied execution"
                )
            policy_id, allow_reason = "command_execution", "Authorized by policy engine"

        denied_by = self.evaluate_rules(step, user_id)
        if denied_by:
            return self.record_decision(denied_by, user_id, "deny", f"Denied by rule {denied_by}")
        return self.record_decision(policy_id, user_id, "allow", allow_reason)

    def record_decision(
        self,
        policy_id: str,
        user_id: str | None,
        action: Literal["allow", "deny", "require_approval"],
        reason: str,
    ) -> PolicyDecision:
        decision = PolicyDecision(
            policy_id=policy_id,
            name=policy_id,
            action=action,
            reason=reason,
            severity="block" if action == "deny" else "info",
        )
        self._decisions.append((user_id, decision))
        if action == "deny":
            logger.warning("Policy denied: user=%s %s - %s", user_id, policy_id, reason)
        else:
            logger.debug("Policy allowed: user=%s %s", user_id, policy_id)
        return decision

    @property
    def decisions(self) -> list[PolicyDecision]:
        return [d for _, d in self._decisions]

    def decisions_for(self, user_id: str) -> list[PolicyDecision]:
        return [d for uid, d in self._decisions if uid == user_id]

    def clear(self) -> None:
        self._decisions.clear()
