"""Plan generation from a classified intent.

Rule-based by default. When a gateway is supplied the planner asks it for
a JSON plan first and falls back to the rules on any failure. Locked
facts from the caller's continuity pack are enforced on either plan.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from pydantic import ValidationError

from vi_core.cognition.gateway import InferenceGateway
from vi_core.cognition.schemas import Intent, IntentCategory, Plan, PlanStep, StepType
from vi_core.errors import InferenceError
from vi_core.tools.schemas import ToolSelection
from vi_core.tools.selector import ToolSelector

logger = logging.getLogger(__name__)

NEVER_GUESS = "never_guess"
DO_NOT_REPEAT = "do_not_repeat"

# Runs of arithmetic characters or whitelisted function calls
_EXPRESSION = re.compile(
    r"(?:sqrt|sin|cos|tan|abs|floor|ceil|round|\d|[\s.+\-*/%()])+",
    re.IGNORECASE,
)

_PLAN_SYSTEM = (
    "Produce an execution plan as a JSON object with keys "
    '"steps" (list of {"type": respond|tool_call|policy_check, "description", '
    '"tool_name", "tool_params"}), "reasoning" and "tools_needed". '
    "Only use tools from the provided list. No prose."
)


def extract_expression(text: str) -> str | None:
    """Pull the longest arithmetic-looking span out of free text."""
    candidates = [m.group(0).strip() for m in _EXPRESSION.finditer(text)]
    candidates = [c for c in candidates if any(ch.isdigit() for ch in c)]
    if not candidates:
        return None
    return max(candidates, key=len)


def locked_facts(context: dict[str, Any] | None) -> list[dict[str, Any]]:
    pack = (context or {}).get("continuityPack") or {}
    facts = pack.get("locked_facts") if isinstance(pack, dict) else None
    if not isinstance(facts, list):
        return []
    return [{"fact_key": f.get("fact_key"), "value": f.get("value")} for f in facts if isinstance(f, dict)]


def has_locked_rule(facts: list[dict[str, Any]], rule: str) -> bool:
    needle = rule.lower()
    for fact in facts:
        key = fact.get("fact_key")
        if isinstance(key, str) and key.lower() == needle:
            return True
        value = fact.get("value")
        if isinstance(value, str) and needle in value.lower():
            return True
        if isinstance(value, (dict, list)) and needle in json.dumps(value).lower():
            return True
    return False


class Planner:
    def __init__(self, selector: ToolSelector, gateway: InferenceGateway | None = None) -> None:
        self.selector = selector
        self.gateway = gateway

    async def generate_plan(self, intent: Intent, context: dict[str, Any] | None = None) -> Plan:
        facts = locked_facts(context)
        plan: Plan | None = None
        if self.gateway is not None:
            try:
                plan = await self._gateway_plan(intent)
            except (InferenceError, ValidationError, ValueError) as e:
                logger.warning("LLM planning failed, falling back to rule-based: %s", e)
        if plan is None:
            plan = self.rule_based_plan(intent)
        return self.enforce_locked_facts(plan, intent, facts)

    async def _gateway_plan(self, intent: Intent) -> Plan:
        tools = [t.name for t in self.selector.registry.list_enabled()]
        prompt = json.dumps(
            {"intent": intent.model_dump(mode="json"), "available_tools": tools}
        )
        raw = await self.gateway.complete(_PLAN_SYSTEM, prompt)
        plan = Plan.model_validate_json(raw)
        if not plan.steps:
            raise ValueError("Gateway plan has no steps")
        return plan

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def rule_based_plan(self, intent: Intent) -> Plan:
        steps: list[PlanStep] = []
        tools_needed: list[str] = []
        selection = self.selector.select_for_intent(intent)
        if selection is not None:
            selection = self._with_default_params(selection, intent)
            tools_needed.append(selection.tool_name)

        params = {"intent_category": str(intent.category)}
        if intent.category == IntentCategory.QUERY:
            if selection is not None:
                tool_step = self._tool_step(selection, "query")
                steps.append(tool_step)
                steps.append(
                    PlanStep(
                        type=StepType.RESPOND,
                        description="Generate response using tool result",
                        params=params,
                        dependencies=[tool_step.id],
                    )
                )
            else:
                steps.append(PlanStep(type=StepType.RESPOND, description="Generate response to query", params=params))
        elif intent.category == IntentCategory.COMMAND:
            check = PlanStep(
                type=StepType.POLICY_CHECK, description="Check authorization for command", params=params
            )
            steps.append(check)
            last = check
            if selection is not None:
                last = self._tool_step(selection, "command", depends_on=check.id)
                steps.append(last)
            steps.append(
                PlanStep(
                    type=StepType.RESPOND,
                    description="Execute command and respond",
                    params=params,
                    dependencies=[last.id],
                )
            )
        else:
            tools_needed = []
            steps.append(PlanStep(type=StepType.RESPOND, description="Ask for clarification", params=params))

        return Plan(
            steps=steps,
            reasoning=f"Rule-based plan for {intent.category} intent",
            estimated_complexity="simple",
            tools_needed=tools_needed,
            memory_access_needed=intent.requires_memory,
        )

    @staticmethod
    def _tool_step(selection: ToolSelection, purpose: str, depends_on: str | None = None) -> PlanStep:
        return PlanStep(
            type=StepType.TOOL_CALL,
            description=f"Execute tool {selection.tool_name} for {purpose}",
            params=dict(selection.parameters),
            tool_name=selection.tool_name,
            tool_params=dict(selection.parameters),
            tool_reasoning=selection.reasoning,
            dependencies=[depends_on] if depends_on else [],
        )

    @staticmethod
    def _with_default_params(selection: ToolSelection, intent: Intent) -> ToolSelection:
        params = dict(selection.parameters)
        if selection.tool_name == "search_memory":
            params.setdefault("query", intent.description)
        elif selection.tool_name == "calculate" and "expression" not in params:
            expression = extract_expression(intent.description)
            if expression:
                params["expression"] = expression
        return selection.model_copy(update={"parameters": params})

    # ------------------------------------------------------------------
    # Locked facts
    # ------------------------------------------------------------------

    def enforce_locked_facts(self, plan: Plan, intent: Intent, facts: list[dict[str, Any]]) -> Plan:
        if not facts:
            return plan
        if has_locked_rule(facts, DO_NOT_REPEAT):
            plan = self._ensure_policy_check(plan, DO_NOT_REPEAT)
        if (
            has_locked_rule(facts, NEVER_GUESS)
            and intent.category == IntentCategory.QUERY
            and not self._has_grounding_tool(plan)
        ):
            logger.warning("Locked rule %s replaced plan for %s intent", NEVER_GUESS, intent.category)
            return self._refusal_plan(intent, NEVER_GUESS)
        return plan

    @staticmethod
    def _has_grounding_tool(plan: Plan) -> bool:
        return any(
            s.type == StepType.TOOL_CALL and s.tool_name and s.tool_name != "list_tools" for s in plan.steps
        )

    @staticmethod
    def _ensure_policy_check(plan: Plan, policy: str) -> Plan:
        if any(s.type == StepType.POLICY_CHECK and s.params.get("policy") == policy for s in plan.steps):
            return plan
        step = PlanStep(
            type=StepType.POLICY_CHECK,
            description=f"Enforce locked rule: {policy}",
            params={"policy": policy},
        )
        return plan.model_copy(
            update={"steps": [step, *plan.steps], "reasoning": f"{plan.reasoning} | policy_check:{policy}"}
        )

    @staticmethod
    def _refusal_plan(intent: Intent, reason: str) -> Plan:
        return Plan(
            steps=[
                PlanStep(
                    type=StepType.RESPOND,
                    description="Refuse or request tools due to locked rule violation",
                    params={"intent_category": str(intent.category), "policy_refusal": reason},
                )
            ],
            reasoning=f"Locked rule enforcement: {reason}",
            estimated_complexity="simple",
            tools_needed=[],
            memory_access_needed=intent.requires_memory,
        )
