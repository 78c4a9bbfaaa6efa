"""Rule-based, capacity-aware task routing."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, replace
from typing import Any

from agent_dispatch.config import RoutingSettings
from agent_dispatch.dispatch.events import EngineEventType, EventBus
from agent_dispatch.dispatch.models import AgentCapacity, TaskCreate, TaskView
from agent_dispatch.dispatch.repository import TaskRepository
from agent_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)

TEAM_LEADS: dict[str, str] = {
    "technology": "cto",
    "tech": "cto",
    "marketing": "cmo",
    "product": "cpo",
    "operations": "coo",
    "finance": "cfo",
    "people": "chro",
}

AGENT_TO_TEAM: dict[str, str] = {
    "web_dev_lead": "technology",
    "app_dev_lead": "technology",
    "devops": "technology",
    "devops_lead": "technology",
    "qa": "technology",
    "qa_lead": "technology",
    "infrastructure_lead": "technology",
    "cto": "technology",
    "content_strategy_lead": "marketing",
    "growth_analytics_lead": "marketing",
    "cmo": "marketing",
    "ux_research_lead": "product",
    "product_analytics_lead": "product",
    "feature_spec_lead": "product",
    "cpo": "product",
    "vendor_management_lead": "operations",
    "process_automation_lead": "operations",
    "coo": "operations",
    "expense_tracking_lead": "finance",
    "revenue_analytics_lead": "finance",
    "cfo": "finance",
    "hiring_lead": "people",
    "compliance_lead": "people",
    "chro": "people",
}


@dataclass(slots=True)
class RuleMatch:
    """Conditions of one routing rule; any satisfied condition is a match."""

    keywords: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    team: str | None = None
    priority: int | None = None
    assigned_to: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.keywords:
            payload["keywords"] = list(self.keywords)
        if self.tags:
            payload["tags"] = list(self.tags)
        if self.team is not None:
            payload["team"] = self.team
        if self.priority is not None:
            payload["priority"] = self.priority
        if self.assigned_to is not None:
            payload["assigned_to"] = self.assigned_to
        return payload


@dataclass(slots=True)
class RoutingRule:
    """Ordered rule: first rule whose match is satisfied supplies the agent."""

    match: RuleMatch
    assign_to: str

    def matches(self, task: TaskCreate) -> bool:
        condition = self.match
        if condition.keywords:
            text = routing_search_text(task).lower()
            if any(keyword.lower() in text for keyword in condition.keywords):
                return True
        if condition.tags:
            task_tags = {tag.lower() for tag in task.tags}
            if any(tag.lower() in task_tags for tag in condition.tags):
                return True
        if condition.team and task.team and task.team.lower() == condition.team.lower():
            return True
        if condition.priority is not None and task.priority == condition.priority:
            return True
        return bool(
            condition.assigned_to
            and task.assigned_agent
            and task.assigned_agent.lower() == condition.assigned_to.lower(),
        )


def _keywords(agent: str, *keywords: str) -> RoutingRule:
    return RoutingRule(match=RuleMatch(keywords=keywords), assign_to=agent)


def _team(agent: str, team: str) -> RoutingRule:
    return RoutingRule(match=RuleMatch(team=team), assign_to=agent)


DEFAULT_ROUTING_RULES: tuple[RoutingRule, ...] = (
    _keywords("web_dev_lead", "frontend", "react", "css", "landing page", "website"),
    _keywords("app_dev_lead", "mobile", "ios", "android", "app"),
    _keywords("devops", "deploy", "ci/cd", "pipeline", "docker", "railway", "vercel"),
    _keywords("qa", "test", "qa", "bug", "regression"),
    _team("cto", "technology"),
    _keywords("content_strategy_lead", "content", "blog", "article", "copy"),
    _keywords("growth_analytics_lead", "social", "twitter", "instagram", "linkedin"),
    _team("cmo", "marketing"),
    _keywords("ux_research_lead", "ux", "user research", "usability", "wireframe"),
    _keywords("product_analytics_lead", "metrics", "analytics", "dashboard", "kpi"),
    _keywords("feature_spec_lead", "feature", "spec", "requirements", "prd"),
    _team("cpo", "product"),
    _keywords("vendor_management_lead", "vendor", "contract", "subscription"),
    _keywords("process_automation_lead", "process", "automation", "workflow", "sop"),
    _team("coo", "operations"),
    _keywords("expense_tracking_lead", "expense", "receipt", "cost"),
    _keywords("revenue_analytics_lead", "revenue", "forecast", "budget"),
    _team("cfo", "finance"),
    _keywords("hiring_lead", "hire", "job", "candidate", "recruit"),
    _keywords("compliance_lead", "compliance", "policy", "legal"),
    _team("chro", "people"),
)


@dataclass(slots=True)
class RoutingResult:
    """Outcome of routing one task."""

    task_id: str
    assigned_to: str
    original_assignment: str | None
    matched_rule: dict[str, Any] | None
    capacity: dict[str, Any]
    timestamp: str

    def to_metadata(self) -> dict[str, Any]:
        return {
            "assigned_to": self.assigned_to,
            "original_assignment": self.original_assignment,
            "matched_rule": self.matched_rule,
            "capacity_at_routing": dict(self.capacity),
            "routed_at": self.timestamp,
        }


@dataclass(slots=True)
class RoutingSuggestion:
    """Routing preview without persistence."""

    suggested_agent: str
    matched_rule: dict[str, Any] | None
    capacity: AgentCapacity
    confidence: str


def team_lead(team: str | None) -> str | None:
    if not team:
        return None
    return TEAM_LEADS.get(team.strip().lower())


def is_team_lead(agent: str) -> bool:
    return agent in TEAM_LEADS.values()


def agent_team(agent: str) -> str | None:
    return AGENT_TO_TEAM.get(agent)


def routing_search_text(task: TaskCreate) -> str:
    content = task.metadata.get("content")
    parts = [
        task.title,
        content if isinstance(content, str) else "",
        task.description,
        *task.keywords,
        *task.tags,
    ]
    return " ".join(parts)


class TaskRouter:
    """Assign new tasks to agents using ordered rules and live capacity."""

    def __init__(
        self,
        repository: TaskRepository,
        *,
        settings: RoutingSettings | None = None,
        rules: Iterable[RoutingRule] = DEFAULT_ROUTING_RULES,
        events: EventBus | None = None,
    ) -> None:
        self.repository = repository
        self.settings = settings or RoutingSettings()
        self._rules: list[RoutingRule] = list(rules)
        self.events = events

    @property
    def routing_rules(self) -> list[RoutingRule]:
        return list(self._rules)

    def add_routing_rule(self, rule: RoutingRule, *, position: int | None = None) -> None:
        """Insert a rule at ``position`` or append it when out of range."""

        if position is not None and 0 <= position < len(self._rules):
            self._rules.insert(position, rule)
        else:
            self._rules.append(rule)
        logger.info("Added routing rule %s -> %s", rule.match.to_dict(), rule.assign_to)

    def remove_routing_rule(self, index: int) -> RoutingRule | None:
        if not 0 <= index < len(self._rules):
            return None
        removed = self._rules.pop(index)
        logger.info("Removed routing rule %s -> %s", removed.match.to_dict(), removed.assign_to)
        return removed

    def capacity(self, agent: str) -> AgentCapacity:
        return self.repository.capacity_for(
            agent,
            max_active=self.settings.max_active_per_agent,
            max_queued=self.settings.max_queued_per_agent,
        )

    def all_agent_capacities(self) -> dict[str, AgentCapacity]:
        agents = sorted({*AGENT_TO_TEAM, *TEAM_LEADS.values(), self.settings.fallback_agent})
        return {agent: self.capacity(agent) for agent in agents}

    def route_task(self, task: TaskCreate) -> tuple[RoutingResult, TaskView]:
        """Pick an agent for ``task``, persist the assignment, and return both.

        The caller's payload is left untouched. Placement on the matched agent
        and then on its team lead is capacity-guarded by the store; when neither
        has room the task stays with the matched agent.
        """

        task_id = task.task_id or self.repository.next_task_id()
        matched, rule = self._match(task)
        capacity = self.capacity(matched)

        candidates = [] if capacity.is_overloaded else [matched]
        lead = team_lead(agent_team(matched))
        if not is_team_lead(matched) and lead and lead != matched:
            candidates.append(lead)

        for candidate in candidates:
            result, view = self._place(
                task,
                task_id=task_id,
                agent=candidate,
                rule=rule,
                capacity=capacity,
                was_overloaded=candidate != matched,
            )
            if view is not None:
                break
            logger.info("Agent %s has no room for task %s", candidate, task_id)
        else:
            logger.info("No room on %s or its team lead, keeping %s", matched, matched)
            result, view = self._place(
                task,
                task_id=task_id,
                agent=matched,
                rule=rule,
                capacity=capacity,
                was_overloaded=True,
                guarded=False,
            )

        logger.info("Routed task %s to %s", result.task_id, result.assigned_to)
        if self.events is not None:
            self.events.publish(
                EngineEventType.TASK_ROUTED,
                task_id=result.task_id,
                agent=result.assigned_to,
                details=result.to_metadata(),
            )
        return result, view

    def route_tasks(self, tasks: Iterable[TaskCreate]) -> list[RoutingResult]:
        return [self.route_task(task)[0] for task in tasks]

    def suggest_routing(self, task: TaskCreate) -> RoutingSuggestion:
        """Preview the routing choice with a coarse confidence label."""

        for rule in self._rules:
            if rule.matches(task):
                return RoutingSuggestion(
                    suggested_agent=rule.assign_to,
                    matched_rule=rule.match.to_dict(),
                    capacity=self.capacity(rule.assign_to),
                    confidence="high",
                )
        lead = team_lead(task.team)
        if lead:
            return RoutingSuggestion(
                suggested_agent=lead,
                matched_rule={"team": task.team},
                capacity=self.capacity(lead),
                confidence="medium",
            )
        fallback = self.settings.fallback_agent
        return RoutingSuggestion(
            suggested_agent=fallback,
            matched_rule=None,
            capacity=self.capacity(fallback),
            confidence="low",
        )

    def _place(  # noqa: PLR0913
        self,
        task: TaskCreate,
        *,
        task_id: str,
        agent: str,
        rule: RoutingRule | None,
        capacity: AgentCapacity,
        was_overloaded: bool,
        guarded: bool = True,
    ) -> tuple[RoutingResult, TaskView | None]:
        result = RoutingResult(
            task_id=task_id,
            assigned_to=agent,
            original_assignment=rule.assign_to if rule else None,
            matched_rule=rule.match.to_dict() if rule else None,
            capacity={
                "active": capacity.active,
                "queued": capacity.queued,
                "was_overloaded": was_overloaded,
            },
            timestamp=utc_now().isoformat(),
        )
        view = self.repository.save_routed_task(
            replace(task, task_id=task_id, team=task.team or agent_team(agent)),
            assigned_agent=agent,
            routing=result.to_metadata(),
            max_active=self.settings.max_active_per_agent if guarded else None,
            max_queued=self.settings.max_queued_per_agent if guarded else None,
        )
        return result, view

    def _match(self, task: TaskCreate) -> tuple[str, RoutingRule | None]:
        for rule in self._rules:
            if rule.matches(task):
                logger.debug("Matched rule %s -> %s", rule.match.to_dict(), rule.assign_to)
                return rule.assign_to, rule
        lead = team_lead(task.team)
        if lead:
            logger.debug("No rule matched, using team lead %s", lead)
            return lead, None
        return self.settings.fallback_agent, None
