"""Agent self-reflection: gather recent work, ask the team runtime, evolve SOUL.md."""

from __future__ import annotations

import json
import logging
import os
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from team_conductor.events import EventBus, Events
from team_conductor.models import AgentStats, Task, TaskPriority, TaskSource, TaskStatus, utc_now_iso
from team_conductor.ports import StatsStore, TaskFilter, TaskStore
from team_conductor.team.model_resolver import TeamOperation

logger = logging.getLogger(__name__)

SOUL_FILE = "SOUL.md"
PROACTIVE_TAG = "proactive"
RECENT_TASKS = 20
PROMPT_TASKS = 10

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_TRAIT_SUFFIX_RE = re.compile(r"(ness|ity|ive|tion|ment)$")


class TeamQueue(Protocol):
    def execute(self, operation: TeamOperation | str, prompt: str, cwd: str | None = None) -> Any: ...


@dataclass(slots=True)
class Soul:
    persona: str = ""
    role: str = ""
    traits: dict[str, float] = field(default_factory=dict)
    goals: list[str] = field(default_factory=list)
    strengths: list[str] = field(default_factory=list)
    weaknesses: list[str] = field(default_factory=list)
    learnings: list[str] = field(default_factory=list)
    last_reflection: str = field(default_factory=utc_now_iso)
    version: int = 1


@dataclass(slots=True)
class ReflectionResult:
    role: str = ""
    new_learnings: list[str] = field(default_factory=list)
    trait_adjustments: dict[str, float] = field(default_factory=dict)
    new_goals: list[str] = field(default_factory=list)
    proactive_tasks: list[dict[str, str]] = field(default_factory=list)


@dataclass(slots=True)
class ReflectionContext:
    stats: AgentStats | None
    recent_tasks: list[Task]
    past_proactive_tasks: list[Task]
    soul: Soul


def _trait_stem(name: str) -> str:
    stem = re.sub(r"[-_\s]+", "_", name.lower())
    return _TRAIT_SUFFIX_RE.sub("", stem).rstrip("_")


def canonical_trait(incoming: str, existing: dict[str, float]) -> str:
    """Map a trait name onto an existing one sharing its stem."""

    if incoming in existing:
        return incoming
    stem = _trait_stem(incoming)
    for name in existing:
        if _trait_stem(name) == stem:
            return name
    return incoming


def parse_soul(content: str) -> Soul:
    soul = Soul()
    body = content
    front = re.match(r"^---\n([\s\S]*?)\n---", content)
    if front:
        for line in front.group(1).splitlines():
            key, _, value = line.partition(":")
            value = value.strip()
            if not value:
                continue
            key = key.strip()
            if key == "version":
                soul.version = int(value) if value.isdigit() else 1
            elif key == "lastReflection":
                soul.last_reflection = value
            elif key in ("persona", "role"):
                setattr(soul, key, value)
        body = content[front.end() :].strip()

    lists = {
        "goals": soul.goals,
        "strengths": soul.strengths,
        "weaknesses": soul.weaknesses,
        "learnings": soul.learnings,
    }
    section = ""
    for line in body.splitlines():
        heading = re.match(r"^##\s+(.+)", line)
        if heading:
            section = heading.group(1).strip().lower()
            continue
        bullet = re.match(r"^[-*]\s+(.+)", line)
        if bullet is None:
            if line.strip() and section in ("role", "persona") and not getattr(soul, section):
                setattr(soul, section, line.strip())
            continue
        item = bullet.group(1).strip()
        if section in lists:
            lists[section].append(item)
        elif section == "traits":
            trait = re.match(r"^(.+?):\s*([\d.]+)", item)
            if trait:
                soul.traits[trait.group(1).strip()] = float(trait.group(2))
    return soul


def render_soul(soul: Soul) -> str:
    lines = ["---", f"version: {soul.version}", f"lastReflection: {soul.last_reflection}"]
    if soul.persona:
        lines.append(f"persona: {soul.persona}")
    if soul.role:
        lines.append(f"role: {soul.role}")
    lines.extend(["---", ""])
    if soul.role:
        lines.extend(["## Role", soul.role, ""])
    if soul.persona:
        lines.extend(["## Persona", soul.persona, ""])
    if soul.traits:
        lines.append("## Traits")
        lines.extend(f"- {name}: {value:g}" for name, value in soul.traits.items())
        lines.append("")
    for title, items in (
        ("Goals", soul.goals),
        ("Strengths", soul.strengths),
        ("Weaknesses", soul.weaknesses),
        ("Learnings", soul.learnings),
    ):
        if items:
            lines.append(f"## {title}")
            lines.extend(f"- {item}" for item in items)
            lines.append("")
    return "\n".join(lines)


class SoulManager:
    """Reads and evolves ``<agents_dir>/<agent_id>/SOUL.md``."""

    def __init__(self, agents_dir: Path, event_bus: EventBus) -> None:
        self.agents_dir = agents_dir
        self.event_bus = event_bus
        self._lock = threading.Lock()

    def path(self, agent_id: str) -> Path:
        return self.agents_dir / agent_id / SOUL_FILE

    def load(self, agent_id: str) -> Soul:
        path = self.path(agent_id)
        if not path.exists():
            return Soul()
        return parse_soul(path.read_text("utf-8"))

    def save(self, agent_id: str, soul: Soul) -> None:
        path = self.path(agent_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".md.tmp")
        tmp_path.write_text(render_soul(soul), "utf-8")
        os.replace(tmp_path, path)

    def evolve(self, agent_id: str, result: ReflectionResult) -> Soul:
        with self._lock:
            soul = self.load(agent_id)
            if result.role:
                soul.role = result.role
            soul.learnings.extend(result.new_learnings)
            soul.goals.extend(result.new_goals)
            for trait, delta in result.trait_adjustments.items():
                name = canonical_trait(trait, soul.traits)
                soul.traits[name] = max(0.0, min(1.0, soul.traits.get(name, 0.5) + delta))
            soul.version += 1
            soul.last_reflection = utc_now_iso()
            self.save(agent_id, soul)
        self.event_bus.emit(Events.SOUL_EVOLVED, {"agent_id": agent_id, "soul": soul, "version": soul.version})
        return soul


def parse_reflection(raw: str) -> ReflectionResult:
    """Parse the model's JSON answer, unwrapping a markdown code fence if present.

    Raises ``ValueError`` when the answer is not a JSON object.
    """

    text = raw.strip()
    fenced = _FENCE_RE.search(text)
    if fenced:
        text = fenced.group(1).strip()
    parsed = json.loads(text)
    if not isinstance(parsed, dict):
        raise ValueError("Reflection answer must be a JSON object.")

    adjustments: dict[str, float] = {}
    raw_adjustments = parsed.get("traitAdjustments")
    if isinstance(raw_adjustments, dict):
        for name, delta in raw_adjustments.items():
            if isinstance(delta, (int, float)):
                adjustments[str(name)] = max(-1.0, min(1.0, float(delta)))

    tasks = parsed.get("proactiveTasks")
    if not isinstance(tasks, list):
        tasks = parsed.get("improvementTasks") if isinstance(parsed.get("improvementTasks"), list) else []
    return ReflectionResult(
        role=parsed["role"] if isinstance(parsed.get("role"), str) else "",
        new_learnings=[str(item) for item in parsed.get("newLearnings") or [] if item],
        trait_adjustments=adjustments,
        new_goals=[str(item) for item in parsed.get("newGoals") or [] if item],
        proactive_tasks=[
            {"title": str(item["title"]), "description": str(item.get("description", ""))}
            for item in tasks
            if isinstance(item, dict) and item.get("title")
        ],
    )


class SelfImprovementEngine:
    """Runs ``self:reflect`` for an agent through the serialized team queue.

    A successful reflection evolves the agent's soul and creates the
    proactive tasks it proposed, assigned back to the agent.
    """

    def __init__(
        self,
        task_store: TaskStore,
        stats_store: StatsStore,
        souls: SoulManager,
        event_bus: EventBus,
        team_queue: TeamQueue,
    ) -> None:
        self.task_store = task_store
        self.stats_store = stats_store
        self.souls = souls
        self.event_bus = event_bus
        self.team_queue = team_queue

    def gather_context(self, agent_id: str) -> ReflectionContext:
        tasks = self.task_store.list(TaskFilter(assigned_to=agent_id))
        tasks.sort(key=lambda task: task.created_at, reverse=True)
        return ReflectionContext(
            stats=self.stats_store.get(agent_id),
            recent_tasks=tasks[:RECENT_TASKS],
            past_proactive_tasks=[task for task in tasks if PROACTIVE_TAG in task.tags],
            soul=self.souls.load(agent_id),
        )

    def reflect(self, agent_id: str, timeout: float | None = None) -> ReflectionResult:
        """Reflect and apply the outcome; errors from the queue or the parser propagate."""

        prompt = build_reflection_prompt(self.gather_context(agent_id))
        future = self.team_queue.execute(TeamOperation.SELF_REFLECT, prompt)
        result = parse_reflection(future.result(timeout=timeout))
        self.apply(agent_id, result)
        logger.info(
            "Reflection complete: agent=%s learnings=%s proactive_tasks=%s",
            agent_id,
            len(result.new_learnings),
            len(result.proactive_tasks),
        )
        return result

    def apply(self, agent_id: str, result: ReflectionResult) -> list[Task]:
        self.souls.evolve(agent_id, result)
        seen = {
            task.title.strip().lower()
            for task in self.task_store.list(TaskFilter(assigned_to=agent_id))
            if PROACTIVE_TAG in task.tags
        }
        created: list[Task] = []
        for proposal in result.proactive_tasks:
            key = proposal["title"].strip().lower()
            if key in seen:
                logger.debug("Skipping duplicate proactive task: agent=%s title=%s", agent_id, proposal["title"])
                continue
            seen.add(key)
            task = self.task_store.create(
                Task(
                    id="",
                    title=proposal["title"],
                    description=proposal["description"],
                    status=TaskStatus.ASSIGNED,
                    priority=TaskPriority.NORMAL,
                    source=TaskSource.AGENT,
                    created_by=agent_id,
                    assigned_to=agent_id,
                    tags=[PROACTIVE_TAG],
                ),
            )
            self.event_bus.emit(Events.TASK_CREATED, {"task": task})
            created.append(task)
        return created


def build_reflection_prompt(context: ReflectionContext) -> str:
    lines = [
        "You are reflecting on your recent work to improve yourself and help the user proactively.",
        "",
        "## What to do",
        "1. Define or refine your ROLE in 2-5 words, based only on the work you have done.",
        "2. Extract specific learnings from your task outcomes.",
        "3. Adjust your traits based on evidence, not aspirationally.",
        "4. Identify proactive tasks you can execute next to help the user.",
        "",
        "## Rules for proactive tasks",
        "- Be specific and actionable; base them on real patterns in your history.",
        "- Do NOT create meta-tasks about yourself.",
        '- Do NOT recreate tasks listed under "Your Past Proactive Tasks".',
        "- With no meaningful history yet, return empty arrays for everything.",
        "",
        "## Your Stats",
    ]
    stats = context.stats
    if stats is None:
        lines.append("- No stats available yet, return empty arrays")
    else:
        rate = stats.success_rate
        lines.extend(
            [
                f"- Tasks completed: {stats.tasks_completed}",
                f"- Tasks failed: {stats.tasks_failed}",
                f"- Success rate: {'N/A' if rate is None else f'{rate * 100:.1f}%'}",
                f"- Average response time: {stats.average_response_ms:.0f}ms",
                f"- Current streak: {stats.streaks.current}",
            ],
        )

    lines.extend(["", "## Your Recent Tasks"])
    if not context.recent_tasks:
        lines.append("- No tasks yet, return empty arrays")
    for task in context.recent_tasks[:PROMPT_TASKS]:
        lines.append(f"- [{task.status.value}] {task.title}")
        if task.description:
            lines.append(f"  Description: {task.description[:200]}")
        if task.error:
            lines.append(f"  Error: {task.error}")

    lines.extend(["", "## Your Past Proactive Tasks (DO NOT recreate these)"])
    if not context.past_proactive_tasks:
        lines.append("- None yet")
    lines.extend(f"- [{task.status.value}] {task.title}" for task in context.past_proactive_tasks)

    soul = context.soul
    lines.extend(
        [
            "",
            "## Your Current Soul",
            f"- Role: {soul.role or 'not yet defined'}",
            f"- Persona: {soul.persona or 'not set'}",
        ],
    )
    if soul.goals:
        lines.append(f"- Goals: {', '.join(soul.goals)}")
    if soul.learnings:
        lines.append(f"- Recent learnings: {', '.join(soul.learnings[-5:])}")
    if soul.traits:
        lines.extend(["", "## Your Existing Traits (use these exact names)"])
        lines.extend(f"- {name}: {value:g}" for name, value in soul.traits.items())

    lines.extend(
        [
            "",
            "Respond with a JSON object:",
            "```json",
            "{",
            '  "role": "Your Role Title",',
            '  "newLearnings": ["..."],',
            '  "traitAdjustments": {"trait_name": 0.05},',
            '  "newGoals": ["..."],',
            '  "proactiveTasks": [{"title": "...", "description": "..."}]',
            "}",
            "```",
        ],
    )
    return "\n".join(lines)
