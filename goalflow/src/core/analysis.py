"""Rule tables that turn free-text goals into task templates.

The analyzer is intentionally pattern based: an ordered table of
:class:`ActionRule` entries maps action verbs found in a goal description to
task types, capabilities and baseline durations, while :data:`GOAL_TEMPLATES`
provides the standard tasks for each goal type.  Both tables are plain data so
they can be extended or replaced without touching the planner.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .types import ComplexityAnalysis, Goal


HOUR_MS = 3_600_000
MINUTE_MS = 60_000


@dataclass(frozen=True)
class ActionRule:
    """Maps an action verb (and its inflections) to a task template."""

    verb: str
    pattern: str
    task_type: str
    capabilities: Tuple[str, ...]
    base_duration_ms: int
    parallelizable: bool = True
    weak: bool = False

    def compiled(self) -> "re.Pattern[str]":
        return re.compile(rf"\b(?:{self.pattern})\b", re.IGNORECASE)


@dataclass(frozen=True)
class TemplateTask:
    name: str
    task_type: str
    capabilities: Tuple[str, ...]
    duration_ms: int = 15 * MINUTE_MS


@dataclass(frozen=True)
class GoalTemplate:
    goal_type: str
    standard_tasks: Tuple[TemplateTask, ...]
    typical_duration_ms: int
    required_capabilities: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "goal_type": self.goal_type,
            "standard_tasks": [task.name for task in self.standard_tasks],
            "typical_duration_ms": self.typical_duration_ms,
            "required_capabilities": list(self.required_capabilities),
        }


@dataclass
class ActionItem:
    """A detected action inside a goal description."""

    verb: str
    object: str
    sentence: str
    rule: Optional[ActionRule] = None

    @property
    def name(self) -> str:
        return f"{self.verb.capitalize()} {self.object}".strip()

    @property
    def task_type(self) -> str:
        return self.rule.task_type if self.rule else "general"

    @property
    def capabilities(self) -> List[str]:
        return list(self.rule.capabilities) if self.rule else ["general"]

    @property
    def parallelizable(self) -> bool:
        return self.rule.parallelizable if self.rule else True

    @property
    def base_duration_ms(self) -> int:
        return self.rule.base_duration_ms if self.rule else 30 * MINUTE_MS


ACTION_RULES: Tuple[ActionRule, ...] = (
    ActionRule("create", r"creat(?:e|es|ed|ing|ion)", "development", ("coding", "design"), HOUR_MS),
    ActionRule("build", r"build(?:s|ing)?|built", "development", ("coding", "architecture"), HOUR_MS),
    ActionRule("implement", r"implement(?:s|ed|ing|ation)?", "development", ("coding", "testing"), HOUR_MS),
    ActionRule("generate", r"generat(?:e|es|ed|ing)", "development", ("coding",), HOUR_MS),
    ActionRule("analyze", r"analy[sz](?:e|es|ed|ing)|analysis", "analysis", ("data-analysis", "reporting"), 30 * MINUTE_MS),
    ActionRule("optimize", r"optimi[sz](?:e|es|ed|ing|ation)", "optimization", ("performance-analysis", "optimization"), 45 * MINUTE_MS),
    ActionRule("refactor", r"refactor(?:s|ed|ing)?", "refactoring", ("code-analysis", "refactoring"), 45 * MINUTE_MS),
    ActionRule("test", r"test(?:s|ed|ing)?", "testing", ("testing", "debugging"), 20 * MINUTE_MS),
    ActionRule("deploy", r"deploy(?:s|ed|ing|ment)?", "deployment", ("deployment", "devops"), 10 * MINUTE_MS, parallelizable=False),
    ActionRule("document", r"document(?:s|ed|ing|ation)?", "documentation", ("documentation", "writing"), 15 * MINUTE_MS),
    ActionRule("review", r"review(?:s|ed|ing)?", "review", ("code-review", "analysis"), 15 * MINUTE_MS),
    ActionRule("fix", r"fix(?:es|ed|ing)?", "bugfix", ("debugging", "coding"), 30 * MINUTE_MS),
    ActionRule("update", r"updat(?:e|es|ed|ing)", "update", ("coding", "testing"), 30 * MINUTE_MS),
    ActionRule("migrate", r"migrat(?:e|es|ed|ing|ion)", "migration", ("migration", "data-management"), HOUR_MS, parallelizable=False),
    ActionRule("integrate", r"integrat(?:e|es|ed|ing|ion)", "integration", ("integration", "api-management"), 45 * MINUTE_MS, parallelizable=False),
    ActionRule("configure", r"configur(?:e|es|ed|ing|ation)", "configuration", ("configuration", "system-admin"), 15 * MINUTE_MS),
    # "add" is only used when nothing more specific appears in the sentence.
    ActionRule("add", r"add(?:s|ed|ing)?", "development", ("coding",), 30 * MINUTE_MS, weak=True),
)


GOAL_TEMPLATES: Dict[str, GoalTemplate] = {
    "development": GoalTemplate(
        goal_type="development",
        standard_tasks=(
            TemplateTask("requirements-analysis", "analysis", ("analysis",)),
            TemplateTask("design-review", "review", ("design", "code-review")),
            TemplateTask("implementation", "development", ("coding",), 60 * MINUTE_MS),
            TemplateTask("testing", "testing", ("testing",), 20 * MINUTE_MS),
            TemplateTask("documentation", "documentation", ("documentation",)),
            TemplateTask("deployment", "deployment", ("deployment",), 10 * MINUTE_MS),
        ),
        typical_duration_ms=2 * HOUR_MS,
        required_capabilities=("coding", "testing", "debugging"),
    ),
    "analysis": GoalTemplate(
        goal_type="analysis",
        standard_tasks=(
            TemplateTask("data-collection", "data-collection", ("data-analysis",)),
            TemplateTask("data-processing", "data-processing", ("data-analysis",)),
            TemplateTask("pattern-analysis", "analysis", ("data-analysis",)),
            TemplateTask("insight-generation", "insight-generation", ("data-analysis", "reporting")),
            TemplateTask("report-creation", "reporting", ("reporting", "visualization")),
        ),
        typical_duration_ms=HOUR_MS,
        required_capabilities=("data-analysis", "visualization", "reporting"),
    ),
    "trading": GoalTemplate(
        goal_type="trading",
        standard_tasks=(
            TemplateTask("market-analysis", "market-analysis", ("market-analysis",)),
            TemplateTask("risk-assessment", "risk-assessment", ("risk-management",)),
            TemplateTask("strategy-selection", "strategy-selection", ("market-analysis", "risk-management")),
            TemplateTask("order-preparation", "order-preparation", ("trading",)),
            TemplateTask("execution", "trade-execution", ("trading",), 5 * MINUTE_MS),
            TemplateTask("monitoring", "monitoring", ("trading", "risk-management")),
        ),
        typical_duration_ms=30 * MINUTE_MS,
        required_capabilities=("market-analysis", "risk-management", "trading"),
    ),
    "documentation": GoalTemplate(
        goal_type="documentation",
        standard_tasks=(
            TemplateTask("content-outline", "documentation", ("writing",)),
            TemplateTask("draft-writing", "documentation", ("documentation", "writing"), 30 * MINUTE_MS),
            TemplateTask("technical-review", "review", ("code-review",)),
        ),
        typical_duration_ms=HOUR_MS,
        required_capabilities=("documentation", "writing"),
    ),
    "management": GoalTemplate(
        goal_type="management",
        standard_tasks=(
            TemplateTask("scope-definition", "planning", ("planning",)),
            TemplateTask("resource-allocation", "planning", ("planning", "coordination")),
            TemplateTask("progress-tracking", "monitoring", ("coordination",)),
        ),
        typical_duration_ms=HOUR_MS,
        required_capabilities=("planning", "coordination"),
    ),
}


COMPLEXITY_LEVELS: Tuple[Tuple[float, str], ...] = (
    (30.0, "simple"),
    (60.0, "moderate"),
    (90.0, "complex"),
)

RECOMMENDED_APPROACHES: Dict[str, str] = {
    "simple": "template-based",
    "moderate": "hybrid",
    "complex": "ai-generated",
    "highly-complex": "multi-phase-ai",
}

COMPLEXITY_MULTIPLIERS: Dict[str, float] = {
    "simple": 0.7,
    "moderate": 1.0,
    "complex": 1.5,
    "highly-complex": 2.0,
}

_SENTENCE_SPLIT = re.compile(r"[.!?;\n]+")
_WORD = re.compile(r"[\w-]+")


def complexity_level(score: float) -> str:
    for threshold, level in COMPLEXITY_LEVELS:
        if score < threshold:
            return level
    return "highly-complex"


@dataclass
class GoalAnalyzer:
    """Pattern-based goal classification backed by data-driven rule tables."""

    rules: Sequence[ActionRule] = field(default_factory=lambda: ACTION_RULES)
    templates: Mapping[str, GoalTemplate] = field(default_factory=lambda: dict(GOAL_TEMPLATES))

    def __post_init__(self) -> None:
        self._compiled = [(rule, rule.compiled()) for rule in self.rules]

    def detect_actions(self, description: str) -> List[ActionItem]:
        """Detect one action per sentence, in sentence order.

        Falls back to a single generic ``execute`` action when nothing matches.
        """

        actions: List[ActionItem] = []
        text = description or ""
        for sentence in _SENTENCE_SPLIT.split(text):
            sentence = sentence.strip()
            if not sentence:
                continue
            match = self._first_match(sentence)
            if match is None:
                continue
            rule, found = match
            actions.append(
                ActionItem(
                    verb=rule.verb,
                    object=_extract_object(sentence[found.end():]),
                    sentence=sentence,
                    rule=rule,
                )
            )
        if not actions:
            actions.append(ActionItem(verb="execute", object="goal", sentence=text.strip()))
        return actions

    def _first_match(self, sentence: str) -> Optional[Tuple[ActionRule, "re.Match[str]"]]:
        best: Optional[Tuple[ActionRule, "re.Match[str]"]] = None
        weak: Optional[Tuple[ActionRule, "re.Match[str]"]] = None
        for rule, pattern in self._compiled:
            found = pattern.search(sentence)
            if found is None:
                continue
            if rule.weak:
                if weak is None or found.start() < weak[1].start():
                    weak = (rule, found)
                continue
            if best is None or found.start() < best[1].start():
                best = (rule, found)
        return best or weak

    def classify_text(self, text: str) -> List[str]:
        """Return the distinct task types detected in ``text`` (detection order)."""

        types: List[str] = []
        for action in self.detect_actions(text):
            if action.rule is None:
                continue
            if action.task_type not in types:
                types.append(action.task_type)
        return types

    def template_for(self, goal_type: str) -> Optional[GoalTemplate]:
        return self.templates.get(goal_type)

    def complexity(self, goal: Goal) -> ComplexityAnalysis:
        constraints = goal.constraints
        dependency_count = len(constraints.dependencies) if constraints else 0
        factors: Dict[str, Any] = {
            "description_length": len(goal.description or ""),
            "has_constraints": constraints is not None and constraints.count() > 0,
            "constraint_count": constraints.count() if constraints else 0,
            "dependency_count": dependency_count,
            "priority": goal.priority,
        }
        score = 0.0
        score += min(factors["description_length"] / 10.0, 30.0)
        score += factors["constraint_count"] * 10.0
        score += dependency_count * 15.0
        score += max(goal.priority, 0) / 10.0
        level = complexity_level(score)
        return ComplexityAnalysis(
            score=round(score, 2),
            level=level,
            factors=factors,
            recommended_approach=RECOMMENDED_APPROACHES.get(level, "ai-generated"),
        )

    def estimate_duration(self, action: ActionItem, level: str) -> int:
        multiplier = COMPLEXITY_MULTIPLIERS.get(level, 1.0)
        return int(round(action.base_duration_ms * multiplier))

    def available_templates(self) -> Dict[str, Dict[str, Any]]:
        return {goal_type: template.to_dict() for goal_type, template in self.templates.items()}


def _extract_object(remainder: str, *, limit: int = 3) -> str:
    words = _WORD.findall(remainder.lower())
    return " ".join(words[:limit]) or "task"


def iter_rule_types(rules: Iterable[ActionRule] = ACTION_RULES) -> List[str]:
    """Distinct task types covered by ``rules`` in table order."""

    seen: List[str] = []
    for rule in rules:
        if rule.task_type not in seen:
            seen.append(rule.task_type)
    return seen


__all__ = [
    "ACTION_RULES",
    "ActionItem",
    "ActionRule",
    "COMPLEXITY_MULTIPLIERS",
    "GOAL_TEMPLATES",
    "GoalAnalyzer",
    "GoalTemplate",
    "TemplateTask",
    "complexity_level",
    "iter_rule_types",
]
