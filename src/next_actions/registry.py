"""Declarative rule registry and candidate production."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping

from errors import RULE_FAILED, ErrorCategory, ErrorDetail
from memory.effectiveness import DEFAULT_MULTIPLIER, RuleEffectiveness, effectiveness_boost
from next_actions.context import NextActionContext

logger = logging.getLogger(__name__)

PRIORITY_ORDER = {"critical": 3, "high": 2, "medium": 1, "low": 0}


def priority_for_score(score: int) -> str:
    """Map a 0-100 score to a priority."""
    if score >= 80:
        return "critical"
    if score >= 60:
        return "high"
    if score >= 35:
        return "medium"
    return "low"


def build_dedupe_key(rule_key: str, scope: str, item_id: str | None = None) -> str:
    """Return the dedupe key for a rule firing in a scope."""
    if item_id is None:
        return f"nba:{rule_key}:{scope}"
    return f"nba:{rule_key}:{scope}:{item_id}"


@dataclass(frozen=True)
class RuleDescriptor:
    """One next-action rule.

    ``predicate`` decides whether the rule fires. When ``items_fn`` is set the
    rule emits one candidate per returned item, and the item is passed to the
    score, reason, title and payload callables.
    """

    key: str
    title: str
    predicate: Callable[[NextActionContext], bool]
    score_fn: Callable[[NextActionContext, Any], float]
    reason_fn: Callable[[NextActionContext, Any], str]
    scopes: tuple[str, ...] = ("command_center",)
    priority_fn: Callable[[int], str] = priority_for_score
    items_fn: Callable[[NextActionContext], Iterable[Any]] | None = None
    item_id_fn: Callable[[Any], str] | None = None
    title_fn: Callable[[NextActionContext, Any], str] | None = None
    payload_fn: Callable[[NextActionContext, Any], dict[str, Any]] | None = None
    action_url: str | None = None
    steps: tuple[str, ...] = ()


@dataclass(frozen=True)
class Candidate:
    """Ephemeral recommendation produced by one rule firing."""

    rule_key: str
    dedupe_key: str
    title: str
    reason: str
    priority: str
    score: int
    action_url: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    explanation: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CandidateBatch:
    """Ranked candidates plus warnings from rules that failed."""

    candidates: list[Candidate]
    warnings: list[ErrorDetail]


def rank_candidates(candidates: Iterable[Candidate]) -> list[Candidate]:
    """Order by score, then priority, then dedupe key."""
    return sorted(
        candidates,
        key=lambda item: (-item.score, -PRIORITY_ORDER[item.priority], item.dedupe_key),
    )


class RuleRegistry:
    """Ordered collection of rule descriptors."""

    def __init__(self, rules: Iterable[RuleDescriptor] = ()) -> None:
        self._rules: dict[str, RuleDescriptor] = {}
        for rule in rules:
            self.register(rule)

    def register(self, rule: RuleDescriptor) -> RuleDescriptor:
        """Add a rule, rejecting duplicate keys."""
        if rule.key in self._rules:
            raise ValueError(f"Rule already registered: {rule.key}")
        self._rules[rule.key] = rule
        return rule

    def get(self, key: str) -> RuleDescriptor | None:
        return self._rules.get(key)

    @property
    def rules(self) -> list[RuleDescriptor]:
        return list(self._rules.values())

    def produce_candidates(
        self,
        context: NextActionContext,
        scope: str,
        weights: Mapping[str, float] | None = None,
        effectiveness: Mapping[str, RuleEffectiveness] | None = None,
    ) -> CandidateBatch:
        """Evaluate every rule registered for ``scope``.

        A rule that raises is logged and skipped, leaving a warning; the other
        rules still produce candidates.
        """
        candidates: list[Candidate] = []
        warnings: list[ErrorDetail] = []
        for rule in self._rules.values():
            if scope not in rule.scopes:
                continue
            try:
                candidates.extend(
                    self._evaluate(rule, context, scope, weights or {}, effectiveness or {})
                )
            except Exception as exc:
                logger.exception("Rule %s failed; skipping.", rule.key)
                warnings.append(
                    ErrorDetail(
                        code=RULE_FAILED,
                        message=f"Rule {rule.key} skipped.",
                        category=ErrorCategory.INTERNAL,
                        metadata={"rule_key": rule.key, "exception_type": type(exc).__name__},
                    )
                )
        return CandidateBatch(candidates=rank_candidates(candidates), warnings=warnings)

    def _evaluate(
        self,
        rule: RuleDescriptor,
        context: NextActionContext,
        scope: str,
        weights: Mapping[str, float],
        effectiveness: Mapping[str, RuleEffectiveness],
    ) -> list[Candidate]:
        if not rule.predicate(context):
            return []
        items: Iterable[Any] = rule.items_fn(context) if rule.items_fn else (None,)
        weight = weights.get(rule.key, DEFAULT_MULTIPLIER)
        boost = effectiveness_boost(effectiveness.get(rule.key))

        produced: list[Candidate] = []
        for item in items:
            item_id = None
            if rule.items_fn is not None:
                item_id = rule.item_id_fn(item) if rule.item_id_fn else str(item)
            base = float(rule.score_fn(context, item))
            score = max(0, min(100, round(base * weight + boost)))
            reason = rule.reason_fn(context, item)
            produced.append(
                Candidate(
                    rule_key=rule.key,
                    dedupe_key=build_dedupe_key(rule.key, scope, item_id),
                    title=rule.title_fn(context, item) if rule.title_fn else rule.title,
                    reason=reason,
                    priority=rule.priority_fn(score),
                    score=score,
                    action_url=rule.action_url,
                    payload=rule.payload_fn(context, item) if rule.payload_fn else {},
                    explanation={
                        "rule_key": rule.key,
                        "summary": reason,
                        "score_factors": {
                            "base": round(base, 2),
                            "weight": weight,
                            "effectiveness_boost": boost,
                            "total": score,
                        },
                        "recommended_steps": list(rule.steps),
                    },
                )
            )
        return produced
