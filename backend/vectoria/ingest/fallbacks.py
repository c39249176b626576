"""Retry/abort decisions keyed by failure kind."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Mapping

from vectoria.reduction.reducer import ReductionOptions
from vectoria.reduction.validation import ANOMALY_COLLAPSED, ANOMALY_EXTREME, ANOMALY_INFINITE, ANOMALY_NAN


class FallbackAction(str, Enum):
    RETRY = "retry"
    ABORT = "abort"


@dataclass(slots=True, frozen=True)
class FallbackRule:
    action: FallbackAction
    max_retries: int = 0
    reseed: bool = True
    init: str = "pca"


DEFAULT_RULES: Mapping[str, FallbackRule] = {
    ANOMALY_COLLAPSED: FallbackRule(FallbackAction.RETRY, max_retries=1),
    ANOMALY_NAN: FallbackRule(FallbackAction.RETRY, max_retries=1),
    ANOMALY_INFINITE: FallbackRule(FallbackAction.RETRY, max_retries=1),
    ANOMALY_EXTREME: FallbackRule(FallbackAction.ABORT),
}

_ABORT = FallbackRule(FallbackAction.ABORT)


class FallbackPolicy:
    """Single table consulted by the pipeline when a stage reports a failure kind."""

    def __init__(self, rules: Mapping[str, FallbackRule] | None = None) -> None:
        self.rules = dict(DEFAULT_RULES if rules is None else rules)

    def rule_for(self, kind: str) -> FallbackRule:
        return self.rules.get(kind, _ABORT)

    def should_retry(self, kind: str, attempts: int) -> bool:
        """``attempts`` counts retries already made for this stage."""
        rule = self.rule_for(kind)
        return rule.action is FallbackAction.RETRY and attempts < rule.max_retries

    def retry_options(self, kind: str, options: ReductionOptions, attempt: int) -> ReductionOptions:
        rule = self.rule_for(kind)
        seed = options.random_state + attempt if rule.reseed else options.random_state
        return replace(options, random_state=seed, init=rule.init)


__all__ = ["FallbackAction", "FallbackRule", "FallbackPolicy", "DEFAULT_RULES"]
