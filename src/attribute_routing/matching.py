from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from .catalog import AttributeDefinition, MemberAttributeValues
from .query_logic import (
    InvalidOperandReference,
    LogicTreeEvaluator,
    OperandResolver,
    QueryEvaluator,
    QueryNode,
    bind_value_types,
    count_rules,
    dynamic_refs,
    to_query_value,
    validate_query,
)

NO_LOGIC_WARNING = "no attribute logic configured"

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TroubleshooterCase(str, Enum):
    IS_A_ROUTER = "is-a-router"
    NO_LOGIC_FOUND = "no-logic-found"
    MATCH_RESULTS_READY = "match-results-ready"
    MATCH_RESULTS_READY_WITH_FALLBACK = "match-results-ready-with-fallback"
    MATCHES_ALL_MEMBERS_BECAUSE_OF_EMPTY_QUERY_VALUE = "matches-all-members-because-of-empty-query-value"
    MATCHES_ALL_MEMBERS = "matches-all-members"


@dataclass(slots=True, frozen=True)
class TroubleshooterRecord:
    case: TroubleshooterCase
    payload: dict[str, Any]

    def as_dict(self) -> dict[str, Any]:
        return {"type": self.case.value, "data": self.payload}


@dataclass(slots=True)
class Troubleshooter:
    """Write-once diagnostic sink for a single call. Disabled instances do nothing."""

    enabled: bool = False
    recorded: TroubleshooterRecord | None = None

    def record(
        self,
        case: TroubleshooterCase,
        payload: Mapping[str, Any] | Callable[[], Mapping[str, Any]],
    ) -> TroubleshooterRecord | None:
        if not self.enabled:
            return None
        if self.recorded is not None:
            raise RuntimeError(f"troubleshooter already recorded {self.recorded.case.value}")
        data = payload() if callable(payload) else payload
        self.recorded = TroubleshooterRecord(case=case, payload=dict(data))
        return self.recorded


@dataclass(slots=True)
class WarningCollector:
    """Per-call warning list that keeps the first occurrence of each message."""

    messages: list[str] = field(default_factory=list)
    seen: set[str] = field(default_factory=set)

    def add(self, message: str) -> None:
        if message in self.seen:
            return
        self.seen.add(message)
        self.messages.append(message)

    def extend(self, messages: Iterable[str]) -> None:
        for message in messages:
            self.add(message)


@dataclass(slots=True)
class MatchOutcome:
    matched_member_ids: frozenset[str]
    checked_fallback: bool = False
    main_warnings: list[str] = field(default_factory=list)
    fallback_warnings: list[str] = field(default_factory=list)
    time_taken: dict[str, float | None] = field(default_factory=dict)
    troubleshooter: TroubleshooterRecord | None = None
    canceled: bool = False

    @property
    def warnings(self) -> list[str]:
        collector = WarningCollector()
        collector.extend(self.main_warnings)
        collector.extend(self.fallback_warnings)
        return collector.messages

    @property
    def used_fallback(self) -> bool:
        return self.checked_fallback and bool(self.matched_member_ids)

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "matched_member_ids": sorted(self.matched_member_ids),
            "checked_fallback": self.checked_fallback,
            "main_warnings": list(self.main_warnings),
            "fallback_warnings": list(self.fallback_warnings),
            "time_taken": dict(self.time_taken),
            "canceled": self.canceled,
        }
        if self.troubleshooter is not None:
            payload["troubleshooter"] = self.troubleshooter.as_dict()
        return payload


@dataclass(slots=True)
class _PhaseResult:
    matched: set[str] = field(default_factory=set)
    warnings: list[str] = field(default_factory=list)
    leaves_evaluated: int = 0
    canceled: bool = False


def read_clock(clock: Callable[[], float]) -> float | None:
    try:
        return float(clock())
    except Exception:
        logger.debug("timing_unavailable", exc_info=True)
        return None


def timed(
    clock: Callable[[], float],
    phase: str,
    time_taken: dict[str, float | None],
    fn: Callable[[], T],
) -> T:
    start = read_clock(clock)
    result = fn()
    end = read_clock(clock)
    time_taken[phase] = end - start if start is not None and end is not None else None
    return result


def _partition(members: Sequence[MemberAttributeValues], parts: int) -> list[Sequence[MemberAttributeValues]]:
    size = -(-len(members) // parts)
    return [members[index : index + size] for index in range(0, len(members), size)]


@dataclass(slots=True)
class MatchOrchestrator:
    evaluator: QueryEvaluator = field(default_factory=LogicTreeEvaluator)
    resolver: OperandResolver = field(default_factory=OperandResolver)
    max_workers: int = 1
    parallel_threshold: int = 64
    clock: Callable[[], float] = time.perf_counter

    def run(
        self,
        primary_tree: QueryNode | None,
        fallback_tree: QueryNode | None,
        members: Sequence[MemberAttributeValues],
        operands: Mapping[str, Mapping[str, Any]] | None = None,
        troubleshooter_enabled: bool = False,
        attributes: Mapping[str, AttributeDefinition] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> MatchOutcome:
        members = tuple(members)
        troubleshooter = Troubleshooter(enabled=troubleshooter_enabled)
        all_member_ids = frozenset(member.member_id for member in members)

        if primary_tree is None:
            logger.info("attribute_logic_not_configured", extra={"member_count": len(all_member_ids)})
            troubleshooter.record(
                TroubleshooterCase.NO_LOGIC_FOUND,
                lambda: {
                    "reason": "No attribute logic configured.",
                    "attributes_of_the_org": [
                        {"id": definition.id, "name": definition.name, "type": definition.value_type}
                        for definition in (attributes or {}).values()
                    ],
                    "team_members_with_attribute_values": [member.snapshot() for member in members],
                },
            )
            return MatchOutcome(
                matched_member_ids=all_member_ids,
                main_warnings=[NO_LOGIC_WARNING],
                troubleshooter=troubleshooter.recorded,
            )

        primary_tree = self._validate(primary_tree, attributes)
        if fallback_tree is not None:
            fallback_tree = self._validate(fallback_tree, attributes)

        if count_rules(primary_tree) == 0:
            logger.info("attribute_logic_empty_query", extra={"member_count": len(all_member_ids)})
            troubleshooter.record(
                TroubleshooterCase.MATCHES_ALL_MEMBERS_BECAUSE_OF_EMPTY_QUERY_VALUE,
                lambda: {
                    "attributes_query_value": to_query_value(primary_tree),
                    "matched_member_ids": sorted(all_member_ids),
                },
            )
            return MatchOutcome(matched_member_ids=all_member_ids, troubleshooter=troubleshooter.recorded)

        time_taken: dict[str, float | None] = {}
        main_warnings = WarningCollector()
        primary_resolved = timed(
            self.clock, "resolve_primary", time_taken, lambda: self.resolver.resolve(primary_tree, operands)
        )
        main_warnings.extend(primary_resolved.warnings)
        primary = timed(
            self.clock,
            "evaluate_primary",
            time_taken,
            lambda: self._evaluate_members(primary_resolved.tree, members, cancel_event),
        )
        main_warnings.extend(primary.warnings)
        self._log_phase("primary", members, primary)

        diagnostics: dict[str, Any] = {
            "attributes_query_value": to_query_value(primary_resolved.tree) if troubleshooter.enabled else None,
            "primary_leaves_evaluated": primary.leaves_evaluated,
        }

        if primary.canceled or primary.matched:
            troubleshooter.record(
                TroubleshooterCase.MATCH_RESULTS_READY,
                lambda: {
                    **diagnostics,
                    "matched_member_ids": sorted(primary.matched) if not primary.canceled else [],
                    "warnings": list(main_warnings.messages),
                    "canceled": primary.canceled,
                },
            )
            return MatchOutcome(
                matched_member_ids=frozenset() if primary.canceled else frozenset(primary.matched),
                main_warnings=main_warnings.messages,
                time_taken=time_taken,
                troubleshooter=troubleshooter.recorded,
                canceled=primary.canceled,
            )

        fallback_warnings = WarningCollector()
        if fallback_tree is None:
            logger.info("attribute_logic_no_match", extra={"checked_fallback": False})
            troubleshooter.record(
                TroubleshooterCase.MATCH_RESULTS_READY,
                lambda: {
                    **diagnostics,
                    "matched_member_ids": [],
                    "warnings": list(main_warnings.messages),
                    "canceled": False,
                },
            )
            return MatchOutcome(
                matched_member_ids=frozenset(),
                main_warnings=main_warnings.messages,
                time_taken=time_taken,
                troubleshooter=troubleshooter.recorded,
            )

        fallback_resolved = timed(
            self.clock, "resolve_fallback", time_taken, lambda: self.resolver.resolve(fallback_tree, operands)
        )
        fallback_warnings.extend(fallback_resolved.warnings)
        fallback = timed(
            self.clock,
            "evaluate_fallback",
            time_taken,
            lambda: self._evaluate_members(fallback_resolved.tree, members, cancel_event),
        )
        fallback_warnings.extend(fallback.warnings)
        self._log_phase("fallback", members, fallback)

        matched = frozenset() if fallback.canceled else frozenset(fallback.matched)
        if not matched:
            logger.info("attribute_logic_no_match", extra={"checked_fallback": True})
        troubleshooter.record(
            TroubleshooterCase.MATCH_RESULTS_READY_WITH_FALLBACK,
            lambda: {
                **diagnostics,
                "fallback_attributes_query_value": to_query_value(fallback_resolved.tree),
                "fallback_leaves_evaluated": fallback.leaves_evaluated,
                "matched_member_ids": sorted(matched),
                "warnings": list(main_warnings.messages),
                "fallback_warnings": list(fallback_warnings.messages),
                "canceled": fallback.canceled,
            },
        )
        return MatchOutcome(
            matched_member_ids=matched,
            checked_fallback=True,
            main_warnings=main_warnings.messages,
            fallback_warnings=fallback_warnings.messages,
            time_taken=time_taken,
            troubleshooter=troubleshooter.recorded,
            canceled=fallback.canceled,
        )

    def _validate(self, tree: QueryNode, attributes: Mapping[str, AttributeDefinition] | None) -> QueryNode:
        if attributes is not None:
            validate_query(tree, attributes, self.resolver.sources)
            return bind_value_types(tree, attributes)
        for ref in dynamic_refs(tree):
            if ref.source not in self.resolver.sources:
                raise InvalidOperandReference(f"unknown operand source {ref.source!r} in {ref.as_template()}")
        return tree

    def _evaluate_members(
        self,
        tree: QueryNode,
        members: Sequence[MemberAttributeValues],
        cancel_event: threading.Event | None,
    ) -> _PhaseResult:
        if self.max_workers > 1 and len(members) >= max(self.parallel_threshold, 2):
            chunks = _partition(members, self.max_workers)
            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="attribute-logic") as executor:
                futures = [executor.submit(self._evaluate_chunk, tree, chunk, cancel_event) for chunk in chunks]
                partials = [future.result() for future in futures]
        else:
            partials = [self._evaluate_chunk(tree, members, cancel_event)]

        merged = _PhaseResult()
        for partial in partials:
            merged.matched.update(partial.matched)
            merged.warnings.extend(partial.warnings)
            merged.leaves_evaluated += partial.leaves_evaluated
            merged.canceled = merged.canceled or partial.canceled
        return merged

    def _evaluate_chunk(
        self,
        tree: QueryNode,
        members: Sequence[MemberAttributeValues],
        cancel_event: threading.Event | None,
    ) -> _PhaseResult:
        result = _PhaseResult()
        for member in members:
            if cancel_event is not None and cancel_event.is_set():
                result.canceled = True
                break
            evaluation = self.evaluator.explain(tree, member)
            result.leaves_evaluated += evaluation.leaves_evaluated
            result.warnings.extend(evaluation.warnings)
            if evaluation.matched:
                result.matched.add(member.member_id)
        return result

    def _log_phase(self, phase: str, members: Sequence[MemberAttributeValues], result: _PhaseResult) -> None:
        logger.info(
            "attribute_logic_evaluated",
            extra={
                "phase": phase,
                "member_count": len(members),
                "matched_count": len(result.matched),
                "leaves_evaluated": result.leaves_evaluated,
                "canceled": result.canceled,
            },
        )
