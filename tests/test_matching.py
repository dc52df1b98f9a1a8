import threading

import pytest

from attribute_routing.catalog import MemberAttributeValues, build_catalog
from attribute_routing.matching import (
    NO_LOGIC_WARNING,
    MatchOrchestrator,
    Troubleshooter,
    TroubleshooterCase,
    WarningCollector,
)
from attribute_routing.query_logic import (
    DISABLED_LOGIC_WARNING,
    ConfigurationError,
    InvalidOperandReference,
    LogicTreeEvaluator,
    MatchAllEvaluator,
    parse_query_value,
)

CATALOG = build_catalog(
    [
        {
            "id": "department",
            "name": "Department",
            "type": "option",
            "options": [{"id": "o-sales", "value": "Sales"}, {"id": "o-support", "value": "Support"}],
        },
        {"id": "seniority", "name": "Seniority", "type": "number"},
    ],
    {"A": {"department": ["Sales"]}, "B": {"department": ["Support"]}, "C": {}},
)
ATTRIBUTES = CATALOG.attributes_by_id()
MEMBERS = CATALOG.members


def department(operator: str, value) -> dict:
    return {"attributeId": "department", "operator": operator, "value": value}


class CountingEvaluator(LogicTreeEvaluator):
    def __init__(self) -> None:
        self.calls = 0

    def explain(self, tree, member):
        self.calls += 1
        return super().explain(tree, member)


def broken_clock() -> float:
    raise OSError("clock unavailable")


def run(primary, fallback=None, orchestrator=None, **kwargs):
    orchestrator = orchestrator or MatchOrchestrator()
    return orchestrator.run(
        parse_query_value(primary),
        parse_query_value(fallback),
        MEMBERS,
        attributes=ATTRIBUTES,
        **kwargs,
    )


def test_rule_matches_single_member() -> None:
    outcome = run(department("EQUALS", "Sales"))
    assert outcome.matched_member_ids == {"A"}
    assert outcome.warnings == []
    assert outcome.checked_fallback is False
    assert outcome.troubleshooter is None


def test_missing_logic_routes_to_everyone() -> None:
    outcome = run(None, troubleshooter_enabled=True)
    assert outcome.matched_member_ids == {"A", "B", "C"}
    assert outcome.checked_fallback is False
    assert outcome.warnings == [NO_LOGIC_WARNING]
    assert outcome.troubleshooter.case is TroubleshooterCase.NO_LOGIC_FOUND
    payload = outcome.troubleshooter.payload
    assert [entry["id"] for entry in payload["attributes_of_the_org"]] == ["department", "seniority"]
    assert payload["team_members_with_attribute_values"][0] == {
        "member_id": "A",
        "attributes": {"department": ["Sales"]},
    }


def test_missing_logic_ignores_fallback() -> None:
    outcome = run(None, department("EQUALS", "Sales"))
    assert outcome.matched_member_ids == {"A", "B", "C"}
    assert outcome.checked_fallback is False


def test_empty_query_value_routes_to_everyone() -> None:
    outcome = run({"combinator": "AND", "rules": []}, troubleshooter_enabled=True)
    assert outcome.matched_member_ids == {"A", "B", "C"}
    assert outcome.warnings == []
    assert outcome.troubleshooter.case is TroubleshooterCase.MATCHES_ALL_MEMBERS_BECAUSE_OF_EMPTY_QUERY_VALUE
    assert outcome.troubleshooter.payload["matched_member_ids"] == ["A", "B", "C"]


def test_query_with_only_empty_groups_counts_as_empty() -> None:
    outcome = run(
        {"combinator": "OR", "rules": [{"combinator": "AND", "rules": []}]},
        troubleshooter_enabled=True,
    )
    assert outcome.matched_member_ids == {"A", "B", "C"}
    assert outcome.troubleshooter.case is TroubleshooterCase.MATCHES_ALL_MEMBERS_BECAUSE_OF_EMPTY_QUERY_VALUE


def test_primary_match_records_results_ready() -> None:
    outcome = run(department("ANY_IN", ["Sales", "Support"]), troubleshooter_enabled=True)
    assert outcome.matched_member_ids == {"A", "B"}
    assert outcome.troubleshooter.case is TroubleshooterCase.MATCH_RESULTS_READY
    assert outcome.troubleshooter.payload["matched_member_ids"] == ["A", "B"]
    assert outcome.troubleshooter.payload["attributes_query_value"] == department("ANY_IN", ["Sales", "Support"])
    assert set(outcome.time_taken) == {"resolve_primary", "evaluate_primary"}


def test_fallback_used_when_primary_matches_nobody() -> None:
    outcome = run(
        department("EQUALS", "Marketing"),
        department("NONE_IN", ["Sales"]),
        troubleshooter_enabled=True,
    )
    assert outcome.matched_member_ids == {"B", "C"}
    assert outcome.checked_fallback is True
    assert outcome.used_fallback is True
    assert outcome.troubleshooter.case is TroubleshooterCase.MATCH_RESULTS_READY_WITH_FALLBACK
    assert set(outcome.time_taken) == {"resolve_primary", "evaluate_primary", "resolve_fallback", "evaluate_fallback"}


def test_fallback_skipped_when_primary_matches() -> None:
    evaluator = CountingEvaluator()
    outcome = run(
        department("EQUALS", "Sales"),
        department("NONE_IN", ["Sales"]),
        orchestrator=MatchOrchestrator(evaluator=evaluator),
    )
    assert outcome.matched_member_ids == {"A"}
    assert outcome.checked_fallback is False
    assert evaluator.calls == 3


def test_exhausted_fallback_does_not_match_everyone() -> None:
    outcome = run(
        department("EQUALS", "Marketing"),
        department("EQUALS", "Legal"),
        troubleshooter_enabled=True,
    )
    assert outcome.matched_member_ids == frozenset()
    assert outcome.checked_fallback is True
    assert outcome.used_fallback is False
    assert outcome.troubleshooter.case is TroubleshooterCase.MATCH_RESULTS_READY_WITH_FALLBACK
    assert outcome.troubleshooter.payload["matched_member_ids"] == []


def test_no_match_without_fallback_is_reported_as_is() -> None:
    outcome = run(department("EQUALS", "Marketing"), troubleshooter_enabled=True)
    assert outcome.matched_member_ids == frozenset()
    assert outcome.checked_fallback is False
    assert outcome.troubleshooter.case is TroubleshooterCase.MATCH_RESULTS_READY


def test_empty_or_fallback_matches_nobody() -> None:
    outcome = run(department("EQUALS", "Marketing"), {"combinator": "OR", "rules": []})
    assert outcome.matched_member_ids == frozenset()
    assert outcome.checked_fallback is True


def test_configuration_errors_abort_before_evaluation() -> None:
    evaluator = CountingEvaluator()
    orchestrator = MatchOrchestrator(evaluator=evaluator)

    with pytest.raises(ConfigurationError, match="unknown attribute"):
        run({"attributeId": "location", "operator": "EQUALS", "value": "Berlin"}, orchestrator=orchestrator)
    with pytest.raises(ConfigurationError, match="not valid for option attribute"):
        run(department("EQUALS", "Sales"), department("GREATER_THAN", 2), orchestrator=orchestrator)
    with pytest.raises(InvalidOperandReference):
        run(department("EQUALS", "{crm:department}"), orchestrator=orchestrator)

    assert evaluator.calls == 0


def test_unknown_operand_source_rejected_without_catalog() -> None:
    with pytest.raises(InvalidOperandReference):
        MatchOrchestrator().run(parse_query_value(department("EQUALS", "{crm:department}")), None, MEMBERS)


def test_dynamic_operands_are_resolved_before_evaluation() -> None:
    outcome = run(
        department("EQUALS", "{field:department}"),
        operands={"field": {"department": "Support"}},
    )
    assert outcome.matched_member_ids == {"B"}
    assert outcome.warnings == []


def test_number_attribute_matches_string_form_values() -> None:
    members = [
        MemberAttributeValues(member_id="A", values={"seniority": ("10.0",)}),
        MemberAttributeValues(member_id="B", values={"seniority": ("10",)}),
        MemberAttributeValues(member_id="C", values={"seniority": ("9",)}),
    ]
    outcome = MatchOrchestrator().run(
        parse_query_value({"attributeId": "seniority", "operator": "EQUALS", "value": "{field:years}"}),
        None,
        members,
        operands={"field": {"years": "10"}},
        attributes=ATTRIBUTES,
    )
    assert outcome.matched_member_ids == {"A", "B"}
    assert outcome.warnings == []


def test_missing_dynamic_operand_is_a_warning_not_a_failure() -> None:
    outcome = run(
        department("EQUALS", "{field:department}"),
        department("IS_EMPTY", None),
        operands={"field": {}},
    )
    assert outcome.matched_member_ids == {"C"}
    assert outcome.checked_fallback is True
    assert outcome.main_warnings == [
        "No value provided for {field:department}; rule 'department EQUALS' treated as non-matching"
    ]
    assert outcome.fallback_warnings == []


def test_member_warnings_are_deduplicated_per_call() -> None:
    outcome = run(
        {"attributeId": "seniority", "operator": "GREATER_THAN", "value": 2},
        {"attributeId": "seniority", "operator": "GREATER_THAN", "value": 3},
    )
    assert outcome.matched_member_ids == frozenset()
    assert len(outcome.main_warnings) == 3
    assert outcome.main_warnings[0].startswith("Member A needs exactly one value")
    assert outcome.warnings == outcome.main_warnings


def test_disabled_evaluator_matches_everyone_and_warns_once() -> None:
    outcome = run(department("EQUALS", "Marketing"), orchestrator=MatchOrchestrator(evaluator=MatchAllEvaluator()))
    assert outcome.matched_member_ids == {"A", "B", "C"}
    assert outcome.main_warnings == [DISABLED_LOGIC_WARNING]


def test_timing_failures_degrade_to_missing_durations() -> None:
    outcome = run(
        department("EQUALS", "Marketing"),
        department("NONE_IN", ["Sales"]),
        orchestrator=MatchOrchestrator(clock=broken_clock),
    )
    assert outcome.matched_member_ids == {"B", "C"}
    assert outcome.time_taken == {
        "resolve_primary": None,
        "evaluate_primary": None,
        "resolve_fallback": None,
        "evaluate_fallback": None,
    }


def test_parallel_evaluation_matches_sequential() -> None:
    members = [
        MemberAttributeValues(
            member_id=f"m{index:03d}",
            values={"department": ("Sales" if index % 3 == 0 else "Support",), "seniority": (str(index % 7),)},
        )
        for index in range(200)
    ]
    tree = parse_query_value(
        {
            "combinator": "OR",
            "rules": [
                department("EQUALS", "Sales"),
                {"attributeId": "seniority", "operator": "GREATER_THAN", "value": 5},
            ],
        }
    )
    sequential = MatchOrchestrator().run(tree, None, members, attributes=ATTRIBUTES)
    parallel = MatchOrchestrator(max_workers=4, parallel_threshold=2).run(tree, None, members, attributes=ATTRIBUTES)
    again = MatchOrchestrator(max_workers=4, parallel_threshold=2).run(tree, None, members, attributes=ATTRIBUTES)

    expected = {f"m{index:03d}" for index in range(200) if index % 3 == 0 or index % 7 == 6}
    assert sequential.matched_member_ids == expected
    assert parallel.matched_member_ids == expected
    assert again.matched_member_ids == parallel.matched_member_ids
    assert parallel.warnings == sequential.warnings


def test_canceled_call_returns_empty_outcome() -> None:
    cancel_event = threading.Event()
    cancel_event.set()
    evaluator = CountingEvaluator()
    outcome = run(
        department("EQUALS", "Sales"),
        department("NONE_IN", ["Sales"]),
        orchestrator=MatchOrchestrator(evaluator=evaluator),
        cancel_event=cancel_event,
        troubleshooter_enabled=True,
    )
    assert outcome.canceled is True
    assert outcome.matched_member_ids == frozenset()
    assert outcome.checked_fallback is False
    assert outcome.troubleshooter.payload["canceled"] is True
    assert evaluator.calls == 0


def test_outcome_serializes_to_plain_data() -> None:
    outcome = run(department("EQUALS", "Sales"), troubleshooter_enabled=True)
    payload = outcome.as_dict()
    assert payload["matched_member_ids"] == ["A"]
    assert payload["troubleshooter"]["type"] == "match-results-ready"
    assert payload["canceled"] is False


def test_disabled_troubleshooter_never_builds_payload() -> None:
    def explode() -> dict:
        raise AssertionError("payload should not be built")

    troubleshooter = Troubleshooter(enabled=False)
    assert troubleshooter.record(TroubleshooterCase.NO_LOGIC_FOUND, explode) is None
    assert troubleshooter.recorded is None


def test_troubleshooter_records_once() -> None:
    troubleshooter = Troubleshooter(enabled=True)
    record = troubleshooter.record(TroubleshooterCase.MATCH_RESULTS_READY, {"matched_member_ids": []})
    assert record.as_dict() == {"type": "match-results-ready", "data": {"matched_member_ids": []}}
    with pytest.raises(RuntimeError, match="already recorded"):
        troubleshooter.record(TroubleshooterCase.MATCH_RESULTS_READY, {})


def test_warning_collector_keeps_first_occurrence_order() -> None:
    collector = WarningCollector()
    collector.extend(["b", "a", "b", "c", "a"])
    assert collector.messages == ["b", "a", "c"]
