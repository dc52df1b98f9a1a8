from __future__ import annotations

import logging
import math
import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from operator import ge, gt, le, lt
from typing import Any, Callable, Union

from .catalog import AttributeDefinition, MemberAttributeValues

COMBINATORS = ("AND", "OR")
SET_OPERATORS = frozenset({"EQUALS", "NOT_EQUALS", "ANY_IN", "NONE_IN"})
PRESENCE_OPERATORS = frozenset({"IS_EMPTY", "IS_NOT_EMPTY"})
ORDERED_OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "GREATER_THAN": gt,
    "GREATER_THAN_OR_EQUAL": ge,
    "LESS_THAN": lt,
    "LESS_THAN_OR_EQUAL": le,
}
OPERATORS = SET_OPERATORS | PRESENCE_OPERATORS | frozenset(ORDERED_OPERATORS)
SCALAR_OPERAND_OPERATORS = frozenset({"EQUALS", "NOT_EQUALS"}) | frozenset(ORDERED_OPERATORS)
OPERATORS_BY_VALUE_TYPE = {
    "text": SET_OPERATORS | PRESENCE_OPERATORS,
    "option": SET_OPERATORS | PRESENCE_OPERATORS,
    "multiOption": SET_OPERATORS | PRESENCE_OPERATORS,
    "number": OPERATORS,
}

DEFAULT_DYNAMIC_SOURCES = ("field",)
DYNAMIC_REF_PATTERN = re.compile(r"^\{(?P<source>[A-Za-z_][A-Za-z0-9_]*):(?P<field>[^{}]+)\}$")
DISABLED_LOGIC_WARNING = "Attribute routing logic evaluation is disabled in this deployment."

logger = logging.getLogger(__name__)


class ConfigurationError(ValueError):
    """Raised when a query tree cannot be evaluated against the catalog."""


class QueryParseError(ConfigurationError):
    """Raised when a query value payload is malformed."""


class InvalidOperandReference(ConfigurationError):
    """Raised when a dynamic operand names a source the resolver does not know."""


class LogicResult(str, Enum):
    MATCH = "MATCH"
    NO_MATCH = "NO_MATCH"
    LOGIC_NOT_FOUND_SO_MATCHED = "LOGIC_NOT_FOUND_SO_MATCHED"


@dataclass(slots=True, frozen=True)
class DynamicRef:
    source: str
    field: str

    def as_template(self) -> str:
        return f"{{{self.source}:{self.field}}}"


@dataclass(slots=True, frozen=True)
class IndeterminateOperand:
    """Placeholder left by the resolver when a dynamic operand has no bound value."""

    ref: DynamicRef


@dataclass(slots=True, frozen=True)
class Rule:
    attribute_id: str
    operator: str
    operand: Any = None
    id: str | None = None
    value_type: str | None = None

    def label(self) -> str:
        return self.id or f"{self.attribute_id} {self.operator}"


@dataclass(slots=True, frozen=True)
class Group:
    combinator: str = "AND"
    children: tuple[QueryNode, ...] = ()
    id: str | None = None


QueryNode = Union[Group, Rule]


@dataclass(slots=True, frozen=True)
class ResolvedQuery:
    tree: QueryNode
    warnings: tuple[str, ...] = ()


@dataclass(slots=True)
class Evaluation:
    matched: bool
    leaves_evaluated: int = 0
    warnings: list[str] = field(default_factory=list)


# Query value codec


def parse_query_value(payload: Mapping[str, Any] | None) -> QueryNode | None:
    if payload is None:
        return None
    return _parse_node(payload, "$")


def _parse_node(raw: Any, path: str) -> QueryNode:
    if not isinstance(raw, Mapping):
        raise QueryParseError(f"{path}: expected an object, got {type(raw).__name__}")

    node_id = _optional_id(raw.get("id"), path)
    if "rules" in raw or "combinator" in raw:
        combinator = str(raw.get("combinator") or "AND").strip().upper()
        if combinator not in COMBINATORS:
            raise QueryParseError(f"{path}: unsupported combinator {raw.get('combinator')!r}")
        children = raw.get("rules")
        if children is None:
            children = []
        if not isinstance(children, list):
            raise QueryParseError(f"{path}.rules: expected a list")
        return Group(
            combinator=combinator,
            children=tuple(_parse_node(child, f"{path}.rules[{index}]") for index, child in enumerate(children)),
            id=node_id,
        )

    attribute_id = raw.get("attributeId")
    if attribute_id is None or not str(attribute_id).strip():
        raise QueryParseError(f"{path}: rule requires an attributeId")
    operator_name = str(raw.get("operator") or "").strip().upper()
    if operator_name not in OPERATORS:
        raise QueryParseError(f"{path}: unsupported operator {raw.get('operator')!r}")
    if operator_name not in PRESENCE_OPERATORS and "value" not in raw:
        raise QueryParseError(f"{path}: operator {operator_name} requires a value")

    return Rule(
        attribute_id=str(attribute_id),
        operator=operator_name,
        operand=_parse_operand(raw.get("value"), f"{path}.value"),
        id=node_id,
    )


def _optional_id(raw_id: Any, path: str) -> str | None:
    if raw_id is None:
        return None
    if not isinstance(raw_id, (str, int)) or isinstance(raw_id, bool):
        raise QueryParseError(f"{path}.id: expected a string")
    return str(raw_id)


def _parse_operand(raw: Any, path: str, allow_list: bool = True) -> Any:
    if isinstance(raw, str):
        match = DYNAMIC_REF_PATTERN.fullmatch(raw.strip())
        if match:
            return DynamicRef(source=match.group("source"), field=match.group("field").strip())
        return raw
    if raw is None or isinstance(raw, (bool, int, float)):
        return raw
    if isinstance(raw, list) and allow_list:
        return tuple(_parse_operand(item, f"{path}[{index}]", allow_list=False) for index, item in enumerate(raw))
    raise QueryParseError(f"{path}: unsupported operand of type {type(raw).__name__}")


def to_query_value(node: QueryNode) -> dict[str, Any]:
    if isinstance(node, Group):
        payload: dict[str, Any] = {
            "combinator": node.combinator,
            "rules": [to_query_value(child) for child in node.children],
        }
    else:
        payload = {"attributeId": node.attribute_id, "operator": node.operator}
        if node.operand is not None or node.operator not in PRESENCE_OPERATORS:
            payload["value"] = _operand_to_json(node.operand)
    if node.id is not None:
        payload["id"] = node.id
    return payload


def _operand_to_json(operand: Any) -> Any:
    if isinstance(operand, DynamicRef):
        return operand.as_template()
    if isinstance(operand, IndeterminateOperand):
        return operand.ref.as_template()
    if isinstance(operand, tuple):
        return [_operand_to_json(item) for item in operand]
    return operand


def iter_rules(node: QueryNode) -> Iterator[Rule]:
    if isinstance(node, Rule):
        yield node
        return
    for child in node.children:
        yield from iter_rules(child)


def count_rules(node: QueryNode | None) -> int:
    if node is None:
        return 0
    return sum(1 for _ in iter_rules(node))


def _operand_refs(operand: Any) -> Iterator[DynamicRef]:
    if isinstance(operand, DynamicRef):
        yield operand
    elif isinstance(operand, tuple):
        for item in operand:
            yield from _operand_refs(item)


def dynamic_refs(node: QueryNode) -> list[DynamicRef]:
    return [ref for rule in iter_rules(node) for ref in _operand_refs(rule.operand)]


def validate_query(
    tree: QueryNode,
    attributes: Mapping[str, AttributeDefinition],
    dynamic_sources: tuple[str, ...] = DEFAULT_DYNAMIC_SOURCES,
) -> None:
    """Fail closed on rules that cannot be evaluated against ``attributes``."""
    for rule in iter_rules(tree):
        definition = attributes.get(rule.attribute_id)
        if definition is None:
            raise ConfigurationError(f"rule '{rule.label()}' references unknown attribute {rule.attribute_id!r}")
        allowed = OPERATORS_BY_VALUE_TYPE.get(definition.value_type, frozenset())
        if rule.operator not in allowed:
            raise ConfigurationError(
                f"operator {rule.operator} is not valid for {definition.value_type} attribute {definition.name!r}"
            )
        if rule.operator in SCALAR_OPERAND_OPERATORS and isinstance(rule.operand, tuple):
            raise ConfigurationError(f"operator {rule.operator} on {definition.name!r} expects a single value")
        if rule.operator in ORDERED_OPERATORS and not isinstance(rule.operand, DynamicRef):
            if _as_number(rule.operand) is None:
                raise ConfigurationError(
                    f"operator {rule.operator} on {definition.name!r} expects a numeric value, got {rule.operand!r}"
                )
        for ref in _operand_refs(rule.operand):
            if ref.source not in dynamic_sources:
                raise InvalidOperandReference(
                    f"rule '{rule.label()}' references unknown operand source {ref.source!r} in {ref.as_template()}"
                )


def bind_value_types(tree: QueryNode, attributes: Mapping[str, AttributeDefinition]) -> QueryNode:
    """Stamp each rule with its attribute's value type so comparisons can coerce numbers."""
    if isinstance(tree, Rule):
        definition = attributes.get(tree.attribute_id)
        value_type = definition.value_type if definition is not None else None
        return tree if value_type == tree.value_type else replace(tree, value_type=value_type)

    children = tuple(bind_value_types(child, attributes) for child in tree.children)
    if all(new is old for new, old in zip(children, tree.children)):
        return tree
    return replace(tree, children=children)


# Operand resolution


@dataclass(slots=True, frozen=True)
class OperandResolver:
    """Substitutes ``{source:field}`` references with bound values in a single pass."""

    sources: tuple[str, ...] = DEFAULT_DYNAMIC_SOURCES

    def resolve(self, tree: QueryNode, operands: Mapping[str, Mapping[str, Any]] | None = None) -> ResolvedQuery:
        warnings: list[str] = []
        resolved = self._resolve_node(tree, operands or {}, warnings)
        return ResolvedQuery(tree=resolved, warnings=tuple(warnings))

    def _resolve_node(
        self,
        node: QueryNode,
        operands: Mapping[str, Mapping[str, Any]],
        warnings: list[str],
    ) -> QueryNode:
        if isinstance(node, Rule):
            operand = self._resolve_operand(node, node.operand, operands, warnings)
            return node if operand is node.operand else replace(node, operand=operand)

        children = tuple(self._resolve_node(child, operands, warnings) for child in node.children)
        if all(new is old for new, old in zip(children, node.children)):
            return node
        return replace(node, children=children)

    def _resolve_operand(
        self,
        rule: Rule,
        operand: Any,
        operands: Mapping[str, Mapping[str, Any]],
        warnings: list[str],
    ) -> Any:
        if isinstance(operand, DynamicRef):
            return self._lookup(rule, operand, operands, warnings)

        if isinstance(operand, tuple):
            if not any(isinstance(item, DynamicRef) for item in operand):
                return operand
            items: list[Any] = []
            for item in operand:
                value = self._resolve_operand(rule, item, operands, warnings)
                if isinstance(value, IndeterminateOperand):
                    return value
                items.extend(value if isinstance(value, tuple) else (value,))
            return tuple(items)

        return operand

    def _lookup(
        self,
        rule: Rule,
        ref: DynamicRef,
        operands: Mapping[str, Mapping[str, Any]],
        warnings: list[str],
    ) -> Any:
        if ref.source not in self.sources:
            raise InvalidOperandReference(f"unknown operand source {ref.source!r} in {ref.as_template()}")

        value = (operands.get(ref.source) or {}).get(ref.field)
        # form responses may arrive as {"value": ..., "label": ...}
        if isinstance(value, Mapping):
            value = value.get("value")
        if isinstance(value, list):
            value = tuple(value)

        if value is None or value == "" or value == ():
            warnings.append(
                f"No value provided for {ref.as_template()}; rule '{rule.label()}' treated as non-matching"
            )
            return IndeterminateOperand(ref)
        return value


# Evaluation strategies


class QueryEvaluator:
    def explain(self, tree: QueryNode, member: MemberAttributeValues) -> Evaluation:
        raise NotImplementedError

    def evaluate(self, tree: QueryNode, member: MemberAttributeValues) -> bool:
        return self.explain(tree, member).matched


class MatchAllEvaluator(QueryEvaluator):
    """Stand-in used when attribute logic evaluation is switched off."""

    def explain(self, tree: QueryNode, member: MemberAttributeValues) -> Evaluation:
        return Evaluation(matched=True, warnings=[DISABLED_LOGIC_WARNING])


class LogicTreeEvaluator(QueryEvaluator):
    """Walks a resolved AND/OR tree against one member's attribute values.

    Groups short-circuit left to right, so ``leaves_evaluated`` reflects only
    the rules actually visited. Rules whose operand could not be resolved, and
    ordered comparisons without a usable member value, evaluate to False.
    """

    def explain(self, tree: QueryNode, member: MemberAttributeValues) -> Evaluation:
        evaluation = Evaluation(matched=False)
        evaluation.matched = self._eval_node(tree, member, evaluation)
        return evaluation

    def _eval_node(self, node: QueryNode, member: MemberAttributeValues, evaluation: Evaluation) -> bool:
        if isinstance(node, Rule):
            evaluation.leaves_evaluated += 1
            return self._eval_rule(node, member, evaluation)

        if node.combinator == "OR":
            for child in node.children:
                if self._eval_node(child, member, evaluation):
                    return True
            return False

        for child in node.children:
            if not self._eval_node(child, member, evaluation):
                return False
        return True

    def _eval_rule(self, rule: Rule, member: MemberAttributeValues, evaluation: Evaluation) -> bool:
        assigned = member.get(rule.attribute_id)

        if rule.operator == "IS_EMPTY":
            return len(assigned) == 0
        if rule.operator == "IS_NOT_EMPTY":
            return len(assigned) > 0

        # unresolved references never match
        if any(isinstance(item, (IndeterminateOperand, DynamicRef)) for item in _as_tuple(rule.operand)):
            return False

        if rule.operator in ORDERED_OPERATORS:
            return self._eval_ordered(rule, assigned, member, evaluation)

        operand_items = _as_tuple(rule.operand)
        numeric = rule.value_type == "number" or any(_is_number(item) for item in operand_items)
        overlap = bool(_normalized_set(assigned, numeric) & _normalized_set(operand_items, numeric))
        if rule.operator in ("EQUALS", "ANY_IN"):
            return overlap
        return not overlap

    def _eval_ordered(
        self,
        rule: Rule,
        assigned: tuple[Any, ...],
        member: MemberAttributeValues,
        evaluation: Evaluation,
    ) -> bool:
        threshold = _as_number(rule.operand)
        if threshold is None:
            evaluation.warnings.append(
                f"Operand {rule.operand!r} for rule '{rule.label()}' is not numeric; rule treated as non-matching"
            )
            return False
        if len(assigned) != 1:
            evaluation.warnings.append(
                f"Member {member.member_id} needs exactly one value for attribute {rule.attribute_id!r} "
                f"to apply {rule.operator}; rule treated as non-matching"
            )
            return False
        value = _as_number(assigned[0])
        if value is None:
            evaluation.warnings.append(
                f"Member {member.member_id} has a non-numeric value for attribute {rule.attribute_id!r}; "
                "rule treated as non-matching"
            )
            return False
        return ORDERED_OPERATORS[rule.operator](value, threshold)


def _as_tuple(operand: Any) -> tuple[Any, ...]:
    return operand if isinstance(operand, tuple) else (operand,)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _as_number(value: Any) -> float | None:
    if _is_number(value):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def _normalize_text(value: Any) -> str:
    return str(value).strip().casefold()


def _normalized_set(values: tuple[Any, ...], numeric: bool) -> set[Any]:
    normalized: set[Any] = set()
    for value in values:
        if value is None:
            continue
        if numeric and (number := _as_number(value)) is not None:
            normalized.add(number)
        else:
            normalized.add(_normalize_text(value))
    return normalized


def evaluate_logic(
    query_value: Mapping[str, Any] | None,
    member: MemberAttributeValues,
    operands: Mapping[str, Mapping[str, Any]] | None = None,
    be_strict_with_empty_logic: bool = False,
    evaluator: QueryEvaluator | None = None,
    attributes: Mapping[str, AttributeDefinition] | None = None,
) -> LogicResult:
    """Evaluate a raw query value for a single member."""
    tree = parse_query_value(query_value)
    if tree is None:
        return LogicResult.LOGIC_NOT_FOUND_SO_MATCHED
    if count_rules(tree) == 0:
        return LogicResult.NO_MATCH if be_strict_with_empty_logic else LogicResult.LOGIC_NOT_FOUND_SO_MATCHED
    if attributes is not None:
        validate_query(tree, attributes)
        tree = bind_value_types(tree, attributes)

    resolved = OperandResolver().resolve(tree, operands)
    for warning in resolved.warnings:
        logger.debug("dynamic_operand_unresolved", extra={"warning": warning, "member_id": member.member_id})
    active_evaluator = evaluator or LogicTreeEvaluator()
    return LogicResult.MATCH if active_evaluator.evaluate(resolved.tree, member) else LogicResult.NO_MATCH
