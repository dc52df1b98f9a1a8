from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

VALUE_TYPES = ("text", "number", "option", "multiOption")


class DataUnavailableError(RuntimeError):
    """Raised when the attribute catalog cannot be fetched or is incomplete."""


@dataclass(slots=True, frozen=True)
class AttributeOption:
    id: str
    value: str


@dataclass(slots=True, frozen=True)
class AttributeDefinition:
    id: str
    name: str
    value_type: str
    options: tuple[AttributeOption, ...] = ()

    @property
    def allowed_option_ids(self) -> frozenset[str]:
        return frozenset(option.id for option in self.options)

    @property
    def is_multi_valued(self) -> bool:
        return self.value_type == "multiOption"


@dataclass(slots=True, frozen=True)
class MemberAttributeValues:
    """Option values assigned to one team member, keyed by attribute id."""

    member_id: str
    values: Mapping[str, tuple[Any, ...]] = field(default_factory=dict)

    def get(self, attribute_id: str) -> tuple[Any, ...]:
        return self.values.get(attribute_id, ())

    def snapshot(self) -> dict[str, Any]:
        return {
            "member_id": self.member_id,
            "attributes": {attribute_id: list(values) for attribute_id, values in sorted(self.values.items())},
        }


@dataclass(slots=True, frozen=True)
class AttributeCatalog:
    attributes: tuple[AttributeDefinition, ...]
    members: tuple[MemberAttributeValues, ...]

    def attribute(self, attribute_id: str) -> AttributeDefinition | None:
        for definition in self.attributes:
            if definition.id == attribute_id:
                return definition
        return None

    def attributes_by_id(self) -> dict[str, AttributeDefinition]:
        return {definition.id: definition for definition in self.attributes}

    def member_ids(self) -> list[str]:
        return [member.member_id for member in self.members]


class CatalogFetcher(Protocol):
    def fetch_attributes_and_assignments(self, team_id: int, org_id: int) -> AttributeCatalog: ...


def build_catalog(
    attributes: Iterable[Mapping[str, Any]],
    members: Mapping[str, Mapping[str, Iterable[Any]]],
) -> AttributeCatalog:
    """Build a catalog from plain mappings.

    ``attributes`` entries look like ``{"id", "name", "type", "options": [{"id", "value"}]}``
    and ``members`` maps member id to ``{attribute_id: [values...]}``.
    """
    definitions: list[AttributeDefinition] = []
    for raw in attributes:
        value_type = str(raw.get("type") or raw.get("value_type") or "text")
        if value_type not in VALUE_TYPES:
            raise DataUnavailableError(f"attribute {raw.get('id')!r} has unsupported type {value_type!r}")
        definitions.append(
            AttributeDefinition(
                id=str(raw["id"]),
                name=str(raw.get("name") or raw["id"]),
                value_type=value_type,
                options=tuple(
                    AttributeOption(id=str(option["id"]), value=str(option.get("value", option["id"])))
                    for option in raw.get("options", [])
                ),
            )
        )

    known_ids = {definition.id for definition in definitions}
    member_values: list[MemberAttributeValues] = []
    for member_id, assignments in members.items():
        unknown = sorted(set(assignments) - known_ids)
        if unknown:
            raise DataUnavailableError(f"member {member_id!r} has values for undefined attributes: {unknown}")
        member_values.append(
            MemberAttributeValues(
                member_id=str(member_id),
                values={str(attribute_id): tuple(values) for attribute_id, values in assignments.items()},
            )
        )

    return AttributeCatalog(attributes=tuple(definitions), members=tuple(member_values))


@dataclass(slots=True)
class InMemoryCatalogFetcher:
    """Serves pre-built catalogs keyed by ``(team_id, org_id)``."""

    catalogs: dict[tuple[int, int], AttributeCatalog] = field(default_factory=dict)

    def add(self, team_id: int, org_id: int, catalog: AttributeCatalog) -> None:
        self.catalogs[(team_id, org_id)] = catalog

    def fetch_attributes_and_assignments(self, team_id: int, org_id: int) -> AttributeCatalog:
        try:
            return self.catalogs[(team_id, org_id)]
        except KeyError:
            raise DataUnavailableError(f"no attribute data for team {team_id} in org {org_id}") from None
