from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .catalog import AttributeCatalog, CatalogFetcher, DataUnavailableError
from .config import RoutingSettings, configure_logging
from .matching import MatchOrchestrator, MatchOutcome, read_clock
from .query_logic import LogicTreeEvaluator, MatchAllEvaluator, OperandResolver, parse_query_value

logger = logging.getLogger(__name__)


def orchestrator_from_settings(settings: RoutingSettings) -> MatchOrchestrator:
    return MatchOrchestrator(
        evaluator=LogicTreeEvaluator() if settings.logic_enabled else MatchAllEvaluator(),
        resolver=OperandResolver(sources=settings.dynamic_sources),
        max_workers=settings.max_workers,
        parallel_threshold=settings.parallel_threshold,
    )


def get_attributes_for_logic(
    fetcher: CatalogFetcher,
    team_id: int,
    org_id: int,
    clock: Callable[[], float] = time.perf_counter,
) -> tuple[AttributeCatalog, float | None]:
    start = read_clock(clock)
    try:
        catalog = fetcher.fetch_attributes_and_assignments(team_id, org_id)
    except DataUnavailableError:
        logger.warning("attribute_fetch_failed", extra={"team_id": team_id, "org_id": org_id})
        raise
    except Exception as exc:
        logger.exception("attribute_fetch_failed", extra={"team_id": team_id, "org_id": org_id})
        raise DataUnavailableError(f"failed to fetch attributes for team {team_id} in org {org_id}: {exc}") from exc
    end = read_clock(clock)

    if catalog is None:
        raise DataUnavailableError(f"no attribute data returned for team {team_id} in org {org_id}")
    return catalog, (end - start if start is not None and end is not None else None)


@dataclass(slots=True)
class AttributeRoutingService:
    fetcher: CatalogFetcher
    settings: RoutingSettings = field(default_factory=RoutingSettings.from_env)
    orchestrator: MatchOrchestrator | None = None

    @classmethod
    def from_env(cls, fetcher: CatalogFetcher) -> AttributeRoutingService:
        """Build a service from ``ROUTING_*`` environment settings and apply the log level."""
        configure_logging()
        return cls(fetcher=fetcher, settings=RoutingSettings.from_env())

    def find_matching_members(
        self,
        team_id: int,
        org_id: int,
        primary_query_value: Mapping[str, Any] | None,
        fallback_query_value: Mapping[str, Any] | None = None,
        dynamic_operands: Mapping[str, Mapping[str, Any]] | None = None,
        troubleshooter_enabled: bool | None = None,
        cancel_event: threading.Event | None = None,
    ) -> MatchOutcome:
        primary_tree = parse_query_value(primary_query_value)
        fallback_tree = parse_query_value(fallback_query_value)
        orchestrator = self.orchestrator or orchestrator_from_settings(self.settings)
        enable_troubleshooter = (
            self.settings.enable_troubleshooter if troubleshooter_enabled is None else troubleshooter_enabled
        )

        catalog, fetch_duration = get_attributes_for_logic(self.fetcher, team_id, org_id, orchestrator.clock)
        outcome = orchestrator.run(
            primary_tree,
            fallback_tree,
            catalog.members,
            operands=dynamic_operands,
            troubleshooter_enabled=enable_troubleshooter,
            attributes=catalog.attributes_by_id(),
            cancel_event=cancel_event,
        )
        outcome.time_taken = {"get_attributes_for_logic": fetch_duration, **outcome.time_taken}

        logger.info(
            "team_members_matched",
            extra={
                "team_id": team_id,
                "org_id": org_id,
                "member_count": len(catalog.members),
                "matched_count": len(outcome.matched_member_ids),
                "checked_fallback": outcome.checked_fallback,
                "warning_count": len(outcome.warnings),
                "canceled": outcome.canceled,
            },
        )
        return outcome


def find_matching_members(
    fetcher: CatalogFetcher,
    team_id: int,
    org_id: int,
    primary_query_value: Mapping[str, Any] | None,
    fallback_query_value: Mapping[str, Any] | None = None,
    dynamic_operands: Mapping[str, Mapping[str, Any]] | None = None,
    troubleshooter_enabled: bool = False,
    settings: RoutingSettings | None = None,
    cancel_event: threading.Event | None = None,
) -> MatchOutcome:
    service = AttributeRoutingService(fetcher=fetcher, settings=settings or RoutingSettings.from_env())
    return service.find_matching_members(
        team_id,
        org_id,
        primary_query_value,
        fallback_query_value=fallback_query_value,
        dynamic_operands=dynamic_operands,
        troubleshooter_enabled=troubleshooter_enabled,
        cancel_event=cancel_event,
    )
