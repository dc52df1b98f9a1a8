from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass

logger = logging.getLogger(__name__)

PACKAGE_LOGGER = "attribute_routing"
TRUTHY = {"1", "true", "yes", "on"}
FALSY = {"0", "false", "no", "off"}


@dataclass(slots=True, frozen=True)
class RoutingSettings:
    max_workers: int = 1
    parallel_threshold: int = 64
    enable_troubleshooter: bool = False
    logic_enabled: bool = True
    dynamic_sources: tuple[str, ...] = ("field",)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RoutingSettings:
        env = os.environ if environ is None else environ
        defaults = cls()
        sources = tuple(
            source.strip() for source in env.get("ROUTING_DYNAMIC_SOURCES", "").split(",") if source.strip()
        )
        return cls(
            max_workers=_int_setting(env, "ROUTING_MAX_WORKERS", defaults.max_workers, minimum=1),
            parallel_threshold=_int_setting(env, "ROUTING_PARALLEL_THRESHOLD", defaults.parallel_threshold, minimum=2),
            enable_troubleshooter=_bool_setting(env, "ROUTING_ENABLE_TROUBLESHOOTER", defaults.enable_troubleshooter),
            logic_enabled=_bool_setting(env, "ROUTING_LOGIC_ENABLED", defaults.logic_enabled),
            dynamic_sources=sources or defaults.dynamic_sources,
        )


def _int_setting(env: Mapping[str, str], name: str, default: int, minimum: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("invalid_setting", extra={"setting": name, "value": raw, "default": default})
        return default
    if value < minimum:
        logger.warning("invalid_setting", extra={"setting": name, "value": raw, "default": default})
        return default
    return value


def _bool_setting(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = str(env.get(name, "")).strip().lower()
    if not raw:
        return default
    if raw in TRUTHY:
        return True
    if raw in FALSY:
        return False
    logger.warning("invalid_setting", extra={"setting": name, "value": raw, "default": default})
    return default


def configure_logging(level_name: str | None = None) -> int:
    resolved_name = (level_name or os.environ.get("ROUTING_LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, resolved_name, logging.INFO)
    if not isinstance(level, int):
        level = logging.INFO
    logging.getLogger(PACKAGE_LOGGER).setLevel(level)
    return level
