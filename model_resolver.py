"""
Model identifier resolution.

A requested model id is resolved through four ordered sources, first match
wins:

1. FORCE_MODEL - when set, every request goes to that model.
2. MODEL_MAP_EXT - operator supplied JSON mapping.
3. model-map.json - alias table generated by fetch_model_map.py, loaded once.
4. LEGACY_MODEL_MAP - built-in legacy Anthropic names.

Unknown ids are returned unchanged. After resolution the per-request
x-or-model header and then PRIMARY_MODEL may replace the result.
"""

import json
import logging
from typing import Any, Mapping, Optional

from config import Settings

logger = logging.getLogger(__name__)

# Marker for legacy entries that are forwarded with the requested id as-is
PASS_THROUGH = "$passthrough"

LEGACY_MODEL_MAP: dict[str, str] = {
    "claude-3-5-haiku-20241022": PASS_THROUGH,
    "claude-3-7-sonnet-latest": PASS_THROUGH,
    "claude-3-7-sonnet-20250219": PASS_THROUGH,
    "claude-3-opus-20240229": PASS_THROUGH,
}

DEFAULT_REQUESTED_MODEL = "anthropic/claude-3.7-sonnet"


def _string_entries(mapping: Optional[Mapping[str, Any]]) -> dict[str, str]:
    """Keep only non-empty string targets; anything else cannot name a model."""
    if not mapping:
        return {}
    return {
        str(key): value.strip()
        for key, value in mapping.items()
        if isinstance(value, str) and value.strip()
    }


def load_model_map(path: str) -> dict[str, str]:
    """Load the generated alias table. Missing or broken files yield {}."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        logger.info(f"No model map at {path}, using built-in mappings only")
        return {}
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON in model map {path}: {e}")
        return {}
    except OSError as e:
        logger.error(f"Error reading model map {path}: {e}")
        return {}

    if not isinstance(data, dict):
        logger.error(f"Model map {path} is not a JSON object, ignoring")
        return {}

    table = _string_entries(data)
    logger.info(f"Loaded model map from {path}: {len(table)} aliases")
    return table


class ModelResolver:
    """Read-only resolver shared by every request."""

    def __init__(
        self,
        force_model: str = "",
        extension_map: Optional[Mapping[str, Any]] = None,
        alias_map: Optional[Mapping[str, Any]] = None,
        legacy_map: Optional[Mapping[str, str]] = None,
        primary_model: str = "",
    ):
        self.force_model = (force_model or "").strip()
        self.extension_map = _string_entries(extension_map)
        self.alias_map = _string_entries(alias_map)
        self.legacy_map = dict(LEGACY_MODEL_MAP if legacy_map is None else legacy_map)
        self.primary_model = (primary_model or "").strip()

    def resolve(self, requested: str) -> str:
        if self.force_model:
            return self.force_model
        if requested in self.extension_map:
            return self.extension_map[requested]
        if requested in self.alias_map:
            return self.alias_map[requested]
        target = self.legacy_map.get(requested)
        if target == PASS_THROUGH:
            return requested
        if target:
            return target
        return requested

    def resolve_for_request(self, requested: Optional[str], header_override: Optional[str] = None) -> str:
        """
        Resolve the model to send upstream for one request.

        Priority, lowest to highest: alias resolution, x-or-model header,
        PRIMARY_MODEL.
        """
        model = self.resolve(requested or DEFAULT_REQUESTED_MODEL)

        override = (header_override or "").strip()
        if override:
            model = override

        if self.primary_model:
            model = self.primary_model

        return model


def build_resolver(settings: Settings, alias_map: Optional[Mapping[str, Any]] = None) -> ModelResolver:
    """Build the process-wide resolver; reads settings.model_map_file unless alias_map is given."""
    if alias_map is None:
        alias_map = load_model_map(settings.model_map_file)
    return ModelResolver(
        force_model=settings.force_model,
        extension_map=settings.model_map_ext,
        alias_map=alias_map,
        primary_model=settings.primary_model,
    )
