"""
Configuration management for funnel analytics.

This module handles saving and loading funnel definitions and analysis
settings as JSON, and a small definition store the analyzer can resolve
funnel ids against.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Tuple, Union

from models import AnalysisConfig, FunnelDefinition

from .exceptions import FunnelNotFoundError, InvalidDefinitionError


class FunnelConfigManager:
    """Manages saving and loading of funnel definitions with their analysis settings"""

    @staticmethod
    def save_config(definition: FunnelDefinition, config: AnalysisConfig) -> str:
        """Save funnel definition and config to JSON string"""
        config_data = {
            "definition": definition.to_dict(),
            "config": config.to_dict(),
            "saved_at": datetime.now().isoformat(),
        }
        return json.dumps(config_data, indent=2)

    @staticmethod
    def load_config(config_json: str) -> Tuple[FunnelDefinition, AnalysisConfig]:
        """Load funnel definition and config from JSON string"""
        config_data = json.loads(config_json)

        try:
            definition = FunnelDefinition.from_dict(config_data["definition"])
        except (KeyError, ValueError) as e:
            raise InvalidDefinitionError(f"Invalid funnel definition: {str(e)}") from e
        config = AnalysisConfig.from_dict(config_data.get("config", {}))

        return definition, config


class FunnelDefinitionStore:
    """In-memory definition store with JSON file persistence"""

    def __init__(self, definitions: Optional[list[FunnelDefinition]] = None):
        self.logger = logging.getLogger(__name__)
        self._definitions: dict[str, FunnelDefinition] = {}
        for definition in definitions or []:
            self.save(definition)

    def __len__(self) -> int:
        return len(self._definitions)

    def save(self, definition: FunnelDefinition) -> None:
        self._definitions[definition.id] = definition

    def get(self, funnel_id: str, website_id: Optional[str] = None) -> FunnelDefinition:
        """Return the definition, scoped to website_id when given"""
        definition = self._definitions.get(funnel_id)
        if definition is None or (website_id and definition.website_id not in (None, website_id)):
            raise FunnelNotFoundError(funnel_id)
        return definition

    def _for_website(self, website_id: str) -> list[FunnelDefinition]:
        matches = [
            d
            for d in self._definitions.values()
            if d.website_id == website_id and d.is_active
        ]
        return sorted(matches, key=lambda d: d.created_at or datetime.min, reverse=True)

    def list_funnels(self, website_id: str) -> list[FunnelDefinition]:
        """Active multi-step funnels for a website, newest first"""
        return [d for d in self._for_website(website_id) if len(d.steps) > 1]

    def list_goals(self, website_id: str) -> list[FunnelDefinition]:
        """Active single-step goals for a website, newest first"""
        return [d for d in self._for_website(website_id) if d.is_goal]

    @classmethod
    def load_file(cls, path: Union[str, Path]) -> "FunnelDefinitionStore":
        """Load definitions from a JSON file holding a list of definition objects"""
        with open(path, encoding="utf-8") as f:
            raw = json.load(f)

        definitions = []
        for item in raw:
            try:
                definitions.append(FunnelDefinition.from_dict(item))
            except (KeyError, ValueError) as e:
                raise InvalidDefinitionError(
                    f"Invalid funnel definition {item.get('id', '?')}: {str(e)}"
                ) from e

        store = cls(definitions)
        store.logger.info(f"Loaded {len(store)} funnel definitions from {path}")
        return store

    def dump_file(self, path: Union[str, Path]) -> None:
        data = [d.to_dict() for d in self._definitions.values()]
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
