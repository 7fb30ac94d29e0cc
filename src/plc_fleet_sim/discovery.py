"""Queue discovery: derive per-equipment topic names from the line files."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List

from .line_config import LineConfigLoader
from .models import EquipmentConfig

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_PREFIX = "plc_data_"


def queue_name(equipment_id: str, prefix: str = DEFAULT_QUEUE_PREFIX) -> str:
    return f"{prefix}{equipment_id}"


@dataclass
class EquipmentSummary:
    total_equipment: int = 0
    by_line: Dict[str, List[str]] = field(default_factory=dict)
    by_site: Dict[str, List[str]] = field(default_factory=dict)
    by_type: Dict[str, List[str]] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            "totalEquipment": self.total_equipment,
            "equipmentByLine": self.by_line,
            "equipmentBySite": self.by_site,
            "equipmentByType": self.by_type,
        }


class QueueDiscovery:
    """Reads the same line files the simulator uses, so no registry is needed.

    Files go through the simulator's own loader, so a file the simulator
    would reject fails discovery with the same ConfigurationError.
    """

    def __init__(self, config_directory: Path, queue_prefix: str = DEFAULT_QUEUE_PREFIX):
        self.config_directory = Path(config_directory)
        self.queue_prefix = queue_prefix

    def _load(self) -> List[EquipmentConfig]:
        return LineConfigLoader(self.config_directory, watch=False).load()

    def discover_queue_names(self) -> List[str]:
        configs = self._load()
        names = [queue_name(config.id, self.queue_prefix) for config in configs]

        logger.info(f"Discovered {len(names)} queue names in {self.config_directory}")
        return names

    def equipment_summary(self) -> EquipmentSummary:
        """Equipment ids grouped by line, site and product type."""
        summary = EquipmentSummary()
        for config in self._load():
            summary.total_equipment += 1
            summary.by_line.setdefault(config.line_id, []).append(config.id)
            summary.by_site.setdefault(config.site, []).append(config.id)
            summary.by_type.setdefault(config.product_type, []).append(config.id)
        return summary
