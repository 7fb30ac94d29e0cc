"""PLC Fleet Simulator - synthetic production-line telemetry over MQTT."""

__version__ = "0.1.0"

from .config import Config
from .consumer import QueueConsumer
from .simulator import Simulator

__all__ = ["Simulator", "QueueConsumer", "Config", "__version__"]
