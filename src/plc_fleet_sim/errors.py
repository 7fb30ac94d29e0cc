"""Exception types raised by the simulator and consumer."""

from typing import List, Optional


class PlcSimError(Exception):
    """Base class for all simulator errors."""

    pass


class ConfigurationError(PlcSimError):
    """Malformed configuration file or broken cross-reference."""

    def __init__(
        self,
        message: str,
        errors: Optional[List[str]] = None,
        source: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.errors = list(errors or [])
        self.source = source

    def __str__(self) -> str:
        text = self.message
        if self.source:
            text = f"{self.source}: {text}"
        if self.errors:
            text += "\n  - " + "\n  - ".join(self.errors)
        return text


class SimulationError(ConfigurationError):
    """Forced transition to a state the equipment does not define."""

    pass


class ValidationError(PlcSimError):
    """Envelope message rejected by validation."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.errors = list(errors or [])

    def __str__(self) -> str:
        if self.errors:
            return f"{self.message}: {'; '.join(self.errors)}"
        return self.message


class TransportError(PlcSimError):
    """Broker unreachable or write failure."""

    def __init__(self, message: str, terminal: bool = False):
        super().__init__(message)
        self.message = message
        self.terminal = terminal
