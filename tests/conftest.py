"""Shared fixtures and broker doubles."""

import json
import random
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

from plc_fleet_sim.errors import TransportError
from plc_fleet_sim.models import (
    ConstantBehavior,
    EquipmentConfig,
    EquipmentType,
    SinusoidalBehavior,
    State,
    Tag,
    TagOverride,
    Transition,
)


class FakeClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class FixedRandom(random.Random):
    """Random source whose ``random()`` always returns the same draw."""

    def __init__(self, value: float):
        super().__init__(0)
        self.value = value

    def random(self) -> float:
        return self.value


class FakeTransport:
    """In-memory stand-in for MqttTransport."""

    def __init__(self, refuse_connect: bool = False, connect_failures: int = 0):
        self.refuse_connect = refuse_connect
        self.connect_failures = connect_failures
        self.fail_after: Optional[int] = None
        self.connected = False
        self.closed = False
        self.connect_calls = 0
        self.published: List[Tuple[str, str]] = []
        self.subscriptions: Dict[str, Any] = {}
        self.on_connection_lost = None

    def connect(self) -> None:
        self.connect_calls += 1
        if self.refuse_connect:
            raise TransportError("connection refused")
        if self.connect_failures > 0:
            self.connect_failures -= 1
            raise TransportError("connection refused")
        self.connected = True
        self.closed = False

    def publish(self, topic: str, payload: str) -> None:
        if not self.connected:
            raise TransportError("not connected")
        if self.fail_after is not None and len(self.published) >= self.fail_after:
            raise TransportError("write failed")
        self.published.append((topic, payload))

    def subscribe(self, topic: str, callback) -> None:
        self.subscriptions[topic] = callback

    def close(self) -> None:
        self.connected = False
        self.closed = True

    def drop(self, reason: str = "connection lost") -> None:
        """Simulate the broker going away under an established connection."""
        self.connected = False
        if self.on_connection_lost is not None:
            self.on_connection_lost(reason)

    def payloads(self) -> List[Dict[str, Any]]:
        return [json.loads(payload) for _, payload in self.published]

    def topics(self) -> List[str]:
        return [topic for topic, _ in self.published]


def make_oven_config(equipment_id: str = "oven1") -> EquipmentConfig:
    """Oven with a sinusoidal temperature and fault overrides."""
    return EquipmentConfig(
        id=equipment_id,
        name="Tunnel Oven",
        type=EquipmentType.OVEN,
        site="site1",
        product_type="bread",
        line_number=1,
        line_id="line1",
        current_state="running",
        tags=[
            Tag(
                id="temperature",
                name="Oven Temperature",
                value=350,
                behavior=SinusoidalBehavior(
                    min=300, max=400, period=120000, amplitude=50, offset=350
                ),
            ),
            Tag(
                id="heating_status",
                name="Heating Status",
                data_type="BOOL",
                value=True,
                behavior=ConstantBehavior(),
            ),
        ],
        states=[
            State(
                name="running",
                transitions=[
                    Transition(to_state="stopped", condition="manual_stop"),
                    Transition(to_state="fault", condition="equipment_fault", probability=0.01),
                ],
            ),
            State(
                name="stopped",
                tag_overrides=[TagOverride("heating_status", False)],
                transitions=[Transition(to_state="running", condition="manual_start")],
            ),
            State(
                name="fault",
                tag_overrides=[
                    TagOverride("heating_status", False),
                    TagOverride("temperature", 300),
                ],
                transitions=[Transition(to_state="stopped", condition="fault_reset")],
            ),
        ],
    )


def line_document(line: int, equipment: List[Dict[str, Any]], site: str = "site1", kind: str = "bread"):
    return {
        "id": f"line{line}",
        "name": f"Line {line}",
        "site": site,
        "type": kind,
        "line": line,
        "status": "running",
        "efficiency": 0.9,
        "equipment": equipment,
    }


def equipment_document(equipment_id: str, kind: str = "press", status: str = "running", **extra):
    doc = {
        "id": equipment_id,
        "name": equipment_id.title(),
        "type": kind,
        "status": status,
        "tags": [
            {
                "id": "pressure",
                "name": "Pressure",
                "dataType": "REAL",
                "value": 100,
                "behavior": {"type": "random", "parameters": {"min": 90, "max": 110}},
            },
            {
                "id": "cycle_count",
                "name": "Cycle Count",
                "dataType": "DINT",
                "value": 0,
                "behavior": {"type": "linear", "parameters": {"min": 0, "max": 1000, "slope": 1}},
            },
        ],
    }
    doc.update(extra)
    return doc


def write_line(directory: Path, line: int, equipment: List[Dict[str, Any]], **kwargs) -> Path:
    path = Path(directory) / f"line{line}.json"
    path.write_text(json.dumps(line_document(line, equipment, **kwargs), indent=2))
    return path


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def oven_config():
    return make_oven_config()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def lines_dir(tmp_path):
    """Two line files: oven1 on line 1, press3 and assembly2 on line 2."""
    directory = tmp_path / "lines"
    directory.mkdir()
    oven = {
        "id": "oven1",
        "name": "Tunnel Oven",
        "type": "oven",
        "status": "running",
        "tags": [
            {
                "id": "temperature",
                "name": "Oven Temperature",
                "dataType": "REAL",
                "value": 350,
                "behavior": {
                    "type": "sinusoidal",
                    "parameters": {"min": 300, "max": 400, "period": 120000, "offset": 350},
                },
            },
            {
                "id": "heating_status",
                "name": "Heating Status",
                "dataType": "BOOL",
                "value": True,
                "behavior": {"type": "constant"},
            },
        ],
        "states": [
            {
                "name": "running",
                "transitions": [
                    {"toState": "stopped", "condition": "manual_stop"},
                    {"toState": "fault", "condition": "equipment_fault", "probability": 0.01},
                ],
            },
            {
                "name": "stopped",
                "tagOverrides": [{"tagId": "heating_status", "value": False}],
                "transitions": [{"toState": "running", "condition": "manual_start"}],
            },
            {
                "name": "fault",
                "tagOverrides": [
                    {"tagId": "heating_status", "value": False},
                    {"tagId": "temperature", "value": 300},
                ],
                "transitions": [{"toState": "stopped", "condition": "fault_reset"}],
            },
        ],
    }
    write_line(directory, 1, [oven])
    write_line(
        directory,
        2,
        [equipment_document("press3"), equipment_document("assembly2", kind="assembly", status="stopped")],
        site="site2",
        kind="cookies",
    )
    return directory
