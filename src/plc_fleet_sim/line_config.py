"""Line configuration files: parsing, validation and hot reload.

A directory holds one ``line<N>.json`` file per production line. Each file
lists the line's equipment; the loader flattens them into ``EquipmentConfig``
entries and, for equipment that defines no ``states``, synthesizes the
default running/stopped/fault machine.
"""

import json
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import ConfigurationError
from .generators import parse_behavior
from .models import EquipmentConfig, State, Tag, TagOverride, Transition, equipment_type

logger = logging.getLogger(__name__)

ReloadCallback = Callable[[List[EquipmentConfig]], None]
ErrorCallback = Callable[[Exception], None]


def default_states(kind: str) -> List[State]:
    return [
        State(
            name="running",
            description=f"{kind} is running normally",
            transitions=[
                Transition(to_state="stopped", condition="manual_stop"),
                Transition(to_state="fault", condition="equipment_fault", probability=0.01),
            ],
        ),
        State(
            name="stopped",
            description=f"{kind} is stopped",
            transitions=[Transition(to_state="running", condition="manual_start")],
        ),
        State(
            name="fault",
            description=f"{kind} has a fault condition",
            transitions=[Transition(to_state="stopped", condition="fault_reset")],
        ),
    ]


# =============================================================================
# File reading
# =============================================================================


def line_files(directory: Path) -> List[Path]:
    directory = Path(directory)
    if not directory.is_dir():
        raise ConfigurationError("config directory does not exist", source=str(directory))
    return sorted(p for p in directory.glob("line*.json") if p.is_file())


def read_line_file(path: Path) -> Dict[str, Any]:
    try:
        with open(path) as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"cannot read line file: {e}", source=str(path))
    if not isinstance(data, dict):
        raise ConfigurationError("line file must contain a JSON object", source=str(path))
    return data


def read_line_files(directory: Path) -> List[Tuple[Path, Dict[str, Any]]]:
    """Read every line file in ``directory`` in name order."""
    return [(path, read_line_file(path)) for path in line_files(directory)]


# =============================================================================
# Parsing
# =============================================================================


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _objects(value: Any, what: str) -> List[Dict[str, Any]]:
    """A JSON list whose entries must all be objects."""
    if not isinstance(value, list):
        raise TypeError(f"{what} must be a list, got {type(value).__name__}")
    for index, entry in enumerate(value):
        if not isinstance(entry, dict):
            raise TypeError(f"{what}[{index}] must be an object, got {entry!r}")
    return value


def _text(raw: Dict[str, Any], key: str, what: str) -> str:
    value = raw[key]
    if not isinstance(value, str) or not value:
        raise TypeError(f"{what} '{key}' must be a non-empty string, got {value!r}")
    return value


def _optional_number(raw: Dict[str, Any], keys: Tuple[str, ...], what: str) -> Optional[float]:
    for key in keys:
        if raw.get(key) is not None:
            value = raw[key]
            if not _is_number(value):
                raise TypeError(f"{what} '{key}' must be a number, got {value!r}")
            return float(value)
    return None


def _parse_transition(raw: Dict[str, Any], where: str) -> Transition:
    return Transition(
        to_state=_text(raw, "toState", where),
        condition=raw.get("condition") or "",
        probability=_optional_number(raw, ("probability",), where),
        delay_ms=_optional_number(raw, ("delayMs", "delay"), where),
    )


def _parse_states(raw_states: Any) -> List[State]:
    states = []
    for index, raw in enumerate(_objects(raw_states, "states")):
        name = _text(raw, "name", f"states[{index}]")
        overrides = [
            TagOverride(tag_id=_text(o, "tagId", f"state '{name}' override"), value=o.get("value"))
            for o in _objects(raw.get("tagOverrides", []), f"state '{name}' tagOverrides")
        ]
        transitions = [
            _parse_transition(t, f"state '{name}' transition")
            for t in _objects(raw.get("transitions", []), f"state '{name}' transitions")
        ]
        states.append(
            State(
                name=name,
                description=raw.get("description", ""),
                tag_overrides=overrides,
                transitions=transitions,
            )
        )
    return states


def parse_line(data: Dict[str, Any], source: str = "") -> List[EquipmentConfig]:
    """Expand one line definition into flat equipment configs.

    Raises:
        ConfigurationError: the header or any equipment entry is malformed,
            including fields of the wrong JSON type.
    """
    try:
        line_number = int(data["line"])
        site = data.get("site", "")
        product_type = data.get("type", "")
        raw_equipment = _objects(data.get("equipment", []), "equipment")
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigurationError(f"invalid line header: {e!r}", source=source)

    configs = []
    for raw in raw_equipment:
        try:
            configs.append(_parse_equipment(raw, line_number, site, product_type))
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ConfigurationError(f"invalid equipment '{raw.get('id', '?')}': {e!r}", source=source)
    return configs


def _parse_equipment(
    raw: Dict[str, Any], line_number: int, site: str, product_type: str
) -> EquipmentConfig:
    equipment_id = _text(raw, "id", "equipment")
    kind = raw.get("type", "")

    tags = [
        Tag(
            id=_text(t, "id", f"{equipment_id} tag"),
            name=t.get("name", t["id"]),
            data_type=t.get("dataType", "REAL"),
            address=f"DB{line_number}.{t['id']}",
            value=t.get("value"),
            behavior=parse_behavior(t.get("behavior"), tag_id=f"{equipment_id}.{t['id']}"),
        )
        for t in _objects(raw.get("tags", []), f"{equipment_id} tags")
    ]

    if raw.get("states"):
        states = _parse_states(raw["states"])
        current = raw.get("status") or states[0].name
    else:
        states = default_states(kind)
        current = raw.get("status", "running")
        if current not in [s.name for s in states]:
            logger.warning(
                f"Equipment '{equipment_id}': status '{current}' is not a known state, "
                f"starting in '{states[0].name}'"
            )
            current = states[0].name

    return EquipmentConfig(
        id=equipment_id,
        name=raw.get("name", equipment_id),
        type=equipment_type(kind),
        site=site,
        product_type=product_type,
        line_number=line_number,
        states=states,
        current_state=current,
        tags=tags,
        line_id=f"line{line_number}",
    )


# =============================================================================
# Validation
# =============================================================================


def _duplicates(values: List[str]) -> List[str]:
    seen = set()
    dupes = []
    for value in values:
        if value in seen and value not in dupes:
            dupes.append(value)
        seen.add(value)
    return dupes


def validate_equipment_config(config: EquipmentConfig) -> List[str]:
    """Return every cross-reference problem in one equipment config."""
    errors = []
    prefix = f"{config.id}:"
    state_names = config.state_names
    tag_ids = [t.id for t in config.tags]

    if not config.id:
        errors.append("equipment id is empty")
    if not state_names:
        errors.append(f"{prefix} no states defined")
    for name in _duplicates(state_names):
        errors.append(f"{prefix} duplicate state '{name}'")
    for tag_id in _duplicates(tag_ids):
        errors.append(f"{prefix} duplicate tag id '{tag_id}'")
    if state_names and config.current_state not in state_names:
        errors.append(f"{prefix} current state '{config.current_state}' is not defined")

    for state in config.states:
        for override in state.tag_overrides:
            if override.tag_id not in tag_ids:
                errors.append(
                    f"{prefix} state '{state.name}' overrides unknown tag '{override.tag_id}'"
                )
        for transition in state.transitions:
            if transition.to_state not in state_names:
                errors.append(
                    f"{prefix} state '{state.name}' transitions to unknown state "
                    f"'{transition.to_state}'"
                )
            probability = transition.probability
            if probability is not None and not (_is_number(probability) and 0 <= probability <= 1):
                errors.append(
                    f"{prefix} transition {state.name} -> {transition.to_state} "
                    f"has probability outside [0, 1]"
                )
            delay = transition.delay_ms
            if delay is not None and not (_is_number(delay) and delay >= 0):
                errors.append(
                    f"{prefix} transition {state.name} -> {transition.to_state} "
                    f"has a negative or non-numeric delay"
                )

    return errors


def validate_configs(configs: List[EquipmentConfig]) -> List[str]:
    errors = []
    for config in configs:
        errors.extend(validate_equipment_config(config))
    for equipment_id in _duplicates([c.id for c in configs]):
        errors.append(f"duplicate equipment id '{equipment_id}'")
    return errors


# =============================================================================
# Loader
# =============================================================================


class LineConfigLoader:
    """Loads line files and polls them for changes.

    Reload results are delivered through the callbacks registered with
    ``on_reload`` and ``on_error``. A failed reload keeps the previous
    configuration set.
    """

    def __init__(self, config_directory: Path, watch: bool = True, poll_interval_s: float = 1.0):
        self.config_directory = Path(config_directory)
        self.watch = watch
        self.poll_interval_s = poll_interval_s

        self._configs: List[EquipmentConfig] = []
        self._signature: Dict[str, Tuple[int, int]] = {}
        self._reload_callbacks: List[ReloadCallback] = []
        self._error_callbacks: List[ErrorCallback] = []

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def on_reload(self, callback: ReloadCallback) -> None:
        self._reload_callbacks.append(callback)

    def on_error(self, callback: ErrorCallback) -> None:
        self._error_callbacks.append(callback)

    def _file_signature(self) -> Dict[str, Tuple[int, int]]:
        signature = {}
        for path in line_files(self.config_directory):
            try:
                stat = path.stat()
            except OSError:
                continue
            signature[str(path)] = (stat.st_mtime_ns, stat.st_size)
        return signature

    def _read_all(self) -> List[EquipmentConfig]:
        configs = []
        files = read_line_files(self.config_directory)
        for path, data in files:
            configs.extend(parse_line(data, source=str(path)))

        errors = validate_configs(configs)
        if errors:
            raise ConfigurationError(
                f"{len(errors)} configuration error(s)",
                errors=errors,
                source=str(self.config_directory),
            )

        logger.info(
            f"Loaded {len(configs)} equipment configurations from {len(files)} lines"
        )
        return configs

    def load(self) -> List[EquipmentConfig]:
        """Load all line files; raises ConfigurationError on any problem."""
        with self._lock:
            signature = self._file_signature()
            configs = self._read_all()
            self._configs = configs
            self._signature = signature

        if self.watch:
            self.start_watching()
        return list(configs)

    def check_for_changes(self) -> bool:
        """Poll once; reload and notify if any line file changed.

        Returns True when a change was detected (whether or not the reload
        succeeded).
        """
        try:
            signature = self._file_signature()
        except ConfigurationError as e:
            self._notify_error(e)
            return False

        if signature == self._signature:
            return False

        logger.info(f"Line configuration changed in {self.config_directory}, reloading...")
        with self._lock:
            self._signature = signature
            try:
                configs = self._read_all()
            except ConfigurationError as e:
                logger.error(f"Failed to reload line configurations: {e}")
                error = e
                configs = None
            else:
                self._configs = configs

        if configs is None:
            self._notify_error(error)
            return True

        for callback in list(self._reload_callbacks):
            try:
                callback(list(configs))
            except Exception as e:
                logger.error(f"Reload callback failed: {e}")
        return True

    def _notify_error(self, error: Exception) -> None:
        for callback in list(self._error_callbacks):
            try:
                callback(error)
            except Exception as e:
                logger.error(f"Error callback failed: {e}")

    def _watch_loop(self) -> None:
        while not self._stop_event.wait(self.poll_interval_s):
            try:
                self.check_for_changes()
            except Exception as e:
                logger.error(f"Line configuration watcher error: {e}")
                self._notify_error(e)

    def start_watching(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._watch_loop, daemon=True)
        self._thread.start()
        logger.info(f"Watching line configuration files in {self.config_directory}")

    def stop_watching(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=max(2.0, self.poll_interval_s * 2))
            self._thread = None
            logger.info("Stopped watching line configuration files")

    def current_configs(self) -> List[EquipmentConfig]:
        return list(self._configs)

    def get_equipment(self, equipment_id: str) -> Optional[EquipmentConfig]:
        for config in self._configs:
            if config.id == equipment_id:
                return config
        return None
