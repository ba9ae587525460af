"""Unit state parsing and control value conversion."""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from .errors import UnsupportedControlError

# Control types reported by the cloud
TYPE_DIMMER = "Dimmer"
TYPE_CCT = "CCT"
TYPE_VERTICAL = "Vertical"
TYPE_ON_OFF = "OnOff"

# Control names accepted in controlUnit targetControls
TARGET_DIMMER = "Dimmer"
TARGET_COLOR_TEMPERATURE = "ColorTemperature"
TARGET_COLOR_SOURCE = "Colorsource"
TARGET_VERTICAL = "Vertical"
TARGET_ON_OFF = "OnOff"

COLOR_SOURCE_TUNABLE_WHITE = "TW"

# Control names exposed to consumers
CONTROL_ON = "on"
CONTROL_BRIGHTNESS = "brightness"
CONTROL_COLOR_TEMPERATURE = "color_temperature"
CONTROL_VERTICAL = "vertical"
CONTROL_NAMES = (CONTROL_ON, CONTROL_BRIGHTNESS, CONTROL_COLOR_TEMPERATURE, CONTROL_VERTICAL)

DEFAULT_MIN_KELVIN = 2700
DEFAULT_MAX_KELVIN = 4000
MIRED_SCALE = 1_000_000.0


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "1", "on"}:
            return True
        if lowered in {"false", "no", "0", "off"}:
            return False
    raise UnsupportedControlError(f"Expected an on/off value, got {value!r}")


def _coerce_number(name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise UnsupportedControlError(f"{name} must be a number, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise UnsupportedControlError(f"{name} must be a number, got {value!r}") from exc
    if not math.isfinite(number):
        raise UnsupportedControlError(f"{name} must be finite, got {value!r}")
    return number


def _optional_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def brightness_to_level(brightness: float) -> float:
    """Convert a 0-100 brightness into the 0.0-1.0 dimmer level."""

    return brightness / 100.0


def level_to_brightness(level: float) -> float:
    return level * 100.0


def mired_to_kelvin(mired: float) -> float:
    return MIRED_SCALE / mired


def kelvin_to_mired(kelvin: float) -> float:
    return MIRED_SCALE / kelvin


def clamp_kelvin(kelvin: float, min_kelvin: float, max_kelvin: float) -> float:
    return min(max(kelvin, min_kelvin), max_kelvin)


@dataclass(frozen=True)
class ControlValue:
    """One reported control: value plus optional bounds."""

    type: str
    value: Optional[float]
    min: Optional[float] = None
    max: Optional[float] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> Optional["ControlValue"]:
        control_type = payload.get("type")
        if not isinstance(control_type, str) or not control_type:
            return None
        return cls(
            type=control_type,
            value=_optional_float(payload.get("value")),
            min=_optional_float(payload.get("min")),
            max=_optional_float(payload.get("max")),
        )

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type, "value": self.value}
        if self.min is not None:
            data["min"] = self.min
        if self.max is not None:
            data["max"] = self.max
        return data


def _flatten_controls(raw: Any) -> Iterable[Mapping[str, Any]]:
    # Full state snapshots nest controls one level deeper than pushes do.
    if isinstance(raw, Mapping):
        yield raw
    elif isinstance(raw, (list, tuple)):
        for item in raw:
            yield from _flatten_controls(item)


def parse_controls(raw: Any) -> Dict[str, ControlValue]:
    controls: Dict[str, ControlValue] = {}
    for payload in _flatten_controls(raw):
        control = ControlValue.from_payload(payload)
        if control is not None:
            controls[control.type] = control
    return controls


@dataclass(frozen=True)
class UnitState:
    """Reported state of a unit, as last accepted from the cloud."""

    unit_id: int
    name: Optional[str] = None
    online: Optional[bool] = None
    controls: Mapping[str, ControlValue] = field(default_factory=dict)
    unit_type: Optional[str] = None
    address: Optional[str] = None
    fixture_id: Optional[int] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "UnitState":
        """Build a state from a snapshot or a unitChanged push."""

        unit_id = payload.get("id")
        if isinstance(unit_id, bool) or not isinstance(unit_id, (int, str)):
            raise ValueError(f"Unit payload has no usable id: {unit_id!r}")
        online = payload.get("online")
        fixture_id = payload.get("fixtureId")
        address = payload.get("address")
        unit_type = payload.get("type")
        return cls(
            unit_id=int(unit_id),
            name=payload.get("name") if isinstance(payload.get("name"), str) else None,
            online=online if isinstance(online, bool) else None,
            controls=parse_controls(payload.get("controls")),
            unit_type=unit_type if isinstance(unit_type, str) else None,
            address=str(address) if address is not None else None,
            fixture_id=fixture_id if isinstance(fixture_id, int) and not isinstance(fixture_id, bool) else None,
        )

    def merged(self, update: "UnitState") -> "UnitState":
        """Overlay a newer push on this state; controls not in the push are kept."""

        controls = dict(self.controls)
        controls.update(update.controls)
        return UnitState(
            unit_id=self.unit_id,
            name=update.name if update.name is not None else self.name,
            online=update.online if update.online is not None else self.online,
            controls=controls,
            unit_type=update.unit_type or self.unit_type,
            address=update.address or self.address,
            fixture_id=update.fixture_id if update.fixture_id is not None else self.fixture_id,
        )

    def with_control(self, control: ControlValue) -> "UnitState":
        controls = dict(self.controls)
        controls[control.type] = control
        return replace(self, controls=controls)

    def control(self, control_type: str) -> Optional[ControlValue]:
        return self.controls.get(control_type)

    @property
    def brightness(self) -> Optional[float]:
        dimmer = self.control(TYPE_DIMMER)
        if dimmer is None or dimmer.value is None:
            return None
        return level_to_brightness(dimmer.value)

    @property
    def is_on(self) -> Optional[bool]:
        brightness = self.brightness
        if brightness is not None:
            return brightness > 0
        on_off = self.control(TYPE_ON_OFF)
        if on_off is None or on_off.value is None:
            return None
        return on_off.value > 0

    @property
    def kelvin(self) -> Optional[float]:
        cct = self.control(TYPE_CCT)
        if cct is None or not cct.value:
            return None
        return cct.value

    @property
    def mired(self) -> Optional[float]:
        kelvin = self.kelvin
        return kelvin_to_mired(kelvin) if kelvin else None

    @property
    def vertical(self) -> Optional[float]:
        vertical = self.control(TYPE_VERTICAL)
        if vertical is None or vertical.value is None:
            return None
        return level_to_brightness(vertical.value)

    def kelvin_bounds(self) -> Optional[Tuple[float, float]]:
        cct = self.control(TYPE_CCT)
        if cct is None or cct.min is None or cct.max is None:
            return None
        return cct.min, cct.max

    def snapshot(self) -> Dict[str, Any]:
        """Consumer-facing view of the state."""

        return {
            "unit_id": self.unit_id,
            "name": self.name,
            "type": self.unit_type,
            "address": self.address,
            "fixture_id": self.fixture_id,
            "online": self.online,
            CONTROL_ON: self.is_on,
            CONTROL_BRIGHTNESS: self.brightness,
            CONTROL_COLOR_TEMPERATURE: self.mired,
            "kelvin": self.kelvin,
            CONTROL_VERTICAL: self.vertical,
            "controls": {name: control.as_dict() for name, control in sorted(self.controls.items())},
        }


@dataclass(frozen=True)
class FixtureInfo:
    """Catalog data for a fixture, fetched once per fixture id."""

    fixture_id: int
    vendor: Optional[str] = None
    model: Optional[str] = None
    control_types: Tuple[str, ...] = ()
    min_kelvin: Optional[float] = None
    max_kelvin: Optional[float] = None

    @classmethod
    def from_payload(cls, fixture_id: int, payload: Mapping[str, Any]) -> "FixtureInfo":
        control_types = []
        min_kelvin = max_kelvin = None
        for control in _flatten_controls(payload.get("controls")):
            control_type = control.get("type")
            if not isinstance(control_type, str):
                continue
            control_types.append(control_type)
            if control_type.lower() in {"temperature", "cct"}:
                min_kelvin = _optional_float(control.get("min"))
                max_kelvin = _optional_float(control.get("max"))
        vendor = payload.get("vendor")
        model = payload.get("model")
        return cls(
            fixture_id=fixture_id,
            vendor=str(vendor) if vendor is not None else None,
            model=str(model) if model is not None else None,
            control_types=tuple(control_types),
            min_kelvin=min_kelvin,
            max_kelvin=max_kelvin,
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "fixture_id": self.fixture_id,
            "vendor": self.vendor,
            "model": self.model,
            "control_types": list(self.control_types),
            "min_kelvin": self.min_kelvin,
            "max_kelvin": self.max_kelvin,
        }


def resolve_kelvin_bounds(
    state: Optional[UnitState],
    fixture: Optional[FixtureInfo],
    default: Tuple[float, float] = (DEFAULT_MIN_KELVIN, DEFAULT_MAX_KELVIN),
) -> Tuple[float, float]:
    """Pick CCT bounds: reported by the unit, then the fixture, then the default."""

    if state is not None:
        bounds = state.kelvin_bounds()
        if bounds is not None:
            return bounds
    if fixture is not None and fixture.min_kelvin is not None and fixture.max_kelvin is not None:
        return fixture.min_kelvin, fixture.max_kelvin
    return default


@dataclass(frozen=True)
class ControlRequest:
    """A validated consumer request translated into targetControls."""

    name: str
    target_controls: Mapping[str, Mapping[str, Any]]
    predicted: Tuple[ControlValue, ...]


def build_control_request(
    name: str,
    value: Any,
    *,
    state: Optional[UnitState],
    last_brightness: Optional[float],
    kelvin_bounds: Tuple[float, float],
) -> ControlRequest:
    """Validate ``value`` for ``name`` and build the controlUnit payload.

    ``on`` maps to the dimmer, restoring the last non-zero brightness when
    switching on. A unit that only reports an OnOff control gets an OnOff
    target instead. Color temperature arrives in mired and is sent as Kelvin
    clamped to ``kelvin_bounds``.
    """

    if name == CONTROL_ON:
        on = _coerce_bool(value)
        has_dimmer = state is None or state.control(TYPE_DIMMER) is not None
        if not has_dimmer and state is not None and state.control(TYPE_ON_OFF) is not None:
            level = 1.0 if on else 0.0
            return ControlRequest(
                name=name,
                target_controls={TARGET_ON_OFF: {"value": level}},
                predicted=(ControlValue(TYPE_ON_OFF, level),),
            )
        brightness = (last_brightness or 100.0) if on else 0.0
        level = brightness_to_level(brightness)
        return ControlRequest(
            name=name,
            target_controls={TARGET_DIMMER: {"value": level}},
            predicted=(ControlValue(TYPE_DIMMER, level),),
        )

    if name == CONTROL_BRIGHTNESS:
        brightness = _coerce_number(name, value)
        if not 0 <= brightness <= 100:
            raise UnsupportedControlError(f"brightness must be within 0-100, got {brightness}")
        level = brightness_to_level(brightness)
        return ControlRequest(
            name=name,
            target_controls={TARGET_DIMMER: {"value": level}},
            predicted=(ControlValue(TYPE_DIMMER, level),),
        )

    if name == CONTROL_COLOR_TEMPERATURE:
        mired = _coerce_number(name, value)
        if mired <= 0:
            raise UnsupportedControlError(f"color_temperature must be a positive mired value, got {mired}")
        min_kelvin, max_kelvin = kelvin_bounds
        kelvin = clamp_kelvin(mired_to_kelvin(mired), min_kelvin, max_kelvin)
        return ControlRequest(
            name=name,
            target_controls={
                TARGET_COLOR_TEMPERATURE: {"value": kelvin},
                TARGET_COLOR_SOURCE: {"source": COLOR_SOURCE_TUNABLE_WHITE},
            },
            predicted=(ControlValue(TYPE_CCT, kelvin, min_kelvin, max_kelvin),),
        )

    if name == CONTROL_VERTICAL:
        vertical = _coerce_number(name, value)
        if not 0 <= vertical <= 100:
            raise UnsupportedControlError(f"vertical must be within 0-100, got {vertical}")
        level = brightness_to_level(vertical)
        return ControlRequest(
            name=name,
            target_controls={TARGET_VERTICAL: {"value": level}},
            predicted=(ControlValue(TYPE_VERTICAL, level),),
        )

    raise UnsupportedControlError(
        f"Unsupported control {name!r}; expected one of {', '.join(CONTROL_NAMES)}"
    )
