"""Registry of rtl_433 device readings.

Every reading type declares the model name rtl_433 prints in its JSON
output, the measurement name used in InfluxDB, and which JSON keys become
tags or fields. New device types register with ``@register_reading``.
"""

import json
import logging
import math
from dataclasses import dataclass, field, fields as dataclass_fields
from datetime import datetime
from typing import ClassVar

from rtl_slurp.config import MetadataFieldSet
from rtl_slurp.errors import DecodeError, UnknownModelError
from rtl_slurp.point import Point

logger = logging.getLogger(__name__)

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

_READING_TYPES: dict[str, type["Reading"]] = {}


def register_reading(cls):
    """Class decorator adding a reading type to the model-name lookup."""
    if not cls.MODEL_NAME:
        raise ValueError(f"{cls.__name__} has no MODEL_NAME")
    _READING_TYPES[cls.MODEL_NAME] = cls
    return cls


def reading_types() -> dict[str, type["Reading"]]:
    return dict(_READING_TYPES)


def _tag(json_key: str, default, name: str | None = None):
    return field(default=default, metadata={"json": json_key, "tag": name or json_key})


def _value(json_key: str, default, name: str | None = None):
    return field(default=default, metadata={"json": json_key, "field": name or json_key})


def _convert(value, default):
    # Follow the declared default's type; str fields take whatever rtl_433 prints.
    if isinstance(default, bool):
        return bool(value)
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        number = float(value)
        if not math.isfinite(number):
            raise ValueError(f"non-finite number {value!r}")
        return number
    return str(value)


@dataclass
class Reading:
    """Base reading: the model name and the declared time string."""
    MODEL_NAME: ClassVar[str] = ""
    MEASUREMENT: ClassVar[str] = ""

    model: str = ""
    time_str: str = field(default="", metadata={"json": "time"})
    time: datetime | None = None

    @classmethod
    def from_json(cls, data: dict) -> "Reading":
        """Build a reading from a decoded JSON object.

        Keys match case-insensitively and missing keys keep their defaults.
        """
        lowered = {str(k).lower(): v for k, v in data.items()}
        kwargs = {}
        for f in dataclass_fields(cls):
            key = f.metadata.get("json", f.name if f.name != "time" else None)
            if key is None or key.lower() not in lowered:
                continue
            raw = lowered[key.lower()]
            if raw is None:
                continue
            try:
                kwargs[f.name] = _convert(raw, f.default)
            except (TypeError, ValueError, OverflowError) as e:
                raise DecodeError(f"{cls.MODEL_NAME}: bad value for {key}: {raw!r}") from e
        return cls(**kwargs)

    def get_time_str(self) -> str:
        return self.time_str

    def set_time(self, t: datetime):
        self.time = t

    def parse_time(self) -> datetime:
        """Parse the declared time string and store it on the reading."""
        try:
            t = datetime.strptime(self.time_str, TIME_FORMAT)
        except ValueError as e:
            raise DecodeError(f"{self.MODEL_NAME}: bad time {self.time_str!r}") from e
        self.set_time(t)
        return t

    def tags(self) -> dict[str, str]:
        tags = {"model": self.model}
        for f in dataclass_fields(self):
            if "tag" in f.metadata:
                tags[f.metadata["tag"]] = str(getattr(self, f.name))
        return tags

    def fields(self) -> dict[str, object]:
        return {
            f.metadata["field"]: getattr(self, f.name)
            for f in dataclass_fields(self)
            if "field" in f.metadata
        }

    def to_point(self, field_sets: dict[str, MetadataFieldSet] | None = None) -> Point:
        """Build the InfluxDB point, enriched by every applicable field set."""
        tags = self.tags()
        for name, field_set in (field_sets or {}).items():
            if field_set.apply(tags):
                logger.debug("Applied metadata field set %s to %s", name, self.MODEL_NAME)
        if self.time is None:
            self.parse_time()
        return Point(self.MEASUREMENT, tags, self.fields(), self.time)


def _reject_constant(name: str):
    # NaN and Infinity are valid to json.loads but not to InfluxDB.
    raise DecodeError(f"non-finite number {name} in record")


def decode_reading(line: bytes) -> Reading:
    """Decode one rtl_433 JSON line into its registered reading type."""
    try:
        data = json.loads(line, parse_constant=_reject_constant)
    except (ValueError, UnicodeDecodeError, RecursionError) as e:
        raise DecodeError(f"invalid JSON record: {e}") from e
    if not isinstance(data, dict):
        raise DecodeError("record is not a JSON object")

    model = next((v for k, v in data.items() if str(k).lower() == "model"), None)
    if not isinstance(model, str):
        raise DecodeError(f"record has no model name: {model!r}")
    cls = _READING_TYPES.get(model)
    if cls is None:
        raise UnknownModelError(str(model))
    return cls.from_json(data)


@register_reading
@dataclass
class AmbientWeatherReading(Reading):
    MODEL_NAME: ClassVar[str] = "Ambient Weather F007TH Thermo-Hygrometer"
    MEASUREMENT: ClassVar[str] = "AmbientWeather"

    rtl_433_id: int = _tag("rtl_433_id", 0)
    device: int = _tag("device", 0)
    channel: int = _tag("channel", 0)
    battery: str = _tag("battery", "")
    temperature_f: float = _value("temperature_F", 0.0, "temperature_f")
    humidity: int = _value("humidity", 0)


@register_reading
@dataclass
class AcuRiteTowerReading(Reading):
    MODEL_NAME: ClassVar[str] = "Acurite tower sensor"
    MEASUREMENT: ClassVar[str] = "AcuRiteTowerSensor"

    id: int = _tag("id", 0)
    sensor_id: int = _tag("sensor_id", 0)
    channel: str = _tag("channel", "")
    battery_low: int = _tag("battery_low", 0)
    temperature_c: float = _value("temperature_C", 0.0)
    humidity: int = _value("humidity", 0)


@register_reading
@dataclass
class AcuRite5n1Reading(Reading):
    MODEL_NAME: ClassVar[str] = "Acurite 5n1 sensor"
    MEASUREMENT: ClassVar[str] = "AcuRite5n1Sensor"

    sensor_id: int = _tag("sensor_id", 0)
    channel: str = _tag("channel", "")
    sequence_num: int = _tag("sequence_num", 0)
    battery: str = _tag("battery", "")
    message_type: int = _tag("message_type", 0)
    wind_dir: str = _tag("wind_dir", "")
    wind_speed_mph: float = _value("wind_speed_mph", 0.0)
    wind_dir_deg: float = _value("wind_dir_deg", 0.0)
    rainfall_accumulation_inch: float = _value("rainfall_accumulation_inch", 0.0)
    raincounter_raw: int = _value("raincounter_raw", 0)


@register_reading
@dataclass
class AcuRite606TXReading(Reading):
    MODEL_NAME: ClassVar[str] = "Acurite 606TX Sensor"
    MEASUREMENT: ClassVar[str] = "AcuRite606TXSensor"

    id: int = _tag("id", 0)
    battery: str = _tag("battery", "")
    temperature_c: float = _value("temperature_C", 0.0)


@register_reading
@dataclass
class AcuRite609TXCReading(Reading):
    MODEL_NAME: ClassVar[str] = "Acurite 609TXC Sensor"
    MEASUREMENT: ClassVar[str] = "AcuRite609TXCSensor"

    id: int = _tag("id", 0)
    status: int = _tag("status", 0)
    battery: str = _tag("battery", "")
    temperature_c: float = _value("temperature_C", 0.0)
    humidity: int = _value("humidity", 0)


@register_reading
@dataclass
class AcuRite986Reading(Reading):
    MODEL_NAME: ClassVar[str] = "Acurite 986 Sensor"
    MEASUREMENT: ClassVar[str] = "AcuRite986Sensor"

    id: int = _tag("id", 0)
    channel: str = _tag("channel", "")
    status: int = _tag("status", 0)
    battery: str = _tag("battery", "")
    temperature_f: float = _value("temperature_F", 0.0)


@register_reading
@dataclass
class AcuRiteLightning6045MReading(Reading):
    MODEL_NAME: ClassVar[str] = "Acurite Lightning 6045M"
    MEASUREMENT: ClassVar[str] = "AcuRiteLightning6045M"

    id: int = _tag("id", 0)
    channel: str = _tag("channel", "")
    active: int = _tag("active", 0, "active_mode")
    rfi: int = _tag("rfi", 0)
    battery: str = _tag("battery", "")
    exception: int = _tag("exception", 0)
    temperature_f: float = _value("temperature_F", 0.0)
    humidity: int = _value("humidity", 0)
    strike_count: int = _value("strike_count", 0)
    storm_dist: int = _value("storm_dist", 0)


@register_reading
@dataclass
class AcuRiteRainGaugeReading(Reading):
    MODEL_NAME: ClassVar[str] = "Acurite Rain Gauge"
    MEASUREMENT: ClassVar[str] = "AcuRiteRainGauge"

    id: int = _tag("id", 0)
    rain: float = _value("rain", 0.0, "rain_mm")


@register_reading
@dataclass
class Akhan100F14Reading(Reading):
    MODEL_NAME: ClassVar[str] = "Akhan 100F14 remote keyless entry"
    MEASUREMENT: ClassVar[str] = "Akhan100F14"

    id: int = _tag("id", 0)
    data: str = _value("data", "")


@register_reading
@dataclass
class Bresser3CHReading(Reading):
    MODEL_NAME: ClassVar[str] = "Bresser 3CH sensor"
    MEASUREMENT: ClassVar[str] = "Bresser3CHSensor"

    id: int = _tag("id", 0)
    channel: str = _tag("channel", "")
    battery: str = _tag("battery", "")
    temperature_f: float = _value("temperature_F", 0.0)
    humidity: int = _value("humidity", 0)


@register_reading
@dataclass
class CalibeurRF104Reading(Reading):
    MODEL_NAME: ClassVar[str] = "Calibeur RF-104"
    MEASUREMENT: ClassVar[str] = "CalibeurRF104"

    id: int = _tag("id", 0)
    temperature_c: float = _value("temperature_C", 0.0)
    humidity: int = _value("humidity", 0)


@register_reading
@dataclass
class CurrentCostTXReading(Reading):
    MODEL_NAME: ClassVar[str] = "CurrentCost TX"
    MEASUREMENT: ClassVar[str] = "CurrentCostTX"

    dev_id: int = _tag("dev_id", 0)
    power0: int = _value("power0", 0)
    power1: int = _value("power1", 0)
    power2: int = _value("power2", 0)


@register_reading
@dataclass
class DanfossCFRReading(Reading):
    MODEL_NAME: ClassVar[str] = "Danfoss CFR Thermostat"
    MEASUREMENT: ClassVar[str] = "DanfossCFRThermostat"

    id: int = _tag("id", 0)
    switch: str = _tag("switch", "")
    temperature_c: float = _value("temperature_C", 0.0)
    setpoint_c: float = _value("setpoint_C", 0.0)


@register_reading
@dataclass
class EfergyE2CTReading(Reading):
    MODEL_NAME: ClassVar[str] = "Efergy e2 CT"
    MEASUREMENT: ClassVar[str] = "EfergyE2CT"

    id: int = _tag("id", 0)
    battery: str = _tag("battery", "")
    learn: str = _tag("learn", "")
    current: float = _value("current", 0.0)


@register_reading
@dataclass
class EfergyOpticalReading(Reading):
    MODEL_NAME: ClassVar[str] = "Efergy Optical"
    MEASUREMENT: ClassVar[str] = "EfergyOptical"

    pulses: int = _value("pulses", 0)
    energy: float = _value("energy", 0.0)
