from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from .api import Weather, ZoneState

MIN_VALID_TEMPERATURE = -50.0
MAX_VALID_TEMPERATURE = 60.0

MIN_VALID_HUMIDITY = 0.0
MAX_VALID_HUMIDITY = 100.0

MIN_VALID_POWER = 0.0
MAX_VALID_POWER = 100.0

MIN_VALID_SOLAR_INTENSITY = 0.0
MAX_VALID_SOLAR_INTENSITY = 100.0

MEASURED_TEMPERATURE_CELSIUS = "measured_temperature_celsius"
MEASURED_TEMPERATURE_FAHRENHEIT = "measured_temperature_fahrenheit"
MEASURED_HUMIDITY = "measured_humidity"
TARGET_TEMPERATURE_CELSIUS = "target_temperature_celsius"
TARGET_TEMPERATURE_FAHRENHEIT = "target_temperature_fahrenheit"
HEATING_POWER = "heating_power"
OUTSIDE_TEMPERATURE_CELSIUS = "outside_temperature_celsius"
OUTSIDE_TEMPERATURE_FAHRENHEIT = "outside_temperature_fahrenheit"
SOLAR_INTENSITY = "solar_intensity"


def celsius_to_fahrenheit(celsius: float) -> float:
    return celsius * 9.0 / 5.0 + 32.0


def fahrenheit_to_celsius(fahrenheit: float) -> float:
    return (fahrenheit - 32.0) * 5.0 / 9.0


@dataclass
class ZoneMetrics:
    measured_temperature_celsius: Optional[float] = None
    measured_temperature_fahrenheit: Optional[float] = None
    measured_humidity: Optional[float] = None
    target_temperature_celsius: Optional[float] = None
    target_temperature_fahrenheit: Optional[float] = None
    heating_power_percentage: Optional[float] = None
    is_window_open: bool = False
    is_zone_powered: bool = False


@dataclass(frozen=True)
class ValidatedMetric:
    field: str
    value: float


class ValidationError(ValueError):
    def __init__(self, field: str, value: Any, reason: str) -> None:
        super().__init__(f"validation error: {field} = {value}, {reason}")
        self.field = field
        self.value = value
        self.reason = reason


def extract_zone_temperature(zone_state: Optional[ZoneState]) -> Tuple[Optional[float], Optional[float]]:
    if zone_state is None:
        return None, None
    return zone_state.inside_temperature_celsius, zone_state.inside_temperature_fahrenheit


def extract_zone_humidity(zone_state: Optional[ZoneState]) -> Optional[float]:
    if zone_state is None:
        return None
    return zone_state.humidity_percentage


def extract_target_temperature(zone_state: Optional[ZoneState]) -> Tuple[Optional[float], Optional[float]]:
    if zone_state is None:
        return None, None
    return zone_state.setting_temperature_celsius, zone_state.setting_temperature_fahrenheit


def extract_heating_power(zone_state: Optional[ZoneState]) -> Optional[float]:
    if zone_state is None:
        return None
    return zone_state.heating_power_percentage


def extract_window_open_status(zone_state: Optional[ZoneState]) -> bool:
    if zone_state is None:
        return False
    return zone_state.open_window is not None


def extract_zone_power_status(zone_state: Optional[ZoneState]) -> bool:
    if zone_state is None or zone_state.setting_power is None:
        return False
    return zone_state.setting_power.upper() == "ON"


def extract_all_zone_metrics(zone_state: Optional[ZoneState]) -> ZoneMetrics:
    temp_c, temp_f = extract_zone_temperature(zone_state)
    target_c, target_f = extract_target_temperature(zone_state)
    return ZoneMetrics(
        measured_temperature_celsius=temp_c,
        measured_temperature_fahrenheit=temp_f,
        measured_humidity=extract_zone_humidity(zone_state),
        target_temperature_celsius=target_c,
        target_temperature_fahrenheit=target_f,
        heating_power_percentage=extract_heating_power(zone_state),
        is_window_open=extract_window_open_status(zone_state),
        is_zone_powered=extract_zone_power_status(zone_state),
    )


def _check_range(value: float, field: str, lo: float, hi: float, unit: str) -> Optional[ValidationError]:
    if math.isnan(value) or value < lo or value > hi:
        return ValidationError(field, value, f"outside valid range [{lo:g}, {hi:g}]{unit}")
    return None


def validate_temperature(temp: float, field: str) -> Optional[ValidationError]:
    return _check_range(temp, field, MIN_VALID_TEMPERATURE, MAX_VALID_TEMPERATURE, "°C")


def validate_humidity(humidity: float, field: str) -> Optional[ValidationError]:
    return _check_range(humidity, field, MIN_VALID_HUMIDITY, MAX_VALID_HUMIDITY, "%")


def validate_power(power: float, field: str) -> Optional[ValidationError]:
    return _check_range(power, field, MIN_VALID_POWER, MAX_VALID_POWER, "%")


def validate_solar_intensity(intensity: float, field: str) -> Optional[ValidationError]:
    return _check_range(intensity, field, MIN_VALID_SOLAR_INTENSITY, MAX_VALID_SOLAR_INTENSITY, "%")


def _validate_temperature_pair(
    celsius: Optional[float],
    fahrenheit: Optional[float],
    field_c: str,
    field_f: str,
    validated: List[ValidatedMetric],
    errors: List[ValidationError],
) -> None:
    # Fahrenheit follows its Celsius counterpart and is never judged on its own scale.
    if celsius is not None:
        err = validate_temperature(celsius, field_c)
        if err is not None:
            errors.append(err)
            return
        validated.append(ValidatedMetric(field_c, celsius))
        if fahrenheit is None:
            fahrenheit = celsius_to_fahrenheit(celsius)
        validated.append(ValidatedMetric(field_f, fahrenheit))
    elif fahrenheit is not None:
        err = validate_temperature(fahrenheit_to_celsius(fahrenheit), field_c)
        if err is not None:
            errors.append(ValidationError(field_f, fahrenheit, err.reason))
            return
        validated.append(ValidatedMetric(field_f, fahrenheit))


def validate_zone_metrics(metrics: Optional[ZoneMetrics]) -> Tuple[List[ValidatedMetric], List[ValidationError]]:
    """Range-check every numeric reading of a zone independently.

    Returns the readings that may be published together with one
    :class:`ValidationError` per rejected reading. Absent readings produce
    neither.
    """
    validated: List[ValidatedMetric] = []
    errors: List[ValidationError] = []

    if metrics is None:
        errors.append(ValidationError("metrics", None, "metrics object is nil"))
        return validated, errors

    _validate_temperature_pair(
        metrics.measured_temperature_celsius,
        metrics.measured_temperature_fahrenheit,
        MEASURED_TEMPERATURE_CELSIUS,
        MEASURED_TEMPERATURE_FAHRENHEIT,
        validated,
        errors,
    )
    _validate_temperature_pair(
        metrics.target_temperature_celsius,
        metrics.target_temperature_fahrenheit,
        TARGET_TEMPERATURE_CELSIUS,
        TARGET_TEMPERATURE_FAHRENHEIT,
        validated,
        errors,
    )

    if metrics.measured_humidity is not None:
        err = validate_humidity(metrics.measured_humidity, MEASURED_HUMIDITY)
        if err is not None:
            errors.append(err)
        else:
            validated.append(ValidatedMetric(MEASURED_HUMIDITY, metrics.measured_humidity))

    if metrics.heating_power_percentage is not None:
        err = validate_power(metrics.heating_power_percentage, HEATING_POWER)
        if err is not None:
            errors.append(err)
        else:
            validated.append(ValidatedMetric(HEATING_POWER, metrics.heating_power_percentage))

    return validated, errors


def validate_weather(weather: Optional[Weather]) -> Tuple[List[ValidatedMetric], List[ValidationError]]:
    validated: List[ValidatedMetric] = []
    errors: List[ValidationError] = []
    if weather is None:
        return validated, errors

    if weather.solar_intensity_percentage is not None:
        err = validate_solar_intensity(weather.solar_intensity_percentage, SOLAR_INTENSITY)
        if err is not None:
            errors.append(err)
        else:
            validated.append(ValidatedMetric(SOLAR_INTENSITY, weather.solar_intensity_percentage))

    _validate_temperature_pair(
        weather.outside_temperature_celsius,
        weather.outside_temperature_fahrenheit,
        OUTSIDE_TEMPERATURE_CELSIUS,
        OUTSIDE_TEMPERATURE_FAHRENHEIT,
        validated,
        errors,
    )
    return validated, errors
