from __future__ import annotations

from typing import Any, Dict, List, Optional

import pytest
from prometheus_client import CollectorRegistry

from tado_exporter.api import HomeRef, HomeState, TadoAPI, TadoAPIError, User, Weather, Zone, ZoneState, ZoneStates
from tado_exporter.metrics import ExporterMetrics, MetricDescriptors


class FakeTadoAPI(TadoAPI):
    """In-memory upstream. Set ``errors[op]`` (optionally keyed by home) to make a call fail."""

    def __init__(self) -> None:
        self.user = User(homes=[HomeRef(id=1, name="Home")])
        self.home_states: Dict[int, HomeState] = {1: HomeState(presence="HOME")}
        self.weather: Dict[int, Weather] = {
            1: Weather(solar_intensity_percentage=42.0, outside_temperature_celsius=8.5, outside_temperature_fahrenheit=47.3)
        }
        self.zones: Dict[int, List[Zone]] = {1: [Zone(id=10, name="Bedroom", type="HEATING")]}
        self.zone_states: Dict[int, ZoneStates] = {1: ZoneStates(zone_states={"10": bedroom_state()})}
        self.errors: Dict[Any, Exception] = {}
        self.calls: List[str] = []

    def _maybe_fail(self, op: str, home_id: Optional[int] = None) -> None:
        self.calls.append(op)
        err = self.errors.get((op, home_id)) or self.errors.get(op)
        if err is not None:
            raise err

    def get_me(self, deadline):
        self._maybe_fail("get_me")
        return self.user

    def get_home_state(self, deadline, home_id):
        self._maybe_fail("get_home_state", home_id)
        return self.home_states.get(home_id, HomeState())

    def get_zones(self, deadline, home_id):
        self._maybe_fail("get_zones", home_id)
        return self.zones.get(home_id, [])

    def get_zone_states(self, deadline, home_id):
        self._maybe_fail("get_zone_states", home_id)
        return self.zone_states.get(home_id, ZoneStates(zone_states={}))

    def get_weather(self, deadline, home_id):
        self._maybe_fail("get_weather", home_id)
        return self.weather.get(home_id, Weather())


def bedroom_state(**overrides: Any) -> ZoneState:
    values: Dict[str, Any] = dict(
        inside_temperature_celsius=21.3,
        inside_temperature_fahrenheit=70.34,
        humidity_percentage=45.0,
        setting_temperature_celsius=20.0,
        setting_temperature_fahrenheit=68.0,
        setting_power="ON",
        heating_power_percentage=30.0,
        open_window=None,
    )
    values.update(overrides)
    return ZoneState(**values)


class Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_api() -> FakeTadoAPI:
    return FakeTadoAPI()


@pytest.fixture
def zone_state_factory():
    return bedroom_state


@pytest.fixture
def upstream_error():
    def make(msg: str = "boom") -> TadoAPIError:
        return TadoAPIError(msg, "test")

    return make


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def descriptors() -> MetricDescriptors:
    return MetricDescriptors()


@pytest.fixture
def exporter_metrics() -> ExporterMetrics:
    return ExporterMetrics()


@pytest.fixture
def inspect_registry(descriptors: MetricDescriptors, exporter_metrics: ExporterMetrics) -> CollectorRegistry:
    """Registry exposing the gauges directly, without triggering a scrape."""
    registry = CollectorRegistry()
    descriptors.register(registry)
    exporter_metrics.register(registry)
    return registry
