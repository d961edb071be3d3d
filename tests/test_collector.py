from __future__ import annotations

import logging
import time

import pytest
from prometheus_client import CollectorRegistry, generate_latest

from tado_exporter.api import HomeRef, HomeState, User, Weather, Zone, ZoneStates
from tado_exporter.circuit_breaker import CircuitBreaker, CircuitBreakerAPI, CircuitBreakerConfig
from tado_exporter.collector import (
    KIND_DEADLINE,
    KIND_ENUMERATION,
    KIND_HOME,
    KIND_VALIDATION,
    KIND_ZONE_STATE_MISSING,
    KIND_ZONES,
    TadoCollector,
)

BEDROOM = {"home_id": "1", "zone_id": "10", "zone_name": "Bedroom", "zone_type": "HEATING"}


@pytest.fixture
def collector(fake_api, descriptors, exporter_metrics):
    return TadoCollector(fake_api, descriptors, scrape_timeout=10, exporter_metrics=exporter_metrics)


def _value(registry, name, labels=None):
    return registry.get_sample_value(name, labels or {})


def _add_second_home(fake_api, zone_state_factory):
    fake_api.user = User(homes=[HomeRef(id=1), HomeRef(id=2)])
    fake_api.home_states[2] = HomeState(presence="AWAY")
    fake_api.weather[2] = Weather(solar_intensity_percentage=10.0, outside_temperature_celsius=3.0)
    fake_api.zones[2] = [Zone(id=20, name="Office", type="HEATING")]
    fake_api.zone_states[2] = ZoneStates(zone_states={"20": zone_state_factory(inside_temperature_celsius=19.0, inside_temperature_fahrenheit=66.2)})


OFFICE = {"home_id": "2", "zone_id": "20", "zone_name": "Office", "zone_type": "HEATING"}


def test_happy_path(collector, inspect_registry):
    outcome = collector.scrape()

    assert outcome.ok
    assert outcome.homes_attempted == 1
    assert outcome.zones_attempted == 1
    assert _value(inspect_registry, "tado_temperature_measured_celsius", BEDROOM) == 21.3
    assert _value(inspect_registry, "tado_temperature_measured_fahrenheit", BEDROOM) == 70.34
    assert _value(inspect_registry, "tado_humidity_measured_percentage", BEDROOM) == 45.0
    assert _value(inspect_registry, "tado_temperature_set_celsius", BEDROOM) == 20.0
    assert _value(inspect_registry, "tado_heating_power_percentage", BEDROOM) == 30.0
    assert _value(inspect_registry, "tado_is_window_open", BEDROOM) == 0.0
    assert _value(inspect_registry, "tado_is_zone_powered", BEDROOM) == 1.0
    assert _value(inspect_registry, "tado_is_resident_present") == 1.0
    assert _value(inspect_registry, "tado_solar_intensity_percentage") == 42.0
    assert _value(inspect_registry, "tado_temperature_outside_celsius") == 8.5
    assert _value(inspect_registry, "tado_temperature_outside_fahrenheit") == 47.3


def test_out_of_range_reading_is_not_written(collector, fake_api, inspect_registry, zone_state_factory, caplog):
    fake_api.zone_states[1] = ZoneStates(zone_states={"10": zone_state_factory(inside_temperature_celsius=500.0, inside_temperature_fahrenheit=None)})

    with caplog.at_level(logging.WARNING):
        outcome = collector.scrape()

    assert _value(inspect_registry, "tado_temperature_measured_celsius", BEDROOM) is None
    assert _value(inspect_registry, "tado_temperature_measured_fahrenheit", BEDROOM) is None
    assert _value(inspect_registry, "tado_humidity_measured_percentage", BEDROOM) == 45.0
    assert _value(inspect_registry, "tado_heating_power_percentage", BEDROOM) == 30.0
    assert outcome.validation_failures == 1
    assert [e.kind for e in outcome.errors] == [KIND_VALIDATION]
    assert any("validation failed" in r.getMessage() and "measured_temperature_celsius" in r.getMessage() for r in caplog.records)


def test_out_of_range_reading_keeps_last_valid_value(collector, fake_api, inspect_registry, zone_state_factory):
    collector.scrape()
    fake_api.zone_states[1] = ZoneStates(zone_states={"10": zone_state_factory(inside_temperature_celsius=500.0, humidity_percentage=50.0)})

    collector.scrape()

    assert _value(inspect_registry, "tado_temperature_measured_celsius", BEDROOM) == 21.3
    assert _value(inspect_registry, "tado_humidity_measured_percentage", BEDROOM) == 50.0


def test_absent_reading_is_not_published_as_zero(collector, fake_api, inspect_registry, zone_state_factory):
    fake_api.zone_states[1] = ZoneStates(zone_states={"10": zone_state_factory(humidity_percentage=None, heating_power_percentage=None)})
    outcome = collector.scrape()

    assert outcome.ok
    assert _value(inspect_registry, "tado_humidity_measured_percentage", BEDROOM) is None
    assert _value(inspect_registry, "tado_heating_power_percentage", BEDROOM) is None
    assert _value(inspect_registry, "tado_temperature_measured_celsius", BEDROOM) == 21.3


def test_failed_home_does_not_suppress_other_homes(collector, fake_api, inspect_registry, zone_state_factory, upstream_error):
    _add_second_home(fake_api, zone_state_factory)
    fake_api.errors[("get_home_state", 1)] = upstream_error("home 1 down")
    fake_api.errors[("get_zones", 1)] = upstream_error("home 1 down")

    outcome = collector.scrape()

    assert outcome.homes_attempted == 2
    assert outcome.homes_failed == 1
    assert {(e.kind, e.home_id) for e in outcome.errors} == {(KIND_HOME, "1"), (KIND_ZONES, "1")}
    assert _value(inspect_registry, "tado_temperature_measured_celsius", OFFICE) == 19.0
    assert _value(inspect_registry, "tado_temperature_measured_celsius", BEDROOM) is None
    assert _value(inspect_registry, "tado_is_resident_present") == 0.0


def test_home_level_failure_does_not_stop_zone_collection(collector, fake_api, inspect_registry, upstream_error):
    fake_api.errors["get_weather"] = upstream_error("weather down")

    outcome = collector.scrape()

    assert [e.kind for e in outcome.errors] == [KIND_HOME]
    assert _value(inspect_registry, "tado_is_resident_present") == 1.0
    assert _value(inspect_registry, "tado_temperature_measured_celsius", BEDROOM) == 21.3


def test_zone_failure_does_not_stop_home_collection(collector, fake_api, inspect_registry, upstream_error):
    fake_api.errors["get_zone_states"] = upstream_error("zone states down")

    outcome = collector.scrape()

    assert [e.kind for e in outcome.errors] == [KIND_ZONES]
    assert _value(inspect_registry, "tado_solar_intensity_percentage") == 42.0
    assert _value(inspect_registry, "tado_temperature_measured_celsius", BEDROOM) is None


def test_missing_zone_state_skips_only_that_zone(collector, fake_api, inspect_registry, zone_state_factory, caplog):
    fake_api.zones[1] = [Zone(id=10, name="Bedroom", type="HEATING"), Zone(id=11, name="Kitchen", type="HEATING")]
    fake_api.zone_states[1] = ZoneStates(zone_states={"11": zone_state_factory(inside_temperature_celsius=22.0)})

    with caplog.at_level(logging.WARNING):
        outcome = collector.scrape()

    assert outcome.zones_attempted == 2
    assert outcome.zones_failed == 1
    assert [(e.kind, e.zone_id) for e in outcome.errors] == [(KIND_ZONE_STATE_MISSING, "10")]
    kitchen = dict(BEDROOM, zone_id="11", zone_name="Kitchen")
    assert _value(inspect_registry, "tado_temperature_measured_celsius", kitchen) == 22.0
    assert any("no zone state found" in r.getMessage() for r in caplog.records)


def test_missing_zone_states_map(collector, fake_api):
    fake_api.zone_states[1] = ZoneStates(zone_states=None)
    outcome = collector.scrape()
    assert [e.kind for e in outcome.errors] == [KIND_ZONES]


def test_zone_labels_for_missing_name_and_type(collector, fake_api, inspect_registry):
    fake_api.zones[1] = [Zone(id=10, name=None, type=None)]
    collector.scrape()
    labels = {"home_id": "1", "zone_id": "10", "zone_name": "unknown", "zone_type": ""}
    assert _value(inspect_registry, "tado_temperature_measured_celsius", labels) == 21.3


def test_homes_and_zones_without_id_are_skipped(collector, fake_api):
    fake_api.user = User(homes=[HomeRef(id=None), HomeRef(id=1)])
    fake_api.zones[1] = [Zone(id=None, name="ghost"), Zone(id=10, name="Bedroom", type="HEATING")]
    outcome = collector.scrape()
    assert outcome.ok
    assert outcome.homes_attempted == 1
    assert outcome.zones_attempted == 1


def test_enumeration_failure_marks_authentication_invalid(collector, fake_api, inspect_registry, upstream_error):
    collector.scrape()
    assert _value(inspect_registry, "tado_exporter_authentication_valid") == 1.0

    fake_api.errors["get_me"] = upstream_error("unauthorized")
    fake_api.zone_states[1] = ZoneStates(zone_states={})
    outcome = collector.scrape()

    assert outcome.enumeration_failed
    assert [e.kind for e in outcome.errors] == [KIND_ENUMERATION]
    assert fake_api.calls.count("get_zones") == 1
    assert _value(inspect_registry, "tado_exporter_authentication_valid") == 0.0
    assert _value(inspect_registry, "tado_exporter_authentication_errors_total") == 1.0
    assert _value(inspect_registry, "tado_temperature_measured_celsius", BEDROOM) == 21.3


def test_enumeration_failure_counts_once_per_run(collector, fake_api, inspect_registry, upstream_error):
    fake_api.errors["get_me"] = upstream_error()
    collector.scrape()
    collector.scrape()
    assert _value(inspect_registry, "tado_exporter_authentication_errors_total") == 2.0
    assert _value(inspect_registry, "tado_exporter_scrape_errors_total") == 2.0


def test_no_homes_is_an_enumeration_failure(collector, fake_api, inspect_registry):
    fake_api.user = User(homes=[])
    outcome = collector.scrape()
    assert outcome.enumeration_failed
    assert fake_api.calls == ["get_me"]
    assert _value(inspect_registry, "tado_exporter_authentication_valid") == 0.0
    assert _value(inspect_registry, "tado_exporter_authentication_errors_total") == 1.0


def test_successful_enumeration_records_authentication(collector, inspect_registry):
    before = int(time.time())
    collector.scrape()
    assert _value(inspect_registry, "tado_exporter_authentication_valid") == 1.0
    assert _value(inspect_registry, "tado_exporter_last_authentication_success_unix") >= before
    assert _value(inspect_registry, "tado_exporter_authentication_errors_total") == 0.0


def test_home_id_filter(fake_api, descriptors, exporter_metrics, inspect_registry, zone_state_factory):
    _add_second_home(fake_api, zone_state_factory)
    collector = TadoCollector(fake_api, descriptors, home_id="2", exporter_metrics=exporter_metrics)

    outcome = collector.scrape()

    assert outcome.homes_attempted == 1
    assert ("get_home_state" in fake_api.calls) and fake_api.calls.count("get_home_state") == 1
    assert _value(inspect_registry, "tado_temperature_measured_celsius", OFFICE) == 19.0
    assert _value(inspect_registry, "tado_temperature_measured_celsius", BEDROOM) is None


def test_idempotent_rescrape(collector, inspect_registry):
    collector.scrape()
    first = _value(inspect_registry, "tado_temperature_measured_celsius", BEDROOM)
    collector.scrape()

    assert _value(inspect_registry, "tado_temperature_measured_celsius", BEDROOM) == first
    assert _value(inspect_registry, "tado_is_zone_powered", BEDROOM) == 1.0
    assert _value(inspect_registry, "tado_exporter_scrape_duration_seconds_count") == 2.0
    assert _value(inspect_registry, "tado_exporter_scrape_errors_total") == 0.0


def test_duration_recorded_on_failure(collector, fake_api, inspect_registry, upstream_error):
    fake_api.errors["get_me"] = upstream_error()
    collector.scrape()
    assert _value(inspect_registry, "tado_exporter_scrape_duration_seconds_count") == 1.0


def test_every_error_increments_scrape_errors(collector, fake_api, inspect_registry, zone_state_factory, upstream_error):
    fake_api.errors["get_weather"] = upstream_error()
    fake_api.zone_states[1] = ZoneStates(zone_states={"10": zone_state_factory(humidity_percentage=130.0)})
    outcome = collector.scrape()
    assert len(outcome.errors) == 2
    assert _value(inspect_registry, "tado_exporter_scrape_errors_total") == 2.0


def test_expired_deadline_stops_issuing_calls(collector, fake_api):
    collector.scrape_timeout = 0
    outcome = collector.scrape()
    assert [e.kind for e in outcome.errors] == [KIND_DEADLINE]
    assert outcome.homes_attempted == 0
    assert fake_api.calls == ["get_me"]


def test_circuit_open_is_logged_and_counted(fake_api, descriptors, exporter_metrics, inspect_registry, clock, upstream_error, caplog):
    breaker = CircuitBreaker(CircuitBreakerConfig(1, 30.0), clock=clock)
    api = CircuitBreakerAPI(fake_api, breaker=breaker)
    collector = TadoCollector(api, descriptors, exporter_metrics=exporter_metrics)

    fake_api.errors["get_me"] = upstream_error()
    collector.scrape()
    with caplog.at_level(logging.WARNING):
        outcome = collector.scrape()

    assert fake_api.calls.count("get_me") == 1
    assert outcome.errors[0].circuit_open is True
    assert any("circuit_state=open" in r.getMessage() for r in caplog.records)
    assert _value(inspect_registry, "tado_exporter_authentication_errors_total") == 2.0


def test_unexpected_error_never_escapes(collector, fake_api, zone_state_factory, inspect_registry):
    _add_second_home(fake_api, zone_state_factory)
    fake_api.errors[("get_zones", 1)] = KeyError("bug")
    fake_api.errors[("get_home_state", 1)] = AttributeError("bug")

    outcome = collector.scrape()

    assert {(e.kind, e.home_id) for e in outcome.errors} == {(KIND_HOME, "1"), (KIND_ZONES, "1")}
    assert outcome.homes_failed == 1
    assert _value(inspect_registry, "tado_temperature_measured_celsius", OFFICE) == 19.0
    assert _value(inspect_registry, "tado_is_resident_present") == 0.0
    assert _value(inspect_registry, "tado_exporter_scrape_errors_total") == 2.0


def test_unexpected_error_in_one_zone_does_not_skip_the_next(collector, fake_api, zone_state_factory, inspect_registry, monkeypatch):
    fake_api.zones[1].append(Zone(id=11, name="Kitchen", type="HEATING"))
    fake_api.zone_states[1].zone_states["11"] = zone_state_factory(inside_temperature_celsius=22.0, inside_temperature_fahrenheit=71.6)
    real = collector._record_zone

    def flaky(hid, zone, metrics, outcome):
        if zone.id == 10:
            raise TypeError("bug")
        return real(hid, zone, metrics, outcome)

    monkeypatch.setattr(collector, "_record_zone", flaky)
    outcome = collector.scrape()

    kitchen = dict(BEDROOM, zone_id="11", zone_name="Kitchen")
    assert [(e.kind, e.zone_id) for e in outcome.errors] == [(KIND_ZONES, "10")]
    assert outcome.zones_failed == 1
    assert _value(inspect_registry, "tado_temperature_measured_celsius", kitchen) == 22.0


def test_collect_through_registry(collector):
    registry = CollectorRegistry()
    registry.register(collector)

    text = generate_latest(registry).decode()

    assert 'tado_temperature_measured_celsius{home_id="1",zone_id="10",zone_name="Bedroom",zone_type="HEATING"} 21.3' in text
    assert "tado_exporter_build_info 1.0" in text
    assert "tado_exporter_scrape_duration_seconds_bucket" in text


def test_describe_is_stable(collector, fake_api):
    names = [m.name for m in collector.describe()]
    assert names == [m.name for m in collector.describe()]
    assert "tado_is_resident_present" in names
    assert "tado_exporter_scrape_errors" in names
    assert fake_api.calls == []


def test_collect_without_exporter_metrics(fake_api, descriptors):
    collector = TadoCollector(fake_api, descriptors)
    names = [m.name for m in collector.collect()]
    assert "tado_exporter_build_info" not in names
    assert "tado_is_zone_powered" in names
