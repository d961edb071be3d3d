from __future__ import annotations

import time
from typing import Iterator, List, Optional, Union

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram
from prometheus_client.metrics_core import Metric

ZONE_LABELS = ["home_id", "zone_id", "zone_name", "zone_type"]

SCRAPE_DURATION_BUCKETS = (0.1, 0.2, 0.4, 0.8, 1.6, 3.2)

MetricWrapper = Union[Counter, Gauge, Histogram]


class _MetricGroup:
    def _all(self) -> List[MetricWrapper]:
        raise NotImplementedError

    def register(self, registry: CollectorRegistry) -> None:
        for m in self._all():
            registry.register(m)

    def describe(self) -> Iterator[Metric]:
        for m in self._all():
            yield from m.describe()

    def collect(self) -> Iterator[Metric]:
        for m in self._all():
            yield from m.collect()


class MetricDescriptors(_MetricGroup):
    """Domain gauges for homes and zones.

    The gauges are not bound to any registry; the collector yields them on
    each scrape. Values persist across scrapes until overwritten.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.is_resident_present = Gauge("tado_is_resident_present", "Whether anyone is home (1 = home, 0 = away)", registry=None)
        self.solar_intensity_percentage = Gauge("tado_solar_intensity_percentage", "Solar radiation intensity as a percentage (0-100%)", registry=None)
        self.temperature_outside_celsius = Gauge("tado_temperature_outside_celsius", "Outside temperature in Celsius", registry=None)
        self.temperature_outside_fahrenheit = Gauge("tado_temperature_outside_fahrenheit", "Outside temperature in Fahrenheit", registry=None)

        self.temperature_measured_celsius = Gauge("tado_temperature_measured_celsius", "Measured temperature in Celsius", ZONE_LABELS, registry=None)
        self.temperature_measured_fahrenheit = Gauge("tado_temperature_measured_fahrenheit", "Measured temperature in Fahrenheit", ZONE_LABELS, registry=None)
        self.humidity_measured_percentage = Gauge("tado_humidity_measured_percentage", "Measured relative humidity as a percentage (0-100%)", ZONE_LABELS, registry=None)
        self.temperature_set_celsius = Gauge("tado_temperature_set_celsius", "Set/target temperature in Celsius", ZONE_LABELS, registry=None)
        self.temperature_set_fahrenheit = Gauge("tado_temperature_set_fahrenheit", "Set/target temperature in Fahrenheit", ZONE_LABELS, registry=None)
        self.heating_power_percentage = Gauge("tado_heating_power_percentage", "Heating power as a percentage (0-100%)", ZONE_LABELS, registry=None)
        self.is_window_open = Gauge("tado_is_window_open", "Whether the window is open (1 = open, 0 = closed)", ZONE_LABELS, registry=None)
        self.is_zone_powered = Gauge("tado_is_zone_powered", "Whether the zone is powered (1 = on, 0 = off)", ZONE_LABELS, registry=None)

        if registry is not None:
            self.register(registry)

    def _all(self) -> List[MetricWrapper]:
        return [
            self.is_resident_present,
            self.solar_intensity_percentage,
            self.temperature_outside_celsius,
            self.temperature_outside_fahrenheit,
            self.temperature_measured_celsius,
            self.temperature_measured_fahrenheit,
            self.humidity_measured_percentage,
            self.temperature_set_celsius,
            self.temperature_set_fahrenheit,
            self.heating_power_percentage,
            self.is_window_open,
            self.is_zone_powered,
        ]


class ExporterMetrics(_MetricGroup):
    """Self-monitoring metrics describing the collector's own health."""

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.scrape_duration_seconds = Histogram(
            "tado_exporter_scrape_duration_seconds",
            "Time taken to collect metrics from Tado API in seconds",
            buckets=SCRAPE_DURATION_BUCKETS,
            registry=None,
        )
        self.scrape_errors_total = Counter(
            "tado_exporter_scrape_errors_total",
            "Total number of errors while collecting metrics from Tado API",
            registry=None,
        )
        self.build_info = Gauge("tado_exporter_build_info", "Build information for the exporter (value is always 1)", registry=None)
        self.authentication_valid = Gauge(
            "tado_exporter_authentication_valid",
            "Set to 1 if Tado authentication is valid and metrics are being collected, 0 if authentication failed or no homes found",
            registry=None,
        )
        self.authentication_errors_total = Counter(
            "tado_exporter_authentication_errors_total",
            "Total number of authentication failures or token refresh attempts",
            registry=None,
        )
        self.last_authentication_success_unix = Gauge(
            "tado_exporter_last_authentication_success_unix",
            "Unix timestamp of the last successful authentication",
            registry=None,
        )

        self.build_info.set(1)
        self.authentication_valid.set(0)

        if registry is not None:
            self.register(registry)

    def _all(self) -> List[MetricWrapper]:
        return [
            self.scrape_duration_seconds,
            self.scrape_errors_total,
            self.build_info,
            self.authentication_valid,
            self.authentication_errors_total,
            self.last_authentication_success_unix,
        ]

    def record_scrape_duration(self, seconds: float) -> None:
        self.scrape_duration_seconds.observe(seconds)

    def increment_scrape_errors(self, n: int = 1) -> None:
        if n > 0:
            self.scrape_errors_total.inc(n)

    def set_authentication_valid(self, valid: bool) -> None:
        self.authentication_valid.set(1 if valid else 0)

    def increment_authentication_errors(self) -> None:
        self.authentication_errors_total.inc()

    def record_authentication_success(self, now: Optional[float] = None) -> None:
        self.last_authentication_success_unix.set(float(int(now if now is not None else time.time())))
