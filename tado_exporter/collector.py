from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

from prometheus_client import Gauge
from prometheus_client.metrics_core import Metric

from .api import Deadline, TadoAPI, TadoAPIError, Zone
from .circuit_breaker import CircuitOpenError
from .metrics import ExporterMetrics, MetricDescriptors
from . import zone_metrics as zm

logger = logging.getLogger(__name__)

DEFAULT_SCRAPE_TIMEOUT = 10.0

KIND_ENUMERATION = "enumeration"
KIND_HOME = "home"
KIND_ZONES = "zones"
KIND_ZONE_STATE_MISSING = "zone_state_missing"
KIND_VALIDATION = "validation"
KIND_DEADLINE = "deadline"


@dataclass
class ScrapeError:
    kind: str
    message: str
    home_id: str = ""
    zone_id: str = ""
    circuit_open: bool = False


@dataclass
class ScrapeOutcome:
    homes_attempted: int = 0
    homes_failed: int = 0
    zones_attempted: int = 0
    zones_failed: int = 0
    validation_failures: int = 0
    enumeration_failed: bool = False
    duration: float = 0.0
    errors: List[ScrapeError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def add(self, kind: str, message: str, home_id: str = "", zone_id: str = "", err: Optional[BaseException] = None) -> ScrapeError:
        e = ScrapeError(kind, message, home_id, zone_id, isinstance(err, CircuitOpenError))
        self.errors.append(e)
        return e


def _log_upstream_failure(what: str, err: TadoAPIError, home_id: str) -> None:
    if isinstance(err, CircuitOpenError):
        logger.warning("%s skipped home_id=%s circuit_state=%s error=%s", what, home_id, err.state.value, err)
    else:
        logger.warning("%s failed home_id=%s error=%s", what, home_id, err)


class TadoCollector:
    """Prometheus collector that queries Tado once per scrape.

    Every ``collect()`` runs :meth:`scrape` under a single run-wide deadline,
    then yields the domain gauges and, when attached, the self-monitoring
    metrics. Failures for one home or zone never stop the others and never
    propagate out of ``collect()``; gauges that could not be refreshed keep
    their previous values.
    """

    def __init__(
        self,
        api: TadoAPI,
        metric_descriptors: MetricDescriptors,
        scrape_timeout: float = DEFAULT_SCRAPE_TIMEOUT,
        home_id: str = "",
        exporter_metrics: Optional[ExporterMetrics] = None,
    ) -> None:
        self.api = api
        self.metric_descriptors = metric_descriptors
        self.scrape_timeout = float(scrape_timeout)
        self.home_id = str(home_id or "").strip()
        self.exporter_metrics = exporter_metrics

    def with_exporter_metrics(self, exporter_metrics: ExporterMetrics) -> "TadoCollector":
        self.exporter_metrics = exporter_metrics
        return self

    def describe(self) -> Iterator[Metric]:
        yield from self.metric_descriptors.describe()
        if self.exporter_metrics is not None:
            yield from self.exporter_metrics.describe()

    def collect(self) -> Iterator[Metric]:
        self.scrape()
        yield from self.metric_descriptors.collect()
        if self.exporter_metrics is not None:
            yield from self.exporter_metrics.collect()

    def scrape(self) -> ScrapeOutcome:
        t0 = time.monotonic()
        deadline = Deadline(self.scrape_timeout)
        outcome = ScrapeOutcome()
        try:
            self._fetch_and_record(deadline, outcome)
        except Exception as e:
            # nothing escapes collect(); the scrape is still served
            logger.exception("scrape aborted by unexpected error")
            outcome.add(KIND_ENUMERATION if outcome.homes_attempted == 0 else KIND_HOME, f"unexpected error: {e}", err=e)
        finally:
            outcome.duration = time.monotonic() - t0
            em = self.exporter_metrics
            if em is not None:
                em.increment_scrape_errors(len(outcome.errors))
                em.record_scrape_duration(outcome.duration)

        if not outcome.ok and not outcome.enumeration_failed:
            logger.warning(
                "scrape completed with errors total_homes=%d homes_with_errors=%d total_zones=%d zones_with_errors=%d error_count=%d duration=%.3fs",
                outcome.homes_attempted,
                outcome.homes_failed,
                outcome.zones_attempted,
                outcome.zones_failed,
                len(outcome.errors),
                outcome.duration,
            )
        else:
            logger.debug("scrape done homes=%d zones=%d duration=%.3fs", outcome.homes_attempted, outcome.zones_attempted, outcome.duration)
        return outcome

    def _enumeration_failed(self, outcome: ScrapeOutcome, message: str, err: Optional[BaseException] = None) -> None:
        outcome.enumeration_failed = True
        outcome.add(KIND_ENUMERATION, message, err=err)
        em = self.exporter_metrics
        if em is not None:
            em.set_authentication_valid(False)
            em.increment_authentication_errors()

    def _fetch_and_record(self, deadline: Deadline, outcome: ScrapeOutcome) -> None:
        try:
            user = self.api.get_me(deadline)
        except TadoAPIError as e:
            _log_upstream_failure("fetch user", e, "")
            self._enumeration_failed(outcome, f"unable to retrieve user information: {e}", e)
            return

        if not user.homes:
            logger.warning("no homes found for user account")
            self._enumeration_failed(outcome, "no homes found for user account")
            return

        em = self.exporter_metrics
        if em is not None:
            em.set_authentication_valid(True)
            em.record_authentication_success()

        for home in user.homes:
            if home.id is None:
                continue
            home_id = str(home.id)
            if self.home_id and home_id != self.home_id:
                continue

            if deadline.expired():
                logger.warning("scrape deadline exceeded timeout=%.1fs skipped_from_home_id=%s", self.scrape_timeout, home_id)
                outcome.add(KIND_DEADLINE, f"deadline exceeded before home {home_id}", home_id)
                break

            outcome.homes_attempted += 1

            try:
                home_ok = self._collect_home_metrics(deadline, home.id, outcome)
            except Exception as e:
                logger.exception("home metrics failed home_id=%s", home_id)
                outcome.add(KIND_HOME, f"home metrics for {home_id}: unexpected error: {e}", home_id, err=e)
                home_ok = False
            if not home_ok:
                outcome.homes_failed += 1

            try:
                self._collect_zone_metrics(deadline, home.id, outcome)
            except Exception as e:
                logger.exception("zone metrics failed home_id=%s", home_id)
                outcome.add(KIND_ZONES, f"zone metrics for {home_id}: unexpected error: {e}", home_id, err=e)

    def _set_validated(self, targets: Dict[str, Gauge], validated: List[zm.ValidatedMetric], labels: Tuple[str, ...] = ()) -> None:
        for vm in validated:
            g = targets.get(vm.field)
            if g is None:
                continue
            # children are created only for values that passed validation
            if labels:
                g = g.labels(*labels)
            g.set(vm.value)

    def _record_validation_errors(self, errors: List[zm.ValidationError], outcome: ScrapeOutcome, home_id: str, zone_id: str = "") -> None:
        for err in errors:
            logger.warning("validation failed home_id=%s zone_id=%s field=%s value=%s reason=%s", home_id, zone_id, err.field, err.value, err.reason)
            outcome.validation_failures += 1
            outcome.add(KIND_VALIDATION, str(err), home_id, zone_id)

    def _collect_home_metrics(self, deadline: Deadline, home_id: int, outcome: ScrapeOutcome) -> bool:
        md = self.metric_descriptors
        hid = str(home_id)

        try:
            state = self.api.get_home_state(deadline, home_id)
        except TadoAPIError as e:
            _log_upstream_failure("home state", e, hid)
            outcome.add(KIND_HOME, f"home metrics for {hid}: failed to get home state: {e}", hid, err=e)
            return False

        if state.presence is not None:
            md.is_resident_present.set(1.0 if state.presence.upper() == "HOME" else 0.0)

        try:
            weather = self.api.get_weather(deadline, home_id)
        except TadoAPIError as e:
            _log_upstream_failure("weather", e, hid)
            outcome.add(KIND_HOME, f"home metrics for {hid}: failed to get weather: {e}", hid, err=e)
            return False

        validated, errors = zm.validate_weather(weather)
        self._set_validated(
            {
                zm.SOLAR_INTENSITY: md.solar_intensity_percentage,
                zm.OUTSIDE_TEMPERATURE_CELSIUS: md.temperature_outside_celsius,
                zm.OUTSIDE_TEMPERATURE_FAHRENHEIT: md.temperature_outside_fahrenheit,
            },
            validated,
        )
        self._record_validation_errors(errors, outcome, hid)
        return True

    def _collect_zone_metrics(self, deadline: Deadline, home_id: int, outcome: ScrapeOutcome) -> None:
        hid = str(home_id)

        try:
            zones = self.api.get_zones(deadline, home_id)
            states = self.api.get_zone_states(deadline, home_id)
        except TadoAPIError as e:
            _log_upstream_failure("zone metrics", e, hid)
            outcome.add(KIND_ZONES, f"zone metrics for {hid}: {e}", hid, err=e)
            return

        if states.zone_states is None:
            logger.warning("zone metrics failed home_id=%s error=zone states map is missing", hid)
            outcome.add(KIND_ZONES, f"zone metrics for {hid}: zone states map is missing", hid)
            return

        for zone in zones:
            if zone.id is None:
                logger.warning("zone id is missing home_id=%s", hid)
                continue

            zid = str(zone.id)
            outcome.zones_attempted += 1

            zone_state = states.zone_states.get(zid)
            if zone_state is None:
                outcome.zones_failed += 1
                logger.warning("no zone state found for zone home_id=%s zone_id=%s", hid, zid)
                outcome.add(KIND_ZONE_STATE_MISSING, f"zone {zid}: state not found", hid, zid)
                continue

            try:
                self._record_zone(hid, zone, zm.extract_all_zone_metrics(zone_state), outcome)
            except Exception as e:
                outcome.zones_failed += 1
                logger.exception("zone failed home_id=%s zone_id=%s", hid, zid)
                outcome.add(KIND_ZONES, f"zone {zid}: unexpected error: {e}", hid, zid, err=e)

    def _record_zone(self, hid: str, zone: Zone, metrics: zm.ZoneMetrics, outcome: ScrapeOutcome) -> None:
        md = self.metric_descriptors
        zid = str(zone.id)
        labels = (hid, zid, zone.name if zone.name is not None else "unknown", zone.type or "")

        validated, errors = zm.validate_zone_metrics(metrics)
        self._set_validated(
            {
                zm.MEASURED_TEMPERATURE_CELSIUS: md.temperature_measured_celsius,
                zm.MEASURED_TEMPERATURE_FAHRENHEIT: md.temperature_measured_fahrenheit,
                zm.MEASURED_HUMIDITY: md.humidity_measured_percentage,
                zm.TARGET_TEMPERATURE_CELSIUS: md.temperature_set_celsius,
                zm.TARGET_TEMPERATURE_FAHRENHEIT: md.temperature_set_fahrenheit,
                zm.HEATING_POWER: md.heating_power_percentage,
            },
            validated,
            labels,
        )
        self._record_validation_errors(errors, outcome, hid, zid)

        md.is_window_open.labels(*labels).set(1.0 if metrics.is_window_open else 0.0)
        md.is_zone_powered.labels(*labels).set(1.0 if metrics.is_zone_powered else 0.0)
