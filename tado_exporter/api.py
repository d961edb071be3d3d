from __future__ import annotations

import json
import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

logger = logging.getLogger(__name__)

TADO_API_URL = "https://my.tado.com/api/v2"

BODY_CHUNK_SIZE = 4096


class TadoAPIError(RuntimeError):
    def __init__(self, message: str, operation: str = "", status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.operation = operation
        self.status_code = status_code


class TadoAuthError(TadoAPIError):
    pass


class DeadlineExceeded(TadoAPIError):
    pass


class Deadline:
    """Run-wide time budget shared by every upstream call of one scrape."""

    def __init__(self, timeout_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.timeout_seconds = float(timeout_seconds)
        self.expires_at = clock() + self.timeout_seconds

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self._clock())

    def expired(self) -> bool:
        return self._clock() >= self.expires_at

    def check(self, operation: str = "") -> float:
        left = self.remaining()
        if left <= 0.0:
            raise DeadlineExceeded(f"deadline of {self.timeout_seconds:g}s exceeded before {operation or 'call'}", operation)
        return left


def _is_number(x: Any) -> bool:
    return isinstance(x, (int, float)) and not isinstance(x, bool)


def _to_float(x: Any) -> Optional[float]:
    if _is_number(x):
        v = float(x)
    elif isinstance(x, str):
        try:
            v = float(x.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(v) or math.isinf(v):
        return None
    return v


def _to_int(x: Any) -> Optional[int]:
    if isinstance(x, bool):
        return None
    if isinstance(x, int):
        return x
    if isinstance(x, str) and x.strip().isdigit():
        return int(x.strip())
    return None


def _to_str(x: Any) -> Optional[str]:
    if x is None:
        return None
    return str(x)


def _dig(d: Any, *path: str) -> Any:
    cur = d
    for p in path:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(p)
    return cur


@dataclass
class HomeRef:
    id: Optional[int]
    name: Optional[str] = None


@dataclass
class User:
    homes: List[HomeRef] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "User":
        homes = data.get("homes") or []
        if not isinstance(homes, list):
            homes = []
        out = [HomeRef(id=_to_int(h.get("id")), name=_to_str(h.get("name"))) for h in homes if isinstance(h, dict)]
        return cls(homes=out)


@dataclass
class HomeState:
    presence: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HomeState":
        return cls(presence=_to_str(data.get("presence")))


@dataclass
class Zone:
    id: Optional[int]
    name: Optional[str] = None
    type: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Zone":
        return cls(id=_to_int(data.get("id")), name=_to_str(data.get("name")), type=_to_str(data.get("type")))


@dataclass
class ZoneState:
    inside_temperature_celsius: Optional[float] = None
    inside_temperature_fahrenheit: Optional[float] = None
    humidity_percentage: Optional[float] = None
    setting_temperature_celsius: Optional[float] = None
    setting_temperature_fahrenheit: Optional[float] = None
    setting_power: Optional[str] = None
    heating_power_percentage: Optional[float] = None
    open_window: Optional[Dict[str, Any]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ZoneState":
        open_window = data.get("openWindow")
        return cls(
            inside_temperature_celsius=_to_float(_dig(data, "sensorDataPoints", "insideTemperature", "celsius")),
            inside_temperature_fahrenheit=_to_float(_dig(data, "sensorDataPoints", "insideTemperature", "fahrenheit")),
            humidity_percentage=_to_float(_dig(data, "sensorDataPoints", "humidity", "percentage")),
            setting_temperature_celsius=_to_float(_dig(data, "setting", "temperature", "celsius")),
            setting_temperature_fahrenheit=_to_float(_dig(data, "setting", "temperature", "fahrenheit")),
            setting_power=_to_str(_dig(data, "setting", "power")),
            heating_power_percentage=_to_float(_dig(data, "activityDataPoints", "heatingPower", "percentage")),
            open_window=open_window if isinstance(open_window, dict) else None,
        )


@dataclass
class ZoneStates:
    zone_states: Optional[Dict[str, ZoneState]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ZoneStates":
        raw = data.get("zoneStates")
        if not isinstance(raw, dict):
            return cls(zone_states=None)
        return cls(zone_states={str(k): ZoneState.from_dict(v) for k, v in raw.items() if isinstance(v, dict)})


@dataclass
class Weather:
    solar_intensity_percentage: Optional[float] = None
    outside_temperature_celsius: Optional[float] = None
    outside_temperature_fahrenheit: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Weather":
        return cls(
            solar_intensity_percentage=_to_float(_dig(data, "solarIntensity", "percentage")),
            outside_temperature_celsius=_to_float(_dig(data, "outsideTemperature", "celsius")),
            outside_temperature_fahrenheit=_to_float(_dig(data, "outsideTemperature", "fahrenheit")),
        )


class TadoAPI:
    """The upstream operations the collector depends on.

    Every call maps to exactly one upstream round trip, takes the scrape's
    :class:`Deadline` and either returns a typed payload or raises
    :class:`TadoAPIError`.
    """

    def get_me(self, deadline: Deadline) -> User:
        raise NotImplementedError

    def get_home_state(self, deadline: Deadline, home_id: int) -> HomeState:
        raise NotImplementedError

    def get_zones(self, deadline: Deadline, home_id: int) -> List[Zone]:
        raise NotImplementedError

    def get_zone_states(self, deadline: Deadline, home_id: int) -> ZoneStates:
        raise NotImplementedError

    def get_weather(self, deadline: Deadline, home_id: int) -> Weather:
        raise NotImplementedError


class TadoClientAdapter(TadoAPI):
    """:class:`TadoAPI` over a requests session.

    Each round trip runs on a worker thread and the caller waits at most for
    the time left on the scrape's :class:`Deadline`. A call still in flight
    when the deadline fires is abandoned: the caller gets
    :class:`DeadlineExceeded` and the worker closes the response at its next
    chunk boundary.
    """

    def __init__(self, session: requests.Session, base_url: str = TADO_API_URL, max_workers: int = 4) -> None:
        self.session = session
        self.base_url = base_url.rstrip("/")
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="tado-upstream")

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def _refresh_auth(self, deadline: Deadline, operation: str) -> None:
        # a token refresh is one more round trip and shares the scrape budget
        current_token = getattr(self.session.auth, "current_token", None)
        if callable(current_token):
            current_token(timeout=deadline.check(operation))

    def _fetch(self, deadline: Deadline, operation: str, url: str) -> Tuple[int, bytes]:
        self._refresh_auth(deadline, operation)
        try:
            resp = self.session.get(url, timeout=deadline.check(operation), stream=True)
        except requests.RequestException as e:
            raise TadoAPIError(f"failed to {operation}: {e}", operation) from e

        try:
            if resp.status_code != 200:
                return resp.status_code, b""
            chunks = []
            for chunk in resp.iter_content(chunk_size=BODY_CHUNK_SIZE):
                deadline.check(operation)
                chunks.append(chunk)
            return resp.status_code, b"".join(chunks)
        except requests.RequestException as e:
            raise TadoAPIError(f"failed to {operation}: {e}", operation, resp.status_code) from e
        finally:
            resp.close()

    def _get(self, deadline: Deadline, operation: str, path: str) -> Any:
        remaining = deadline.check(operation)
        url = f"{self.base_url}{path}"
        future = self._executor.submit(self._fetch, deadline, operation, url)
        try:
            status, body = future.result(timeout=remaining)
        except FutureTimeout:
            future.cancel()
            logger.warning("upstream call abandoned op=%s deadline=%.1fs", operation, deadline.timeout_seconds)
            raise DeadlineExceeded(f"failed to {operation}: deadline of {deadline.timeout_seconds:g}s exceeded", operation) from None

        if status in (401, 403):
            raise TadoAuthError(f"failed to {operation}: status code {status}", operation, status)
        if status != 200:
            raise TadoAPIError(f"failed to {operation}: status code {status}", operation, status)

        try:
            data = json.loads(body)
        except ValueError as e:
            raise TadoAPIError(f"failed to {operation}: invalid json body", operation, status) from e

        logger.debug("upstream op=%s status=%s bytes=%d", operation, status, len(body))
        return data

    def _get_object(self, deadline: Deadline, operation: str, path: str) -> Dict[str, Any]:
        data = self._get(deadline, operation, path)
        if not isinstance(data, dict):
            raise TadoAPIError(f"failed to {operation}: unexpected response shape", operation, 200)
        return data

    def get_me(self, deadline: Deadline) -> User:
        return User.from_dict(self._get_object(deadline, "get me", "/me"))

    def get_home_state(self, deadline: Deadline, home_id: int) -> HomeState:
        return HomeState.from_dict(self._get_object(deadline, "get home state", f"/homes/{home_id}/state"))

    def get_zones(self, deadline: Deadline, home_id: int) -> List[Zone]:
        data = self._get(deadline, "get zones", f"/homes/{home_id}/zones")
        if not isinstance(data, list):
            raise TadoAPIError("failed to get zones: unexpected response shape", "get zones", 200)
        return [Zone.from_dict(z) for z in data if isinstance(z, dict)]

    def get_zone_states(self, deadline: Deadline, home_id: int) -> ZoneStates:
        return ZoneStates.from_dict(self._get_object(deadline, "get zone states", f"/homes/{home_id}/zoneStates"))

    def get_weather(self, deadline: Deadline, home_id: int) -> Weather:
        return Weather.from_dict(self._get_object(deadline, "get weather", f"/homes/{home_id}/weather"))
