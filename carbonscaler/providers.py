"""Carbon intensity forecast sources used by the reconciler."""

from __future__ import annotations

import base64
import json
import logging
import random
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Callable, List, Mapping, Optional, Tuple

import requests
from kubernetes import client
from kubernetes.client.rest import ApiException

from .errors import ForecastFetchError, InvalidPolicyError
from .models import ForecastSample, OperatorConfig, to_utc

_LOGGER = logging.getLogger("carbonscaler.providers")

ForecastSeriesTuple = Tuple[ForecastSample, ...]


class ForecastFetcher(ABC):
    """Source of carbon intensity forecast samples."""

    @abstractmethod
    def fetch(self, now: datetime) -> ForecastSeriesTuple:
        """Return the forecast series available at ``now``."""


def parse_forecast(payload: Any) -> ForecastSeriesTuple:
    """
    Decode a forecast payload into samples.

    The payload is a JSON array of ``{timestamp, duration, value, location}``
    objects, optionally wrapped as ``{"data": [...]}``. Malformed entries are
    skipped; a payload that is not a list at all is an error.
    """
    if isinstance(payload, Mapping):
        payload = payload.get("data")
    if not isinstance(payload, list):
        raise ForecastFetchError("forecast payload must be a list of samples")

    samples: List[ForecastSample] = []
    for entry in payload:
        if not isinstance(entry, Mapping):
            continue
        try:
            samples.append(ForecastSample.from_dict(entry))
        except (TypeError, ValueError) as exc:
            _LOGGER.warning("Skipping malformed forecast entry %s: %s", entry, exc)
    return tuple(samples)


def _decode_json(raw: Any, source: str) -> Any:
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ForecastFetchError(f"invalid forecast JSON in {source}: {exc}") from exc


class ConfigMapForecastFetcher(ForecastFetcher):
    """Read the forecast from a key of a ConfigMap (binaryData or data)."""

    def __init__(self, core_api: client.CoreV1Api, name: str, namespace: str, key: str) -> None:
        self._api = core_api
        self.name = name
        self.namespace = namespace
        self.key = key

    def fetch(self, now: datetime) -> ForecastSeriesTuple:
        source = f"configmap {self.namespace}/{self.name}"
        try:
            config_map = self._api.read_namespaced_config_map(self.name, self.namespace)
        except ApiException as exc:
            raise ForecastFetchError(f"unable to read {source}: {exc.reason}") from exc

        binary = config_map.binary_data or {}
        plain = config_map.data or {}
        if self.key in binary:
            try:
                raw: Any = base64.b64decode(binary[self.key])
            except (TypeError, ValueError) as exc:
                raise ForecastFetchError(f"invalid base64 in {source}: {exc}") from exc
        elif self.key in plain:
            raw = plain[self.key]
        else:
            raise ForecastFetchError(f"key {self.key!r} not found in {source}")

        return parse_forecast(_decode_json(raw, source))


class MockForecastFetcher(ForecastFetcher):
    """
    Generate a random forecast for demos.

    Produces 5 minute samples from three slots in the past to seven days
    ahead, with intensities between 529 and 580. The series is generated once
    and reused. When a CoreV1Api is given the series is also published to a
    ConfigMap so it can be inspected in the cluster.
    """

    SLOT_MINUTES = 5
    SLOTS_BEHIND = 3
    SLOTS_AHEAD = 7 * 24 * 12

    def __init__(
        self,
        core_api: Optional[client.CoreV1Api] = None,
        seed: Optional[int] = None,
        name: str = "carbon-intensity",
        namespace: str = "kube-system",
        key: str = "data",
    ) -> None:
        self._api = core_api
        self._random = random.Random(seed)
        self.name = name
        self.namespace = namespace
        self.key = key
        self._lock = threading.Lock()
        self._series: Optional[ForecastSeriesTuple] = None

    def fetch(self, now: datetime) -> ForecastSeriesTuple:
        with self._lock:
            if self._series:
                return self._series
            series = self._generate(now)
            if self._api is not None:
                self._publish(series)
            self._series = series
            return series

    def _generate(self, now: datetime) -> ForecastSeriesTuple:
        start = to_utc(now)
        return tuple(
            ForecastSample(
                timestamp=start + timedelta(minutes=slot * self.SLOT_MINUTES),
                duration=self.SLOT_MINUTES,
                intensity=self._random.uniform(529.0, 580.0),
            )
            for slot in range(-self.SLOTS_BEHIND, self.SLOTS_AHEAD)
        )

    def _publish(self, series: ForecastSeriesTuple) -> None:
        encoded = base64.b64encode(json.dumps([s.as_dict() for s in series]).encode()).decode()
        body = client.V1ConfigMap(
            metadata=client.V1ObjectMeta(name=self.name, namespace=self.namespace),
            binary_data={self.key: encoded},
        )
        try:
            self._api.create_namespaced_config_map(self.namespace, body)
        except ApiException as exc:
            if exc.status != 409:
                raise ForecastFetchError(f"unable to publish mock forecast: {exc.reason}") from exc
            try:
                self._api.replace_namespaced_config_map(self.name, self.namespace, body)
            except ApiException as replace_exc:
                raise ForecastFetchError(
                    f"unable to publish mock forecast: {replace_exc.reason}"
                ) from replace_exc
        _LOGGER.info("Published mock forecast to configmap %s/%s", self.namespace, self.name)


class HttpForecastFetcher(ForecastFetcher):
    """Fetch the forecast JSON from an HTTP endpoint."""

    def __init__(self, url: str, timeout: float = 2.0) -> None:
        self.url = url
        self.timeout = float(timeout)

    def fetch(self, now: datetime) -> ForecastSeriesTuple:
        try:
            response = requests.get(self.url, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as exc:
            raise ForecastFetchError(f"unable to fetch forecast from {self.url}: {exc}") from exc
        except ValueError as exc:
            raise ForecastFetchError(f"invalid forecast JSON from {self.url}: {exc}") from exc

        samples = parse_forecast(payload)
        _LOGGER.info("Fetched %d forecast samples from %s", len(samples), self.url)
        return samples


class CachedForecastFetcher(ForecastFetcher):
    """Reuse the series of another fetcher for ``ttl`` seconds."""

    def __init__(
        self,
        inner: ForecastFetcher,
        ttl: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.inner = inner
        self.ttl = float(ttl)
        self._clock = clock
        self._lock = threading.Lock()
        self._cached: Optional[Tuple[float, ForecastSeriesTuple]] = None

    def fetch(self, now: datetime) -> ForecastSeriesTuple:
        with self._lock:
            if self._cached and (self._clock() - self._cached[0] < self.ttl):
                return self._cached[1]

        series = self.inner.fetch(now)
        with self._lock:
            self._cached = (self._clock(), series)
        return series

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None


def build_fetcher(
    data_source: Any,
    core_api: Optional[client.CoreV1Api],
    config: Optional[OperatorConfig] = None,
) -> ForecastFetcher:
    """
    Build the fetcher described by a ``carbonIntensityForecastDataSource``.

    Supported keys: ``mockCarbonForecast`` (bool), ``localConfigMap``
    (``{name, namespace, key}``) and ``httpForecast`` (``{url}``).
    """
    config = config or OperatorConfig()
    if not isinstance(data_source, Mapping):
        raise InvalidPolicyError("carbonIntensityForecastDataSource must be an object")

    if data_source.get("mockCarbonForecast"):
        return MockForecastFetcher(core_api)

    fetcher: Optional[ForecastFetcher] = None
    local = data_source.get("localConfigMap")
    http = data_source.get("httpForecast")
    if isinstance(local, Mapping) and local.get("name"):
        if core_api is None:
            raise InvalidPolicyError("localConfigMap forecasts need a Kubernetes client")
        fetcher = ConfigMapForecastFetcher(
            core_api,
            name=str(local["name"]),
            namespace=str(local.get("namespace") or "default"),
            key=str(local.get("key") or "data"),
        )
    elif isinstance(http, Mapping) and http.get("url"):
        fetcher = HttpForecastFetcher(str(http["url"]), timeout=config.forecast_http_timeout)

    if fetcher is None:
        raise InvalidPolicyError(
            "carbonIntensityForecastDataSource must set localConfigMap, httpForecast or mockCarbonForecast"
        )
    if config.forecast_cache_ttl > 0:
        return CachedForecastFetcher(fetcher, config.forecast_cache_ttl)
    return fetcher
