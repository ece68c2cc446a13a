"""
Carbon-Aware KEDA Scaler Operator Service

This service keeps the maxReplicaCount of KEDA targets in line with the
carbon intensity forecast. Each CarbonAwareKedaScaler gets a long-lived
session that reconciles it on the cadence chosen by the decision engine.

Main components:
- ScalerSession: Background reconcile loop for one CarbonAwareKedaScaler
- SessionRegistry: Registry managing sessions keyed by namespace/name
- Flask API: REST endpoints to register scalers and inspect decisions
"""

from __future__ import annotations

import logging
import os
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Optional, Set, Tuple

from flask import Flask, jsonify, request
from kubernetes import client
from prometheus_client import start_http_server

from .discovery import ScalerDiscoverer, load_cluster_config
from .errors import CarbonScalerError, InvalidPolicyError
from .metrics import ScalerMetrics
from .models import Decision, OperatorConfig
from .providers import build_fetcher
from .reconciler import Reconciler
from .targets import KedaTargetClient, ScalerSpec
from .wake import next_tick

LOGGER = logging.getLogger("carbonscaler.service")

ReconcilerFactory = Callable[[ScalerSpec, OperatorConfig], Reconciler]


class DecisionNotReady(RuntimeError):
    """
    Raised when a scaler has not been reconciled yet.

    Returned as HTTP 202 Accepted by the API.
    """

    def __init__(self, namespace: str, name: str) -> None:
        super().__init__(f"decision for {namespace}/{name} is not ready")
        self.namespace = namespace
        self.name = name


class ScalerSession:
    """
    Runs the reconcile loop of one CarbonAwareKedaScaler in a daemon thread.

    The loop sleeps for the decision's next evaluation delay between ticks
    and can be woken early with ``request_refresh``. Failed ticks retry on
    the default requeue cadence.
    """

    def __init__(
        self,
        spec: ScalerSpec,
        reconciler: Reconciler,
        config: OperatorConfig,
        autostart: bool = True,
    ) -> None:
        self.spec = spec
        self._lock = threading.RLock()
        self._refresh_event = threading.Event()
        self._stop_event = threading.Event()

        self._reconciler = reconciler
        self._config = config
        self._decision: Optional[Decision] = None
        self._last_error: Optional[str] = None

        self._thread: Optional[threading.Thread] = None
        if autostart:
            self._thread = threading.Thread(
                target=self._run,
                name=f"scaler[{spec.key}]",
                daemon=True,
            )
            self._thread.start()
            self._refresh_event.set()

    def apply_spec(self, spec: ScalerSpec, reconciler: Reconciler, config: OperatorConfig) -> None:
        """Swap in a new spec and reconcile it immediately."""
        LOGGER.info("Applying new spec for %s", spec.key)
        with self._lock:
            self.spec = spec
            self._reconciler = reconciler
            self._config = config
            self._decision = None
            self._last_error = None
        self._refresh_event.set()

    def last_decision(self) -> Optional[Decision]:
        with self._lock:
            return self._decision

    def last_error(self) -> Optional[str]:
        with self._lock:
            return self._last_error

    def request_refresh(self) -> None:
        self._refresh_event.set()

    def run_once(self, now: Optional[datetime] = None) -> float:
        """
        Reconcile once and return the number of seconds until the next tick.
        """
        with self._lock:
            reconciler = self._reconciler
            config = self._config
        now = now or datetime.now(timezone.utc)

        try:
            decision = reconciler.reconcile(now)
        except CarbonScalerError as exc:
            LOGGER.error("Reconcile failed for %s: %s", self.spec.key, exc)
            with self._lock:
                if self._reconciler is reconciler:
                    self._last_error = str(exc)
            return next_tick(now, config.default_requeue_minutes).total_seconds()
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Reconcile iteration failed for %s: %s", self.spec.key, exc)
            with self._lock:
                if self._reconciler is reconciler:
                    self._last_error = str(exc)
            return config.error_backoff

        with self._lock:
            if self._reconciler is not reconciler:
                # apply_spec ran during the tick; the new spec gets its own
                return 0.0
            self._decision = decision
            self._last_error = None
        return max(1.0, decision.next_evaluation_delay.total_seconds())

    def _run(self) -> None:
        wait_seconds: Optional[float] = None
        while not self._stop_event.is_set():
            self._refresh_event.wait(timeout=wait_seconds)
            self._refresh_event.clear()
            if self._stop_event.is_set():
                break
            wait_seconds = self.run_once()

    def shutdown(self) -> None:
        """Stop the loop and wait briefly for the thread to exit."""
        self._stop_event.set()
        self._refresh_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=2)


class SessionRegistry:
    """
    Registry of scaler sessions keyed by namespace/name.

    Sessions come from two places: the discovery loop (``sync``) and the API
    (``configure``). Only discovered sessions are removed when they disappear
    from the cluster listing.
    """

    def __init__(
        self,
        reconciler_factory: ReconcilerFactory,
        config: Optional[OperatorConfig] = None,
        autostart: bool = True,
    ) -> None:
        self._lock = threading.RLock()
        self._sessions: Dict[Tuple[str, str], ScalerSession] = {}
        self._discovered: Set[Tuple[str, str]] = set()
        self._factory = reconciler_factory
        self._config = config or OperatorConfig()
        self._autostart = autostart

    def configure(self, spec: ScalerSpec) -> ScalerSession:
        """Create the session for ``spec`` or update it when the spec changed."""
        key = (spec.namespace, spec.name)
        config = self._config.clone()
        config.apply_overrides(spec.overrides)

        with self._lock:
            session = self._sessions.get(key)
            if session is None:
                LOGGER.info("Creating scaler session for %s", spec.key)
                session = ScalerSession(spec, self._factory(spec, config), config, autostart=self._autostart)
                self._sessions[key] = session
                return session
        if session.spec != spec:
            session.apply_spec(spec, self._factory(spec, config), config)
        return session

    def sync(self, specs: Iterable[ScalerSpec]) -> None:
        """Align discovered sessions with the scalers present in the cluster."""
        seen: Set[Tuple[str, str]] = set()
        for spec in specs:
            key = (spec.namespace, spec.name)
            seen.add(key)
            self.configure(spec)
            with self._lock:
                self._discovered.add(key)

        with self._lock:
            stale = self._discovered - seen
        for namespace, name in stale:
            self.remove(namespace, name)

    def remove(self, namespace: str, name: str) -> None:
        key = (namespace, name)
        with self._lock:
            session = self._sessions.pop(key, None)
            self._discovered.discard(key)
        if session is None:
            raise KeyError(key)
        LOGGER.info("Removing scaler session for %s/%s", namespace, name)
        session.shutdown()

    def get(self, namespace: str, name: str) -> ScalerSession:
        with self._lock:
            session = self._sessions.get((namespace, name))
        if session is None:
            raise KeyError((namespace, name))
        return session

    def get_decision(self, namespace: str, name: str) -> Decision:
        """
        Raises:
            KeyError: no session exists for namespace/name
            DecisionNotReady: the scaler has not been reconciled yet
        """
        decision = self.get(namespace, name).last_decision()
        if decision is None:
            raise DecisionNotReady(namespace, name)
        return decision

    def keys(self) -> Set[Tuple[str, str]]:
        with self._lock:
            return set(self._sessions)

    def shutdown(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
            self._discovered.clear()
        for session in sessions:
            session.shutdown()


def _resource_from_payload(namespace: str, name: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Accept either a full CarbonAwareKedaScaler object or a bare spec."""
    if isinstance(payload.get("spec"), dict):
        resource = dict(payload)
    else:
        resource = {"spec": {k: v for k, v in payload.items() if k != "operator"}}
        if "operator" in payload:
            resource["operator"] = payload["operator"]
    metadata = dict(resource.get("metadata") or {})
    metadata["namespace"] = namespace
    metadata["name"] = name
    resource["metadata"] = metadata
    return resource


def create_app(registry: SessionRegistry) -> Flask:
    """Build the Flask API around a session registry."""
    app = Flask(__name__)

    @app.route("/decision/<namespace>/<name>")
    def get_decision(namespace: str, name: str) -> Any:
        """
        Get the last decision for a scaler.

        Returns:
            200: Decision JSON
            202: Scaler registered but not reconciled yet
            404: Unknown scaler
        """
        try:
            decision = registry.get_decision(namespace, name)
        except KeyError:
            return jsonify({"error": f"unknown scaler {namespace}/{name}"}), 404
        except DecisionNotReady:
            return jsonify({"status": "pending"}), 202
        return jsonify(decision.as_dict())

    @app.route("/config/<namespace>/<name>", methods=["PUT"])
    def configure_scaler(namespace: str, name: str) -> Any:
        """
        Register or update a scaler from a CarbonAwareKedaScaler payload.

        Returns:
            202: Configuration accepted
            400: Invalid payload or policy
        """
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            return jsonify({"error": "payload must be an object"}), 400
        try:
            spec = ScalerSpec.from_resource(_resource_from_payload(namespace, name, payload))
            registry.configure(spec)
        except (InvalidPolicyError, TypeError, ValueError) as exc:
            return jsonify({"error": str(exc)}), 400
        return jsonify({"status": "accepted"}), 202

    @app.route("/config/<namespace>/<name>", methods=["DELETE"])
    def remove_scaler(namespace: str, name: str) -> Any:
        try:
            registry.remove(namespace, name)
        except KeyError:
            return jsonify({"error": f"unknown scaler {namespace}/{name}"}), 404
        return jsonify({"status": "removed"}), 202

    @app.route("/reconcile/<namespace>/<name>", methods=["POST"])
    def reconcile_scaler(namespace: str, name: str) -> Any:
        """Wake the scaler's loop for an immediate reconcile."""
        try:
            registry.get(namespace, name).request_refresh()
        except KeyError:
            return jsonify({"error": f"unknown scaler {namespace}/{name}"}), 404
        return jsonify({"status": "requested"}), 202

    @app.route("/healthz")
    def health() -> Any:
        return jsonify({"status": "ready"}), 200

    return app


def _discovery_loop(discoverer: ScalerDiscoverer, registry: SessionRegistry, interval: int) -> None:
    while True:
        try:
            registry.sync(discoverer.discover())
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Scaler discovery failed: %s", exc)
        time.sleep(max(1, interval))


def main() -> None:
    logging.basicConfig(level=os.getenv("LOGLEVEL", "INFO").upper())
    config = OperatorConfig.from_env()

    api_client = load_cluster_config()
    core_api = client.CoreV1Api(api_client)
    custom_api = client.CustomObjectsApi(api_client)
    targets = KedaTargetClient(custom_api, client.AutoscalingV2Api(api_client), core_api)
    metrics = ScalerMetrics()

    def build_reconciler(spec: ScalerSpec, scaler_config: OperatorConfig) -> Reconciler:
        fetcher = build_fetcher(spec.data_source, core_api, scaler_config)
        return Reconciler(spec, fetcher, targets, metrics, scaler_config)

    registry = SessionRegistry(build_reconciler, config)

    LOGGER.info("Starting Prometheus metrics server on port %s", config.metrics_port)
    start_http_server(config.metrics_port)

    discoverer = ScalerDiscoverer(custom_api, config.watch_namespace)
    threading.Thread(
        target=_discovery_loop,
        args=(discoverer, registry, config.discovery_interval),
        name="scaler-discovery",
        daemon=True,
    ).start()

    app = create_app(registry)
    app.run(host="0.0.0.0", port=config.api_port)


if __name__ == "__main__":
    main()
