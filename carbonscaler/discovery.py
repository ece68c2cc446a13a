"""CarbonAwareKedaScaler discovery helpers for Kubernetes."""

from __future__ import annotations

import logging
from typing import List, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config import ConfigException

from .errors import InvalidPolicyError
from .targets import SCALER_GROUP, SCALER_PLURAL, SCALER_VERSION, ScalerSpec

_LOGGER = logging.getLogger("carbonscaler.discovery")


def load_cluster_config() -> client.ApiClient:
    """Load in-cluster configuration, falling back to the local kubeconfig."""
    try:
        config.load_incluster_config()
    except ConfigException:
        config.load_kube_config()
    return client.ApiClient()


class ScalerDiscoverer:
    """Lists CarbonAwareKedaScaler resources and parses them into specs."""

    def __init__(self, custom_api: client.CustomObjectsApi, namespace: Optional[str] = None) -> None:
        self._api = custom_api
        self.namespace = namespace

    def discover(self) -> List[ScalerSpec]:
        try:
            if self.namespace:
                listing = self._api.list_namespaced_custom_object(
                    SCALER_GROUP, SCALER_VERSION, self.namespace, SCALER_PLURAL
                )
            else:
                listing = self._api.list_cluster_custom_object(SCALER_GROUP, SCALER_VERSION, SCALER_PLURAL)
        except ApiException as exc:
            _LOGGER.error("Unable to list %s: %s %s", SCALER_PLURAL, exc.status, exc.reason)
            raise

        specs: List[ScalerSpec] = []
        for item in listing.get("items") or []:
            metadata = item.get("metadata") or {}
            try:
                specs.append(ScalerSpec.from_resource(item))
            except InvalidPolicyError as exc:
                _LOGGER.warning(
                    "Scaler %s/%s has an invalid spec: %s",
                    metadata.get("namespace"),
                    metadata.get("name"),
                    exc,
                )
                continue

        if not specs:
            _LOGGER.warning("No carbon aware scalers discovered via Kubernetes")
        return specs
