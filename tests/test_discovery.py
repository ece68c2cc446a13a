import os
import sys
import unittest
from unittest.mock import MagicMock

from kubernetes.client.rest import ApiException

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from carbonscaler.discovery import ScalerDiscoverer


def scaler(name, keda_target="scaledobjects.keda.sh"):
    return {
        "metadata": {"name": name, "namespace": "default"},
        "spec": {
            "kedaTarget": keda_target,
            "kedaTargetRef": {"name": "word-processor"},
            "maxReplicasByCarbonIntensity": [{"carbonIntensityThreshold": 437, "maxReplicas": 110}],
            "ecoModeOff": {"maxReplicas": 100},
        },
    }


class TestScalerDiscoverer(unittest.TestCase):
    def test_lists_cluster_scalers_and_skips_invalid(self):
        api = MagicMock()
        api.list_cluster_custom_object.return_value = {
            "items": [scaler("good"), scaler("bad", keda_target="deployments.apps")]
        }
        specs = ScalerDiscoverer(api).discover()
        api.list_cluster_custom_object.assert_called_once_with(
            "carbonaware.kubernetes.azure.com", "v1alpha1", "carbonawarekedascalers"
        )
        self.assertEqual([spec.name for spec in specs], ["good"])

    def test_namespaced_listing(self):
        api = MagicMock()
        api.list_namespaced_custom_object.return_value = {"items": []}
        self.assertEqual(ScalerDiscoverer(api, "keda").discover(), [])
        api.list_namespaced_custom_object.assert_called_once_with(
            "carbonaware.kubernetes.azure.com", "v1alpha1", "keda", "carbonawarekedascalers"
        )

    def test_api_errors_propagate(self):
        api = MagicMock()
        api.list_cluster_custom_object.side_effect = ApiException(status=403, reason="Forbidden")
        with self.assertRaises(ApiException):
            ScalerDiscoverer(api).discover()


if __name__ == '__main__':
    unittest.main()
