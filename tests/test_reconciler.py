import os
import sys
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import ANY, MagicMock

from prometheus_client import CollectorRegistry

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from carbonscaler.errors import ForecastFetchError, TargetError
from carbonscaler.metrics import ScalerMetrics
from carbonscaler.models import ForecastSample
from carbonscaler.reconciler import Reconciler
from carbonscaler.targets import (
    REASON_CARBON_DATA_FETCH_ERROR,
    REASON_ECO_MODE_DISABLED,
    REASON_ECO_MODE_DISABLED_ERROR,
    REASON_MAX_REPLICAS_COUNT_ERROR,
    REASON_SUCCEEDED,
    REASON_TARGET_FETCH_ERROR,
    REASON_TARGET_NOT_FOUND,
    REASON_TARGET_UPDATE_FAILED,
    HpaStatus,
    ScalerSpec,
)

NOW = datetime(2024, 3, 1, 12, 37, tzinfo=timezone.utc)
LABELS = {"namespace": "default", "scaler": "word-processor-scaler"}


def make_spec(**eco_mode_off):
    eco = {"maxReplicas": 100}
    eco.update(eco_mode_off)
    return ScalerSpec.from_resource(
        {
            "metadata": {"name": "word-processor-scaler", "namespace": "default"},
            "spec": {
                "kedaTarget": "scaledobjects.keda.sh",
                "kedaTargetRef": {"name": "word-processor"},
                "carbonIntensityForecastDataSource": {"mockCarbonForecast": True},
                "maxReplicasByCarbonIntensity": [
                    {"carbonIntensityThreshold": 437, "maxReplicas": 110},
                    {"carbonIntensityThreshold": 504, "maxReplicas": 60},
                    {"carbonIntensityThreshold": 571, "maxReplicas": 10},
                ],
                "ecoModeOff": eco,
            },
        }
    )


class TestReconciler(unittest.TestCase):
    def setUp(self):
        self.registry = CollectorRegistry()
        self.metrics = ScalerMetrics(self.registry)
        self.fetcher = MagicMock()
        self.fetcher.fetch.return_value = (
            ForecastSample(timestamp=datetime(2024, 3, 1, 12, 35, tzinfo=timezone.utc), duration=5, intensity=550),
        )
        self.targets = MagicMock()
        self.targets.read_hpa.return_value = HpaStatus(current_replicas=3, desired_replicas=4)

    def reconciler(self, spec=None):
        return Reconciler(spec or make_spec(), self.fetcher, self.targets, self.metrics)

    def metric(self, name, **extra):
        labels = dict(LABELS)
        labels.update(extra)
        return self.registry.get_sample_value(name, labels)

    def test_applies_band_cap(self):
        decision = self.reconciler().reconcile(NOW)

        self.assertFalse(decision.overridden)
        self.assertEqual(decision.max_replicas, 10)
        self.assertEqual(decision.next_evaluation_delay, timedelta(minutes=3))
        self.targets.apply_max_replicas.assert_called_once_with(ANY, 10)
        self.targets.set_status_condition.assert_called_once_with(ANY, "False", REASON_SUCCEEDED, ANY, NOW)
        self.targets.record_event.assert_called_once_with(
            ANY, "Normal", "MaxReplicaCountReconciled", "Successfully set max replicas for word-processor to 10", NOW
        )

        self.assertEqual(self.metric("carbon_aware_keda_scaler_reconciles_total"), 1.0)
        self.assertEqual(self.metric("carbon_aware_keda_scaler_carbon_intensity"), 550.0)
        self.assertEqual(self.metric("carbon_aware_keda_scaler_max_replicas"), 10.0)
        self.assertEqual(self.metric("carbon_aware_keda_scaler_default_max_replicas"), 100.0)
        self.assertEqual(self.metric("carbon_aware_keda_scaler_hpa_desired_replicas"), 4.0)
        self.assertEqual(self.metric("carbon_aware_keda_scaler_eco_mode_off_total", code="0"), 1.0)

    def test_demand_turns_eco_mode_off(self):
        self.targets.read_hpa.return_value = HpaStatus(current_replicas=10, desired_replicas=12)

        decision = self.reconciler().reconcile(NOW)

        self.assertTrue(decision.overridden)
        self.targets.apply_max_replicas.assert_called_once_with(ANY, 100)
        self.targets.set_status_condition.assert_called_once_with(ANY, "True", REASON_ECO_MODE_DISABLED, ANY, NOW)
        reasons = [c[0][2] for c in self.targets.record_event.call_args_list]
        self.assertEqual(reasons, ["EcoModeDisabled", "MaxReplicaCountReconciled"])
        self.assertEqual(self.metric("carbon_aware_keda_scaler_eco_mode_off_total", code="1"), 1.0)

    def test_forecast_failure_falls_back_to_default(self):
        self.fetcher.fetch.side_effect = ForecastFetchError("configmap missing")

        decision = self.reconciler().reconcile(NOW)

        self.assertTrue(decision.overridden)
        self.assertEqual(decision.max_replicas, 100)
        self.assertEqual(decision.next_evaluation_delay, timedelta(minutes=3))
        self.targets.apply_max_replicas.assert_called_once_with(ANY, 100)
        self.targets.set_status_condition.assert_called_once_with(
            ANY, "True", REASON_CARBON_DATA_FETCH_ERROR, ANY, NOW
        )
        reasons = [c[0][2] for c in self.targets.record_event.call_args_list]
        self.assertIn("CarbonIntensityForecastMissing", reasons)

    def test_schedule_error_falls_back_to_default(self):
        decision = self.reconciler(make_spec(recurringSchedule=["bogus"])).reconcile(NOW)

        self.assertEqual(decision.max_replicas, 100)
        self.targets.set_status_condition.assert_called_once_with(
            ANY, "True", REASON_ECO_MODE_DISABLED_ERROR, ANY, NOW
        )
        reasons = [c[0][2] for c in self.targets.record_event.call_args_list]
        self.assertIn("EcoModeConfigError", reasons)

    def test_missing_forecast_falls_back_to_default(self):
        self.fetcher.fetch.return_value = ()

        decision = self.reconciler().reconcile(NOW)

        self.assertEqual(decision.max_replicas, 100)
        self.targets.set_status_condition.assert_called_once_with(
            ANY, "True", REASON_MAX_REPLICAS_COUNT_ERROR, ANY, NOW
        )

    def test_missing_target_is_reported(self):
        self.targets.read_hpa.side_effect = TargetError("unable to find scaledobjects", not_found=True)

        with self.assertRaises(TargetError):
            self.reconciler().reconcile(NOW)

        self.targets.set_status_condition.assert_called_once_with(ANY, "True", REASON_TARGET_NOT_FOUND, ANY, NOW)
        self.targets.apply_max_replicas.assert_not_called()
        self.assertIsNone(self.metric("carbon_aware_keda_scaler_reconcile_errors_total"))

    def test_target_read_failure_counts_error(self):
        self.targets.read_hpa.side_effect = TargetError("request failed: 500")

        with self.assertRaises(TargetError):
            self.reconciler().reconcile(NOW)

        self.targets.set_status_condition.assert_called_once_with(ANY, "True", REASON_TARGET_FETCH_ERROR, ANY, NOW)
        self.assertEqual(self.metric("carbon_aware_keda_scaler_reconcile_errors_total"), 1.0)

    def test_update_failure_is_reported(self):
        self.targets.apply_max_replicas.side_effect = TargetError("request failed: 500")

        with self.assertRaises(TargetError):
            self.reconciler().reconcile(NOW)

        self.targets.set_status_condition.assert_called_once_with(
            ANY, "True", REASON_TARGET_UPDATE_FAILED, ANY, NOW
        )
        self.assertEqual(self.metric("carbon_aware_keda_scaler_reconcile_errors_total"), 1.0)

    def test_status_failures_do_not_break_reconcile(self):
        self.targets.set_status_condition.side_effect = TargetError("status patch failed")
        self.targets.record_event.side_effect = TargetError("event failed")

        decision = self.reconciler().reconcile(NOW)

        self.assertEqual(decision.max_replicas, 10)
        self.targets.apply_max_replicas.assert_called_once_with(ANY, 10)


if __name__ == '__main__':
    unittest.main()
