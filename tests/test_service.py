import os
import sys
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from carbonscaler.errors import NoForecastError
from carbonscaler.models import Decision, OperatorConfig
from carbonscaler.service import DecisionNotReady, ScalerSession, SessionRegistry, create_app
from carbonscaler.targets import ScalerSpec

NOW = datetime(2024, 3, 1, 12, 37, tzinfo=timezone.utc)

DECISION = Decision(
    overridden=False,
    reason="",
    max_replicas=10,
    next_evaluation_delay=timedelta(minutes=3),
)


def scaler_payload(max_replicas=100):
    return {
        "kedaTarget": "scaledobjects.keda.sh",
        "kedaTargetRef": {"name": "word-processor"},
        "carbonIntensityForecastDataSource": {"mockCarbonForecast": True},
        "maxReplicasByCarbonIntensity": [{"carbonIntensityThreshold": 437, "maxReplicas": 110}],
        "ecoModeOff": {"maxReplicas": max_replicas},
    }


def make_spec(name="word-processor-scaler", max_replicas=100, operator=None):
    resource = {"metadata": {"name": name, "namespace": "default"}, "spec": scaler_payload(max_replicas)}
    if operator:
        resource["operator"] = operator
    return ScalerSpec.from_resource(resource)


class TestScalerSession(unittest.TestCase):
    def setUp(self):
        self.reconciler = MagicMock()
        self.session = ScalerSession(make_spec(), self.reconciler, OperatorConfig(), autostart=False)

    def test_run_once_sleeps_until_next_evaluation(self):
        self.reconciler.reconcile.return_value = DECISION
        self.assertEqual(self.session.run_once(NOW), 180.0)
        self.assertEqual(self.session.last_decision(), DECISION)
        self.assertIsNone(self.session.last_error())

    def test_scaler_errors_retry_on_requeue_cadence(self):
        self.reconciler.reconcile.side_effect = NoForecastError()
        self.assertEqual(self.session.run_once(NOW), 180.0)
        self.assertEqual(self.session.last_error(), "no forecast data")
        self.assertIsNone(self.session.last_decision())

    def test_unexpected_errors_use_backoff(self):
        self.reconciler.reconcile.side_effect = KeyError("boom")
        self.assertEqual(self.session.run_once(NOW), 5.0)

    def test_apply_spec_clears_decision(self):
        self.reconciler.reconcile.return_value = DECISION
        self.session.run_once(NOW)
        replacement = MagicMock()
        self.session.apply_spec(make_spec(max_replicas=20), replacement, OperatorConfig())
        self.assertIsNone(self.session.last_decision())
        self.session.run_once(NOW)
        replacement.reconcile.assert_called_once_with(NOW)

    def test_decision_from_replaced_spec_is_discarded(self):
        replacement = MagicMock()

        def reconcile(now):
            self.session.apply_spec(make_spec(max_replicas=20), replacement, OperatorConfig())
            return DECISION

        self.reconciler.reconcile.side_effect = reconcile
        self.session.run_once(NOW)

        self.assertIsNone(self.session.last_decision())
        self.assertEqual(self.session.spec.policy.default_max_replicas, 20)


class TestSessionRegistry(unittest.TestCase):
    def setUp(self):
        self.factory = MagicMock()
        self.registry = SessionRegistry(self.factory, OperatorConfig(), autostart=False)

    def test_configure_applies_overrides(self):
        self.registry.configure(make_spec(operator={"requeueMinutes": 15}))
        _, config = self.factory.call_args[0]
        self.assertEqual(config.default_requeue_minutes, 15)

    def test_configure_same_spec_is_noop(self):
        first = self.registry.configure(make_spec())
        second = self.registry.configure(make_spec())
        self.assertIs(first, second)
        self.assertEqual(self.factory.call_count, 1)

    def test_configure_changed_spec_rebuilds_reconciler(self):
        self.registry.configure(make_spec())
        session = self.registry.configure(make_spec(max_replicas=20))
        self.assertEqual(self.factory.call_count, 2)
        self.assertEqual(session.spec.policy.default_max_replicas, 20)

    def test_get_decision(self):
        with self.assertRaises(KeyError):
            self.registry.get_decision("default", "word-processor-scaler")
        self.registry.configure(make_spec())
        with self.assertRaises(DecisionNotReady):
            self.registry.get_decision("default", "word-processor-scaler")

    def test_sync_removes_only_discovered_sessions(self):
        self.registry.configure(make_spec("manual"))
        self.registry.sync([make_spec("discovered")])
        self.assertEqual(self.registry.keys(), {("default", "manual"), ("default", "discovered")})

        self.registry.sync([])
        self.assertEqual(self.registry.keys(), {("default", "manual")})

    def test_remove_unknown(self):
        with self.assertRaises(KeyError):
            self.registry.remove("default", "missing")


class TestApi(unittest.TestCase):
    def setUp(self):
        self.factory = MagicMock()
        self.registry = SessionRegistry(self.factory, OperatorConfig(), autostart=False)
        self.client = create_app(self.registry).test_client()

    def test_healthz(self):
        response = self.client.get("/healthz")
        self.assertEqual(response.status_code, 200)

    def test_decision_lifecycle(self):
        self.assertEqual(self.client.get("/decision/default/word-processor-scaler").status_code, 404)

        response = self.client.put("/config/default/word-processor-scaler", json=scaler_payload())
        self.assertEqual(response.status_code, 202)
        self.assertEqual(self.client.get("/decision/default/word-processor-scaler").status_code, 202)

        self.factory.return_value.reconcile.return_value = DECISION
        self.registry.get("default", "word-processor-scaler").run_once(NOW)

        response = self.client.get("/decision/default/word-processor-scaler")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.get_json(),
            {"maxReplicas": 10, "overridden": False, "reason": "", "nextEvaluationDelay": 180.0},
        )

    def test_put_accepts_full_resource(self):
        payload = {"spec": scaler_payload(), "operator": {"requeueMinutes": 10}}
        response = self.client.put("/config/default/word-processor-scaler", json=payload)
        self.assertEqual(response.status_code, 202)
        session = self.registry.get("default", "word-processor-scaler")
        self.assertEqual(session.spec.overrides, {"requeueMinutes": 10})

    def test_put_rejects_invalid_policy(self):
        payload = scaler_payload()
        payload["maxReplicasByCarbonIntensity"] = []
        response = self.client.put("/config/default/word-processor-scaler", json=payload)
        self.assertEqual(response.status_code, 400)
        self.assertIn("error", response.get_json())

    def test_put_rejects_non_object(self):
        response = self.client.put("/config/default/word-processor-scaler", json=[1, 2])
        self.assertEqual(response.status_code, 400)

    def test_reconcile_and_delete(self):
        self.assertEqual(self.client.post("/reconcile/default/word-processor-scaler").status_code, 404)
        self.client.put("/config/default/word-processor-scaler", json=scaler_payload())
        self.assertEqual(self.client.post("/reconcile/default/word-processor-scaler").status_code, 202)
        self.assertEqual(self.client.delete("/config/default/word-processor-scaler").status_code, 202)
        self.assertEqual(self.client.delete("/config/default/word-processor-scaler").status_code, 404)


if __name__ == '__main__':
    unittest.main()
