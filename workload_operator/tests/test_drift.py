import datetime as dt
import unittest
from unittest import mock

import yaml

from workload_operator import drift
from workload_operator.manifest import ObjectKey
from workload_operator.models import v1alpha1 as api
from workload_operator.release import ReleaseRecord

from .fakes import FakeEasykubeClient


INTERVAL = dt.timedelta(minutes = 60)


def config_map(name = "app", data = None, **metadata):
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": { "name": name, "namespace": "ns", **metadata },
        "data": data or { "key": "value" },
    }


def make_definition(version = "1.0.0", chart_version = "1.0.0"):
    return api.WorkloadDefinition.model_validate({
        "apiVersion": "platform.dev/v1alpha1",
        "kind": "WorkloadDefinition",
        "metadata": { "name": "def" },
        "spec": {
            "version": version,
            "helmChart": { "name": "test", "repository": "https://charts.test", "version": chart_version },
        },
    })


def make_workload(chart_version = "1.0.0"):
    return api.Workload.model_validate({
        "apiVersion": "platform.dev/v1alpha1",
        "kind": "Workload",
        "metadata": { "name": "app", "namespace": "org1" },
        "spec": { "definitionName": "def", "releaseNamespace": "ns" },
        "status": {
            "helmChart": { "name": "test", "repository": "https://charts.test", "version": chart_version },
        },
    })


def make_release(objects, description = "1.0.0", last_deployed = None):
    return ReleaseRecord(
        name = "app",
        namespace = "ns",
        revision = 1,
        status = api.ReleaseStatus.DEPLOYED,
        description = description,
        manifest = "\n---\n".join(yaml.safe_dump(obj) for obj in objects),
        last_deployed = last_deployed or dt.datetime.now(dt.timezone.utc)
    )


def renderer(objects):
    return mock.AsyncMock(return_value = objects)


class TestDiff(unittest.TestCase):
    def test_pruned_fields_are_ignored(self):
        old = drift.desired_objects(
            [
                config_map(
                    resourceVersion = "12",
                    managedFields = [{ "manager": "helm" }],
                    annotations = {
                        "kubectl.kubernetes.io/last-applied-configuration": "{}",
                    }
                ),
            ],
            "ns"
        )
        new = drift.desired_objects([config_map()], "ns")

        self.assertEqual(drift.diff_object_sets(old, new), [])

    def test_hooks_are_ignored(self):
        hook = config_map("hook", annotations = { "helm.sh/hook": "pre-install" })

        self.assertEqual(drift.desired_objects([hook], "ns"), {})

    def test_changed_object(self):
        old = drift.desired_objects([config_map(data = { "key": "old" })], "ns")
        new = drift.desired_objects([config_map(data = { "key": "new" })], "ns")

        diffs = drift.diff_object_sets(old, new)

        self.assertEqual(diffs.names, ["v1/ConfigMap/ns/app"])
        self.assertIn("-  key: old", diffs[0].diff)
        self.assertIn("+  key: new", diffs[0].diff)

    def test_secret_values_are_masked(self):
        key = ObjectKey("", "v1", "Secret", "ns", "creds")
        old = { "kind": "Secret", "data": { "same": "YQ==", "changed": "Yg==" } }
        new = { "kind": "Secret", "data": { "same": "YQ==", "changed": "Yw==" } }

        diff = drift.diff_object(key, old, new)

        self.assertNotIn("Yg==", diff)
        self.assertNotIn("Yw==", diff)
        self.assertIn("-  changed: '***** - before'", diff)
        self.assertIn("+  changed: '***** - after'", diff)

    def test_default_namespace_is_filled(self):
        obj = config_map()
        del obj["metadata"]["namespace"]

        self.assertEqual(
            list(drift.desired_objects([obj], "ns")),
            [ObjectKey("", "v1", "ConfigMap", "ns", "app")]
        )


class TestThrottle(unittest.TestCase):
    def make_conditions(self, status, transitioned):
        conditions = api.StatusConditions()
        condition = api.Condition(
            type = api.ConditionType.HELM_DRIFT_DETECTED.value,
            status = status,
            last_transition_time = transitioned
        )
        conditions.set(condition)
        return conditions

    def test_unknown_condition_always_checks(self):
        now = dt.datetime.now(dt.timezone.utc)
        conditions = self.make_conditions(api.ConditionStatus.UNKNOWN, now)

        self.assertTrue(drift.should_check_live(conditions, make_release([], last_deployed = now), INTERVAL, now))

    def test_recent_transition_and_deploy_skip(self):
        now = dt.datetime.now(dt.timezone.utc)
        conditions = self.make_conditions(api.ConditionStatus.FALSE, now - dt.timedelta(minutes = 5))
        release = make_release([], last_deployed = now - dt.timedelta(minutes = 10))

        self.assertFalse(drift.should_check_live(conditions, release, INTERVAL, now))

    def test_old_deploy_checks(self):
        now = dt.datetime.now(dt.timezone.utc)
        conditions = self.make_conditions(api.ConditionStatus.FALSE, now - dt.timedelta(minutes = 5))
        release = make_release([], last_deployed = now - dt.timedelta(hours = 2))

        self.assertTrue(drift.should_check_live(conditions, release, INTERVAL, now))


class TestDetect(unittest.IsolatedAsyncioTestCase):
    async def test_chart_change_preempts_rendering(self):
        render = renderer([config_map()])

        result = await drift.detect(
            FakeEasykubeClient(),
            make_workload(chart_version = "0.9.0"),
            make_definition(),
            make_release([config_map()]),
            render,
            [],
            INTERVAL
        )

        self.assertTrue(result.is_drift)
        self.assertEqual(result.message, "chart reference changed")
        render.assert_not_awaited()

    async def test_version_mismatch_preempts_rendering(self):
        render = renderer([config_map()])

        result = await drift.detect(
            FakeEasykubeClient(),
            make_workload(),
            make_definition(version = "2.0.0"),
            make_release([config_map()]),
            render,
            [],
            INTERVAL
        )

        self.assertTrue(result.is_drift)
        render.assert_not_awaited()

    async def test_missing_release_is_drift(self):
        render = renderer([config_map()])

        result = await drift.detect(
            FakeEasykubeClient(),
            make_workload(),
            make_definition(),
            None,
            render,
            [],
            INTERVAL
        )

        self.assertTrue(result.changed)
        render.assert_not_awaited()

    async def test_release_diff_preempts_live_check(self):
        ekclient = FakeEasykubeClient()
        ekclient.calls.clear()

        with mock.patch.object(drift, "live_drift") as live_drift:
            result = await drift.detect(
                ekclient,
                make_workload(),
                make_definition(),
                make_release([config_map(data = { "key": "old" })]),
                renderer([config_map(data = { "key": "new" })]),
                [],
                INTERVAL
            )

        self.assertFalse(result.is_drift)
        self.assertEqual(result.diffs.names, ["v1/ConfigMap/ns/app"])
        live_drift.assert_not_called()

    async def test_missing_crd_is_a_diff(self):
        crd = {
            "apiVersion": "apiextensions.k8s.io/v1",
            "kind": "CustomResourceDefinition",
            "metadata": { "name": "widgets.example.com" },
        }

        result = await drift.detect(
            FakeEasykubeClient(),
            make_workload(),
            make_definition(),
            make_release([config_map()]),
            renderer([config_map()]),
            [crd],
            INTERVAL
        )

        self.assertFalse(result.is_drift)
        self.assertEqual(result.diffs[0].diff, "missing CRD")

    async def test_live_drift(self):
        ekclient = FakeEasykubeClient()
        ekclient.add(config_map(data = { "key": "tampered" }))

        result = await drift.detect(
            ekclient,
            make_workload(),
            make_definition(),
            make_release([config_map()]),
            renderer([config_map()]),
            [],
            INTERVAL
        )

        self.assertTrue(result.is_drift)
        self.assertEqual(result.diffs.names, ["v1/ConfigMap/ns/app"])

    async def test_live_object_missing(self):
        result = await drift.detect(
            FakeEasykubeClient(),
            make_workload(),
            make_definition(),
            make_release([config_map()]),
            renderer([config_map()]),
            [],
            INTERVAL
        )

        self.assertTrue(result.is_drift)
        self.assertEqual(result.diffs[0].diff, "object missing from cluster")

    async def test_no_drift(self):
        ekclient = FakeEasykubeClient()
        ekclient.add(config_map())

        result = await drift.detect(
            ekclient,
            make_workload(),
            make_definition(),
            make_release([config_map()]),
            renderer([config_map()]),
            [],
            INTERVAL
        )

        self.assertFalse(result.changed)

    async def test_live_check_is_throttled(self):
        now = dt.datetime.now(dt.timezone.utc)
        workload = make_workload()
        condition = api.false_condition(api.ConditionType.HELM_DRIFT_DETECTED)
        condition.last_transition_time = now - dt.timedelta(minutes = 1)
        workload.status.status_conditions.set(condition)

        with mock.patch.object(drift, "live_drift") as live_drift:
            result = await drift.detect(
                FakeEasykubeClient(),
                workload,
                make_definition(),
                make_release([config_map()], last_deployed = now),
                renderer([config_map()]),
                [],
                INTERVAL,
                now
            )

        self.assertFalse(result.changed)
        live_drift.assert_not_called()
