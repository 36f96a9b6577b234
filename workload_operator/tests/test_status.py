import unittest

import yaml

from workload_operator import status
from workload_operator.config import ServicesConfiguration
from workload_operator.errors import ConfigurationError
from workload_operator.models import v1alpha1 as api
from workload_operator.release import ReleaseRecord


def make_workload(cluster_name = "", option_values = None):
    return api.Workload.model_validate({
        "apiVersion": "platform.dev/v1alpha1",
        "kind": "Workload",
        "metadata": { "name": "app", "namespace": "org1" },
        "spec": {
            "definitionName": "def",
            "clusterName": cluster_name,
            "optionValues": option_values or [],
        },
    })


def make_definition(version = "1.0.0"):
    return api.WorkloadDefinition.model_validate({
        "apiVersion": "platform.dev/v1alpha1",
        "kind": "WorkloadDefinition",
        "metadata": { "name": "def" },
        "spec": {
            "version": version,
            "description": "A test workload",
            "weight": 10,
            "helmChart": { "name": "test", "repository": "https://charts.test", "version": "1.0.0" },
            "uiApplication": { "name": "test-ui", "version": "0.1.0" },
        },
    })


def make_service(name, ports, labels = None):
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": { "name": name, "labels": labels or {} },
        "spec": { "ports": ports },
    }


def make_release(objects = (), status = api.ReleaseStatus.DEPLOYED, description = "1.0.0"):
    return ReleaseRecord(
        name = "app",
        namespace = "ns",
        revision = 1,
        status = status,
        description = description,
        manifest = "\n---\n".join(yaml.safe_dump(obj) for obj in objects)
    )


class TestConditions(unittest.TestCase):
    def test_seed_conditions(self):
        workload = make_workload()
        workload.status.status_conditions.set(
            api.true_condition(api.ConditionType.CLUSTER_ACCESS_READY)
        )

        status.seed_conditions(workload)

        conditions = workload.status.status_conditions
        self.assertEqual(
            sorted(c.type for c in conditions.conditions),
            sorted(t.value for t in status.CONDITION_TYPES)
        )
        self.assertTrue(conditions.is_true(api.ConditionType.CLUSTER_ACCESS_READY))
        self.assertTrue(conditions.get(api.ConditionType.READY).is_unknown())

    def test_ready_when_nothing_failed(self):
        workload = make_workload()
        status.seed_conditions(workload)

        ready = status.compose_ready(workload)

        self.assertTrue(ready.is_true())

    def test_cluster_access_takes_precedence(self):
        workload = make_workload()
        workload.status.status_conditions.set(
            api.false_condition(api.ConditionType.CLUSTER_ACCESS_READY),
            api.true_condition(api.ConditionType.HELM_RECONCILE_FAILED)
        )

        ready = status.compose_ready(workload)

        self.assertTrue(ready.is_false())
        self.assertEqual(ready.message, "cluster access not ready")

    def test_reconcile_failure(self):
        workload = make_workload()
        workload.status.status_conditions.set(
            api.true_condition(api.ConditionType.CLUSTER_ACCESS_READY),
            api.true_condition(api.ConditionType.HELM_RECONCILE_FAILED)
        )

        ready = status.compose_ready(workload)

        self.assertTrue(ready.is_false())
        self.assertEqual(ready.message, "Helm reconcile failed")


class TestExposedServices(unittest.TestCase):
    def setUp(self):
        self.config = ServicesConfiguration(dns_domain = "example.test")

    def test_url(self):
        self.assertEqual(
            status.service_url("web", "ns", "cluster-1", "example.test"),
            "https://web--cluster-1--ns.example.test"
        )

    def test_only_labelled_services(self):
        release = make_release([
            make_service(
                "web",
                [{ "name": "http", "port": 80, "appProtocol": "http" }],
                { "platform.dev/expose": "true" }
            ),
            make_service("internal", [{ "port": 8080 }]),
        ])

        services = status.exposed_services(release, "cluster-1", self.config)

        self.assertEqual(list(services), ["https://web--cluster-1--ns.example.test"])
        service = services["https://web--cluster-1--ns.example.test"]
        self.assertEqual(service.namespace, "ns")
        self.assertEqual(service.name, "web")
        self.assertEqual(service.protocol, "http")
        self.assertEqual(service.port, 80)

    def test_named_port(self):
        release = make_release([
            make_service(
                "web",
                [{ "name": "http", "port": 80 }, { "name": "metrics", "port": 9090 }],
                {
                    "platform.dev/expose": "true",
                    "platform.dev/exposeNamedPort": "metrics",
                }
            ),
        ])

        services = status.exposed_services(release, "cluster-1", self.config)

        self.assertEqual([s.port for s in services.values()], [9090])

    def test_unknown_named_port_falls_back_to_first(self):
        release = make_release([
            make_service(
                "web",
                [{ "name": "http", "port": 80 }, { "name": "metrics", "port": 9090 }],
                {
                    "platform.dev/expose": "true",
                    "platform.dev/exposeNamedPort": "grpc",
                }
            ),
        ])

        services = status.exposed_services(release, "cluster-1", self.config)

        self.assertEqual([s.port for s in services.values()], [80])

    def test_cluster_name_is_required(self):
        release = make_release([
            make_service("web", [{ "port": 80 }], { "platform.dev/expose": "true" }),
        ])

        with self.assertRaises(ConfigurationError) as ctx:
            status.exposed_services(release, "", self.config)

        self.assertEqual(str(ctx.exception), "workload does not have a cluster name")

    def test_no_exposed_services_without_cluster(self):
        release = make_release([make_service("web", [{ "port": 80 }])])

        self.assertEqual(status.exposed_services(release, "", self.config), {})


class TestReleaseFields(unittest.TestCase):
    def test_definition_fields(self):
        workload = make_workload()

        status.update_definition_fields(workload, make_definition())

        self.assertEqual(workload.status.description, "A test workload")
        self.assertEqual(workload.status.weight, 10)
        self.assertEqual(workload.status.ui_application.name, "test-ui")

    def test_deployed_release(self):
        workload = make_workload(option_values = [{ "name": "replicas", "value": 2 }])
        definition = make_definition()

        status.update_release_fields(workload, definition, make_release(), "some diff")

        self.assertEqual(workload.status.version, "1.0.0")
        self.assertEqual(workload.status.helm_chart, definition.spec.helm_chart)
        release_status = workload.status.helm_release_status
        self.assertEqual(release_status.status, api.ReleaseStatus.DEPLOYED)
        self.assertEqual(release_status.diff, "some diff")
        self.assertNotEqual(release_status.plugin_option_checksum, "")

    def test_previous_diff_is_kept(self):
        workload = make_workload()
        definition = make_definition()
        status.update_release_fields(workload, definition, make_release(), "some diff")

        status.update_release_fields(workload, definition, make_release())

        self.assertEqual(workload.status.helm_release_status.diff, "some diff")

    def test_chart_not_recorded_for_other_version(self):
        workload = make_workload()

        status.update_release_fields(
            workload,
            make_definition(version = "2.0.0"),
            make_release(description = "1.0.0")
        )

        self.assertEqual(workload.status.version, "1.0.0")
        self.assertIsNone(workload.status.helm_chart)

    def test_version_only_when_deployed(self):
        workload = make_workload()

        status.update_release_fields(
            workload,
            make_definition(),
            make_release(status = api.ReleaseStatus.FAILED)
        )

        self.assertEqual(workload.status.version, "")
        self.assertIsNone(workload.status.helm_chart)

    def test_missing_release(self):
        workload = make_workload()
        definition = make_definition()

        status.update_release_fields(workload, definition, None)

        self.assertEqual(workload.status.helm_release_status.status, api.ReleaseStatus.UNKNOWN)
        self.assertEqual(workload.status.helm_chart, definition.spec.helm_chart)
