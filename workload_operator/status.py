import logging

from . import manifest
from .errors import ConfigurationError
from .models import v1alpha1 as api
from .release import ReleaseRecord
from .values import option_checksum


logger = logging.getLogger(__name__)


#: The condition types that every workload carries
CONDITION_TYPES = [
    api.ConditionType.CLUSTER_ACCESS_READY,
    api.ConditionType.HELM_RECONCILE_FAILED,
    api.ConditionType.HELM_DRIFT_DETECTED,
    api.ConditionType.STATUS_UP_TO_DATE,
    api.ConditionType.READY,
]


def seed_conditions(workload: api.Workload):
    """
    Adds any missing condition types with an unknown status.
    """
    conditions = workload.status.status_conditions
    conditions.set(
        *(
            api.unknown_condition(type)
            for type in CONDITION_TYPES
            if conditions.get(type) is None
        )
    )


def compose_ready(workload: api.Workload):
    """
    Derives the Ready condition from the other conditions of the workload.
    """
    conditions = workload.status.status_conditions
    if conditions.is_false(api.ConditionType.CLUSTER_ACCESS_READY):
        ready = api.false_condition(
            api.ConditionType.READY,
            message = "cluster access not ready"
        )
    elif conditions.is_true(api.ConditionType.HELM_RECONCILE_FAILED):
        ready = api.false_condition(
            api.ConditionType.READY,
            message = "Helm reconcile failed"
        )
    else:
        ready = api.true_condition(api.ConditionType.READY, message = "ready")
    conditions.set(ready)
    return ready


def service_url(service_name, namespace, cluster_name, dns_domain):
    """
    Returns the external URL of an exposed service.
    """
    return f"https://{service_name}--{cluster_name}--{namespace}.{dns_domain}"


def _exposed_port(service, named_port_label):
    """
    Returns the port named by the label on the service, falling back to the first port.
    """
    ports = (service.get("spec") or {}).get("ports") or []
    if not ports:
        raise ConfigurationError(f"service {service['metadata']['name']} has no ports")
    port_name = (service["metadata"].get("labels") or {}).get(named_port_label)
    if port_name:
        port = next((p for p in ports if p.get("name") == port_name), None)
        if port is not None:
            return port
    return ports[0]


def exposed_services(release: ReleaseRecord, cluster_name, config):
    """
    Returns the services of the release that are exposed, indexed by their URL.

    Services are taken from the manifest of the release rather than the rendered chart,
    so only services that were deployed are reported.
    """
    objects = manifest.load_manifest(release.manifest)
    services = {}
    exposed = manifest.exposed_services(objects, config.expose_label)
    if exposed and not cluster_name:
        raise ConfigurationError("workload does not have a cluster name")
    for service in exposed:
        port = _exposed_port(service, config.expose_named_port_label)
        namespace = service["metadata"].get("namespace") or release.namespace
        name = service["metadata"]["name"]
        url = service_url(name, namespace, cluster_name, config.dns_domain)
        services[url] = api.ExposedService(
            namespace = namespace,
            name = name,
            protocol = port.get("appProtocol"),
            port = port["port"]
        )
    return services


def update_definition_fields(workload: api.Workload, definition: api.WorkloadDefinition):
    """
    Copies the fields that the UI reads from the definition into the status.
    """
    workload.status.description = definition.spec.description
    workload.status.weight = definition.spec.weight
    workload.status.ui_application = definition.spec.ui_application


def update_release_fields(
    workload: api.Workload,
    definition: api.WorkloadDefinition,
    release: ReleaseRecord | None,
    diff = None
):
    """
    Updates the release fields of the status from the given release.

    The chart reference is only recorded when the deployed version matches the
    definition or when the release status is unknown. If no diff is given, the
    previous diff is kept.
    """
    if diff is None and workload.status.helm_release_status:
        diff = workload.status.helm_release_status.diff
    release_status = api.HelmReleaseStatus(
        plugin_option_checksum = option_checksum(workload.spec.option_values),
        diff = diff or ""
    )
    version = ""
    if release is not None:
        release_status.status = release.status
        release_status.first_deployed = release.first_deployed
        release_status.last_deployed = release.last_deployed
        if release.status == api.ReleaseStatus.DEPLOYED:
            version = release.description
    if (
        version == definition.spec.version or
        release_status.status == api.ReleaseStatus.UNKNOWN
    ):
        workload.status.helm_chart = definition.spec.helm_chart
    workload.status.version = version
    workload.status.helm_release_status = release_status
