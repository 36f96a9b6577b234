import datetime as dt

from kube_custom_resource import CustomResource, schema
from pydantic import Field

from .conditions import StatusConditions
from .workload_definition import HelmChartReference, UIApplicationReference


class SecretKeyReference(schema.BaseModel):
    """
    A reference to a key in a secret.
    """

    name: schema.constr(min_length=1) = Field(..., description="The name of the secret.")
    key: schema.constr(min_length=1) = Field(
        ..., description="The key in the secret to take the value from."
    )


class ValueFromSource(schema.BaseModel):
    """
    The source of an option value that is not given literally.
    """

    secret: SecretKeyReference = Field(
        ..., description="The secret key to take the value from."
    )


class OptionValue(schema.BaseModel):
    """
    A value for one of the options of the workload definition.
    """

    name: schema.constr(min_length=1) = Field(..., description="The name of the option.")
    value: schema.Any = Field(None, description="The literal value for the option.")
    value_from: schema.Optional[ValueFromSource] = Field(
        None, description="A reference to the value for the option."
    )


class WorkloadSpec(schema.BaseModel):
    """
    The spec of a workload.
    """

    definition_name: schema.constr(min_length=1) = Field(
        ..., description="The name of the workload definition to deploy."
    )
    display_name: str = Field("", description="A human-readable name for the workload.")
    disabled: bool = Field(False, description="Indicates if the workload is disabled.")
    option_values: list[OptionValue] = Field(
        default_factory=list, description="The values for the definition's options."
    )
    cluster_name: str = Field(
        "",
        description=(
            "The name of the cluster to deploy to. "
            "If not given, the workload is deployed to the local cluster."
        ),
    )
    release_namespace: str = Field(
        "",
        description=(
            "The namespace to deploy the release to. "
            "Defaults to the namespace of the workload."
        ),
    )
    release_name: str = Field(
        "",
        description="The name of the release. Defaults to the name of the workload.",
    )


class ReleaseStatus(str, schema.Enum):
    """
    The lifecycle states of a Helm release.
    """

    UNKNOWN = "unknown"
    DEPLOYED = "deployed"
    UNINSTALLED = "uninstalled"
    SUPERSEDED = "superseded"
    FAILED = "failed"
    UNINSTALLING = "uninstalling"
    PENDING_INSTALL = "pending-install"
    PENDING_UPGRADE = "pending-upgrade"
    PENDING_ROLLBACK = "pending-rollback"

    @property
    def is_pending(self):
        return self in {
            ReleaseStatus.PENDING_INSTALL,
            ReleaseStatus.PENDING_UPGRADE,
            ReleaseStatus.PENDING_ROLLBACK,
        }


class HelmReleaseStatus(schema.BaseModel):
    """
    The status of the Helm release for a workload.
    """

    status: ReleaseStatus = Field(
        ReleaseStatus.UNKNOWN.value, description="The status of the release."
    )
    first_deployed: schema.Optional[dt.datetime] = Field(
        None, description="The time that the release was first deployed."
    )
    last_deployed: schema.Optional[dt.datetime] = Field(
        None, description="The time that the release was last deployed."
    )
    plugin_option_checksum: str = Field(
        "", description="A checksum of the option values of the release."
    )
    diff: str = Field("", description="The most recent diff of the release.")


class ExposedService(schema.BaseModel):
    """
    A service from the release that is exposed outside the cluster.
    """

    namespace: schema.constr(min_length=1) = Field(
        ..., description="The namespace of the service."
    )
    name: schema.constr(min_length=1) = Field(..., description="The name of the service.")
    protocol: schema.Optional[str] = Field(
        None, description="The protocol of the exposed port."
    )
    port: int = Field(..., description="The exposed port.")


class WorkloadStatus(schema.BaseModel, extra="allow"):
    """
    The status of a workload.
    """

    status_conditions: StatusConditions = Field(
        default_factory=StatusConditions, description="The conditions of the workload."
    )
    helm_release_status: schema.Optional[HelmReleaseStatus] = Field(
        None, description="The status of the Helm release."
    )
    helm_chart: schema.Optional[HelmChartReference] = Field(
        None, description="The chart that was last deployed."
    )
    version: str = Field("", description="The deployed version of the definition.")
    description: str = Field("", description="The description of the workload.")
    weight: schema.Optional[int] = Field(
        None, description="The weight used to order workloads in the UI."
    )
    ui_application: schema.Optional[UIApplicationReference] = Field(
        None, description="The UI application of the workload."
    )
    exposed_services: schema.Dict[str, ExposedService] = Field(
        default_factory=dict,
        description="The exposed services, indexed by their external URL.",
    )


class Workload(
    CustomResource,
    subresources={"status": {}},
    printer_columns=[
        {
            "name": "Definition",
            "type": "string",
            "jsonPath": ".spec.definitionName",
        },
        {
            "name": "Cluster",
            "type": "string",
            "jsonPath": ".spec.clusterName",
        },
        {
            "name": "Release Status",
            "type": "string",
            "jsonPath": ".status.helmReleaseStatus.status",
        },
        {
            "name": "Ready",
            "type": "string",
            "jsonPath": ".status.statusConditions.conditions[?(@.type==\"Ready\")].status",
        },
    ],
):
    """
    A Helm chart with resolved values, deployed to a target cluster.
    """

    spec: WorkloadSpec
    status: WorkloadStatus = Field(default_factory=WorkloadStatus)

    @property
    def release_name(self):
        return self.spec.release_name or self.metadata.name

    @property
    def release_namespace(self):
        return self.spec.release_namespace or self.metadata.namespace

    @property
    def key(self):
        return f"{self.metadata.namespace}/{self.metadata.name}"
