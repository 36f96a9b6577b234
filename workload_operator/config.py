from configomatic import (
    Configuration as BaseConfiguration,
)
from configomatic import (
    LoggingConfiguration,
    Section,
)
from pydantic import (
    Field,
    ValidationInfo,
    conint,
    constr,
    field_validator,
)


class HelmClientConfiguration(Section):
    """
    Configuration for the Helm client.
    """

    #: The default timeout to use with Helm releases
    #: Can be an integer number of seconds or a duration string like 5m, 5h
    default_timeout: int | constr(min_length=1) = "5m"
    #: The executable to use
    #: By default, we assume Helm is on the PATH
    executable: constr(min_length=1) = "helm"
    #: The maximum number of revisions to retain in the history of releases
    history_max_revisions: int = 5
    #: Indicates whether to verify TLS when pulling charts
    insecure_skip_tls_verify: bool = False
    #: The directory to use for unpacking charts
    #: By default, the system temporary directory is used
    unpack_directory: str | None = None


class RegistryConfiguration(Section):
    """
    Credentials used when pulling charts from OCI registries.
    """

    #: The registry host that the credentials apply to
    host: constr(min_length=1) | None = None
    #: The username and password for the registry
    username: constr(min_length=1) | None = None
    password: constr(min_length=1) | None = None

    @field_validator("password")
    @classmethod
    def validate_password(cls, v, info: ValidationInfo):
        """
        Validate that a password is given whenever a username is.
        """
        if info.data.get("username") and not v:
            raise ValueError("required when username is given")
        return v

    @property
    def enabled(self):
        """
        Indicates if registry credentials are configured.
        """
        return bool(self.host and self.username)


class ReleaseConfiguration(Section):
    """
    Configuration for the management of Helm releases.
    """

    #: The finalizer that guards the cleanup of a workload's release
    cleanup_finalizer: constr(min_length=1) = "workloads.platform.dev/cleanup"
    #: The type of the secrets that Helm uses to store releases
    storage_secret_type: constr(min_length=1) = "helm.sh/release.v1"
    #: The timeout for install, upgrade and rollback operations
    timeout: int | constr(min_length=1) = "5m"


class DriftConfiguration(Section):
    """
    Configuration for drift detection against the live cluster state.
    """

    #: The minimum number of minutes between two live-state drift checks
    interval_minutes: conint(gt=0) = 60


class ValuesConfiguration(Section):
    """
    Configuration for the values injected by the platform.
    """

    #: The key under which platform values are written
    key_prefix: constr(min_length=1) = "global.platform"
    #: Cluster labels with this prefix are exposed as cluster metadata
    cluster_metadata_label_prefix: constr(min_length=1) = "metadata.platform.dev/"
    #: The label on a workload that names its owning team
    owned_by_label: constr(min_length=1) = "platform.dev/owned-by"
    #: The base domain exposed to charts, if any
    base_domain: str | None = None


class ServicesConfiguration(Section):
    """
    Configuration for services that are exposed from a workload's release.
    """

    #: Services carrying this label with the value "true" are exposed
    expose_label: constr(min_length=1) = "platform.dev/expose"
    #: The label naming the port to expose, if not the first one
    expose_named_port_label: constr(min_length=1) = "platform.dev/exposeNamedPort"
    #: The DNS domain used to build the URL of exposed services
    dns_domain: constr(min_length=1) = "platform.local"


class QueueConfiguration(Section):
    """
    Configuration for the reconcile work queue.
    """

    #: The number of reconciles that run concurrently
    workers: conint(gt=0) = 3
    #: The base and cap for the per-workload exponential backoff, in seconds
    backoff_base: conint(gt=0) = 30
    backoff_max: conint(gt=0) = 3600
    #: The rate and burst of the token bucket shared by all workloads
    bucket_rate: conint(gt=0) = 10
    bucket_burst: conint(gt=0) = 100
    #: The number of seconds to wait before checking an unfinished uninstall
    deletion_requeue: conint(gt=0) = 60
    #: The number of seconds between periodic resyncs of each workload
    resync_interval: conint(gt=0) = 300


class AccessConfiguration(Section):
    """
    Configuration for access to target clusters.
    """

    #: The keys to look for in the cluster secret, in order of preference
    kubeconfig_keys: list[constr(min_length=1)] = Field(
        default_factory=lambda: ["platformkubeconfig", "kubeconfig"]
    )


class Configuration(
    BaseConfiguration,
    default_path="/etc/workload-operator/config.yaml",
    path_env_var="WORKLOAD_OPERATOR_CONFIG",
    env_prefix="WORKLOAD_OPERATOR",
):
    """
    Top-level configuration model.
    """

    #: The logging configuration
    logging: LoggingConfiguration = Field(default_factory=LoggingConfiguration)

    #: The API group of the workload CRDs
    api_group: constr(min_length=1) = "platform.dev"
    #: A list of categories to place CRDs into
    crd_categories: list[constr(min_length=1)] = Field(
        default_factory=lambda: ["platform"]
    )

    #: The API version of the Cluster and Team objects that workloads refer to
    platform_api_version: constr(pattern=r"^[a-z0-9.-]+/[a-z0-9]+$") = (
        "platform.dev/v1alpha1"
    )

    #: The prefix to use for operator annotations
    annotation_prefix: str = "platform.dev"

    #: The field manager name to use for server-side apply
    easykube_field_manager: constr(min_length=1) = "workload-operator"

    #: The amount of time (seconds) before a watch is forcefully restarted
    watch_timeout: conint(gt=0) = 600

    #: Enables verbose logging of release diffs
    debug: bool = False

    #: The Helm client configuration
    helm_client: HelmClientConfiguration = Field(
        default_factory=HelmClientConfiguration
    )

    #: Credentials for OCI chart registries
    registry: RegistryConfiguration = Field(default_factory=RegistryConfiguration)

    #: Release management configuration
    release: ReleaseConfiguration = Field(default_factory=ReleaseConfiguration)

    #: Drift detection configuration
    drift: DriftConfiguration = Field(default_factory=DriftConfiguration)

    #: Configuration for platform-injected values
    platform_values: ValuesConfiguration = Field(default_factory=ValuesConfiguration)

    #: Configuration for exposed services
    services: ServicesConfiguration = Field(default_factory=ServicesConfiguration)

    #: Work queue configuration
    queue: QueueConfiguration = Field(default_factory=QueueConfiguration)

    #: Target cluster access configuration
    access: AccessConfiguration = Field(default_factory=AccessConfiguration)


settings = Configuration()
