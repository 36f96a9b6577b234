import base64
import logging
import os
import tempfile

from pydantic.json import pydantic_encoder

import easykube
import httpx

from . import helm
from .chart import fetch_server_version
from .errors import AccessError
from .models import v1alpha1 as api
from .release import ReleaseManager, ReleaseStorage


logger = logging.getLogger(__name__)


class ClusterAccess:
    """
    Capability for talking to the cluster that a workload is deployed to.

    Instances are async context managers, and any resources they hold are released
    on exit.
    """
    def __init__(self, cluster_name, ekclient, helm_client, release_config):
        self.cluster_name = cluster_name
        self.ekclient = ekclient
        self.helm_client = helm_client
        self.releases = ReleaseManager(
            helm_client,
            ekclient,
            ReleaseStorage(ekclient, release_config.storage_secret_type),
            timeout = release_config.timeout
        )
        #: The version of the Kubernetes API server, once it has been checked
        self.server_version = None

    @property
    def is_remote(self):
        return bool(self.cluster_name)

    async def check(self):
        """
        Checks that the cluster responds, recording its version.
        """
        self.server_version = await fetch_server_version(self.ekclient)

    async def aclose(self):
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_value, traceback):
        await self.aclose()


class LocalClusterAccess(ClusterAccess):
    """
    Access to the cluster that the operator runs in, using the shared clients.
    """
    def __init__(self, ekclient, helm_client, release_config):
        super().__init__("", ekclient, helm_client, release_config)


class RemoteClusterAccess(ClusterAccess):
    """
    Access to a remote cluster using a kubeconfig, with clients that belong to the
    access object.
    """
    def __init__(
        self,
        cluster_name,
        kubeconfig_data,
        helm_config,
        release_config,
        field_manager,
        registry_config = None
    ):
        ekclient = (
            easykube.Configuration
                .from_kubeconfig_data(kubeconfig_data, json_encoder = pydantic_encoder)
                .async_client(default_field_manager = field_manager)
        )
        # Helm needs the kubeconfig as a file
        fd, self._kubeconfig_path = tempfile.mkstemp(suffix = ".kubeconfig")
        with os.fdopen(fd, "wb") as fh:
            fh.write(kubeconfig_data)
        helm_client = helm.client(
            helm_config,
            registry_config,
            kubeconfig = self._kubeconfig_path
        )
        super().__init__(cluster_name, ekclient, helm_client, release_config)

    async def aclose(self):
        try:
            await self.ekclient.aclose()
        finally:
            try:
                os.remove(self._kubeconfig_path)
            except OSError:
                pass


def _is_ready(cluster):
    conditions = (
        ((cluster.get("status") or {}).get("statusConditions") or {}).get("conditions") or []
    )
    return any(
        c.get("type") == api.ConditionType.READY.value and
        c.get("status") == api.ConditionStatus.TRUE.value
        for c in conditions
    )


class AccessResolver:
    """
    Produces the access capability for the cluster of a workload.
    """
    def __init__(self, ekclient, helm_client, settings, registry_config = None):
        self._ekclient = ekclient
        self._helm_client = helm_client
        self._settings = settings
        self._registry_config = registry_config

    def local(self):
        return LocalClusterAccess(self._ekclient, self._helm_client, self._settings.release)

    def remote(self, cluster_name, kubeconfig_data):
        return RemoteClusterAccess(
            cluster_name,
            kubeconfig_data,
            self._settings.helm_client,
            self._settings.release,
            self._settings.easykube_field_manager,
            self._registry_config
        )

    async def _kubeconfig_for_cluster(self, namespace, cluster_name):
        clusters = await self._ekclient.api(self._settings.platform_api_version).resource(
            "clusters"
        )
        try:
            cluster = await clusters.fetch(cluster_name, namespace = namespace)
        except easykube.ApiError as exc:
            raise AccessError(f"Failed to get cluster {cluster_name}: {exc}") from exc
        if not _is_ready(cluster):
            raise AccessError(f"cluster {cluster_name} is not ready")
        secrets = await self._ekclient.api("v1").resource("secrets")
        try:
            secret = await secrets.fetch(cluster_name, namespace = namespace)
        except easykube.ApiError as exc:
            raise AccessError(
                f"Failed to get secret for cluster {cluster_name}: {exc}"
            ) from exc
        data = secret.get("data") or {}
        for key in self._settings.access.kubeconfig_keys:
            if data.get(key):
                return base64.b64decode(data[key])
        raise AccessError(
            f"Failed to get secret for cluster {cluster_name}: "
            f"no kubeconfig found in secret {namespace}/{cluster_name}"
        )

    async def resolve(self, namespace, cluster_name) -> ClusterAccess:
        """
        Returns a checked access capability for the given cluster, or for the local
        cluster if no cluster name is given.

        Raises an AccessError if the cluster cannot be accessed.
        """
        if not cluster_name:
            access = self.local()
            try:
                await access.check()
            except (httpx.HTTPError, KeyError) as exc:
                raise AccessError(f"cannot access local cluster: {exc}") from exc
            return access
        kubeconfig_data = await self._kubeconfig_for_cluster(namespace, cluster_name)
        try:
            access = self.remote(cluster_name, kubeconfig_data)
        except Exception as exc:
            raise AccessError(f"cannot access cluster {cluster_name}: {exc}") from exc
        try:
            await access.check()
        except (httpx.HTTPError, KeyError) as exc:
            await access.aclose()
            raise AccessError(f"cannot access cluster {cluster_name}: {exc}") from exc
        logger.debug("resolved access to cluster %s/%s", namespace, cluster_name)
        return access
