import base64
import dataclasses
import datetime as dt
import gzip
import json
import logging

from pyhelm3 import errors as helm_errors

from . import crds
from .chart import LoadedChart
from .errors import ChartError, Reason, ReconcileError, ReleaseStateError
from .models.v1alpha1 import ReleaseStatus


logger = logging.getLogger(__name__)


GZIP_MAGIC = b"\x1f\x8b\x08"


def _parse_time(value):
    """
    Parses a timestamp from a Helm release, returning None for the zero time.
    """
    if not value or value.startswith("0001-01-01"):
        return None
    # Go writes up to nine fractional digits and trims trailing zeros
    if "." in value:
        head, _, tail = value.partition(".")
        digits = "".join(c for c in tail if c.isdigit())
        tail = tail[len(digits):]
        value = f"{head}.{digits[:6].ljust(6, '0')}{tail}"
    return dt.datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclasses.dataclass
class ReleaseRecord:
    """
    A single revision of a Helm release, as stored in the cluster.
    """
    name: str
    namespace: str
    revision: int
    status: ReleaseStatus
    description: str = ""
    manifest: str = ""
    chart_name: str = ""
    chart_version: str = ""
    first_deployed: dt.datetime | None = None
    last_deployed: dt.datetime | None = None

    @classmethod
    def from_secret(cls, secret):
        """
        Decodes a release from a Helm storage secret.
        """
        data = base64.b64decode(base64.b64decode(secret["data"]["release"]))
        if data[:3] == GZIP_MAGIC:
            data = gzip.decompress(data)
        release = json.loads(data)
        info = release.get("info") or {}
        metadata = (release.get("chart") or {}).get("metadata") or {}
        try:
            status = ReleaseStatus(info.get("status") or "unknown")
        except ValueError:
            status = ReleaseStatus.UNKNOWN
        return cls(
            name = release["name"],
            namespace = release.get("namespace", ""),
            revision = int(release.get("version", 0)),
            status = status,
            description = info.get("description", ""),
            manifest = release.get("manifest", ""),
            chart_name = metadata.get("name", ""),
            chart_version = metadata.get("version", ""),
            first_deployed = _parse_time(info.get("first_deployed")),
            last_deployed = _parse_time(info.get("last_deployed"))
        )


class ReleaseStorage:
    """
    Reads Helm releases from the secrets that Helm stores them in.
    """
    def __init__(self, ekclient, secret_type = "helm.sh/release.v1"):
        self._ekclient = ekclient
        self._secret_type = secret_type

    async def history(self, name, namespace):
        """
        Returns all the stored revisions of the release, oldest first.
        """
        secrets = await self._ekclient.api("v1").resource("secrets")
        records = [
            ReleaseRecord.from_secret(secret)
            async for secret in secrets.list(
                labels = { "owner": "helm", "name": name },
                namespace = namespace
            )
            if secret.get("type") == self._secret_type
        ]
        return sorted(records, key = lambda r: r.revision)

    async def current(self, name, namespace):
        """
        Returns the latest revision of the release, or None if there is no release.
        """
        history = await self.history(name, namespace)
        return history[-1] if history else None


def rollback_target(history: list[ReleaseRecord]):
    """
    Returns the latest revision that is neither pending nor failed, or None.
    """
    return next(
        (
            record
            for record in reversed(history)
            if not record.status.is_pending and record.status != ReleaseStatus.FAILED
        ),
        None
    )


class ReleaseManager:
    """
    Owns the install, upgrade, rollback and uninstall transitions of releases in
    one cluster.
    """
    def __init__(self, helm_client, ekclient, storage: ReleaseStorage, timeout = None):
        self._helm_client = helm_client
        self._ekclient = ekclient
        self.storage = storage
        self._timeout = timeout

    async def template(self, chart: LoadedChart, name, namespace, values):
        """
        Renders the chart without touching the cluster and returns the objects.
        """
        try:
            return list(
                await self._helm_client.template_resources(
                    chart.chart,
                    name,
                    values,
                    namespace = namespace
                )
            )
        except helm_errors.Error as exc:
            raise ChartError(str(exc), Reason.TEMPLATE_FAILED) from exc

    async def _install_or_upgrade(self, chart, name, namespace, values, description):
        return await self._helm_client.install_or_upgrade_release(
            name,
            chart.chart,
            values,
            create_namespace = True,
            description = description,
            namespace = namespace,
            timeout = self._timeout,
            wait = False
        )

    async def install(self, chart: LoadedChart, name, namespace, values, description):
        """
        Installs a new release, after checking that the chart renders.
        """
        await self.template(chart, name, namespace, values)
        await crds.sync_crds(self._ekclient, chart.crds, is_upgrade = False)
        logger.info("installing release %s/%s", namespace, name)
        try:
            await self._install_or_upgrade(chart, name, namespace, values, description)
        except helm_errors.Error as exc:
            raise ReconcileError(str(exc), Reason.INSTALL_FAILED) from exc

    async def upgrade(self, chart: LoadedChart, name, namespace, values, description):
        """
        Upgrades an existing release.
        """
        await crds.sync_crds(self._ekclient, chart.crds, is_upgrade = True)
        logger.info("upgrading release %s/%s", namespace, name)
        try:
            await self._install_or_upgrade(chart, name, namespace, values, description)
        except helm_errors.Error as exc:
            raise ReconcileError(str(exc), Reason.UPGRADE_FAILED) from exc

    async def rollback(self, name, namespace, owner):
        """
        Rolls the release back to the latest revision that is neither pending nor
        failed. Raises an error when there is no such revision.
        """
        target = rollback_target(await self.storage.history(name, namespace))
        if not target:
            raise ReleaseStateError(
                f"no release found to rollback to for workload {owner}",
                Reason.ROLLBACK_FAILED
            )
        logger.info(
            "rolling back release %s/%s to revision %d",
            namespace,
            name,
            target.revision
        )
        try:
            current = await self._helm_client.get_current_revision(
                name,
                namespace = namespace
            )
            await current.release.rollback(
                target.revision,
                no_hooks = True,
                wait = True,
                timeout = self._timeout
            )
        except helm_errors.Error as exc:
            raise ReleaseStateError(str(exc), Reason.ROLLBACK_FAILED) from exc
        return target

    async def ensure(self, chart: LoadedChart, name, namespace, values, description, owner):
        """
        Drives the release towards the given chart and values.

        Releases that are pending are never touched. Failed releases are rolled back
        to the last good revision before they are upgraded.
        """
        current = await self.storage.current(name, namespace)
        if current is None or current.status == ReleaseStatus.UNINSTALLED:
            await self.install(chart, name, namespace, values, description)
            return
        if current.status.is_pending or current.status == ReleaseStatus.UNINSTALLING:
            raise ReleaseStateError(
                f"cannot upgrade release {namespace}/{name} "
                f"in status {current.status.value}"
            )
        # A failed first revision has nothing to roll back to, so it is upgraded in place
        if current.status == ReleaseStatus.FAILED and current.revision > 1:
            await self.rollback(name, namespace, owner)
        await self.upgrade(chart, name, namespace, values, description)

    async def uninstall(self, name, namespace):
        """
        Uninstalls the release without keeping its history.

        Returns True if the release is gone, or False if it still exists and the
        uninstall should be checked again later.
        """
        if await self.storage.current(name, namespace) is None:
            return True
        logger.info("uninstalling release %s/%s", namespace, name)
        try:
            await self._helm_client.uninstall_release(
                name,
                namespace = namespace,
                keep_history = False
            )
        except helm_errors.ReleaseNotFoundError:
            pass
        except helm_errors.Error as exc:
            raise ReconcileError(str(exc), Reason.UNINSTALL_FAILED) from exc
        return await self.storage.current(name, namespace) is None
