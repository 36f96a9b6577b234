import contextlib
import dataclasses
import datetime as dt
import logging

from easykube import ApiError
import yaml

from . import drift, status
from .access import AccessResolver
from .chart import ChartLoader, ChartReference, HelmChartLoader, check_kube_version
from .errors import (
    AccessError,
    ConfigurationError,
    Reason,
    ReconcileError,
    TransientAPIError,
)
from .models import v1alpha1 as api
from .values import resolve_values


logger = logging.getLogger(__name__)


#: Message prefixes for the phases of a release
TEMPLATE_FAILED = "Helm template failed"
DIFF_FAILED = "Helm diff failed"
RELEASE_FAILED = "Helm install/upgrade failed"


@dataclasses.dataclass
class Result:
    """
    The outcome of a reconcile that did not raise.
    """
    #: The number of seconds after which the workload should be reconciled again
    requeue_after: float | None = None
    #: Indicates that the workload has been released and its status must not be saved
    released: bool = False


class Engine:
    """
    Reconciles workloads using the given configuration and collaborators.
    """
    def __init__(
        self,
        settings,
        ekclient,
        helm_client,
        chart_loader: ChartLoader | None = None,
        access_resolver: AccessResolver | None = None,
        registry_config = None
    ):
        self.settings = settings
        self.ekclient = ekclient
        self.helm_client = helm_client
        self.chart_loader = chart_loader or HelmChartLoader()
        self.access_resolver = access_resolver or AccessResolver(
            ekclient,
            helm_client,
            settings,
            registry_config
        )

    async def ekresource_for_model(self, model, subresource = None):
        """
        Returns an easykube resource for the given model.
        """
        ekapi = self.ekclient.api(f"{self.settings.api_group}/{model._meta.version}")
        resource = model._meta.plural_name
        if subresource:
            resource = f"{resource}/{subresource}"
        return await ekapi.resource(resource)

    async def fetch_model_instance(self, model, name, namespace = None):
        """
        Returns the raw data for the specified instance, or None if it does not exist.
        """
        ekresource = await self.ekresource_for_model(model)
        try:
            return await ekresource.fetch(name, namespace = namespace)
        except ApiError as exc:
            if exc.status_code == 404:
                return None
            else:
                raise

    async def save_status(self, workload: api.Workload):
        """
        Replaces the status of the workload, using its resource version for
        optimistic concurrency.
        """
        ekresource = await self.ekresource_for_model(api.Workload, "status")
        data = await ekresource.replace(
            workload.metadata.name,
            {
                "metadata": { "resourceVersion": workload.metadata.resource_version },
                "status": workload.status.model_dump(exclude_defaults = True),
            },
            namespace = workload.metadata.namespace
        )
        workload.metadata.resource_version = data["metadata"]["resourceVersion"]

    async def ensure_finalizer(self, workload: api.Workload, finalizers):
        """
        Adds the cleanup finalizer to the workload if it is not present.
        """
        finalizer = self.settings.release.cleanup_finalizer
        if finalizer in finalizers:
            return
        patch = []
        if not finalizers:
            patch.append({ "op": "add", "path": "/metadata/finalizers", "value": [] })
        patch.append({ "op": "add", "path": "/metadata/finalizers/-", "value": finalizer })
        ekresource = await self.ekresource_for_model(api.Workload)
        data = await ekresource.json_patch(
            workload.metadata.name,
            patch,
            namespace = workload.metadata.namespace
        )
        workload.metadata.resource_version = data["metadata"]["resourceVersion"]

    async def remove_finalizer(self, workload: api.Workload, finalizers):
        """
        Removes the cleanup finalizer from the workload.
        """
        finalizer = self.settings.release.cleanup_finalizer
        if finalizer not in finalizers:
            return
        index = finalizers.index(finalizer)
        ekresource = await self.ekresource_for_model(api.Workload)
        await ekresource.json_patch(
            workload.metadata.name,
            [
                # Make sure the list has not changed since it was read
                { "op": "test", "path": f"/metadata/finalizers/{index}", "value": finalizer },
                { "op": "remove", "path": f"/metadata/finalizers/{index}" },
            ],
            namespace = workload.metadata.namespace
        )

    async def reconcile(self, namespace, name) -> Result:
        """
        Runs a single reconcile pass for the named workload.

        Errors are recorded in the status of the workload, which is always saved,
        and then raised so that the caller can retry.
        """
        data = await self.fetch_model_instance(api.Workload, name, namespace)
        if data is None:
            logger.debug("workload %s/%s no longer exists", namespace, name)
            return Result()
        workload = api.Workload.model_validate(data)
        finalizers = list(data["metadata"].get("finalizers") or [])
        status.seed_conditions(workload)
        result = None
        try:
            result = await self._reconcile(workload, finalizers)
        except Exception as exc:
            self._set_unhandled_failure(workload, exc)
            raise
        finally:
            if not (result and result.released):
                status.compose_ready(workload)
                try:
                    await self.save_status(workload)
                except ApiError as exc:
                    # Only raise if there is not already an error in flight
                    if result is not None:
                        raise TransientAPIError(
                            f"failed to save status for workload {workload.key}: {exc}"
                        ) from exc
                    logger.warning(
                        "failed to save status for workload %s: %s",
                        workload.key,
                        exc
                    )
        return result

    async def _reconcile(self, workload: api.Workload, finalizers) -> Result:
        conditions = workload.status.status_conditions
        try:
            access = await self.access_resolver.resolve(
                workload.metadata.namespace,
                workload.spec.cluster_name
            )
        except AccessError as exc:
            conditions.set(
                api.false_condition(
                    api.ConditionType.CLUSTER_ACCESS_READY,
                    exc.reason.value,
                    str(exc)
                )
            )
            raise
        conditions.set(api.true_condition(api.ConditionType.CLUSTER_ACCESS_READY))
        async with access:
            if workload.metadata.deletion_timestamp:
                if self.settings.release.cleanup_finalizer in finalizers:
                    return await self._reconcile_delete(workload, finalizers, access)
                return Result(released = True)
            await self.ensure_finalizer(workload, finalizers)
            definition = await self.fetch_definition(workload)
            status.update_definition_fields(workload, definition)
            if definition.spec.helm_chart is None:
                conditions.set(
                    api.false_condition(
                        api.ConditionType.HELM_RECONCILE_FAILED,
                        message = (
                            f"workload definition {definition.metadata.name} "
                            "is not backed by HelmChart"
                        )
                    )
                )
                return Result()
            diff = None
            try:
                diff = await self._reconcile_release(workload, definition, access)
            finally:
                await self._reconcile_status(workload, definition, access, diff)
            return Result()

    async def fetch_definition(self, workload: api.Workload):
        """
        Returns the definition for the workload, raising an error if it does not exist.
        """
        name = workload.spec.definition_name
        data = await self.fetch_model_instance(api.WorkloadDefinition, name)
        if data is None:
            exc = ConfigurationError(
                f"workload definition {name} does not exist",
                Reason.DEFINITION_NOT_FOUND
            )
            workload.status.status_conditions.set(
                api.true_condition(
                    api.ConditionType.HELM_RECONCILE_FAILED,
                    exc.reason.value,
                    str(exc)
                )
            )
            raise exc
        return api.WorkloadDefinition.model_validate(data)

    async def _reconcile_delete(self, workload: api.Workload, finalizers, access) -> Result:
        conditions = workload.status.status_conditions
        data = await self.fetch_model_instance(
            api.WorkloadDefinition,
            workload.spec.definition_name
        )
        definition = api.WorkloadDefinition.model_validate(data) if data else None
        if definition is not None and definition.spec.helm_chart is None:
            logger.info("workload %s has no release to uninstall", workload.key)
        else:
            try:
                gone = await access.releases.uninstall(
                    workload.release_name,
                    workload.release_namespace
                )
            except ReconcileError as exc:
                conditions.set(
                    api.true_condition(
                        api.ConditionType.HELM_RECONCILE_FAILED,
                        exc.reason.value,
                        str(exc)
                    )
                )
                raise
            if not gone:
                logger.info("waiting for release of workload %s to uninstall", workload.key)
                return Result(requeue_after = self.settings.queue.deletion_requeue)
        conditions.set(api.false_condition(api.ConditionType.HELM_RECONCILE_FAILED))
        await self.remove_finalizer(workload, finalizers)
        logger.info("released workload %s", workload.key)
        return Result(released = True)

    def _set_unhandled_failure(self, workload, exc):
        """
        Records an error that escaped the pass without being reported in a condition.
        """
        conditions = workload.status.status_conditions
        if (
            conditions.is_false(api.ConditionType.CLUSTER_ACCESS_READY) or
            conditions.is_true(api.ConditionType.HELM_RECONCILE_FAILED)
        ):
            return
        if isinstance(exc, ReconcileError) and exc.reason != Reason.NONE:
            reason = exc.reason
        else:
            reason = Reason.RECONCILE_FAILED
        conditions.set(
            api.true_condition(
                api.ConditionType.HELM_RECONCILE_FAILED,
                reason.value,
                f"Reconcile failed: {exc}"
            )
        )

    def _set_release_failed(self, workload, prefix, exc, reason):
        if isinstance(exc, ReconcileError) and exc.reason != Reason.NONE:
            reason = exc.reason
        workload.status.status_conditions.set(
            api.true_condition(
                api.ConditionType.HELM_RECONCILE_FAILED,
                reason.value,
                f"{prefix}: {exc}"
            )
        )

    async def _render(self, workload, definition, access, charts):
        """
        Loads the chart for the workload and renders it with the resolved values.
        """
        chart = await charts.enter_async_context(
            self.chart_loader.load(
                access.helm_client,
                ChartReference.from_model(definition.spec.helm_chart)
            )
        )
        check_kube_version(chart, access.server_version)
        # Secret references are always read from the local cluster
        values = await resolve_values(
            self.ekclient,
            workload,
            definition,
            chart.values,
            self.settings.platform_values,
            self.settings.platform_api_version
        )
        objects = await access.releases.template(
            chart,
            workload.release_name,
            workload.release_namespace,
            values
        )
        return chart, values, objects

    async def _reconcile_release(self, workload, definition, access):
        """
        Drives the release of the workload towards the definition, returning the text
        of any diff that caused a change.
        """
        # Pulled charts are removed at the end of the pass
        async with contextlib.AsyncExitStack() as charts:
            return await self._drive_release(workload, definition, access, charts)

    async def _drive_release(self, workload, definition, access, charts):
        conditions = workload.status.status_conditions
        try:
            chart, values, objects = await self._render(workload, definition, access, charts)
        except ApiError as exc:
            exc = TransientAPIError(str(exc), Reason.TEMPLATE_FAILED)
            self._set_release_failed(workload, TEMPLATE_FAILED, exc, Reason.TEMPLATE_FAILED)
            raise exc
        except ReconcileError as exc:
            if exc.reason == Reason.NONE:
                exc.reason = Reason.TEMPLATE_FAILED
            self._set_release_failed(workload, TEMPLATE_FAILED, exc, Reason.TEMPLATE_FAILED)
            raise
        except Exception as exc:
            self._set_release_failed(workload, TEMPLATE_FAILED, exc, Reason.TEMPLATE_FAILED)
            raise

        async def render():
            return objects

        try:
            current = await access.releases.storage.current(
                workload.release_name,
                workload.release_namespace
            )
            result = await drift.detect(
                access.ekclient,
                workload,
                definition,
                current,
                render,
                chart.crds,
                dt.timedelta(minutes = self.settings.drift.interval_minutes)
            )
        except ApiError as exc:
            exc = TransientAPIError(str(exc), Reason.DIFF_FAILED)
            self._set_release_failed(workload, DIFF_FAILED, exc, Reason.DIFF_FAILED)
            raise exc
        except Exception as exc:
            self._set_release_failed(workload, DIFF_FAILED, exc, Reason.DIFF_FAILED)
            raise

        conditions.set(
            api.true_condition(
                api.ConditionType.HELM_DRIFT_DETECTED,
                message = result.message or "drift detected"
            )
            if result.is_drift
            else api.false_condition(api.ConditionType.HELM_DRIFT_DETECTED)
        )
        if not result.changed:
            conditions.set(
                api.false_condition(
                    api.ConditionType.HELM_RECONCILE_FAILED,
                    message = "Release for workload is up-to-date"
                )
            )
            logger.info("release for workload %s is up-to-date", workload.key)
            return ""
        if result.diffs:
            kind = "drift" if result.is_drift else "diff"
            logger.info(
                "%s detected for workload %s: %s",
                kind,
                workload.key,
                ", ".join(result.diffs.names)
            )
            if self.settings.debug:
                logger.debug("%s for workload %s:\n%s", kind, workload.key, result.diffs)

        try:
            await access.releases.ensure(
                chart,
                workload.release_name,
                workload.release_namespace,
                values,
                definition.spec.version,
                workload.key
            )
        except ApiError as exc:
            exc = TransientAPIError(str(exc), Reason.UPGRADE_FAILED)
            self._set_release_failed(workload, RELEASE_FAILED, exc, Reason.UPGRADE_FAILED)
            raise exc
        except Exception as exc:
            self._set_release_failed(workload, RELEASE_FAILED, exc, Reason.UPGRADE_FAILED)
            raise
        conditions.set(
            api.false_condition(
                api.ConditionType.HELM_RECONCILE_FAILED,
                message = "Helm install/upgrade successful"
            )
        )
        return str(result.diffs)

    async def _reconcile_status(self, workload, definition, access, diff = None):
        """
        Recomputes the release fields and exposed services of the status.
        """
        conditions = workload.status.status_conditions
        up_to_date = api.true_condition(api.ConditionType.STATUS_UP_TO_DATE)
        try:
            release = await access.releases.storage.current(
                workload.release_name,
                workload.release_namespace
            )
        except ApiError as exc:
            release = None
            up_to_date = api.false_condition(
                api.ConditionType.STATUS_UP_TO_DATE,
                message = f"failed to get Helm release: {exc}"
            )
        else:
            if release is None:
                up_to_date = api.false_condition(
                    api.ConditionType.STATUS_UP_TO_DATE,
                    message = (
                        "failed to get Helm release: release "
                        f"{workload.release_namespace}/{workload.release_name} not found"
                    )
                )
                workload.status.exposed_services = {}
            else:
                try:
                    workload.status.exposed_services = status.exposed_services(
                        release,
                        workload.spec.cluster_name,
                        self.settings.services
                    )
                except (ConfigurationError, yaml.YAMLError) as exc:
                    workload.status.exposed_services = {}
                    up_to_date = api.false_condition(
                        api.ConditionType.STATUS_UP_TO_DATE,
                        message = f"failed to get exposed services: {exc}"
                    )
        status.update_release_fields(workload, definition, release, diff)
        conditions.set(up_to_date)
