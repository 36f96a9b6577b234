import asyncio
import functools
import logging
import sys

import kopf

from easykube import ApiError, Configuration
from kube_custom_resource import CustomResourceRegistry

from . import helm, models
from .config import settings
from .models import v1alpha1 as api
from .queue import WorkQueue
from .reconcile import Engine


logger = logging.getLogger(__name__)


# Create an easykube client from the environment
from pydantic.json import pydantic_encoder
ekclient = (
    Configuration
        .from_environment(json_encoder = pydantic_encoder)
        .async_client(default_field_manager = settings.easykube_field_manager)
)


# Registry credentials for OCI charts are given to every Helm client
registry_config = helm.write_registry_config(
    settings.registry,
    settings.helm_client.unpack_directory
)


# Create a Helm client to target the underlying cluster
helm_client = helm.client(settings.helm_client, registry_config)


# Create a registry of custom resources and populate it from the models module
registry = CustomResourceRegistry(settings.api_group, settings.crd_categories)
registry.discover_models(models)


# The engine that reconciles workloads
engine = Engine(settings, ekclient, helm_client, registry_config = registry_config)


async def reconcile_workload(key):
    """
    Reconciles the workload with the given key, returning the requeue delay.
    """
    namespace, name = key.split("/", maxsplit = 1)
    result = await engine.reconcile(namespace, name)
    return result.requeue_after


# The queue that serialises reconciles for each workload
queue = WorkQueue.from_config(reconcile_workload, settings.queue)


def workload_key(namespace, name):
    return f"{namespace}/{name}"


@kopf.on.startup()
async def apply_settings(**kwargs):
    """
    Apply kopf settings and start the reconcile workers.
    """
    kopf_settings = kwargs["settings"]
    kopf_settings.persistence.finalizer = f"{settings.annotation_prefix}/finalizer"
    kopf_settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(
        prefix = settings.annotation_prefix
    )
    kopf_settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage(
        prefix = settings.annotation_prefix,
        key = "last-handled-configuration",
    )
    kopf_settings.watching.client_timeout = settings.watch_timeout
    # Apply the CRDs
    for crd in registry:
        try:
            await ekclient.apply_object(crd.kubernetes_resource(), force = True)
        except Exception:
            logger.exception("error applying CRD %s.%s - exiting", crd.plural_name, crd.api_group)
            sys.exit(1)
    # Give Kubernetes a chance to create the APIs for the CRDs
    await asyncio.sleep(0.5)
    # Check to see if the APIs for the CRDs are up
    # If they are not, the kopf watches will not start properly so we exit and get restarted
    for crd in registry:
        preferred_version = next(k for k, v in crd.versions.items() if v.storage)
        api_version = f"{crd.api_group}/{preferred_version}"
        try:
            _ = await ekclient.get(f"/apis/{api_version}/{crd.plural_name}")
        except Exception:
            logger.exception(
                "api for %s.%s not available - exiting",
                crd.plural_name,
                crd.api_group
            )
            sys.exit(1)
    queue.start()


@kopf.on.cleanup()
async def on_cleanup(**kwargs):
    """
    Runs on operator shutdown.
    """
    await queue.stop()
    await ekclient.aclose()


def model_handler(model, register_fn, /, **kwargs):
    """
    Decorator that registers a handler with kopf for the specified model.
    """
    api_version = f"{settings.api_group}/{model._meta.version}"
    def decorator(func):
        return register_fn(api_version, model._meta.plural_name, **kwargs)(func)
    return decorator


@model_handler(api.Workload, kopf.on.event)
async def on_workload_event(type, name, namespace, logger, **kwargs):
    """
    Queues a reconcile when a workload changes.
    """
    if type != "DELETED":
        logger.debug("queuing workload after %s event", type or "list")
        queue.add(workload_key(namespace, name))


@model_handler(
    api.Workload,
    kopf.on.timer,
    interval = settings.queue.resync_interval,
    idle = settings.queue.resync_interval
)
async def resync_workload(name, namespace, **kwargs):
    """
    Periodically queues a reconcile for each workload.
    """
    queue.add(workload_key(namespace, name))


async def list_workloads(namespace = None):
    """
    Lists the workloads in the given namespace, or in all namespaces if none is given.
    """
    ekresource = await engine.ekresource_for_model(api.Workload)
    if namespace:
        workloads = ekresource.list(namespace = namespace)
    else:
        workloads = ekresource.list(all_namespaces = True)
    async for workload in workloads:
        yield workload


def on_related_object_event(*args, **kwargs):
    """
    Decorator that registers a function as mapping events for an object to the keys of
    the workloads that the object affects, which are then queued for reconcile.
    """
    def decorator(func):
        @kopf.on.event(*args, **kwargs)
        @functools.wraps(func)
        async def wrapper(**inner):
            try:
                async for key in func(**inner):
                    inner["logger"].debug("queuing workload %s", key)
                    queue.add(key)
            except ApiError as exc:
                if exc.status_code == 409:
                    # When a handler fails with a 409, we want to retry quickly
                    raise kopf.TemporaryError(str(exc), delay = 5)
                else:
                    raise
        return wrapper
    return decorator


@on_related_object_event(
    f"{settings.api_group}/{api.WorkloadDefinition._meta.version}",
    api.WorkloadDefinition._meta.plural_name
)
async def on_workload_definition_event(name, **kwargs):
    """
    Maps a workload definition to the workloads that use it.
    """
    async for workload in list_workloads():
        if workload["spec"].get("definitionName") == name:
            yield workload_key(workload["metadata"]["namespace"], workload["metadata"]["name"])


@on_related_object_event(settings.platform_api_version, "clusters")
async def on_cluster_event(name, namespace, **kwargs):
    """
    Maps a cluster to the workloads that target it.
    """
    async for workload in list_workloads(namespace):
        if workload["spec"].get("clusterName") == name:
            yield workload_key(namespace, workload["metadata"]["name"])


@on_related_object_event(settings.platform_api_version, "teams")
async def on_team_event(namespace, **kwargs):
    """
    Maps a team to all of the workloads in its namespace, as team names are passed to
    every release.
    """
    async for workload in list_workloads(namespace):
        yield workload_key(namespace, workload["metadata"]["name"])


@on_related_object_event(
    "v1",
    "secrets",
    labels = { "owner": "helm", "name": kopf.PRESENT },
    when = lambda body, **_: body.get("type") == settings.release.storage_secret_type
)
async def on_release_secret_event(body, namespace, **kwargs):
    """
    Maps a Helm release secret to the workload of the same name, so that manual
    changes to releases are reverted.
    """
    yield workload_key(namespace, body["metadata"]["labels"]["name"])
