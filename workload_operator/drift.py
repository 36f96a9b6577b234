import base64
import copy
import dataclasses
import datetime as dt
import difflib
import logging
import typing as t

from easykube import ApiError
import yaml

from . import manifest
from .errors import Reason, ReconcileError
from .manifest import ObjectKey
from .models import v1alpha1 as api
from .release import ReleaseRecord


logger = logging.getLogger(__name__)


HOOK_ANNOTATION = "helm.sh/hook"

MASK = "*****"
MASK_BEFORE = "***** - before"
MASK_AFTER = "***** - after"


@dataclasses.dataclass
class DiffObject:
    """
    The difference between two states of a single object.
    """
    key: ObjectKey
    diff: str

    def __str__(self):
        return f"{self.key}\n{self.diff}"


class DiffObjectList(list):
    """
    A list of object differences.
    """
    def __str__(self):
        return "\n".join(str(d) for d in self)

    @property
    def names(self):
        return [str(d.key) for d in self]


def _yaml_lines(obj):
    if obj is None:
        return []
    return yaml.safe_dump(obj, sort_keys = True).splitlines()


def _mask_secret_data(old, new):
    """
    Masks the values in the data of two versions of a secret, keeping only whether
    each value changed.
    """
    old, new = copy.deepcopy(old), copy.deepcopy(new)
    for field in ("data", "stringData"):
        old_data = (old or {}).get(field) or {}
        new_data = (new or {}).get(field) or {}
        for key in set(old_data) | set(new_data):
            if key in old_data and key in new_data and old_data[key] == new_data[key]:
                old_data[key] = new_data[key] = MASK
            else:
                if key in old_data:
                    old_data[key] = MASK_BEFORE
                if key in new_data:
                    new_data[key] = MASK_AFTER
    return old, new


def diff_object(key: ObjectKey, old, new):
    """
    Returns a unified diff between two versions of an object, or an empty string
    if they are the same.

    The values in secrets are never included in the diff.
    """
    if manifest.is_secret(key):
        old, new = _mask_secret_data(old, new)
    return "\n".join(
        difflib.unified_diff(
            _yaml_lines(old),
            _yaml_lines(new),
            fromfile = str(key),
            tofile = str(key),
            lineterm = ""
        )
    )


def _is_hook(obj):
    annotations = (obj.get("metadata") or {}).get("annotations") or {}
    return HOOK_ANNOTATION in annotations


def desired_objects(objects, namespace):
    """
    Returns the pruned objects of a release, excluding hooks, indexed by key.
    """
    return {
        key: manifest.prune(obj)
        for key, obj in manifest.index_objects(
            (obj for obj in objects if not _is_hook(obj)),
            namespace
        ).items()
    }


def diff_object_sets(old: dict[ObjectKey, t.Any], new: dict[ObjectKey, t.Any]):
    """
    Returns the differences between two sets of objects, indexed by key.
    """
    diffs = DiffObjectList()
    for key in sorted(set(old) | set(new)):
        diff = diff_object(key, old.get(key), new.get(key))
        if diff:
            diffs.append(DiffObject(key, diff))
    return diffs


def intent_changed(
    workload: api.Workload,
    definition: api.WorkloadDefinition,
    release: ReleaseRecord | None
):
    """
    Returns a message describing how the declared intent differs from the last
    deployment, or None if it does not.
    """
    if release is None:
        return "release not found"
    recorded = workload.status.helm_chart
    declared = definition.spec.helm_chart
    if recorded is None or (
        (recorded.name, recorded.repository, recorded.version) !=
        (declared.name, declared.repository, declared.version)
    ):
        return "chart reference changed"
    if release.description != definition.spec.version:
        return (
            f"release version {release.description} does not match "
            f"definition version {definition.spec.version}"
        )
    return None


async def missing_crds(ekclient, crds):
    """
    Returns differences for any CRDs of the chart that do not exist in the cluster.
    """
    diffs = DiffObjectList()
    if not crds:
        return diffs
    ekcrds = await ekclient.api("apiextensions.k8s.io/v1").resource(
        "customresourcedefinitions"
    )
    for crd in crds:
        try:
            _ = await ekcrds.fetch(crd["metadata"]["name"])
        except ApiError as exc:
            if exc.status_code == 404:
                diffs.append(DiffObject(ObjectKey.from_object(crd), "missing CRD"))
            else:
                raise
    return diffs


def _project(desired, live):
    """
    Returns the parts of the live state that correspond to the desired state, so that
    fields defaulted by the server do not count as drift.
    """
    if isinstance(desired, dict) and isinstance(live, dict):
        return {
            key: _project(value, live[key])
            for key, value in desired.items()
            if key in live
        }
    elif isinstance(desired, list) and isinstance(live, list) and len(desired) == len(live):
        return [_project(d, l) for d, l in zip(desired, live)]
    else:
        return live


def _encode_string_data(obj):
    """
    Moves the string data of a secret into its data, as the server does.
    """
    if obj.get("kind") != "Secret" or not obj.get("stringData"):
        return obj
    obj = copy.deepcopy(obj)
    data = obj.setdefault("data", {})
    for key, value in obj.pop("stringData").items():
        data[key] = base64.b64encode(str(value).encode()).decode()
    return obj


async def live_drift(ekclient, desired: dict[ObjectKey, t.Any]):
    """
    Returns the differences between the desired objects and the objects in the cluster.
    """
    diffs = DiffObjectList()
    for key, obj in sorted(desired.items()):
        obj = _encode_string_data(obj)
        resource = await ekclient.api(key.api_version).resource(key.kind)
        try:
            live = await resource.fetch(key.name, namespace = key.namespace or None)
        except ApiError as exc:
            if exc.status_code == 404:
                diffs.append(DiffObject(key, "object missing from cluster"))
                continue
            else:
                raise
        live = manifest.prune(_project(obj, dict(live)))
        diff = diff_object(key, live, obj)
        if diff:
            diffs.append(DiffObject(key, diff))
    return diffs


def should_check_live(conditions: api.StatusConditions, release: ReleaseRecord, interval, now = None):
    """
    Returns true if the live state should be checked for drift.

    The check is throttled when the drift condition has a known status and both the
    condition and the release changed within the interval.
    """
    now = now or dt.datetime.now(dt.timezone.utc)
    condition = conditions.get(api.ConditionType.HELM_DRIFT_DETECTED)
    if condition is None or condition.is_unknown():
        return True
    transition_recent = (
        condition.last_transition_time is not None and
        now - condition.last_transition_time < interval
    )
    deploy_recent = (
        release.last_deployed is not None and
        now - release.last_deployed < interval
    )
    return not (transition_recent and deploy_recent)


@dataclasses.dataclass
class DriftResult:
    """
    The outcome of drift detection.
    """
    diffs: DiffObjectList = dataclasses.field(default_factory = DiffObjectList)
    #: True if the divergence is with the live state or the intent, rather than the
    #: recorded release
    is_drift: bool = False
    #: Describes why the intent shortcut fired, if it did
    message: str = ""

    @property
    def changed(self):
        return bool(self.diffs) or self.is_drift


async def detect(
    ekclient,
    workload: api.Workload,
    definition: api.WorkloadDefinition,
    release: ReleaseRecord | None,
    render: t.Callable[[], t.Awaitable[list[dict[str, t.Any]]]],
    chart_crds,
    interval: dt.timedelta,
    now = None
):
    """
    Runs the three tiers of drift detection, stopping at the first that finds
    a difference.

    1. The declared chart or version differ from the last deployment.
    2. The rendered chart differs from the manifest of the release.
    3. The rendered chart differs from the live objects (throttled).
    """
    message = intent_changed(workload, definition, release)
    if message:
        logger.info("intent changed for workload %s: %s", workload.key, message)
        return DriftResult(is_drift = True, message = message)
    # Rendering failures are reported as template failures, not diff failures
    objects = await render()
    try:
        namespace = release.namespace or workload.release_namespace
        desired = desired_objects(objects, namespace)
        recorded = desired_objects(manifest.load_manifest(release.manifest), namespace)
        diffs = diff_object_sets(recorded, desired)
        diffs.extend(await missing_crds(ekclient, chart_crds))
        if diffs:
            return DriftResult(diffs = diffs, is_drift = False)
        if not should_check_live(workload.status.status_conditions, release, interval, now):
            logger.debug("skipping live drift check for workload %s", workload.key)
            return DriftResult()
        diffs = await live_drift(ekclient, desired)
    except (ApiError, yaml.YAMLError) as exc:
        raise ReconcileError(str(exc), Reason.DIFF_FAILED) from exc
    return DriftResult(diffs = diffs, is_drift = bool(diffs))
