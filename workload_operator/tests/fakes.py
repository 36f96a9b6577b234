import base64
import contextlib
import copy
import dataclasses
import datetime as dt
import gzip
import json

import httpx
import yaml

from easykube import ApiError
from pyhelm3 import errors as helm_errors

from workload_operator.chart import ChartLoader, LoadedChart


def api_error(status_code, message = "error"):
    """
    Returns an easykube API error with the given status code.
    """
    request = httpx.Request("GET", "https://kubernetes.test/")
    response = httpx.Response(
        status_code,
        json = { "message": message, "reason": message },
        request = request
    )
    return ApiError(httpx.HTTPStatusError(message, request = request, response = response))


def plural_name(name):
    """
    Returns the plural resource name for a kind or resource name.
    """
    name = name.lower()
    return name if name.endswith("s") else f"{name}s"


def release_secret(
    name,
    namespace,
    revision,
    status,
    manifest = "",
    description = "",
    last_deployed = None,
    compress = True
):
    """
    Returns a Helm storage secret for a release revision.
    """
    deployed = (last_deployed or dt.datetime.now(dt.timezone.utc)).strftime(
        "%Y-%m-%dT%H:%M:%S.%f000Z"
    )
    release = {
        "name": name,
        "namespace": namespace,
        "version": revision,
        "info": {
            "status": status,
            "description": description,
            "first_deployed": deployed,
            "last_deployed": deployed,
        },
        "chart": { "metadata": { "name": "chart", "version": "1.0.0" } },
        "manifest": manifest,
    }
    data = json.dumps(release).encode()
    if compress:
        data = gzip.compress(data)
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "type": "helm.sh/release.v1",
        "metadata": {
            "name": f"sh.helm.release.v1.{name}.v{revision}",
            "namespace": namespace,
            "labels": {
                "owner": "helm",
                "name": name,
                "status": status,
                "version": str(revision),
            },
        },
        "data": {
            "release": base64.b64encode(base64.b64encode(data)).decode(),
        },
    }


class FakeResource:
    """
    In-memory stand-in for an easykube resource.
    """
    def __init__(self, client, api_version, name):
        self.client = client
        self.api_version = api_version
        resource, _, self.subresource = name.partition("/")
        self.name = plural_name(resource)

    @property
    def _objects(self):
        return self.client.objects.setdefault((self.api_version, self.name), {})

    def _get(self, name, namespace):
        try:
            return self._objects[(namespace or "", name)]
        except KeyError:
            raise api_error(404, f"{self.name} {name} not found")

    def _record(self, verb, name, namespace, data = None):
        self.client.calls.append((verb, self.api_version, self.name, namespace or "", name, data))

    async def fetch(self, name, namespace = None):
        return copy.deepcopy(self._get(name, namespace))

    async def list(self, labels = None, namespace = None, all_namespaces = False):
        for (obj_namespace, _), obj in sorted(self._objects.items()):
            if not all_namespaces and (namespace or "") != obj_namespace:
                continue
            obj_labels = obj["metadata"].get("labels") or {}
            if labels and any(obj_labels.get(k) != v for k, v in labels.items()):
                continue
            yield copy.deepcopy(obj)

    async def create(self, data, namespace = None):
        data = copy.deepcopy(data)
        namespace = namespace or data["metadata"].get("namespace") or ""
        key = (namespace, data["metadata"]["name"])
        if key in self._objects:
            raise api_error(409, "already exists")
        self._record("create", key[1], namespace, data)
        return self.client.store(self.api_version, self.name, data, namespace)

    async def replace(self, name, data, namespace = None):
        existing = self._get(name, namespace)
        version = data.get("metadata", {}).get("resourceVersion")
        if version and version != existing["metadata"]["resourceVersion"]:
            raise api_error(409, "conflict")
        self._record("replace", name, namespace, data)
        if self.subresource == "status":
            updated = copy.deepcopy(existing)
            updated["status"] = copy.deepcopy(data.get("status", {}))
        else:
            updated = copy.deepcopy(data)
        return self.client.store(self.api_version, self.name, updated, namespace)

    async def json_patch(self, name, patch, namespace = None):
        obj = copy.deepcopy(self._get(name, namespace))
        self._record("json_patch", name, namespace, patch)
        for op in patch:
            *parents, last = op["path"].strip("/").split("/")
            target = obj
            for part in parents:
                target = target[int(part)] if isinstance(target, list) else target[part]
            if op["op"] == "test":
                value = target[int(last)] if isinstance(target, list) else target.get(last)
                if value != op["value"]:
                    raise api_error(422, "test failed")
            elif op["op"] == "add":
                if isinstance(target, list):
                    if last == "-":
                        target.append(op["value"])
                    else:
                        target.insert(int(last), op["value"])
                else:
                    target[last] = op["value"]
            elif op["op"] == "remove":
                if isinstance(target, list):
                    target.pop(int(last))
                else:
                    target.pop(last)
        # Objects that are deleting go away when the last finalizer is removed
        if obj["metadata"].get("deletionTimestamp") and not obj["metadata"].get("finalizers"):
            self._objects.pop((namespace or "", name))
            return obj
        return self.client.store(self.api_version, self.name, obj, namespace)

    async def delete(self, name, namespace = None):
        self._record("delete", name, namespace)
        self._objects.pop((namespace or "", name), None)


class FakeApi:
    def __init__(self, client, api_version):
        self.client = client
        self.api_version = api_version

    async def resource(self, name):
        return FakeResource(self.client, self.api_version, name)


class FakeEasykubeClient:
    """
    In-memory stand-in for an easykube async client.
    """
    def __init__(self, server_version = "v1.30.2"):
        self.objects = {}
        self.calls = []
        self.server_version = server_version
        self.closed = False
        self._resource_version = 0

    def store(self, api_version, resource, obj, namespace = None):
        obj = copy.deepcopy(obj)
        metadata = obj.setdefault("metadata", {})
        namespace = namespace or metadata.get("namespace") or ""
        if namespace:
            metadata["namespace"] = namespace
        self._resource_version += 1
        metadata["resourceVersion"] = str(self._resource_version)
        self.objects.setdefault((api_version, resource), {})[(namespace, metadata["name"])] = obj
        return copy.deepcopy(obj)

    def add(self, obj):
        """
        Adds an object to the store, returning the stored copy.
        """
        return self.store(obj["apiVersion"], plural_name(obj["kind"]), obj)

    def get_object(self, api_version, resource, name, namespace = ""):
        return self.objects.get((api_version, plural_name(resource)), {}).get((namespace, name))

    def list_objects(self, api_version, resource):
        return list(self.objects.get((api_version, plural_name(resource)), {}).values())

    def api(self, api_version):
        return FakeApi(self, api_version)

    async def get(self, path):
        if path == "/version":
            return httpx.Response(200, json = { "gitVersion": self.server_version })
        raise api_error(404, f"{path} not found")

    async def aclose(self):
        self.closed = True


class FakeChart:
    """
    Chart that renders objects using a function of the values, release name and
    namespace.
    """
    def __init__(self, render):
        self.render = render


class FakeChartLoader(ChartLoader):
    """
    Chart loader that returns copies of a prepared chart.
    """
    def __init__(self, render, values = None, crds = None, kube_version = None):
        self.render = render
        self.values = values or {}
        self.crds = crds or []
        self.kube_version = kube_version
        #: Set to an exception to make loading fail
        self.error = None
        self.loaded = []
        self.released = []

    @contextlib.asynccontextmanager
    async def load(self, helm_client, reference):
        if self.error is not None:
            raise self.error
        self.loaded.append(reference)
        try:
            yield LoadedChart(
                reference = reference,
                chart = FakeChart(self.render),
                values = copy.deepcopy(self.values),
                crds = copy.deepcopy(self.crds),
                kube_version = self.kube_version
            )
        finally:
            self.released.append(reference)


class FakeRelease:
    """
    Stand-in for a pyhelm3 release that rolls back through the fake Helm client.
    """
    def __init__(self, helm_client, name, namespace):
        self.helm_client = helm_client
        self.name = name
        self.namespace = namespace

    async def rollback(
        self,
        revision = None,
        *,
        cleanup_on_fail = False,
        dry_run = False,
        force = False,
        no_hooks = False,
        recreate_pods = False,
        timeout = None,
        wait = False
    ):
        await self.helm_client.rollback(self.name, self.namespace, revision)
        return await self.helm_client.get_current_revision(
            self.name,
            namespace = self.namespace
        )


@dataclasses.dataclass
class FakeReleaseRevision:
    release: FakeRelease
    revision: int


class FakeHelmClient:
    """
    Stand-in for a pyhelm3 client that keeps releases in the storage secrets of a
    fake easykube client.
    """
    def __init__(self, ekclient):
        self.ekclient = ekclient
        self.calls = []

    def _secrets(self, name, namespace):
        return sorted(
            (
                secret
                for secret in self.ekclient.list_objects("v1", "secrets")
                if secret["metadata"]["namespace"] == namespace and
                secret["metadata"].get("labels", {}).get("name") == name
            ),
            key = lambda s: int(s["metadata"]["labels"]["version"])
        )

    def mutations(self):
        return [call for call in self.calls if call[0] != "template"]

    async def template_resources(self, chart, name, values, namespace = None):
        self.calls.append(("template", name, namespace))
        return chart.render(values, name, namespace)

    async def install_or_upgrade_release(
        self,
        name,
        chart,
        values,
        *,
        create_namespace = True,
        description = None,
        namespace = None,
        timeout = None,
        wait = False
    ):
        self.calls.append(("install_or_upgrade", name, namespace))
        secrets = self._secrets(name, namespace)
        for secret in secrets:
            if secret["metadata"]["labels"]["status"] == "deployed":
                self.ekclient.objects[("v1", "secrets")].pop(
                    (namespace, secret["metadata"]["name"])
                )
                self.ekclient.add(
                    release_secret(
                        name,
                        namespace,
                        int(secret["metadata"]["labels"]["version"]),
                        "superseded"
                    )
                )
        revision = int(secrets[-1]["metadata"]["labels"]["version"]) + 1 if secrets else 1
        objects = chart.render(values, name, namespace)
        manifest = "\n---\n".join(yaml.safe_dump(obj) for obj in objects)
        self.ekclient.add(
            release_secret(name, namespace, revision, "deployed", manifest, description)
        )
        for obj in objects:
            obj = copy.deepcopy(obj)
            obj["metadata"].setdefault("namespace", namespace)
            self.ekclient.add(obj)

    async def get_current_revision(self, name, *, namespace = None):
        secrets = self._secrets(name, namespace)
        if not secrets:
            raise helm_errors.ReleaseNotFoundError(1, b"", b"Error: release: not found")
        return FakeReleaseRevision(
            FakeRelease(self, name, namespace),
            int(secrets[-1]["metadata"]["labels"]["version"])
        )

    async def rollback(self, name, namespace, revision):
        self.calls.append(("rollback", name, namespace, revision))
        secrets = self._secrets(name, namespace)
        self.ekclient.add(
            release_secret(
                name,
                namespace,
                int(secrets[-1]["metadata"]["labels"]["version"]) + 1,
                "deployed",
                description = "rollback"
            )
        )

    async def uninstall_release(self, name, *, namespace = None, keep_history = False, **kwargs):
        self.calls.append(("uninstall", name, namespace))
        for secret in self._secrets(name, namespace):
            self.ekclient.objects[("v1", "secrets")].pop(
                (namespace, secret["metadata"]["name"])
            )
