import copy
import dataclasses
import typing as t

import yaml


LAST_APPLIED_ANNOTATION = "kubectl.kubernetes.io/last-applied-configuration"

#: Metadata fields that are populated by the server
SERVER_METADATA_FIELDS = {
    "managedFields",
    "resourceVersion",
    "uid",
    "generation",
    "creationTimestamp",
    "selfLink",
}

#: Kinds that are not namespaced, used when filling in default namespaces
CLUSTER_SCOPED_KINDS = {
    "APIService",
    "ClusterRole",
    "ClusterRoleBinding",
    "CustomResourceDefinition",
    "IngressClass",
    "MutatingWebhookConfiguration",
    "Namespace",
    "Node",
    "PersistentVolume",
    "PriorityClass",
    "StorageClass",
    "ValidatingWebhookConfiguration",
}


@dataclasses.dataclass(frozen = True, order = True)
class ObjectKey:
    """
    The identity of a Kubernetes object.
    """
    group: str
    version: str
    kind: str
    namespace: str
    name: str

    @property
    def api_version(self):
        return f"{self.group}/{self.version}" if self.group else self.version

    @classmethod
    def from_object(cls, obj, default_namespace = ""):
        api_version = obj.get("apiVersion", "")
        group, _, version = api_version.rpartition("/")
        kind = obj.get("kind", "")
        metadata = obj.get("metadata") or {}
        namespace = metadata.get("namespace") or ""
        if not namespace and kind not in CLUSTER_SCOPED_KINDS:
            namespace = default_namespace
        return cls(group, version, kind, namespace, metadata.get("name", ""))

    def __str__(self):
        if self.namespace:
            return f"{self.api_version}/{self.kind}/{self.namespace}/{self.name}"
        return f"{self.api_version}/{self.kind}/{self.name}"


def load_manifest(manifest: str):
    """
    Returns the non-empty objects in a multi-document YAML manifest.
    """
    return [obj for obj in yaml.safe_load_all(manifest or "") if obj]


def index_objects(objects: t.Iterable[dict[str, t.Any]], default_namespace = ""):
    """
    Returns a dictionary of the given objects indexed by their key.
    """
    return {
        ObjectKey.from_object(obj, default_namespace): obj
        for obj in objects
        if obj.get("kind") and (obj.get("metadata") or {}).get("name")
    }


def prune(obj: dict[str, t.Any]):
    """
    Returns a copy of the object without the fields that change without
    user intent, such as managed fields and the last applied configuration.
    """
    obj = copy.deepcopy(obj)
    obj.pop("status", None)
    metadata = obj.get("metadata")
    if metadata:
        for field in SERVER_METADATA_FIELDS:
            metadata.pop(field, None)
        annotations = metadata.get("annotations")
        if annotations:
            annotations.pop(LAST_APPLIED_ANNOTATION, None)
            if not annotations:
                metadata.pop("annotations")
    return obj


def is_crd(obj):
    return (
        obj.get("kind") == "CustomResourceDefinition" and
        obj.get("apiVersion", "").startswith("apiextensions.k8s.io/")
    )


def is_secret(key: ObjectKey):
    return key.group == "" and key.kind == "Secret"


def exposed_services(objects, expose_label):
    """
    Returns the Service objects that carry the expose label.
    """
    return [
        obj
        for obj in objects
        if obj.get("apiVersion") == "v1" and
        obj.get("kind") == "Service" and
        (obj.get("metadata", {}).get("labels") or {}).get(expose_label) == "true"
    ]
