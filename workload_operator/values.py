import base64
import binascii
import hashlib
import json
import logging
import re

from easykube import ApiError

from .errors import ConfigurationError, OptionValidationError
from .models import v1alpha1 as api
from .utils import mergereplace, nest


logger = logging.getLogger(__name__)


def _type_name(value):
    """
    Returns the name of the JSON type of the given value, for use in messages.
    """
    if value is None:
        return "null"
    elif isinstance(value, bool):
        return "bool"
    elif isinstance(value, (int, float)):
        return "number"
    elif isinstance(value, str):
        return "string"
    elif isinstance(value, list):
        return "list"
    elif isinstance(value, dict):
        return "map"
    else:
        return type(value).__name__


def check_option_value(option: api.Option, value):
    """
    Checks the given value against the declared type of the option.

    Returns an error message if the value is not valid, or None if it is.
    """
    if option.type == api.OptionType.BOOL:
        if not isinstance(value, bool):
            return f"option {option.name} is a bool value, got {_type_name(value)}"
    elif option.type == api.OptionType.INT:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return f"option {option.name} is an int value, got {_type_name(value)}"
    elif option.type in {api.OptionType.STRING, api.OptionType.SECRET}:
        if not isinstance(value, str):
            return f"option {option.name} is a string value, got {_type_name(value)}"
        if option.regex and not re.search(option.regex, value):
            return f"option {option.name} does not match regex {option.regex}"
    elif option.type == api.OptionType.LIST:
        if not isinstance(value, list):
            return f"option {option.name} is a list value, got {_type_name(value)}"
    elif option.type == api.OptionType.MAP:
        if not isinstance(value, dict):
            return f"option {option.name} is a map value, got {_type_name(value)}"
    return None


async def resolve_secret_value(ekclient, namespace, ref: api.SecretKeyReference):
    """
    Returns the string value of the referenced key in a secret from the given cluster.

    Trailing newlines are removed from the value.
    """
    secrets = await ekclient.api("v1").resource("secrets")
    try:
        secret = await secrets.fetch(ref.name, namespace = namespace)
    except ApiError as exc:
        if exc.status_code == 404:
            raise ConfigurationError(f"secret {namespace}/{ref.name} not found")
        else:
            raise
    data = secret.get("data") or {}
    if not data:
        raise ConfigurationError(f"secret {namespace}/{ref.name} is empty")
    if ref.key not in data:
        raise ConfigurationError(
            f"secret {namespace}/{ref.name} does not contain key {ref.key}"
        )
    try:
        value = base64.b64decode(data[ref.key]).decode()
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise ConfigurationError(
            f"key {ref.key} in secret {namespace}/{ref.name} is not valid text: {exc}"
        )
    return value.rstrip("\r\n")


async def resolve_option_values(
    ekclient,
    workload: api.Workload,
    definition: api.WorkloadDefinition
):
    """
    Resolves the option values of the workload to a flat dictionary of option name
    to value, reading secret references from the cluster of the given client.

    All problems with the values are collected and raised together.
    """
    options = { option.name: option for option in definition.spec.options }
    errors = []
    resolved = {}
    for option_value in workload.spec.option_values:
        option = options.get(option_value.name)
        has_value = option_value.value is not None
        has_value_from = option_value.value_from is not None
        if has_value == has_value_from:
            errors.append(
                f"must provide either value or valueFrom for value {option_value.name}"
            )
            continue
        if has_value_from:
            try:
                value = await resolve_secret_value(
                    ekclient,
                    workload.metadata.namespace,
                    option_value.value_from.secret
                )
            except ConfigurationError as exc:
                errors.append(str(exc))
                continue
        else:
            value = option_value.value
            if option and option.type == api.OptionType.SECRET:
                errors.append(
                    f"option {option.name} is a secret value, "
                    "that should be derived from a secret reference"
                )
                continue
        if option:
            message = check_option_value(option, value)
            if message:
                errors.append(message)
                continue
        resolved[option_value.name] = value
    for option in definition.spec.options:
        if option.required and option.name not in resolved and option.default is None:
            # Only report a missing value if it was not reported as invalid above
            if not any(ov.name == option.name for ov in workload.spec.option_values):
                errors.append(f"required option {option.name} not set")
    if errors:
        raise OptionValidationError(errors)
    return resolved


def option_defaults(definition: api.WorkloadDefinition):
    """
    Returns the nested values produced by the defaults of the definition's options.
    """
    return mergereplace(
        {},
        *(
            nest(option.name, option.default)
            for option in definition.spec.options
            if option.default is not None
        )
    )


def option_checksum(option_values: list[api.OptionValue]):
    """
    Returns a checksum of the given option values that is independent of their order.
    """
    digest = hashlib.sha256()
    for option_value in sorted(option_values, key = lambda ov: ov.name):
        digest.update(option_value.name.encode())
        if option_value.value_from is not None:
            raw = option_value.value_from.model_dump(by_alias = True)
        else:
            raw = option_value.value
        digest.update(json.dumps(raw, sort_keys = True, separators = (",", ":")).encode())
    return digest.hexdigest()


async def _list_names(ekclient, api_version, resource, namespace):
    ekresource = await ekclient.api(api_version).resource(resource)
    return sorted([
        obj["metadata"]["name"]
        async for obj in ekresource.list(namespace = namespace)
    ])


async def platform_values(ekclient, workload: api.Workload, config, platform_api_version):
    """
    Returns the values that the platform injects into every release, written under
    the configured key prefix.
    """
    namespace = workload.metadata.namespace
    values = {
        "clusterNames": await _list_names(
            ekclient,
            platform_api_version,
            "clusters",
            namespace
        ),
        "teamNames": await _list_names(ekclient, platform_api_version, "teams", namespace),
        "organizationName": namespace,
    }
    if workload.spec.cluster_name:
        values["clusterName"] = workload.spec.cluster_name
        clusters = await ekclient.api(platform_api_version).resource("clusters")
        try:
            cluster = await clusters.fetch(workload.spec.cluster_name, namespace = namespace)
        except ApiError as exc:
            if exc.status_code != 404:
                raise
        else:
            metadata = {
                key.removeprefix(config.cluster_metadata_label_prefix): value
                for key, value in (cluster["metadata"].get("labels") or {}).items()
                if key.startswith(config.cluster_metadata_label_prefix)
            }
            if metadata:
                values["metadata"] = metadata
    if config.base_domain:
        values["baseDomain"] = config.base_domain
    owned_by = (workload.metadata.labels or {}).get(config.owned_by_label)
    if owned_by:
        values["ownedBy"] = owned_by
    return nest(config.key_prefix, values)


async def resolve_values(
    ekclient,
    workload: api.Workload,
    definition: api.WorkloadDefinition,
    chart_values,
    config,
    platform_api_version,
    *overrides
):
    """
    Returns the merged values for the workload's release.

    From lowest to highest precedence, the values are the chart defaults, the option
    defaults of the definition, the platform values, the workload's option values and
    then any additional overrides given by the caller.
    Secret references are always resolved using the given (local) client.
    """
    resolved = await resolve_option_values(ekclient, workload, definition)
    return mergereplace(
        chart_values or {},
        option_defaults(definition),
        await platform_values(ekclient, workload, config, platform_api_version),
        *(nest(name, value) for name, value in resolved.items()),
        *overrides
    )
