import atexit
import base64
import json
import os
import tempfile

import pyhelm3


class Command(pyhelm3.Command):
    """
    Helm command that passes an explicit registry configuration to every invocation.
    """
    def __init__(self, *, registry_config = None, **kwargs):
        super().__init__(**kwargs)
        self._registry_config = registry_config

    async def run(self, command, input = None):
        if self._registry_config:
            command = [*command, "--registry-config", self._registry_config]
        return await super().run(command, input)


def write_registry_config(registry_config, directory = None):
    """
    Writes a registry configuration file with the credentials for OCI pulls and
    returns the path, or None if no credentials are configured.

    The file is removed when the process exits.
    """
    if not registry_config.enabled:
        return None
    auth = base64.b64encode(
        f"{registry_config.username}:{registry_config.password}".encode()
    ).decode()
    fd, path = tempfile.mkstemp(suffix = ".json", dir = directory)
    with os.fdopen(fd, "w") as fh:
        json.dump({ "auths": { registry_config.host: { "auth": auth } } }, fh)
    atexit.register(os.remove, path)
    return path


def client(helm_config, registry_config = None, **kwargs):
    """
    Returns a Helm client for the given configuration.

    Any additional keyword arguments, e.g. a kubeconfig, are given to the command.
    """
    command = Command(
        default_timeout = helm_config.default_timeout,
        executable = helm_config.executable,
        history_max_revisions = helm_config.history_max_revisions,
        insecure_skip_tls_verify = helm_config.insecure_skip_tls_verify,
        unpack_directory = helm_config.unpack_directory,
        registry_config = registry_config,
        **kwargs
    )
    return pyhelm3.Client(command, executable = helm_config.executable)
