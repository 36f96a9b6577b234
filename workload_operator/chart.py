import contextlib
import dataclasses
import logging
import pathlib
import re
import typing as t

import easysemver
import yaml

from pyhelm3 import errors as helm_errors

from .errors import ChartError, ConfigurationError
from .models import v1alpha1 as api


logger = logging.getLogger(__name__)


OCI_SCHEME = "oci://"


@dataclasses.dataclass(frozen = True)
class ChartReference:
    """
    Reference to a chart by name, repository and version.
    """
    name: str
    repository: str = ""
    version: str = ""

    @classmethod
    def from_model(cls, ref: api.HelmChartReference):
        return cls(ref.name, ref.repository, ref.version)

    def locate(self):
        """
        Returns a tuple of (chart ref, repository, version) to use for the lookup.

        For OCI repositories, the chart ref is the full OCI address and no repository
        is used.
        """
        if not self.name:
            raise ConfigurationError("chart reference has no name")
        if self.repository.startswith(OCI_SCHEME):
            return f"{self.repository.rstrip('/')}/{self.name}", None, self.version or None
        return self.name, self.repository or None, self.version or None


@dataclasses.dataclass
class LoadedChart:
    """
    A chart that has been loaded and is ready to be rendered.
    """
    #: The reference that the chart was loaded from
    reference: ChartReference
    #: The underlying chart object that is given to the Helm client
    chart: t.Any
    #: The default values bundled with the chart
    values: dict[str, t.Any] = dataclasses.field(default_factory = dict)
    #: The CRDs bundled with the chart
    crds: list[dict[str, t.Any]] = dataclasses.field(default_factory = list)
    #: The Kubernetes version constraint declared by the chart, if any
    kube_version: str | None = None
    #: The directory that the chart is unpacked in, if it is on disk
    directory: pathlib.Path | None = None


class ChartLoader:
    """
    Base class for objects that load charts.

    Loading a chart returns an async context manager, and the chart is only valid
    until the context exits.
    """
    def load(self, helm_client, reference: ChartReference) -> t.AsyncContextManager[LoadedChart]:
        raise NotImplementedError


class HelmChartLoader(ChartLoader):
    """
    Chart loader that uses a Helm client to pull charts into a temporary directory.
    """
    @contextlib.asynccontextmanager
    async def load(self, helm_client, reference: ChartReference):
        chart_ref, repo, version = reference.locate()
        logger.debug("pulling chart %s (repo %s, version %s)", chart_ref, repo, version)
        async with contextlib.AsyncExitStack() as stack:
            try:
                chart = await stack.enter_async_context(
                    helm_client.pull_chart(chart_ref, repo = repo, version = version)
                )
                values = await chart.values()
                crds = list(await chart.crds())
            except (helm_errors.Error, OSError) as exc:
                raise ChartError(f"failed to load chart {chart_ref}: {exc}") from exc
            yield LoadedChart(
                reference = reference,
                chart = chart,
                values = values or {},
                crds = crds,
                kube_version = chart.metadata.kube_version,
                directory = pathlib.Path(chart.ref)
            )


_CONSTRAINT_REGEX = re.compile(
    r"(?P<op>==|!=|>=|<=|=|>|<|~>|~|\^)?\s*"
    r"v?(?P<major>\d+|[xX*])(?:\.(?P<minor>\d+|[xX*]))?(?:\.(?P<patch>\d+|[xX*]))?"
    r"(?:-[0-9A-Za-z.-]+)?(?:\+[0-9A-Za-z.-]+)?"
)
_HYPHEN_RANGE_REGEX = re.compile(r"(\S+)\s+-\s+(\S+)")
_WILDCARDS = {None, "x", "X", "*"}


def _convert_constraint(op, major, minor, patch):
    """
    Converts a single Helm constraint into a list of comma-form constraints.
    """
    op = op or "="
    if major in _WILDCARDS:
        return [">=0.0.0"]
    major = int(major)
    # The number of version parts that were given
    if minor in _WILDCARDS:
        precision, minor, patch = 1, 0, 0
        upper = f"{major + 1}.0.0"
    elif patch in _WILDCARDS:
        precision, minor, patch = 2, int(minor), 0
        upper = f"{major}.{minor + 1}.0"
    else:
        precision, minor, patch = 3, int(minor), int(patch)
        upper = f"{major}.{minor}.{patch}"
    lower = f"{major}.{minor}.{patch}"
    partial = precision < 3
    if op in {"=", "=="}:
        return [f">={lower}", f"<{upper}"] if partial else [f"=={lower}"]
    elif op == "!=":
        return [f"!={lower}"]
    elif op == ">=":
        return [f">={lower}"]
    elif op == ">":
        return [f">={upper}"] if partial else [f">{lower}"]
    elif op == "<":
        return [f"<{lower}"]
    elif op == "<=":
        return [f"<{upper}"] if partial else [f"<={lower}"]
    elif op in {"~", "~>"}:
        if precision == 1:
            return [f">={lower}", f"<{major + 1}.0.0"]
        return [f">={lower}", f"<{major}.{minor + 1}.0"]
    # Caret ranges allow changes that do not modify the left-most non-zero part
    if major > 0 or precision == 1:
        upper = f"{major + 1}.0.0"
    elif minor > 0 or precision == 2:
        upper = f"0.{minor + 1}.0"
    else:
        upper = f"0.0.{patch + 1}"
    return [f">={lower}", f"<{upper}"]


def parse_kube_version_constraint(constraint):
    """
    Parses a Helm kubeVersion constraint into a list of SemVer ranges, any of which
    must match.
    """
    ranges = []
    for alternative in constraint.split("||"):
        alternative = _HYPHEN_RANGE_REGEX.sub(r">=\1 <=\2", alternative.replace(",", " "))
        parts = []
        for match in _CONSTRAINT_REGEX.finditer(alternative):
            parts.extend(
                _convert_constraint(
                    match.group("op"),
                    match.group("major"),
                    match.group("minor"),
                    match.group("patch")
                )
            )
        if not parts:
            raise ChartError(f"invalid kubeVersion constraint: {constraint}")
        ranges.append(easysemver.Range(",".join(parts)))
    return ranges


def normalize_server_version(version):
    """
    Returns the major, minor and patch of a Kubernetes server version.
    """
    match = re.match(r"v?(\d+)\.(\d+)(?:\.(\d+))?", version)
    if not match:
        raise ChartError(f"unable to parse Kubernetes version {version}")
    major, minor, patch = match.groups()
    return easysemver.Version(f"{major}.{minor}.{patch or 0}")


def check_kube_version(chart: LoadedChart, server_version):
    """
    Checks the Kubernetes version constraint of the chart against the given server
    version, then clears the constraint so that it is never checked again.
    """
    constraint = chart.kube_version
    if not constraint:
        return
    version = normalize_server_version(server_version)
    if not any(version in r for r in parse_kube_version_constraint(constraint)):
        raise ChartError(
            f"chart requires kubeVersion: {constraint} "
            f"which is incompatible with Kubernetes {server_version}"
        )
    clear_kube_version(chart)


def clear_kube_version(chart: LoadedChart):
    """
    Removes the Kubernetes version constraint from the chart, including the unpacked
    Chart.yaml that Helm reads when it renders or installs the chart.
    """
    if chart.directory is not None:
        chart_yaml = chart.directory / "Chart.yaml"
        with chart_yaml.open() as fh:
            metadata = yaml.safe_load(fh)
        if metadata.pop("kubeVersion", None) is not None:
            with chart_yaml.open("w") as fh:
                yaml.safe_dump(metadata, fh, sort_keys = False)
        chart.chart.metadata.kube_version = None
    chart.kube_version = None


async def fetch_server_version(ekclient):
    """
    Returns the git version of the Kubernetes API server for the given client.
    """
    response = await ekclient.get("/version")
    return response.json()["gitVersion"]
