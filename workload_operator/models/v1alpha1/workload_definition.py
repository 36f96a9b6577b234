from kube_custom_resource import CustomResource, Scope, schema
from pydantic import Field


class HelmChartReference(schema.BaseModel):
    """
    A reference to a Helm chart.
    """

    name: schema.constr(min_length=1) = Field(..., description="The name of the chart.")
    repository: str = Field(
        "",
        description=(
            "The repository that contains the chart. "
            "Repositories using the oci:// scheme are supported."
        ),
    )
    version: str = Field("", description="The version of the chart.")


class UIApplicationReference(schema.BaseModel):
    """
    A reference to a UI application that is shipped with a workload.
    """

    url: str = Field("", description="The URL that the application is served from.")
    name: schema.constr(min_length=1) = Field(
        ..., description="The name of the UI application."
    )
    version: schema.constr(min_length=1) = Field(
        ..., description="The version of the UI application."
    )


class OptionType(str, schema.Enum):
    """
    The types that an option can declare.
    """

    STRING = "string"
    SECRET = "secret"
    BOOL = "bool"
    INT = "int"
    LIST = "list"
    MAP = "map"


class Option(schema.BaseModel):
    """
    A configuration option offered by a workload definition.
    """

    name: schema.constr(min_length=1) = Field(
        ..., description="The name of the option, possibly using dotted notation."
    )
    type: OptionType = Field(..., description="The type of the option.")
    required: bool = Field(False, description="Indicates if the option must be set.")
    default: schema.Any = Field(None, description="The default value for the option.")
    description: str = Field("", description="A description of the option.")
    display_name: str = Field("", description="A human-readable name for the option.")
    regex: str = Field(
        "", description="A regular expression that string values must match."
    )


class WorkloadDefinitionSpec(schema.BaseModel):
    """
    The spec of a workload definition.
    """

    description: str = Field("", description="A description of the workload.")
    version: schema.constr(min_length=1) = Field(
        ..., description="The version of the workload definition."
    )
    helm_chart: schema.Optional[HelmChartReference] = Field(
        None,
        description=(
            "The Helm chart to deploy. "
            "Definitions without a chart only provide a UI application."
        ),
    )
    ui_application: schema.Optional[UIApplicationReference] = Field(
        None, description="The UI application for the workload."
    )
    options: list[Option] = Field(
        default_factory=list, description="The options for the workload."
    )
    weight: schema.Optional[int] = Field(
        None, description="The weight used to order workloads in the UI."
    )
    icon: str = Field("", description="An icon for the workload.")


class WorkloadDefinition(
    CustomResource,
    scope=Scope.CLUSTER,
    printer_columns=[
        {
            "name": "Version",
            "type": "string",
            "jsonPath": ".spec.version",
        },
        {
            "name": "Chart",
            "type": "string",
            "jsonPath": ".spec.helmChart.name",
        },
        {
            "name": "Description",
            "type": "string",
            "jsonPath": ".spec.description",
            "priority": 1,
        },
    ],
):
    """
    A catalog entry describing an installable chart and its options.
    """

    spec: WorkloadDefinitionSpec
