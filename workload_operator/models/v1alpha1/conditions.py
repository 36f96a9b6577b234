import datetime as dt

from kube_custom_resource import schema
from pydantic import Field


class ConditionStatus(str, schema.Enum):
    """
    The tri-state status of a condition.
    """

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ConditionType(str, schema.Enum):
    """
    The condition types that make up the status of a workload.
    """

    READY = "Ready"
    CLUSTER_ACCESS_READY = "ClusterAccessReady"
    HELM_RECONCILE_FAILED = "HelmReconcileFailed"
    HELM_DRIFT_DETECTED = "HelmDriftDetected"
    STATUS_UP_TO_DATE = "StatusUpToDate"


class Condition(schema.BaseModel):
    """
    A single observation about the state of an object.
    """

    type: schema.constr(min_length=1) = Field(
        ..., description="The type of the condition."
    )
    status: ConditionStatus = Field(
        ConditionStatus.UNKNOWN.value, description="The status of the condition."
    )
    reason: str = Field("", description="A machine-readable reason for the status.")
    message: str = Field("", description="A human-readable message for the status.")
    last_transition_time: schema.Optional[dt.datetime] = Field(
        None, description="The last time that the status of the condition changed."
    )

    def equal(self, other: "Condition"):
        """
        Returns true if the conditions are equal, ignoring the transition time.
        """
        return (
            self.type == other.type
            and self.status == other.status
            and self.reason == other.reason
            and self.message == other.message
        )

    def is_true(self):
        return self.status == ConditionStatus.TRUE

    def is_false(self):
        return self.status == ConditionStatus.FALSE

    def is_unknown(self):
        return self.status == ConditionStatus.UNKNOWN


def true_condition(type, reason = "", message = ""):
    return Condition(
        type=ConditionType(type).value,
        status=ConditionStatus.TRUE,
        reason=reason,
        message=message,
    )


def false_condition(type, reason = "", message = ""):
    return Condition(
        type=ConditionType(type).value,
        status=ConditionStatus.FALSE,
        reason=reason,
        message=message,
    )


def unknown_condition(type, reason = "", message = ""):
    return Condition(
        type=ConditionType(type).value,
        status=ConditionStatus.UNKNOWN,
        reason=reason,
        message=message,
    )


class StatusConditions(schema.BaseModel):
    """
    An ordered set of conditions with at most one condition per type.
    """

    conditions: list[Condition] = Field(
        default_factory=list, description="The conditions, at most one per type."
    )

    def get(self, type) -> Condition | None:
        """
        Returns the condition with the given type, or None if it is not present.
        """
        return next((c for c in self.conditions if c.type == type), None)

    def set(self, *conditions: Condition):
        """
        Sets the given conditions.

        The transition time of a condition is only moved when its status changes,
        so edits to the reason or message alone keep the existing time.
        """
        for condition in conditions:
            if not condition.last_transition_time:
                condition.last_transition_time = dt.datetime.now(dt.timezone.utc).replace(
                    microsecond=0
                )
            for idx, existing in enumerate(self.conditions):
                if existing.type != condition.type:
                    continue
                if not existing.equal(condition):
                    if existing.status == condition.status:
                        condition.last_transition_time = existing.last_transition_time
                    self.conditions[idx] = condition
                break
            else:
                self.conditions.append(condition)

    def is_true(self, type):
        condition = self.get(type)
        return condition is not None and condition.is_true()

    def is_false(self, type):
        condition = self.get(type)
        return condition is not None and condition.is_false()
