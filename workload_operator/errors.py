import enum


class Reason(str, enum.Enum):
    """
    Reason codes that identify why a reconcile failed.
    """

    NONE = ""
    CLUSTER_ACCESS_FAILED = "cluster-access-failed"
    DEFINITION_NOT_FOUND = "definition-not-found"
    TEMPLATE_FAILED = "template-failed"
    DIFF_FAILED = "diff-failed"
    INSTALL_FAILED = "install-failed"
    UPGRADE_FAILED = "upgrade-failed"
    ROLLBACK_FAILED = "rollback-failed"
    UNINSTALL_FAILED = "uninstall-failed"
    RECONCILE_FAILED = "reconcile-failed"


class ReconcileError(Exception):
    """
    Base class for errors raised while reconciling a workload.
    """

    #: The default reason for errors of this class
    default_reason = Reason.NONE

    def __init__(self, message, reason = None):
        super().__init__(message)
        self.reason = reason or self.default_reason


class ConfigurationError(ReconcileError):
    """
    Raised when the configuration of a workload is invalid, e.g. a bad chart
    reference or an option value of the wrong type.
    """


class OptionValidationError(ConfigurationError):
    """
    Raised with all of the problems found in a set of option values.
    """

    def __init__(self, messages):
        self.messages = list(messages)
        super().__init__("; ".join(self.messages))


class AccessError(ReconcileError):
    """
    Raised when the target cluster cannot be accessed.
    """

    default_reason = Reason.CLUSTER_ACCESS_FAILED


class ChartError(ReconcileError):
    """
    Raised when a chart cannot be loaded, is incompatible or fails to render.
    """

    default_reason = Reason.TEMPLATE_FAILED


class ReleaseStateError(ReconcileError):
    """
    Raised when a release is in a state that does not permit the requested change.
    """

    default_reason = Reason.UPGRADE_FAILED


class TransientAPIError(ReconcileError):
    """
    Raised when a call to a Kubernetes API fails in a way that should be retried.
    """
