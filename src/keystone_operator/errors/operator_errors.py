"""
Failures the Keystone reconcilers report to kopf.

Each error knows whether waiting can fix it. Retryable errors become
``kopf.TemporaryError`` with a delay, the rest ``kopf.PermanentError`` so
kopf stops retrying until the resource changes.
"""

import kopf

from keystone_operator.constants import CONFLICT_RETRY_DELAY, REQUEUE_SECRET_DELAY


class OperatorError(Exception):
    """Base class for reconciliation failures."""

    category = "operator"
    user_action: str | None = None

    def __init__(self, message: str, retryable: bool = True, delay: float = 30):
        super().__init__(message)
        self.retryable = retryable
        self.delay = delay

    def as_kopf_error(self) -> kopf.TemporaryError | kopf.PermanentError:
        if self.retryable:
            return kopf.TemporaryError(str(self), delay=self.delay)
        return kopf.PermanentError(str(self))

    def __str__(self) -> str:
        message = super().__str__()
        if self.user_action:
            return f"{message}\nAction required: {self.user_action}"
        return message


class ValidationError(OperatorError):
    """The resource spec does not parse; only an edit can fix it."""

    category = "validation"
    user_action = "Fix the resource specification"

    def __init__(self, message: str):
        super().__init__(message, retryable=False)


class ConfigurationError(OperatorError):
    """The namespace holds resources the operator cannot reconcile against."""

    category = "configuration"
    user_action = "Review the resources in the namespace"

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message, retryable=retryable)


class SecretDataError(OperatorError):
    """
    A secret field the operator reads is not usable text.

    Retried on the secret delay, since fixing the secret needs no change to
    the resource itself.
    """

    category = "input"
    user_action = "Store the value as UTF-8 text"

    def __init__(self, namespace: str, secret: str, key: str):
        super().__init__(
            f"Field {key} in secret {namespace}/{secret} is not valid UTF-8",
            delay=REQUEUE_SECRET_DELAY,
        )
        self.secret = secret
        self.key = key


class DatabaseAccountError(OperatorError):
    """The MariaDBAccount is bound to a different database."""

    category = "database"
    user_action = "Point spec.databaseAccount at an account of the keystone database"

    def __init__(self, account: str, database: str):
        super().__init__(
            f"MariaDBAccount {account} belongs to database {database}, "
            "not to the keystone database",
            delay=60,
        )
        self.account = account


class IdentityServiceError(OperatorError):
    """The Keystone identity API rejected or failed a request."""

    category = "identity"
    user_action = "Check KeystoneAPI status and admin credentials"

    def __init__(self, message: str, status_code: int | None = None):
        if status_code:
            message = f"HTTP {status_code}: {message}"
        # 4xx will not fix itself, except lookups and races
        retryable = not (
            status_code and 400 <= status_code < 500 and status_code not in (404, 409)
        )
        super().__init__(
            f"Keystone identity API error: {message}",
            retryable=retryable,
            delay=CONFLICT_RETRY_DELAY if status_code == 409 else 30,
        )
        self.status_code = status_code


class KubernetesAPIError(OperatorError):
    """A Kubernetes API call failed."""

    category = "kubernetes"
    user_action = "Check RBAC permissions and cluster connectivity"

    def __init__(self, message: str, reason: str | None = None, retryable: bool = True):
        if reason:
            message = f"{message} (reason: {reason})"
        if reason in ("Forbidden", "Unauthorized", "Invalid"):
            retryable = False
        super().__init__(
            f"Kubernetes API error: {message}",
            retryable=retryable,
            delay=CONFLICT_RETRY_DELAY if reason == "Conflict" else 60,
        )
        self.reason = reason
