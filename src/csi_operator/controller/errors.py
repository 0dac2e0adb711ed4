"""Error types used by the reconciliation code."""

from typing import Iterable, Iterator, List, Optional

from kubernetes.client.exceptions import ApiException


class ReconcileError(Exception):
    """A retryable failure of one reconciliation step."""


class NoNeedRetryError(Exception):
    """A failure that will not go away by retrying with the same spec."""


class UnknownDriverError(NoNeedRetryError):
    """No enhancer is registered for the driver name."""


class UnknownVersionError(NoNeedRetryError):
    """The version table has no entry for the driver and version."""


class CredentialError(NoNeedRetryError):
    """Credential parameters of a well known driver are malformed."""


class ClusterTimeoutError(ReconcileError):
    """A cluster API call did not complete within its timeout."""


class InvalidSpecError(Exception):
    """The CSI spec failed validation; it is reported, not retried."""

    def __init__(self, field_errors):
        self.field_errors = list(field_errors)
        super().__init__("\n".join(str(e) for e in self.field_errors))


class ErrorList(Exception):
    """Ordered collection of independent failures.

    Its message is the messages of its members joined by newlines.
    """

    def __init__(self, errors: Optional[Iterable[BaseException]] = None):
        self.errors: List[BaseException] = list(errors or [])
        super().__init__()

    def append(self, error: BaseException) -> None:
        self.errors.append(error)

    def __len__(self) -> int:
        return len(self.errors)

    def __iter__(self) -> Iterator[BaseException]:
        return iter(self.errors)

    def __str__(self) -> str:
        return "\n".join(str(e) for e in self.errors)


def is_permanent(error: Optional[BaseException]) -> bool:
    """True if the error, or any member of an ErrorList, is non-retryable."""
    if error is None:
        return False
    if isinstance(error, NoNeedRetryError):
        return True
    if isinstance(error, ErrorList):
        return any(is_permanent(e) for e in error)
    return False


def is_not_found(error: BaseException) -> bool:
    return isinstance(error, ApiException) and error.status == 404
