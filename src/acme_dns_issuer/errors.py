"""acme_dns_issuer errors."""
from typing import Optional
from typing import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from acme_dns_issuer.acme_session import ChallengeOutcome


class Error(Exception):
    """Generic acme_dns_issuer error."""


class SignalExit(Error):
    """A Unix signal was received while in the ExitHandler context manager."""


class LockError(Error):
    """File locking error."""


class DnsProviderError(Error):
    """A DNS provider API call failed or timed out."""


class IssuanceError(Error):
    """Error raised by one stage of the issuance workflow.

    :ivar str stage: Name of the workflow state in which the error occurred,
        set by the orchestrator.
    :ivar cleanup_error: Cleanup failure that happened after this error, if any.
    :type cleanup_error: `DnsCleanupError` or ``None``

    """
    def __init__(self, *args: object) -> None:
        super().__init__(*args)
        self.stage: Optional[str] = None
        self.cleanup_error: Optional['DnsCleanupError'] = None


class AccountError(IssuanceError):
    """The ACME account key could not be loaded, created or saved."""


class OrderError(IssuanceError):
    """The CA rejected the requested domain set."""


class AuthorizationError(IssuanceError):
    """An authorization could not be retrieved or offers no dns-01 challenge."""


class DnsPublishError(IssuanceError):
    """The DNS provider rejected the creation of a challenge record.

    :ivar list published: ``(zone, host, value)`` tuples of the records created
        before the failure.

    """
    def __init__(self, message: str,
                 published: Sequence[tuple[str, str, str]] = ()) -> None:
        super().__init__(message)
        self.published = list(published)


class ValidationError(IssuanceError):
    """One or more challenges failed CA-side validation.

    :ivar list outcomes: `.ChallengeOutcome` of every challenge of the order,
        failed or not.

    """
    def __init__(self, outcomes: Sequence['ChallengeOutcome']) -> None:
        self.outcomes = list(outcomes)
        super().__init__()

    @property
    def failed(self) -> list['ChallengeOutcome']:
        """Outcomes of the challenges that did not validate."""
        return [outcome for outcome in self.outcomes if not outcome.valid]

    def __str__(self) -> str:
        return "Failed authorization procedure. {0}".format(
            ", ".join(f"{outcome.domain} ({outcome.status}): {outcome.detail}"
                      for outcome in self.failed))


class DnsCleanupError(IssuanceError):
    """Some challenge records could not be removed.

    This error is never fatal to an issuance: it is logged and attached to the
    issuance result or to the primary error.

    :ivar list failures: ``(domain, message)`` tuples, one per failed domain.

    """
    def __init__(self, failures: Sequence[tuple[str, str]]) -> None:
        self.failures = list(failures)
        super().__init__()

    def __str__(self) -> str:
        return "Unable to clean up challenge records for {0}".format(
            "; ".join(f"{domain}: {message}" for domain, message in self.failures))


class FinalizationError(IssuanceError):
    """The CSR, the order finalization or the bundle export failed.

    Raised after every challenge validated. A retry starts a fresh order.
    """
