"""Challenge orchestration: from a domain set to a certificate bundle."""
import concurrent.futures
import datetime
import enum
import logging
import time
from typing import Iterable
from typing import NamedTuple
from typing import Optional

from acme_dns_issuer import errors
from acme_dns_issuer._internal import error_handler
from acme_dns_issuer.acme_session import AcmeChallenge
from acme_dns_issuer.acme_session import AcmeOrder
from acme_dns_issuer.acme_session import ChallengeOutcome
from acme_dns_issuer.cleaner import ChallengeCleaner
from acme_dns_issuer.configuration import IssuerConfig
from acme_dns_issuer.finalizer import CertificateFinalizer
from acme_dns_issuer.publisher import ChallengePublisher
from acme_dns_issuer.session import Session

logger = logging.getLogger(__name__)


class IssuanceState(enum.Enum):
    """Steps of an issuance attempt."""
    IDLE = 'idle'
    ORDER_OPENED = 'order opened'
    AUTHORIZED = 'authorized'
    CHALLENGES_PUBLISHED = 'challenges published'
    VALIDATING = 'validating'
    VALIDATED = 'validated'
    FAILED = 'failed'
    FINALIZING = 'finalizing'
    COMPLETE = 'complete'


class SubjectProfile(NamedTuple):
    """Optional subject fields of the certificate."""
    country: Optional[str] = None
    state: Optional[str] = None
    locality: Optional[str] = None
    organization: Optional[str] = None
    organizational_unit: Optional[str] = None


class CertificateRequest:
    """Domains and export settings of one certificate.

    :ivar list domains: bare domain names, normalized, first one is the
        common name
    :ivar SubjectProfile profile: subject fields
    :ivar str export_password: password of the PKCS#12 bundle
    :ivar bool wildcard: also request ``*.<domain>`` for every domain

    :raises errors.Error: if no domain or no password is given, or if a
        domain already carries a ``*.`` prefix

    """
    def __init__(self, domains: Iterable[str], export_password: str,
                 profile: Optional[SubjectProfile] = None, wildcard: bool = False) -> None:
        self.domains: list[str] = []
        if isinstance(domains, str):
            domains = [domains]
        for domain in domains:
            domain = domain.strip().lower().rstrip('.')
            if not domain:
                raise errors.Error('Empty domain name')
            if domain.startswith('*.'):
                raise errors.Error(
                    'Request {0} without its "*." prefix and enable wildcard mode '
                    'instead'.format(domain))
            if domain not in self.domains:
                self.domains.append(domain)
        if not self.domains:
            raise errors.Error('At least one domain name is required')
        if not export_password:
            raise errors.Error('An export password is required')
        self.export_password = export_password
        self.profile = profile if profile is not None else SubjectProfile()
        self.wildcard = wildcard

    @property
    def common_name(self) -> str:
        return self.domains[0]

    @property
    def order_domains(self) -> list[str]:
        """Identifiers to order: each domain, followed by its wildcard in wildcard mode."""
        if not self.wildcard:
            return list(self.domains)
        expanded: list[str] = []
        for domain in self.domains:
            expanded.extend((domain, '*.' + domain))
        return expanded

    @property
    def friendly_name(self) -> str:
        """Name given to the bundle."""
        return ' '.join(self.domains)

    def __repr__(self) -> str:
        return '{0}({1}, wildcard={2})'.format(
            self.__class__.__name__, self.domains, self.wildcard)


class IssuanceResult(NamedTuple):
    """A successful issuance.

    :ivar bytes bundle: PKCS#12 archive holding the key and the chain
    :ivar list outcomes: validation outcome of each challenge
    :ivar cleanup_error: error of a cleanup that left records behind

    """
    bundle: bytes
    outcomes: list[ChallengeOutcome]
    cleanup_error: Optional[errors.DnsCleanupError] = None


class Issuer:
    """Drives one order at a time through its `IssuanceState` steps.

    Authorization fetches and challenge validations fan out over a thread
    pool and are joined before the next step. Challenge records are removed
    exactly once per attempt, whatever the outcome. Not safe for concurrent
    `issue` calls.

    :ivar IssuanceState state: step reached by the current or last attempt

    """
    def __init__(self, session: Session, propagation_seconds: float = 5,
                 validation_timeout: float = 90, finalize_timeout: float = 90,
                 dns_timeout: float = 30, dns_ttl: int = 60, max_workers: int = 8,
                 publisher: Optional[ChallengePublisher] = None,
                 cleaner: Optional[ChallengeCleaner] = None,
                 finalizer: Optional[CertificateFinalizer] = None) -> None:
        self.session = session
        self.propagation_seconds = propagation_seconds
        self.validation_timeout = validation_timeout
        self.max_workers = max_workers
        self.publisher = publisher or ChallengePublisher(session.dns, dns_ttl, dns_timeout)
        self.cleaner = cleaner or ChallengeCleaner(session.dns, dns_timeout)
        self.finalizer = finalizer or CertificateFinalizer(finalize_timeout)
        self.state = IssuanceState.IDLE
        self._cleanup_error: Optional[errors.DnsCleanupError] = None

    @classmethod
    def from_config(cls, session: Session, config: IssuerConfig) -> 'Issuer':
        return cls(session,
                   propagation_seconds=config.propagation_seconds,
                   validation_timeout=config.validation_timeout,
                   finalize_timeout=config.finalize_timeout,
                   dns_timeout=config.dns_timeout,
                   dns_ttl=config.dns_ttl,
                   max_workers=config.max_workers)

    def issue(self, request: CertificateRequest) -> IssuanceResult:
        """Obtain a certificate bundle for `request`.

        Every attempt opens a fresh order.

        :raises errors.IssuanceError: on the first failing step; its
            ``stage`` names that step and its ``cleanup_error`` is set when
            the challenge records could not all be removed

        """
        self.state = IssuanceState.IDLE
        self._cleanup_error = None
        try:
            with concurrent.futures.ThreadPoolExecutor(
                    max_workers=self.max_workers, thread_name_prefix='issuer') as executor:
                return self._issue(request, executor)
        except errors.IssuanceError as e:
            if e.stage is None:
                e.stage = self.state.name
            if e.cleanup_error is None:
                e.cleanup_error = self._cleanup_error
            logger.debug('Issuance for %s failed at %s', request.domains, e.stage)
            self._set_state(IssuanceState.FAILED)
            raise

    def _issue(self, request: CertificateRequest,
               executor: concurrent.futures.Executor) -> IssuanceResult:
        order = self.session.acme.new_order(request.order_domains)
        self._set_state(IssuanceState.ORDER_OPENED)

        challenges = self._authorize(order, executor)
        self._set_state(IssuanceState.AUTHORIZED)

        outcomes: list[ChallengeOutcome] = []
        with error_handler.ExitHandler(self._cleanup, [c.domain for c in challenges]):
            if challenges:
                self.publisher.publish([(c.domain, c.digest) for c in challenges])
                self._set_state(IssuanceState.CHALLENGES_PUBLISHED)
                logger.info('Waiting %d seconds for DNS changes to propagate',
                            self.propagation_seconds)
                time.sleep(self.propagation_seconds)
            else:
                self._set_state(IssuanceState.CHALLENGES_PUBLISHED)
            self._set_state(IssuanceState.VALIDATING)
            outcomes = self._validate(challenges, executor)
            if all(outcome.valid for outcome in outcomes):
                self._set_state(IssuanceState.VALIDATED)
            else:
                self._set_state(IssuanceState.FAILED)

        if self.state is not IssuanceState.VALIDATED:
            error = errors.ValidationError(outcomes)
            error.stage = IssuanceState.VALIDATING.name
            raise error

        self._set_state(IssuanceState.FINALIZING)
        bundle = self.finalizer.finalize(order, request)
        self._set_state(IssuanceState.COMPLETE)
        return IssuanceResult(bundle, outcomes, self._cleanup_error)

    def _authorize(self, order: AcmeOrder,
                   executor: concurrent.futures.Executor) -> list[AcmeChallenge]:
        challenges = []
        for authorization in order.authorizations(executor):
            if authorization.is_valid:
                logger.info('Authorization for %s is already valid, skipping its challenge',
                            authorization.domain)
                continue
            challenges.append(authorization.dns_challenge())
        return challenges

    def _validate(self, challenges: list[AcmeChallenge],
                  executor: concurrent.futures.Executor) -> list[ChallengeOutcome]:
        deadline = datetime.datetime.now() + datetime.timedelta(seconds=self.validation_timeout)
        outcomes = list(executor.map(lambda challenge: challenge.validate(deadline), challenges))
        for outcome in outcomes:
            if outcome.valid:
                logger.debug('Challenge for %s is valid', outcome.domain)
            else:
                logger.warning('Challenge for %s failed (%s): %s',
                               outcome.domain, outcome.status, outcome.detail)
        return outcomes

    def _cleanup(self, domains: list[str]) -> None:
        if not domains:
            return
        try:
            self.cleaner.cleanup(domains)
        except errors.DnsCleanupError as e:
            logger.warning('%s', e)
            self._cleanup_error = e

    def _set_state(self, state: IssuanceState) -> None:
        logger.debug('Issuance state: %s -> %s', self.state.name, state.name)
        self.state = state
