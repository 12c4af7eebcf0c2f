"""ACME session capability built on the acme library."""
import concurrent.futures
import datetime
import logging
import time
from typing import NamedTuple
from typing import Optional
from typing import Sequence

import josepy as jose
from requests.exceptions import RequestException

from acme import challenges
from acme import client
from acme import errors as acme_errors
from acme import messages
from acme_dns_issuer import errors
from acme_dns_issuer._internal import constants

logger = logging.getLogger(__name__)

DIRECTORY_URLS = dict(constants.ENVIRONMENTS)
"""ACME v2 directory URL of each Let's Encrypt environment."""

# Everything the acme library and its transport raise for a failed request
ACME_ERRORS = (acme_errors.Error, RequestException, jose.errors.Error)


class ChallengeOutcome(NamedTuple):
    """Validation result of the challenge of one domain variant.

    :ivar str domain: domain name, with its ``*.`` prefix for a wildcard
    :ivar str status: final authorization status (``valid``, ``invalid``),
        ``timeout`` or ``error``
    :ivar detail: problem reported by the CA, ``None`` when valid

    """
    domain: str
    status: str
    detail: Optional[str] = None

    @property
    def valid(self) -> bool:
        """Did the CA validate the challenge?"""
        return self.status == messages.STATUS_VALID.name


class AcmeChallenge:
    """The dns-01 challenge of one authorization."""

    def __init__(self, session: 'AcmeSession', authzr: messages.AuthorizationResource,
                 challb: messages.ChallengeBody) -> None:
        self._session = session
        self._authzr = authzr
        self.challb = challb

    @property
    def domain(self) -> str:
        """Domain name the challenge proves control of."""
        return authorization_domain(self._authzr)

    @property
    def digest(self) -> str:
        """Key authorization digest expected in the TXT record."""
        return self.challb.chall.validation(self._session.key)

    def validate(self, deadline: datetime.datetime) -> ChallengeOutcome:
        """Ask the CA to validate the challenge and wait for its verdict.

        Never raises for a CA-side or network failure: it is reported in the
        returned outcome.
        """
        acme_client = self._session.client
        try:
            acme_client.answer_challenge(self.challb, self.challb.response(self._session.key))
            authzr = self._authzr
            while True:
                authzr, response = acme_client.poll(authzr)
                status = authzr.body.status
                if status == messages.STATUS_VALID:
                    return ChallengeOutcome(self.domain, status.name)
                if status == messages.STATUS_INVALID:
                    return ChallengeOutcome(self.domain, status.name, _failure_detail(authzr))
                now = datetime.datetime.now()
                if now >= deadline:
                    return ChallengeOutcome(
                        self.domain, 'timeout',
                        'Authorization still {0} when the validation timeout expired'.format(
                            status.name))
                retry_after = acme_client.retry_after(response, default=1)
                time.sleep(max(1.0, min((retry_after - now).total_seconds(),
                                        (deadline - now).total_seconds())))
        except ACME_ERRORS as e:
            logger.debug('Error while validating %s', self.domain, exc_info=True)
            return ChallengeOutcome(self.domain, 'error', str(e))


def _failure_detail(authzr: messages.AuthorizationResource) -> str:
    for challb in authzr.body.challenges:
        if challb.error is not None:
            return str(challb.error)
    return 'No further information was provided by the CA'


def authorization_domain(authzr: messages.AuthorizationResource) -> str:
    """Domain of an authorization, prefixed with ``*.`` for a wildcard."""
    domain = authzr.body.identifier.value
    if authzr.body.wildcard:
        return '*.' + domain
    return domain


class AcmeAuthorization:
    """One authorization of an order."""

    def __init__(self, session: 'AcmeSession', authzr: messages.AuthorizationResource) -> None:
        self._session = session
        self.authzr = authzr

    @property
    def domain(self) -> str:
        """Domain of the authorization, ``*.`` prefixed for a wildcard."""
        return authorization_domain(self.authzr)

    @property
    def is_valid(self) -> bool:
        """Is the authorization already valid, e.g. reused from a recent order?"""
        return self.authzr.body.status == messages.STATUS_VALID

    def dns_challenge(self) -> AcmeChallenge:
        """Pick the dns-01 challenge of the authorization.

        :raises errors.AuthorizationError: if the CA offers no dns-01 challenge
        """
        for challb in self.authzr.body.challenges:
            if isinstance(challb.chall, challenges.DNS01):
                return AcmeChallenge(self._session, self.authzr, challb)
        raise errors.AuthorizationError(
            'The CA offered no {0} challenge for {1}'.format(challenges.DNS01.typ, self.domain))


class AcmeOrder:
    """An order opened on the CA, not yet finalized."""

    def __init__(self, session: 'AcmeSession', orderr: messages.OrderResource) -> None:
        self._session = session
        self.orderr = orderr

    @property
    def domains(self) -> list[str]:
        """Identifiers of the order, as submitted."""
        return [identifier.value for identifier in self.orderr.body.identifiers]

    def authorizations(self, executor: concurrent.futures.Executor) -> list[AcmeAuthorization]:
        """Fetch every authorization of the order concurrently.

        :raises errors.AuthorizationError: if one of them cannot be fetched
        """
        urls = list(self.orderr.body.authorizations)
        try:
            return list(executor.map(self._session.fetch_authorization, urls))
        except ACME_ERRORS as e:
            raise errors.AuthorizationError('Unable to fetch authorizations: {0}'.format(e))

    def finalize(self, csr_pem: bytes, deadline: datetime.datetime) -> str:
        """Submit the CSR and wait for the certificate.

        :returns: PEM encoded certificate followed by its chain
        :raises errors.FinalizationError: if the CA fails to issue in time
        """
        try:
            finalized = self._session.client.finalize_order(
                self.orderr.update(csr_pem=csr_pem), deadline)
        except acme_errors.TimeoutError:
            raise errors.FinalizationError(
                'Timed out waiting for the CA to issue the certificate')
        except ACME_ERRORS as e:
            raise errors.FinalizationError('Order finalization failed: {0}'.format(e))
        return finalized.fullchain_pem


class AcmeSession:
    """Signed connection to an ACME directory, bound to one account key.

    :ivar .JWK key: account key
    :ivar .ClientV2 client: underlying acme client

    """
    def __init__(self, acme_client: client.ClientV2) -> None:
        self.client = acme_client

    @property
    def key(self) -> jose.JWK:
        return self.client.net.key

    @classmethod
    def connect(cls, directory_url: str, key: jose.JWK, alg: jose.JWASignature = jose.ES256,
                user_agent: str = 'acme-python', verify_ssl: bool = True) -> 'AcmeSession':
        """Fetch the directory of the CA and open a session.

        :raises errors.AccountError: if the directory cannot be fetched
        """
        net = client.ClientNetwork(key, alg=alg, user_agent=user_agent, verify_ssl=verify_ssl)
        try:
            directory = client.ClientV2.get_directory(directory_url, net)
        except ACME_ERRORS as e:
            raise errors.AccountError(
                'Unable to fetch the ACME directory {0}: {1}'.format(directory_url, e))
        return cls(client.ClientV2(directory, net))

    def new_account(self, contact: str) -> messages.RegistrationResource:
        """Register the session key, agreeing to the terms of service."""
        registration = messages.NewRegistration.from_data(
            email=contact, terms_of_service_agreed=True)
        try:
            return self.client.new_account(registration)
        except acme_errors.ConflictError:
            logger.info('The account key is already registered, reusing its account')
            return self.resume_account()
        except ACME_ERRORS as e:
            raise errors.AccountError('Unable to register an account: {0}'.format(e))

    def resume_account(self) -> messages.RegistrationResource:
        """Look up the registration of the session key. Never creates one.

        :raises errors.AccountError: if the key is not registered with the CA
        """
        lookup = messages.NewRegistration.from_data(only_return_existing=True)
        try:
            regr = self.client.new_account(lookup)
        except acme_errors.ConflictError as e:
            regr = messages.RegistrationResource(uri=e.location, body=messages.Registration())
            self.client.net.account = regr
        except ACME_ERRORS as e:
            raise errors.AccountError('Unable to find the account of the saved key: {0}'.format(e))
        logger.debug('Resumed account %s', regr.uri)
        return regr

    def new_order(self, domains: Sequence[str]) -> AcmeOrder:
        """Open an order with one dns identifier per domain.

        :raises errors.OrderError: if the CA rejects the order
        """
        order = messages.NewOrder(identifiers=tuple(
            messages.Identifier(typ=messages.IDENTIFIER_FQDN, value=domain)
            for domain in domains))
        try:
            response = self.client.net.post(self.client.directory['newOrder'], order,
                                            new_nonce_url=self.client.directory['newNonce'])
            body = messages.Order.from_json(response.json())
        except ACME_ERRORS as e:
            raise errors.OrderError('The CA rejected the order for {0}: {1}'.format(
                ', '.join(domains), e))
        orderr = messages.OrderResource(body=body, uri=response.headers.get('Location'))
        logger.debug('Opened order %s', orderr.uri)
        return AcmeOrder(self, orderr)

    def fetch_authorization(self, url: str) -> AcmeAuthorization:
        """Fetch one authorization with a POST-as-GET request."""
        response = self.client.net.post(url, None, new_nonce_url=self.client.directory['newNonce'])
        authzr = messages.AuthorizationResource(
            body=messages.Authorization.from_json(response.json()), uri=url)
        return AcmeAuthorization(self, authzr)
