"""Tests for acme_dns_issuer.issuer."""
import datetime
import sys
import unittest
from unittest import mock

from cryptography import x509
from cryptography.hazmat.primitives.serialization import pkcs12
import pytest

from acme_dns_issuer import errors
from acme_dns_issuer import issuer
from acme_dns_issuer.acme_session import ChallengeOutcome
from acme_dns_issuer.finalizer import CertificateFinalizer
from acme_dns_issuer.session import Session
from acme_dns_issuer.tests import util as test_util


class FakeChallenge:
    def __init__(self, ca, domain):
        self.ca = ca
        self.domain = domain
        self.digest = 'digest-' + domain

    def validate(self, deadline):
        self.ca.validated.append((self.domain, deadline))
        if self.ca.on_validate:
            self.ca.on_validate(self)
        if self.domain in self.ca.failing:
            return ChallengeOutcome(self.domain, 'invalid', 'Incorrect TXT record')
        return ChallengeOutcome(self.domain, 'valid')


class FakeAuthorization:
    def __init__(self, ca, domain):
        self.ca = ca
        self.domain = domain
        self.is_valid = domain in ca.already_valid

    def dns_challenge(self):
        if self.domain in self.ca.no_dns:
            raise errors.AuthorizationError('no dns-01 for ' + self.domain)
        return FakeChallenge(self.ca, self.domain)


class FakeOrder:
    def __init__(self, ca, domains):
        self.ca = ca
        self.domains = domains

    def authorizations(self, executor):
        return list(executor.map(lambda d: FakeAuthorization(self.ca, d), self.domains))

    def finalize(self, csr_pem, deadline):
        csr = x509.load_pem_x509_csr(csr_pem)
        return test_util.make_chain_pem(self.domains, csr.public_key())


class FakeAcmeSession:
    """CA double validating every challenge unless told otherwise."""
    def __init__(self):
        self.orders = []
        self.validated = []
        self.failing = set()
        self.already_valid = set()
        self.no_dns = set()
        self.reject_order = False
        self.on_validate = None

    def new_order(self, domains):
        if self.reject_order:
            raise errors.OrderError('rejected')
        order = FakeOrder(self, list(domains))
        self.orders.append(order)
        return order


class CertificateRequestTest(unittest.TestCase):
    """Tests for acme_dns_issuer.issuer.CertificateRequest."""

    def test_normalization(self):
        request = issuer.CertificateRequest([' Example.COM. ', 'www.example.com',
                                             'example.com'], 'pw')
        assert request.domains == ['example.com', 'www.example.com']
        assert request.common_name == 'example.com'
        assert request.friendly_name == 'example.com www.example.com'
        assert request.profile == issuer.SubjectProfile()

    def test_single_domain_string(self):
        request = issuer.CertificateRequest('www.example.com', 'pw')
        assert request.domains == ['www.example.com']
        assert issuer.CertificateRequest('localhost', 'pw').order_domains == ['localhost']

    def test_order_domains(self):
        request = issuer.CertificateRequest(['example.com', 'example.org'], 'pw')
        assert request.order_domains == ['example.com', 'example.org']
        request = issuer.CertificateRequest(['example.com', 'example.org'], 'pw',
                                            wildcard=True)
        assert request.order_domains == ['example.com', '*.example.com',
                                         'example.org', '*.example.org']

    def test_wildcard_prefix_rejected(self):
        with pytest.raises(errors.Error, match='wildcard'):
            issuer.CertificateRequest(['*.example.com'], 'pw')

    def test_empty(self):
        with pytest.raises(errors.Error, match='domain'):
            issuer.CertificateRequest([], 'pw')
        with pytest.raises(errors.Error, match='Empty'):
            issuer.CertificateRequest(['example.com', ' '], 'pw')
        with pytest.raises(errors.Error, match='password'):
            issuer.CertificateRequest(['example.com'], '')

    def test_repr_hides_password(self):
        assert 'hunter2' not in repr(issuer.CertificateRequest(['example.com'], 'hunter2'))


class IssuerTest(unittest.TestCase):
    """Tests for acme_dns_issuer.issuer.Issuer."""

    def setUp(self):
        self.ca = FakeAcmeSession()
        self.dns = test_util.FakeDnsAccount('example.com', 'example.org')
        self.session = Session(mock.MagicMock(), self.ca, self.dns)
        self.finalizer = mock.MagicMock()
        self.finalizer.finalize.return_value = b'bundle'
        self.issuer = issuer.Issuer(self.session, propagation_seconds=7,
                                    validation_timeout=60, finalizer=self.finalizer)
        patcher = mock.patch('acme_dns_issuer.issuer.time.sleep')
        self.mock_sleep = patcher.start()
        self.addCleanup(patcher.stop)

    def _all_records(self):
        return [record for zone in self.dns.zones.values() for record in zone.records]

    def _issue(self, domains, wildcard=False):
        return self.issuer.issue(issuer.CertificateRequest(domains, 'pw', wildcard=wildcard))

    def test_single_domain(self):
        seen = []
        self.ca.on_validate = lambda c: seen.append(
            self.dns.zones['example.com'].txt_values('_acme-challenge'))

        result = self._issue(['example.com'])

        assert result.bundle == b'bundle'
        assert result.outcomes == [ChallengeOutcome('example.com', 'valid')]
        assert result.cleanup_error is None
        assert seen == [['digest-example.com']]
        assert self._all_records() == []
        assert self.issuer.state is issuer.IssuanceState.COMPLETE
        self.mock_sleep.assert_called_once_with(7)
        order, request = self.finalizer.finalize.call_args[0]
        assert order is self.ca.orders[0]
        assert request.domains == ['example.com']

    def test_wildcard_shares_one_host(self):
        seen = []
        self.ca.on_validate = lambda c: seen.append(
            sorted(self.dns.zones['example.com'].txt_values('_acme-challenge')))

        result = self._issue(['example.com'], wildcard=True)

        assert self.ca.orders[0].domains == ['example.com', '*.example.com']
        assert {o.domain for o in result.outcomes} == {'example.com', '*.example.com'}
        assert seen[0] == ['digest-*.example.com', 'digest-example.com']
        assert self._all_records() == []

    def test_several_zones(self):
        result = self._issue(['example.com', 'www.example.com', 'example.org'])
        assert len(result.outcomes) == 3
        assert self._all_records() == []

    def test_validation_deadline(self):
        before = datetime.datetime.now()
        self._issue(['example.com', 'example.org'])
        deadlines = {deadline for _, deadline in self.ca.validated}
        assert len(deadlines) == 1
        assert deadlines.pop() >= before + datetime.timedelta(seconds=60)

    def test_one_failure_fails_all_and_cleans_every_domain(self):
        self.ca.failing.add('www.example.com')

        with pytest.raises(errors.ValidationError) as exc_info:
            self._issue(['example.com', 'www.example.com', 'example.org'])

        error = exc_info.value
        assert [o.domain for o in error.failed] == ['www.example.com']
        assert len(error.outcomes) == 3
        assert 'www.example.com (invalid): Incorrect TXT record' in str(error)
        assert error.stage == 'VALIDATING'
        assert error.cleanup_error is None
        assert self._all_records() == []
        assert self.issuer.state is issuer.IssuanceState.FAILED
        self.finalizer.finalize.assert_not_called()

    def test_publish_error_cleans_partial_records(self):
        self.dns.zones['example.com'].fail_add_after = 1

        with pytest.raises(errors.DnsPublishError) as exc_info:
            self._issue(['example.com', 'www.example.com'])

        assert exc_info.value.published == [
            ('example.com', '_acme-challenge', 'digest-example.com')]
        assert exc_info.value.stage == 'AUTHORIZED'
        assert self._all_records() == []
        assert self.ca.validated == []
        self.mock_sleep.assert_not_called()

    def test_missing_zone(self):
        with pytest.raises(errors.DnsPublishError, match='example.net'):
            self._issue(['example.com', 'example.net'])
        assert self._all_records() == []

    def test_cleanup_error_is_not_fatal(self):
        self.dns.zones['example.com'].fail_delete = True

        result = self._issue(['example.com'])

        assert result.bundle == b'bundle'
        assert isinstance(result.cleanup_error, errors.DnsCleanupError)
        assert result.cleanup_error.failures == [('example.com', 'delete refused')]

    def test_cleanup_error_attached_to_primary_error(self):
        self.ca.failing.add('example.com')
        self.dns.zones['example.com'].fail_delete = True

        with pytest.raises(errors.ValidationError) as exc_info:
            self._issue(['example.com'])

        assert isinstance(exc_info.value.cleanup_error, errors.DnsCleanupError)

    def test_cleanup_runs_exactly_once(self):
        self.issuer.cleaner = mock.MagicMock()
        self._issue(['example.com', 'example.org'])
        self.issuer.cleaner.cleanup.assert_called_once_with(['example.com', 'example.org'])

        self.issuer.cleaner.reset_mock()
        self.ca.failing.add('example.org')
        with pytest.raises(errors.ValidationError):
            self._issue(['example.com', 'example.org'])
        self.issuer.cleaner.cleanup.assert_called_once_with(['example.com', 'example.org'])

    def test_unexpected_error_still_cleans_up(self):
        def explode(unused_challenge):
            raise RuntimeError('boom')
        self.ca.on_validate = explode

        with pytest.raises(RuntimeError, match='boom'):
            self._issue(['example.com'])
        assert self._all_records() == []

    def test_already_valid_authorization_skipped(self):
        self.ca.already_valid.add('example.com')

        result = self._issue(['example.com', 'www.example.com'])

        assert [o.domain for o in result.outcomes] == ['www.example.com']
        assert [domain for domain, _ in self.ca.validated] == ['www.example.com']

    def test_every_authorization_already_valid(self):
        self.ca.already_valid.update(('example.com', '*.example.com'))

        result = self._issue(['example.com'], wildcard=True)

        assert result.outcomes == []
        assert self.dns.lookups == []
        self.mock_sleep.assert_not_called()
        self.finalizer.finalize.assert_called_once()

    def test_order_rejected(self):
        self.ca.reject_order = True
        with pytest.raises(errors.OrderError) as exc_info:
            self._issue(['example.com'])
        assert exc_info.value.stage == 'IDLE'
        assert self.dns.lookups == []

    def test_no_dns_challenge(self):
        self.ca.no_dns.add('example.com')
        with pytest.raises(errors.AuthorizationError) as exc_info:
            self._issue(['example.com'])
        assert exc_info.value.stage == 'ORDER_OPENED'
        assert self.dns.lookups == []

    def test_finalization_error(self):
        self.finalizer.finalize.side_effect = errors.FinalizationError('CA said no')
        with pytest.raises(errors.FinalizationError) as exc_info:
            self._issue(['example.com'])
        assert exc_info.value.stage == 'FINALIZING'
        assert self._all_records() == []

    def test_fresh_order_per_attempt(self):
        self.ca.failing.add('example.com')
        with pytest.raises(errors.ValidationError):
            self._issue(['example.com'])
        self.ca.failing.clear()
        self._issue(['example.com'])
        assert len(self.ca.orders) == 2
        assert self.issuer.state is issuer.IssuanceState.COMPLETE

    def test_end_to_end_subdomain(self):
        self.issuer.finalizer = CertificateFinalizer()
        seen = []
        self.ca.on_validate = lambda c: seen.append(
            [(r.host, r.value) for r in self.dns.zones['example.com'].records])

        result = self.issuer.issue(issuer.CertificateRequest(['a.example.com'], 'secret'))

        assert self.dns.lookups[0] == 'example.com'
        assert seen == [[('_acme-challenge.a', 'digest-a.example.com')]]
        assert self._all_records() == []
        cert = pkcs12.load_pkcs12(result.bundle, b'secret').cert.certificate
        common_name = cert.subject.get_attributes_for_oid(x509.oid.NameOID.COMMON_NAME)
        assert common_name[0].value == 'a.example.com'

    def test_end_to_end_bundle(self):
        self.issuer.finalizer = CertificateFinalizer()

        result = self.issuer.issue(issuer.CertificateRequest(
            ['example.com', 'www.example.com'], 'secret', wildcard=True))

        loaded = pkcs12.load_pkcs12(result.bundle, b'secret')
        assert loaded.cert.friendly_name == b'example.com www.example.com'
        assert len(result.outcomes) == 4
        assert self._all_records() == []

    def test_from_config(self):
        config = mock.MagicMock(propagation_seconds=1, validation_timeout=2, finalize_timeout=3,
                                dns_timeout=4, dns_ttl=5, max_workers=6)
        built = issuer.Issuer.from_config(self.session, config)
        assert built.propagation_seconds == 1
        assert built.validation_timeout == 2
        assert built.finalizer.timeout == 3
        assert built.publisher.timeout == 4
        assert built.cleaner.timeout == 4
        assert built.publisher.ttl == 5
        assert built.max_workers == 6


if __name__ == '__main__':
    sys.exit(pytest.main(sys.argv[1:] + [__file__]))  # pragma: no cover
