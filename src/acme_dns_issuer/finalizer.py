"""Certificate key, CSR and PKCS#12 bundle."""
import datetime
import logging
from typing import Optional
from typing import Sequence
from typing import TYPE_CHECKING

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from acme_dns_issuer import errors

if TYPE_CHECKING:
    from acme_dns_issuer.acme_session import AcmeOrder
    from acme_dns_issuer.issuer import CertificateRequest
    from acme_dns_issuer.issuer import SubjectProfile

logger = logging.getLogger(__name__)

# RFC 5280 upper bound of a common name
_MAX_COMMON_NAME_LENGTH = 64


def make_key() -> ec.EllipticCurvePrivateKey:
    """Generate a fresh P-256 certificate key."""
    return ec.generate_private_key(ec.SECP256R1())


def make_csr(key: ec.EllipticCurvePrivateKey, domains: Sequence[str], common_name: str,
             profile: Optional['SubjectProfile'] = None) -> bytes:
    """Generate a CSR for `domains`.

    :param key: certificate private key
    :param list domains: subjectAltNames of the CSR
    :param str common_name: subject common name, dropped if too long
    :param profile: optional subject fields; empty ones are left out

    :returns: PEM encoded CSR
    :rtype: bytes

    """
    attributes = []
    if profile is not None:
        for oid, value in ((NameOID.COUNTRY_NAME, profile.country),
                           (NameOID.STATE_OR_PROVINCE_NAME, profile.state),
                           (NameOID.LOCALITY_NAME, profile.locality),
                           (NameOID.ORGANIZATION_NAME, profile.organization),
                           (NameOID.ORGANIZATIONAL_UNIT_NAME, profile.organizational_unit)):
            if value:
                attributes.append(x509.NameAttribute(oid, value))
    if len(common_name) <= _MAX_COMMON_NAME_LENGTH:
        attributes.append(x509.NameAttribute(NameOID.COMMON_NAME, common_name))
    else:
        logger.debug('Common name %s is too long, leaving it out of the CSR', common_name)

    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name(attributes))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )
    return csr.public_bytes(serialization.Encoding.PEM)


def export_bundle(key: ec.EllipticCurvePrivateKey, fullchain_pem: str, password: str,
                  friendly_name: str) -> bytes:
    """Pack the key and the issued chain into a password protected PKCS#12 archive.

    :raises ValueError: if the chain holds no certificate
    """
    chain = x509.load_pem_x509_certificates(fullchain_pem.encode())
    return pkcs12.serialize_key_and_certificates(
        friendly_name.encode(), key, chain[0], chain[1:] or None,
        serialization.BestAvailableEncryption(password.encode()))


class CertificateFinalizer:
    """Turns a validated order into a certificate bundle.

    :param float timeout: seconds to wait for the CA to issue the certificate

    """
    def __init__(self, timeout: float = 90) -> None:
        self.timeout = timeout

    def finalize(self, order: 'AcmeOrder', request: 'CertificateRequest') -> bytes:
        """Issue the certificate of a validated order.

        A new key is generated for every call.

        :returns: PKCS#12 bundle encrypted with ``request.export_password``
        :raises errors.FinalizationError: if any step fails

        """
        key = make_key()
        try:
            csr_pem = make_csr(key, request.order_domains, request.common_name,
                               request.profile)
        except ValueError as e:
            raise errors.FinalizationError('Unable to create the CSR: {0}'.format(e))

        deadline = datetime.datetime.now() + datetime.timedelta(seconds=self.timeout)
        fullchain_pem = order.finalize(csr_pem, deadline)
        logger.debug('Certificate issued for %s', ', '.join(request.order_domains))

        try:
            return export_bundle(key, fullchain_pem, request.export_password,
                                 request.friendly_name)
        except ValueError as e:
            raise errors.FinalizationError('Unable to export the certificate: {0}'.format(e))
