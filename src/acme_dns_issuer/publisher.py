"""Publishes dns-01 validation records."""
import logging
from typing import Iterable

from acme_dns_issuer import dns_zone
from acme_dns_issuer import errors
from acme_dns_issuer._internal import constants

logger = logging.getLogger(__name__)


def resolve_zone(domain: str) -> tuple[str, str]:
    """Find the zone and the challenge host of a domain.

    The zone is the registrable root, taken as the last two labels. The host
    is relative to that zone.

    >>> resolve_zone('foo.example.com')
    ('example.com', '_acme-challenge.foo')
    >>> resolve_zone('*.example.com')
    ('example.com', '_acme-challenge')

    """
    domain = domain.lower().rstrip('.')
    if domain.startswith('*.'):
        domain = domain[2:]
    labels = domain.split('.')
    zone = '.'.join(labels[-2:])
    host = constants.CHALLENGE_LABEL
    if labels[:-2]:
        host += '.' + '.'.join(labels[:-2])
    return zone, host


def group_by_host(pairs: Iterable[tuple[str, str]]) -> dict[tuple[str, str], list[str]]:
    """Group (domain, digest) pairs by (zone, host), keeping the order of the digests."""
    groups: dict[tuple[str, str], list[str]] = {}
    for domain, digest in pairs:
        groups.setdefault(resolve_zone(domain), []).append(digest)
    return groups


class ChallengePublisher:
    """Creates one TXT record per challenge digest.

    Records are only ever added: a record left over by an interrupted run is
    kept, the cleaner removes every record at the challenge host.

    :param .DnsAccount dns_account: account owning the zones
    :param int ttl: TTL of the created records
    :param float timeout: seconds allowed for each provider call

    """
    def __init__(self, dns_account: dns_zone.DnsAccount, ttl: int = 60,
                 timeout: float = 30) -> None:
        self.dns_account = dns_account
        self.ttl = ttl
        self.timeout = timeout

    def publish(self, pairs: Iterable[tuple[str, str]]) -> list[tuple[str, str, str]]:
        """Publish the digest of every (domain, digest) pair.

        :returns: ``(zone, host, value)`` of every created record
        :raises errors.DnsPublishError: if a zone is missing or a record cannot
            be created; it lists the records created before the failure

        """
        published: list[tuple[str, str, str]] = []
        zones: dict[str, dns_zone.Zone] = {}
        for (zone_name, host), digests in group_by_host(pairs).items():
            try:
                if zone_name not in zones:
                    zone = dns_zone.call_with_timeout(
                        self.timeout, self.dns_account.get_zone, zone_name)
                    if zone is None:
                        raise errors.DnsPublishError(
                            'Zone {0} is not managed by the DNS account'.format(zone_name),
                            published)
                    zones[zone_name] = zone
                for digest in digests:
                    dns_zone.call_with_timeout(
                        self.timeout, zones[zone_name].add_record,
                        'TXT', host, digest, self.ttl)
                    published.append((zone_name, host, digest))
                    logger.debug('Published TXT record %s in zone %s', host, zone_name)
            except errors.DnsProviderError as e:
                raise errors.DnsPublishError(
                    'Error adding TXT record {0} in zone {1}: {2}'.format(host, zone_name, e),
                    published)
        logger.info('Published %d challenge record(s)', len(published))
        return published
