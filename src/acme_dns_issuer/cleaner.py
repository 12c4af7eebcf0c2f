"""Removes dns-01 validation records."""
import logging
from typing import Iterable

from acme_dns_issuer import dns_zone
from acme_dns_issuer import errors
from acme_dns_issuer.publisher import resolve_zone

logger = logging.getLogger(__name__)


class ChallengeCleaner:
    """Deletes every TXT record at the challenge host of some domains.

    :param .DnsAccount dns_account: account owning the zones
    :param float timeout: seconds allowed for each provider call

    """
    def __init__(self, dns_account: dns_zone.DnsAccount, timeout: float = 30) -> None:
        self.dns_account = dns_account
        self.timeout = timeout

    def cleanup(self, domains: Iterable[str]) -> int:
        """Remove the challenge records of `domains`.

        Running it again on the same domains is a no-op. A failure on one
        domain does not stop the cleanup of the others.

        :returns: number of deleted records
        :raises errors.DnsCleanupError: listing every domain whose records
            could not all be removed

        """
        failures: list[tuple[str, str]] = []
        seen: set[tuple[str, str]] = set()
        deleted = 0
        for domain in domains:
            zone_name, host = resolve_zone(domain)
            if (zone_name, host) in seen:
                continue
            seen.add((zone_name, host))
            try:
                deleted += self._cleanup_host(zone_name, host)
            except errors.DnsProviderError as e:
                logger.debug('Encountered error cleaning up %s: %s', domain, e, exc_info=True)
                failures.append((domain, str(e)))

        if failures:
            raise errors.DnsCleanupError(failures)
        logger.info('Removed %d challenge record(s)', deleted)
        return deleted

    def _cleanup_host(self, zone_name: str, host: str) -> int:
        zone = dns_zone.call_with_timeout(self.timeout, self.dns_account.get_zone, zone_name)
        if zone is None:
            logger.debug('Zone %s not found, nothing to clean up', zone_name)
            return 0

        records = dns_zone.call_with_timeout(self.timeout, zone.list_records, 'TXT', host)
        deleted = 0
        for record in records:
            if record.rtype != 'TXT' or record.host != host:
                continue
            dns_zone.call_with_timeout(self.timeout, record.delete)
            deleted += 1
        return deleted
