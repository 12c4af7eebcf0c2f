"""DNS zone capability: record CRUD on a DNS provider's zones."""
import abc
import concurrent.futures
import logging
from typing import Any
from typing import Callable
from typing import Mapping
from typing import Optional
from typing import TypeVar

from lexicon.client import Client
from lexicon.config import ConfigResolver
from requests.exceptions import HTTPError
from requests.exceptions import RequestException

from acme_dns_issuer import errors

logger = logging.getLogger(__name__)

T = TypeVar('T')


def call_with_timeout(timeout: float, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a DNS provider call, giving up after `timeout` seconds.

    A call that times out keeps running in its worker thread, its result is
    discarded.

    :raises errors.DnsProviderError: if the call did not return in time
    """
    executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix='dns')
    try:
        future = executor.submit(func, *args, **kwargs)
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            raise errors.DnsProviderError(
                'DNS provider did not answer within {0} seconds'.format(timeout))
    finally:
        executor.shutdown(wait=False)


class Record(metaclass=abc.ABCMeta):
    """A resource record of a `Zone`.

    :ivar str rtype: record type, e.g. ``TXT``
    :ivar str host: name relative to the zone, ``@`` for the apex
    :ivar str value: record content

    """
    def __init__(self, rtype: str, host: str, value: str) -> None:
        self.rtype = rtype
        self.host = host
        self.value = value

    @abc.abstractmethod
    def delete(self) -> None:
        """Delete the record from its zone."""

    @abc.abstractmethod
    def update_content(self, value: str) -> None:
        """Replace the content of the record."""

    def __repr__(self) -> str:
        return '{0}({1} {2} {3!r})'.format(
            self.__class__.__name__, self.host, self.rtype, self.value)


class Zone(metaclass=abc.ABCMeta):
    """A zone managed by the DNS provider.

    :ivar str name: registrable domain of the zone, e.g. ``example.com``

    """
    def __init__(self, name: str) -> None:
        self.name = name

    @abc.abstractmethod
    def add_record(self, rtype: str, host: str, value: str, ttl: int) -> None:
        """Create a record. Existing records with the same name are kept."""

    @abc.abstractmethod
    def list_records(self, rtype: Optional[str] = None,
                     host: Optional[str] = None) -> list[Record]:
        """List the records of the zone, optionally filtered by type and host."""


class DnsAccount(metaclass=abc.ABCMeta):
    """An authenticated account on a DNS provider."""

    @abc.abstractmethod
    def get_zone(self, name: str) -> Optional[Zone]:
        """Look a zone up by its name.

        :returns: the zone, or ``None`` if the account does not manage it
        :raises errors.DnsProviderError: if the provider cannot be queried
        """


def relative_host(name: str, zone: str) -> str:
    """Turn a fully qualified record name into a host relative to `zone`.

    >>> relative_host('_acme-challenge.foo.example.com.', 'example.com')
    '_acme-challenge.foo'

    """
    name = name.rstrip('.').lower()
    if name == zone:
        return '@'
    if name.endswith('.' + zone):
        return name[:-len(zone) - 1]
    return name


class LexiconRecord(Record):
    """Record of a `LexiconZone`, addressed by its provider identifier."""

    def __init__(self, zone: 'LexiconZone', identifier: str,
                 rtype: str, host: str, value: str) -> None:
        super().__init__(rtype, host, value)
        self.zone = zone
        self.identifier = identifier

    def delete(self) -> None:
        logger.debug('Deleting %s record %s from zone %s', self.rtype, self.host, self.zone.name)
        self.zone.operation('delete_record', identifier=self.identifier)

    def update_content(self, value: str) -> None:
        self.zone.operation('update_record', identifier=self.identifier,
                            rtype=self.rtype, name=self.host, content=value)
        self.value = value


class LexiconZone(Zone):
    """Zone managed through a Lexicon provider."""

    def __init__(self, account: 'LexiconDnsAccount', name: str) -> None:
        super().__init__(name)
        self.account = account

    def operation(self, method: str, ttl: Optional[int] = None, **kwargs: Any) -> Any:
        """Call a Lexicon operation on this zone.

        :raises errors.DnsProviderError: if the provider API call fails
        """
        try:
            with Client(self.account.build_config(self.name, ttl)) as operations:
                return getattr(operations, method)(**kwargs)
        except RequestException as e:
            logger.debug('Encountered error during %s on zone %s: %s', method, self.name, e,
                         exc_info=True)
            raise errors.DnsProviderError(
                'Error during {0} on zone {1}: {2}'.format(method, self.name, e))

    def add_record(self, rtype: str, host: str, value: str, ttl: int) -> None:
        logger.debug('Adding %s record %s to zone %s', rtype, host, self.name)
        self.operation('create_record', ttl=ttl, rtype=rtype, name=host, content=value)

    def list_records(self, rtype: Optional[str] = None,
                     host: Optional[str] = None) -> list[Record]:
        entries = self.operation('list_records', rtype=rtype, name=host)
        records: list[Record] = []
        for entry in entries:
            records.append(LexiconRecord(self, entry['id'], entry['type'],
                                         relative_host(entry['name'], self.name),
                                         entry.get('content', '')))
        return records


class LexiconDnsAccount(DnsAccount):
    """DNS provider account backed by Lexicon.

    :param str provider_name: name of the Lexicon provider, e.g. ``dnsimple``
    :param dict provider_options: provider specific options, e.g. ``auth_token``

    """
    def __init__(self, provider_name: str, provider_options: Mapping[str, Any]) -> None:
        self.provider_name = provider_name
        self.provider_options = dict(provider_options)

    def build_config(self, domain: str, ttl: Optional[int] = None) -> ConfigResolver:
        """Lexicon configuration bound to one zone."""
        dict_config: dict[str, Any] = {
            'domain': domain,
            'provider_name': self.provider_name,
            self.provider_name: dict(self.provider_options),
        }
        if ttl is not None:
            dict_config['ttl'] = ttl
        return ConfigResolver().with_dict(dict_config).with_env()

    def get_zone(self, name: str) -> Optional[Zone]:
        try:
            # Opening the client authenticates against the zone
            with Client(self.build_config(name)):
                return LexiconZone(self, name)
        except HTTPError as e:
            raise errors.DnsProviderError(
                'Error determining zone identifier for {0}: {1}.'.format(name, e))
        except Exception as e:  # pylint: disable=broad-except
            if str(e).startswith('No domain found'):
                logger.debug('Zone %s is not managed by this %s account', name,
                             self.provider_name)
                return None
            raise errors.DnsProviderError(
                'Unexpected error determining zone identifier for {0}: {1}'.format(name, e))
