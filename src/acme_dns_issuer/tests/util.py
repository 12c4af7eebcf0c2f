"""Test utilities."""
import argparse
import datetime
import logging
from multiprocessing import Event
from multiprocessing import Process
import os
import shutil
import tempfile
from typing import Optional
import unittest

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from acme_dns_issuer import configuration
from acme_dns_issuer import dns_zone
from acme_dns_issuer import errors
from acme_dns_issuer._internal import constants
from acme_dns_issuer._internal import lock


class TempDirTestCase(unittest.TestCase):
    """Base test class which sets up and tears down a temporary directory"""

    def setUp(self):
        """Execute before test"""
        self.tempdir = tempfile.mkdtemp()

    def tearDown(self):
        """Execute after test"""
        logging.shutdown()
        # Remove logging handlers that have been closed so they won't be
        # accidentally used in future tests.
        logging.getLogger().handlers = []
        shutil.rmtree(self.tempdir)


def make_namespace(tempdir: str, **kwargs) -> argparse.Namespace:
    """Namespace holding every default option, with paths under `tempdir`."""
    options = dict(constants.CLI_DEFAULTS)
    options.update(
        email='admin@example.com',
        config_dir=tempdir + '/config',
        logs_dir=tempdir + '/logs',
        output_dir=tempdir + '/out',
    )
    options.update(kwargs)
    return argparse.Namespace(**options)


class ConfigTestCase(TempDirTestCase):
    """Test class which sets up an IssuerConfig object."""
    def setUp(self):
        super().setUp()
        self.config = configuration.IssuerConfig(make_namespace(self.tempdir))


def write_credentials(tempdir: str, content: str, mode: int = 0o600) -> str:
    """Write a DNS credentials INI file under `tempdir` and return its path."""
    path = os.path.join(tempdir, 'credentials.ini')
    with open(path, 'w') as f:
        f.write(content)
    os.chmod(path, mode)
    return path


class FakeRecord(dns_zone.Record):
    """Record of a `FakeZone`."""
    def __init__(self, zone: 'FakeZone', rtype: str, host: str, value: str) -> None:
        super().__init__(rtype, host, value)
        self.zone = zone

    def delete(self) -> None:
        if self.zone.fail_delete:
            raise errors.DnsProviderError('delete refused')
        self.zone.records.remove(self)

    def update_content(self, value: str) -> None:
        self.value = value


class FakeZone(dns_zone.Zone):
    """In-memory zone.

    :ivar list records: records of the zone
    :ivar int fail_add_after: number of records accepted before creation fails
    :ivar bool fail_delete: every deletion fails

    """
    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.records: list[FakeRecord] = []
        self.fail_add_after: Optional[int] = None
        self.fail_delete = False
        self.added = 0

    def add_record(self, rtype: str, host: str, value: str, ttl: int) -> None:
        if self.fail_add_after is not None and self.added >= self.fail_add_after:
            raise errors.DnsProviderError('create refused')
        self.added += 1
        self.records.append(FakeRecord(self, rtype, host, value))

    def list_records(self, rtype: Optional[str] = None,
                     host: Optional[str] = None) -> list[dns_zone.Record]:
        return [record for record in self.records
                if (rtype is None or record.rtype == rtype)
                and (host is None or record.host == host)]

    def txt_values(self, host: str) -> list[str]:
        return [record.value for record in self.list_records('TXT', host)]


class FakeDnsAccount(dns_zone.DnsAccount):
    """In-memory DNS provider account owning some zones."""
    def __init__(self, *zone_names: str) -> None:
        self.zones = {name: FakeZone(name) for name in zone_names}
        self.lookups: list[str] = []

    def get_zone(self, name: str) -> Optional[dns_zone.Zone]:
        self.lookups.append(name)
        return self.zones.get(name)


def make_chain_pem(domains: list[str],
                   public_key: Optional[ec.EllipticCurvePublicKey] = None) -> str:
    """PEM of a leaf certificate for `domains` followed by its self-signed issuer."""
    if public_key is None:
        public_key = ec.generate_private_key(ec.SECP256R1()).public_key()
    ca_key = ec.generate_private_key(ec.SECP256R1())
    ca_name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, 'Test CA')])
    now = datetime.datetime.now(datetime.timezone.utc)

    ca_cert = (
        x509.CertificateBuilder()
        .subject_name(ca_name)
        .issuer_name(ca_name)
        .public_key(ca_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=1))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(ca_key, hashes.SHA256())
    )
    leaf_cert = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])]))
        .issuer_name(ca_name)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=1))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]),
                       critical=False)
        .sign(ca_key, hashes.SHA256())
    )
    return b''.join(cert.public_bytes(serialization.Encoding.PEM)
                    for cert in (leaf_cert, ca_cert)).decode()


def _handle_lock(event_in, event_out, path):
    """Acquire a file lock on given path, then wait to release it."""
    my_lock = lock.LockFile(path)
    try:
        event_out.set()
        assert event_in.wait(timeout=20), 'Timeout while waiting to release the lock.'
    finally:
        my_lock.release()


def lock_and_call(callback, path_to_lock):
    """
    Grab a lock on path_to_lock from a foreign process then execute the callback.
    :param callable callback: object to call after acquiring the lock
    :param str path_to_lock: path to file to lock
    """
    emit_event = Event()
    receive_event = Event()
    process = Process(target=_handle_lock, args=(emit_event, receive_event, path_to_lock))
    process.start()

    # Wait confirmation that lock is acquired
    assert receive_event.wait(timeout=10), 'Timeout while waiting to acquire the lock.'
    # Execute the callback
    callback()
    # Trigger unlock from foreign process
    emit_event.set()

    # Wait for process termination
    process.join(timeout=10)
    assert process.exitcode == 0
