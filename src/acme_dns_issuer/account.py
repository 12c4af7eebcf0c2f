"""ACME account key storage."""
import logging
import os
from typing import Any
from typing import NamedTuple
from typing import Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
import josepy as jose

from acme_dns_issuer import errors
from acme_dns_issuer import util
from acme_dns_issuer._internal import constants

logger = logging.getLogger(__name__)


class AccountIdentity(NamedTuple):
    """Key under which an account key is persisted."""
    environment: str
    contact: str


class Account:
    """ACME account, identified by its key only.

    The account URL assigned by the CA is not cached locally: it is looked up
    again from the key at every login.

    :ivar .JWK key: Account key

    """
    def __init__(self, key: jose.JWK) -> None:
        self.key = key

    @property
    def alg(self) -> jose.JWASignature:
        """JWS algorithm matching the account key."""
        if self.key.typ == 'EC':
            key_size = self.key.key.key_size
            if key_size == 256:
                return jose.ES256
            elif key_size == 384:
                return jose.ES384
            elif key_size == 521:
                return jose.ES512
            raise errors.AccountError(
                "No matching signing algorithm can be found for the key")
        return jose.RS256

    def to_pem(self) -> bytes:
        """Serialize the account key to PKCS#8 PEM."""
        return self.key.key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption())

    @classmethod
    def from_pem(cls, pem: bytes) -> 'Account':
        """Load an account from a PEM encoded RSA or EC private key."""
        return cls(jose.JWK.load(pem))

    def __repr__(self) -> str:
        return "<{0}({1})>".format(self.__class__.__name__, self.key.thumbprint().hex()[:8])

    def __eq__(self, other: Any) -> bool:
        return isinstance(other, self.__class__) and self.key == other.key


def generate_account_key() -> jose.JWK:
    """Generate a fresh P-256 account key."""
    return jose.JWKEC(key=ec.generate_private_key(ec.SECP256R1()))


class AccountFileStorage:
    """Account keys stored as PEM files.

    Keys live at ``<config_dir>/accounts/<environment>/<contact>.pem``.

    :ivar str config_dir: base directory of the storage

    """
    def __init__(self, config_dir: str) -> None:
        self.config_dir = config_dir

    def key_path(self, identity: AccountIdentity) -> str:
        """Path of the key file for `identity`."""
        if not identity.environment or not identity.contact:
            raise errors.AccountError("An account needs a CA environment and a contact")
        return os.path.join(self.config_dir, constants.ACCOUNTS_DIR,
                            util.safe_filename(identity.environment),
                            util.safe_filename(identity.contact) + '.pem')

    def load(self, identity: AccountIdentity) -> Optional[Account]:
        """Load the account persisted for `identity`.

        :returns: the account, or ``None`` if no key was saved yet
        :raises errors.AccountError: if the key file cannot be read or parsed

        """
        path = self.key_path(identity)
        if not os.path.exists(path):
            logger.debug("No account key found at %s", path)
            return None

        try:
            with open(path, 'rb') as key_file:
                pem = key_file.read()
        except OSError as e:
            raise errors.AccountError(f"Unable to read account key {path}: {e}")

        try:
            account = Account.from_pem(pem)
        except (ValueError, TypeError, jose.errors.Error) as e:
            raise errors.AccountError(f"Invalid account key {path}: {e}")
        logger.debug("Loaded account key from %s", path)
        return account

    def save(self, account: Account, identity: AccountIdentity) -> None:
        """Persist the key of a freshly registered account.

        An existing key is never overwritten: an account key is bound to its
        CA registration for the lifetime of that registration.

        :raises errors.AccountError: if a key already exists for `identity`
            or the file cannot be written

        """
        path = self.key_path(identity)
        try:
            util.make_or_verify_dir(os.path.dirname(path), 0o700)
            with util.safe_open(path, 'wb', chmod=0o600) as key_file:
                key_file.write(account.to_pem())
        except FileExistsError:
            raise errors.AccountError(
                f"An account key already exists at {path}, refusing to overwrite it")
        except OSError as e:
            raise errors.AccountError(f"Unable to save account key {path}: {e}")
        logger.info("Saved account key to %s", path)
