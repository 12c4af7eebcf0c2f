"""Login step: authenticated ACME and DNS provider accounts."""
import logging
from typing import NamedTuple
from typing import Optional

from acme_dns_issuer import account as account_lib
from acme_dns_issuer import acme_session
from acme_dns_issuer import dns_zone
from acme_dns_issuer import errors
from acme_dns_issuer.configuration import IssuerConfig

logger = logging.getLogger(__name__)


class Session(NamedTuple):
    """Accounts an issuance runs with.

    Owned by the caller, it can serve several issuance calls.

    :ivar account: ACME account key
    :ivar acme: session signed with that key
    :ivar dns: account on the DNS provider

    """
    account: account_lib.Account
    acme: acme_session.AcmeSession
    dns: dns_zone.DnsAccount


def login(config: IssuerConfig,
          storage: Optional[account_lib.AccountFileStorage] = None,
          dns_account: Optional[dns_zone.DnsAccount] = None) -> Session:
    """Open the ACME and DNS provider sessions.

    The account key saved for the configured CA and contact is reused, its
    registration is looked up and never created again. Without a saved key,
    a new key is generated, registered and saved.

    :param config: configuration
    :param storage: account key storage, in ``config.config_dir`` by default
    :param dns_account: DNS provider account, built from the DNS credentials
        file by default

    :raises errors.AccountError: if the account cannot be loaded, registered
        or saved
    :raises errors.Error: if the DNS credentials are missing or invalid

    """
    if not config.email:
        raise errors.AccountError('A contact email address is required, set --email')
    if dns_account is None:
        dns_account = dns_zone.LexiconDnsAccount(config.dns_provider,
                                                 config.dns_provider_options())
    if storage is None:
        storage = account_lib.AccountFileStorage(config.config_dir)

    identity = account_lib.AccountIdentity(config.environment, config.email)
    acc = storage.load(identity)
    if acc is not None:
        acme = acme_session.AcmeSession.connect(
            config.server, acc.key, acc.alg, config.user_agent, config.verify_ssl)
        acme.resume_account()
        logger.info('Using the existing account of %s on %s', config.email, config.environment)
    else:
        acc = account_lib.Account(account_lib.generate_account_key())
        acme = acme_session.AcmeSession.connect(
            config.server, acc.key, acc.alg, config.user_agent, config.verify_ssl)
        regr = acme.new_account(config.email)
        storage.save(acc, identity)
        logger.info('Registered account %s for %s on %s', regr.uri, config.email,
                    config.environment)

    return Session(acc, acme, dns_account)
