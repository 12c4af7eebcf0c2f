"""acme-dns-issuer command line."""
import argparse
import logging
import os
import sys
from typing import Any
from typing import Optional
from typing import Sequence
from typing import Union

import configargparse

import acme_dns_issuer
from acme_dns_issuer import errors
from acme_dns_issuer import issuer as issuer_lib
from acme_dns_issuer import session as session_lib
from acme_dns_issuer import util
from acme_dns_issuer._internal import constants
from acme_dns_issuer._internal import lock
from acme_dns_issuer._internal import log
from acme_dns_issuer.configuration import IssuerConfig

logger = logging.getLogger(__name__)


def flag_default(name: str) -> Any:
    """Default value of a command line flag."""
    return constants.CLI_DEFAULTS[name]


class _DomainsAction(argparse.Action):
    """Action class for parsing domains, repeatable and comma separated."""

    def __call__(self, parser: argparse.ArgumentParser, namespace: argparse.Namespace,
                 domain: Union[str, Sequence[Any], None],
                 option_string: Optional[str] = None) -> None:
        domains = list(getattr(namespace, self.dest) or [])
        if isinstance(domain, str):
            domains.extend(d.strip() for d in domain.split(',') if d.strip())
        setattr(namespace, self.dest, domains)


def prepare_and_parse_args(args: Sequence[str]) -> argparse.Namespace:
    """Build the parser and parse `args`.

    Options can also come from the config file or from ``ACME_DNS_ISSUER_*``
    environment variables, the command line wins.
    """
    parser = configargparse.ArgParser(
        prog='acme-dns-issuer',
        description='Obtain certificates from an ACME CA with dns-01 challenges.',
        args_for_setting_config_path=['-c', '--config'],
        default_config_files=flag_default('config_files'),
        auto_env_var_prefix=constants.ENV_VAR_PREFIX,
        config_arg_help_message='path to config file (default: {0})'.format(
            ' and '.join(flag_default('config_files'))))

    parser.add_argument('--version', action='version',
                        version='%(prog)s {0}'.format(acme_dns_issuer.__version__))
    parser.add_argument('-v', '--verbose', dest='verbose_count', action='count',
                        default=flag_default('verbose_count'),
                        help='This flag can be used multiple times to incrementally '
                             'increase the verbosity of output, e.g. -vvv.')
    parser.add_argument('-q', '--quiet', action='store_true', default=flag_default('quiet'),
                        help='Silence all output except errors.')

    account = parser.add_argument_group('account')
    account.add_argument('-m', '--email', default=flag_default('email'),
                         help='Contact address of the ACME account.')
    account.add_argument('--staging', action='store_true', default=flag_default('staging'),
                         help="Use the Let's Encrypt staging environment.")
    account.add_argument('--server', default=flag_default('server'),
                         help='ACME directory URL, overrides --staging.')
    account.add_argument('--no-verify-ssl', action='store_true',
                         default=flag_default('no_verify_ssl'),
                         help='Disable verification of the ACME server certificate.')

    certificate = parser.add_argument_group('certificate')
    certificate.add_argument('-d', '--domains', '--domain', dest='domains',
                             action=_DomainsAction, default=flag_default('domains'),
                             help='Domain names to include. The first one is the common '
                                  'name. Repeat the flag or separate names with commas.')
    certificate.add_argument('--wildcard', action='store_true', default=flag_default('wildcard'),
                             help='Also request *.<domain> for every domain.')
    certificate.add_argument('--country', default=flag_default('country'))
    certificate.add_argument('--state', default=flag_default('state'))
    certificate.add_argument('--locality', default=flag_default('locality'))
    certificate.add_argument('--organization', default=flag_default('organization'))
    certificate.add_argument('--organizational-unit',
                             default=flag_default('organizational_unit'))
    certificate.add_argument('--export-password', default=flag_default('export_password'),
                             help='Password protecting the PKCS#12 bundle.')
    certificate.add_argument('--export-password-file',
                             default=flag_default('export_password_file'),
                             help='File whose first line is the bundle password.')

    dns = parser.add_argument_group('dns')
    dns.add_argument('--dns-provider', default=flag_default('dns_provider'),
                     help='Lexicon provider hosting the zones.')
    dns.add_argument('--dns-credentials', default=flag_default('dns_credentials'),
                     help='Credentials INI file holding dns_<provider>_token.')
    dns.add_argument('--dns-ttl', type=int, default=flag_default('dns_ttl'),
                     help='TTL of the challenge records.')
    dns.add_argument('--propagation-seconds', type=int,
                     default=flag_default('propagation_seconds'),
                     help='Seconds to wait between publishing the records and '
                          'asking the CA to validate them.')
    dns.add_argument('--dns-timeout', type=int, default=flag_default('dns_timeout'),
                     help='Seconds allowed for each DNS provider call.')

    tuning = parser.add_argument_group('timeouts')
    tuning.add_argument('--validation-timeout', type=int,
                        default=flag_default('validation_timeout'),
                        help='Seconds to wait for the CA to validate the challenges.')
    tuning.add_argument('--finalize-timeout', type=int, default=flag_default('finalize_timeout'),
                        help='Seconds to wait for the CA to issue the certificate.')
    tuning.add_argument('--max-workers', type=int, default=flag_default('max_workers'),
                        help='Concurrent CA requests.')

    paths = parser.add_argument_group('paths')
    paths.add_argument('--config-dir', default=flag_default('config_dir'),
                       help='Account keys and lock files location.')
    paths.add_argument('--logs-dir', default=flag_default('logs_dir'),
                       help='Logs directory.')
    paths.add_argument('--output-dir', default=flag_default('output_dir'),
                       help='Directory receiving the <domains>.pfx bundle.')

    return parser.parse_args(args)


def bundle_path(config: IssuerConfig, request: issuer_lib.CertificateRequest) -> str:
    """Where the bundle of `request` is written."""
    return os.path.join(config.output_dir, util.domains_slug(request.domains) + '.pfx')


def run(config: IssuerConfig) -> str:
    """Issue a certificate and write its bundle.

    :returns: path of the written bundle
    :raises errors.Error: if the certificate cannot be issued or saved
    """
    profile = issuer_lib.SubjectProfile(
        country=config.country, state=config.state, locality=config.locality,
        organization=config.organization, organizational_unit=config.organizational_unit)
    request = issuer_lib.CertificateRequest(
        config.domains, config.get_export_password(), profile, config.wildcard)

    path = bundle_path(config, request)
    if os.path.exists(path):
        raise errors.Error('{0} already exists, refusing to overwrite it'.format(path))

    with lock.lock_domains(config.locks_dir, request.domains):
        session = session_lib.login(config)
        result = issuer_lib.Issuer.from_config(session, config).issue(request)
        if result.cleanup_error is not None:
            logger.warning('Some challenge records were left in place, remove them manually.')
        try:
            util.make_or_verify_dir(config.output_dir)
            with util.safe_open(path, 'wb', chmod=0o600) as bundle_file:
                bundle_file.write(result.bundle)
        except OSError as e:
            raise errors.Error('Unable to write the bundle {0}: {1}'.format(path, e))
    return path


def main(cli_args: Optional[list[str]] = None) -> int:
    """Run acme-dns-issuer.

    :param cli_args: command line, defaults to ``sys.argv[1:]``
    :returns: process exit status

    """
    if cli_args is None:
        cli_args = sys.argv[1:]

    log.pre_arg_parse_setup()
    logger.debug('acme-dns-issuer version: %s', acme_dns_issuer.__version__)

    args = prepare_and_parse_args(cli_args)
    try:
        config = IssuerConfig(args)
        log_path = log.post_arg_parse_setup(config)
        logger.debug('Debug log written to %s', log_path)
        path = run(config)
    except errors.Error as e:
        logger.debug('Exiting with an error:', exc_info=True)
        logger.error('%s', e)
        return 1

    if not config.quiet:
        print('Certificate bundle saved at {0}'.format(path))
    return 0


if __name__ == '__main__':
    sys.exit(main())  # pragma: no cover
