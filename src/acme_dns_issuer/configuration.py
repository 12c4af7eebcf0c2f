"""User-supplied configuration."""
import argparse
import logging
import os
from typing import Any
from typing import Callable
from typing import Optional
from urllib import parse

import configobj

from acme_dns_issuer import __version__
from acme_dns_issuer import errors
from acme_dns_issuer import util
from acme_dns_issuer._internal import constants

logger = logging.getLogger(__name__)


class IssuerConfig:
    """Configuration wrapper around :class:`argparse.Namespace`.

    The following attributes are resolved from the parsed options and the
    relative paths of :py:mod:`acme_dns_issuer._internal.constants`:

      - `locks_dir`
      - `server`
      - `environment`

    Every other attribute is read from and written to the namespace.

    :ivar namespace: Namespace typically produced by
        :meth:`argparse.ArgumentParser.parse_args`.
    :type namespace: :class:`argparse.Namespace`

    """

    def __init__(self, namespace: argparse.Namespace) -> None:
        self.namespace: argparse.Namespace
        # Avoid recursion loop because of the delegation defined in __setattr__
        object.__setattr__(self, 'namespace', namespace)

        self.namespace.config_dir = os.path.abspath(os.path.expanduser(self.namespace.config_dir))
        self.namespace.logs_dir = os.path.abspath(os.path.expanduser(self.namespace.logs_dir))
        self.namespace.output_dir = os.path.abspath(os.path.expanduser(self.namespace.output_dir))

        _check_config_sanity(self)

    # Delegate any attribute not explicitly defined to the underlying namespace object.

    def __getattr__(self, name: str) -> Any:
        return getattr(self.namespace, name)

    def __setattr__(self, name: str, value: Any) -> None:
        setattr(self.namespace, name, value)

    @property
    def server(self) -> str:
        """ACME directory URL."""
        if self.namespace.server:
            return self.namespace.server
        if self.namespace.staging:
            return constants.STAGING_DIRECTORY_URL
        return constants.PRODUCTION_DIRECTORY_URL

    @property
    def environment(self) -> str:
        """Name of the CA environment the account key is bound to.

        ``production`` or ``staging`` for the Let's Encrypt directories, the
        host name of the directory for any other CA.
        """
        for name, url in constants.ENVIRONMENTS.items():
            if self.server == url:
                return name
        return parse.urlparse(self.server).netloc

    @property
    def locks_dir(self) -> str:
        """Directory holding the lock file of each domain set."""
        return os.path.join(self.namespace.config_dir, constants.LOCKS_DIR)

    @property
    def user_agent(self) -> str:
        return constants.USER_AGENT.format(version=__version__)

    @property
    def verify_ssl(self) -> bool:
        return not self.namespace.no_verify_ssl

    def get_export_password(self) -> str:
        """The password protecting the exported bundle.

        :raises errors.Error: if none is configured
        """
        if self.namespace.export_password_file:
            return util.read_secret_file(self.namespace.export_password_file)
        if not self.namespace.export_password:
            raise errors.Error(
                'An export password is required, set --export-password or '
                '--export-password-file')
        return self.namespace.export_password

    def dns_provider_options(self) -> dict[str, str]:
        """Options of the Lexicon provider, read from the DNS credentials file.

        :raises errors.Error: if the file is missing, invalid or lacks the token
        """
        provider = self.namespace.dns_provider
        if not self.namespace.dns_credentials:
            raise errors.Error(
                'A DNS credentials file is required, set --dns-credentials')
        credentials = CredentialsConfiguration(
            os.path.expanduser(self.namespace.dns_credentials),
            lambda var: 'dns_{0}_{1}'.format(provider.replace('-', '_'), var))
        credentials.require({'token': 'API token of the {0} account'.format(provider)})
        return {'auth_token': str(credentials.conf('token'))}


def _check_config_sanity(config: IssuerConfig) -> None:
    """Validate command line options and display error message if
    requirements are not met.

    :param config: IssuerConfig instance holding user configuration
    :type config: :class:`acme_dns_issuer.configuration.IssuerConfig`

    """
    for option in ('dns_ttl', 'propagation_seconds', 'validation_timeout',
                   'finalize_timeout', 'dns_timeout'):
        if getattr(config.namespace, option) < 0:
            raise errors.Error('--{0} must not be negative'.format(option.replace('_', '-')))
    if config.namespace.max_workers < 1:
        raise errors.Error('--max-workers must be at least 1')
    if config.namespace.server and not config.namespace.server.startswith('https://'):
        raise errors.Error('--server must be an https:// URL')


class CredentialsConfiguration:
    """Represents a user-supplied file which stores API credentials."""

    def __init__(self, filename: str, mapper: Callable[[str], str] = lambda x: x) -> None:
        """
        :param str filename: A path to the configuration file.
        :param callable mapper: A transformation to apply to configuration key names
        :raises errors.Error: If the file does not exist or is not a valid format.
        """
        validate_file_permissions(filename)

        try:
            self.confobj = configobj.ConfigObj(filename)
        except configobj.ConfigObjError as e:
            logger.debug("Error parsing credentials configuration '%s': %s",
                         filename, e, exc_info=True)
            raise errors.Error(
                "Error parsing credentials configuration '{}': {}".format(filename, e))

        self.mapper = mapper

    def require(self, required_variables: dict[str, str]) -> None:
        """Ensures that the supplied set of variables are all present in the file.

        :param dict required_variables: Map of variable which must be present to error to display.
        :raises errors.Error: If one or more are missing.
        """
        messages = []

        for var in required_variables:
            if not self._has(var):
                messages.append('Property "{0}" not found (should be {1}).'
                                .format(self.mapper(var), required_variables[var]))
            elif not self._get(var):
                messages.append('Property "{0}" not set (should be {1}).'
                                .format(self.mapper(var), required_variables[var]))

        if messages:
            raise errors.Error(
                'Missing {0} in credentials configuration file {1}:\n * {2}'.format(
                    'property' if len(messages) == 1 else 'properties',
                    self.confobj.filename,
                    '\n * '.join(messages)))

    def conf(self, var: str) -> Optional[str]:
        """Find a configuration value for variable `var`, as transformed by `mapper`."""
        return self._get(var)

    def _has(self, var: str) -> bool:
        return self.mapper(var) in self.confobj

    def _get(self, var: str) -> Optional[str]:
        return self.confobj.get(self.mapper(var))


def validate_file_permissions(filename: str) -> None:
    """Ensure that the specified file exists and warn about unsafe permissions."""
    if not os.path.exists(filename):
        raise errors.Error('File not found: {0}'.format(filename))

    if os.path.isdir(filename):
        raise errors.Error('Path is a directory: {0}'.format(filename))

    if util.has_world_permissions(filename):
        logger.warning('Unsafe permissions on credentials configuration file: %s', filename)
