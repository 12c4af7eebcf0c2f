"""acme_dns_issuer constants."""
import logging
import os
from typing import Any

PRODUCTION_DIRECTORY_URL = "https://acme-v02.api.letsencrypt.org/directory"
"""Let's Encrypt production ACME v2 directory."""

STAGING_DIRECTORY_URL = "https://acme-staging-v02.api.letsencrypt.org/directory"
"""Let's Encrypt staging ACME v2 directory."""

ENVIRONMENTS = {
    "production": PRODUCTION_DIRECTORY_URL,
    "staging": STAGING_DIRECTORY_URL,
}
"""Directory URL of each CA environment an account key can be bound to."""

CHALLENGE_LABEL = "_acme-challenge"
"""Leading label of every dns-01 validation record."""

ENV_VAR_PREFIX = "ACME_DNS_ISSUER_"
"""Prefix of the environment variables read by the command line parser."""

CLI_DEFAULTS: dict[str, Any] = dict(  # noqa
    config_files=[
        os.path.join(os.environ.get("XDG_CONFIG_HOME", "~/.config"),
                     "acme-dns-issuer", "cli.ini"),
    ],

    verbose_count=0,
    quiet=False,
    email=None,
    staging=False,
    server=None,
    no_verify_ssl=False,
    domains=[],
    wildcard=False,
    country=None,
    state=None,
    locality=None,
    organization=None,
    organizational_unit=None,
    export_password=None,
    export_password_file=None,
    dns_provider="dnsimple",
    dns_credentials=None,
    dns_ttl=60,
    propagation_seconds=5,
    validation_timeout=90,
    finalize_timeout=90,
    dns_timeout=30,
    max_workers=8,
    config_dir=os.path.join(os.environ.get("XDG_DATA_HOME", "~/.local/share"),
                            "acme-dns-issuer"),
    logs_dir=os.path.join(os.environ.get("XDG_STATE_HOME", "~/.local/state"),
                          "acme-dns-issuer"),
    output_dir=".",
)
"""Defaults for CLI flags and `.IssuerConfig` attributes."""

QUIET_LOGGING_LEVEL = logging.ERROR
"""Logging level to use in quiet mode."""

DEFAULT_LOGGING_LEVEL = logging.WARNING
"""Default logging level to use when not in quiet mode."""

LOG_FILE_NAME = "acme-dns-issuer.log"
"""Name of the rotating log file in the logs directory."""

MAX_LOG_BACKUPS = 10
"""Number of rotated log files that are kept."""

ACCOUNTS_DIR = "accounts"
"""Directory where account keys are saved, relative to `IssuerConfig.config_dir`."""

LOCKS_DIR = "locks"
"""Directory holding one lock file per domain set, relative to `IssuerConfig.config_dir`."""

USER_AGENT = "acme-dns-issuer/{version}"
"""User agent sent to the ACME CA."""
