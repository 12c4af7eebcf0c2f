"""acme_dns_issuer test utilities."""
