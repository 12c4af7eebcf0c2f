"""Internal implementation details of acme_dns_issuer. Not part of the public API."""
