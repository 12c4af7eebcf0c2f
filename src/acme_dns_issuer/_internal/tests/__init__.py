"""Tests for acme_dns_issuer."""
