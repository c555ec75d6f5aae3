"""ACMERECON -- certificate lifecycle reconciler for ACME DNS-01 issuance."""

__version__ = "1.0.0"
