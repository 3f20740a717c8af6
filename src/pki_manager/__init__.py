"""
pki_manager — a small private Certificate Authority manager.

Issues X.509 certificates for servers and mTLS clients, keeps every
certificate in a PostgreSQL ledger, revokes by subject identity and
publishes a complete CRL derived from the ledger.

Built on the Railway-Oriented Programming (ROP) framework for
explicit, composable, functional error handling.
"""

__version__ = "0.1.0"
