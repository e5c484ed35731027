"""
Gatekey - API Key Authentication Core

The credential-authentication subsystem of an LLM API gateway.

Architecture:
- Each module is self-contained with clear interfaces
- Modules are completely replaceable
- No module knows the internals of another
- All communication through defined interfaces

Modules:
- auth: Key issuance, hashing, validation, migration and collision audit
- storage: API key persistence and hash index
- lock: Distributed leases for cluster-wide mutual exclusion
- audit: Security event trail
- api: Shared data models
- middleware: Gateway request authentication
- config: Environment configuration
"""

__version__ = "1.0.0"
