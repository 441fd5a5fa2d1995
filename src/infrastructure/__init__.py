"""Infrastructure Layer for the storefront backend.

Concrete implementations behind the account-security core:

- auth: credential store, token ledger, lockout policy, sessions,
  second-factor challenge and the coordinator composing them
- database: SQLAlchemy engine and session management
- monitoring: structured logging with sensitive data masking
- config: environment-driven configuration
"""
