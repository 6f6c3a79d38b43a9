"""Reusable building blocks shared by the gateway components.

Each module is self-contained: a condition evaluator, the credential
lifecycle state machine, a tenant-scoped repository base and the typed
runtime configuration.
"""
