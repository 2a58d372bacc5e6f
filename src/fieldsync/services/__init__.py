"""External service integrations.

This module contains clean wrappers for the services FieldSync talks to:
the server of record (batch upload and reference data download), its
health endpoint for connectivity monitoring, and ntfy for notifications.
This separation allows for easy mocking during testing and clean
abstraction of external dependencies.
"""
