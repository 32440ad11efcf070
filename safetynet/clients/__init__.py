"""
SafetyNet — External Service Clients

Connection management for the Postgres governance store.
"""

from safetynet.clients.postgres import PostgresClient

__all__ = ["PostgresClient"]
