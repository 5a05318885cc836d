"""Persistence layer exports."""

from .kv_store import KeyValueStore, SqliteKeyValueStore
from .state_repository import LAST_PROCESSED_LOAN_KEY, DeploymentStateRepository

__all__ = [
    "KeyValueStore",
    "SqliteKeyValueStore",
    "DeploymentStateRepository",
    "LAST_PROCESSED_LOAN_KEY",
]
