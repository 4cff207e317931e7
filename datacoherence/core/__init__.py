"""
datacoherence core module

Validation, cache keys, the cache store, invalidation, optimistic mutations
and the realtime bridge, plus the data layer facade tying them together.
"""

from .cache_keys import EntityKeys, IsolationLevel, KeyFactory, default_key_factory
from .cache_store import CacheChange, CacheChangeType, CacheEntry, CacheStore
from .invalidation import (
    InvalidationCoordinator,
    InvalidationRule,
    InvalidationRuleTable,
    InvalidationTarget,
    default_rule_table,
)
from .mutations import OptimisticMutationEngine
from .realtime import ChangeEvent, RealtimeEventBridge, SecureChannelNameGenerator
from .validation import SchemaValidator, default_schema_registry
from .validation_monitor import ValidationMonitor

__all__ = [
    "CacheChange",
    "CacheChangeType",
    "CacheEntry",
    "CacheStore",
    "ChangeEvent",
    "EntityKeys",
    "InvalidationCoordinator",
    "InvalidationRule",
    "InvalidationRuleTable",
    "InvalidationTarget",
    "IsolationLevel",
    "KeyFactory",
    "OptimisticMutationEngine",
    "RealtimeEventBridge",
    "SchemaValidator",
    "SecureChannelNameGenerator",
    "ValidationMonitor",
    "default_key_factory",
    "default_rule_table",
    "default_schema_registry",
]
