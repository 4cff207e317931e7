"""
datacoherence - client-side data integrity and cache consistency layer

Sits between an untrusted remote data source and a reactive consumer:
raw records are validated into frozen entities, cached under hierarchical
keys with staleness and GC policies, kept consistent through declared
invalidation cascades, and updated optimistically with exact rollback.

## Quick Start

```python
from datacoherence import DataLayer, DataLayerSettings

layer = DataLayer(remote, identity_provider, settings=DataLayerSettings())
async with layer:
    products = await layer.read("products", many=True)
```
"""

from .config import DataLayerSettings
from .core.cart import CartOperations
from .core.data_layer import DataLayer, QueryResult, QueryStatus
from .core.errors import (
    AuthorizationFailure,
    ConflictFailure,
    DataLayerConfigurationError,
    DataLayerFailure,
    Err,
    MissingIdentityError,
    NetworkFailure,
    Ok,
    RemoteAuthorizationError,
    RemoteConflictError,
    RemoteError,
    RemoteNetworkError,
    Result,
    TimeoutFailure,
    ValidationFailure,
)
from .core.mutations import MutationIntent, MutationState

__version__ = "0.1.0"

__all__ = [
    "AuthorizationFailure",
    "CartOperations",
    "ConflictFailure",
    "DataLayer",
    "DataLayerConfigurationError",
    "DataLayerFailure",
    "DataLayerSettings",
    "Err",
    "MissingIdentityError",
    "MutationIntent",
    "MutationState",
    "NetworkFailure",
    "Ok",
    "QueryResult",
    "QueryStatus",
    "RemoteAuthorizationError",
    "RemoteConflictError",
    "RemoteError",
    "RemoteNetworkError",
    "Result",
    "TimeoutFailure",
    "ValidationFailure",
]
