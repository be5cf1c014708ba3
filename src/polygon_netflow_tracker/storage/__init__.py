"""Storage layer - Database schemas, repositories and the transfer store."""

from polygon_netflow_tracker.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from polygon_netflow_tracker.storage.models import (
    Base,
    MetadataModel,
    NetFlowModel,
    TransferModel,
)
from polygon_netflow_tracker.storage.repos import (
    FlowTotals,
    MetadataRepository,
    NetFlowDTO,
    NetFlowRepository,
    TransferDTO,
    TransferRepository,
)
from polygon_netflow_tracker.storage.store import (
    PersistenceError,
    StorageError,
    TransferStore,
)

__all__ = [
    "Base",
    "DatabaseManager",
    "FlowTotals",
    "MetadataModel",
    "MetadataRepository",
    "NetFlowDTO",
    "NetFlowModel",
    "NetFlowRepository",
    "PersistenceError",
    "StorageError",
    "TransferDTO",
    "TransferModel",
    "TransferRepository",
    "TransferStore",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
