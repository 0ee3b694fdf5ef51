"""energy_sync — session and synchronization client for the energy dashboard."""

from .auth import AuthEndpoint, AuthEndpointError, HttpAuthEndpoint, InMemoryAuthEndpoint
from .backend import HttpRemoteBackend, InMemoryRemoteBackend, RemoteBackend, RemoteCallError
from .cache import ResultCache
from .classify import ErrorClassifier
from .client import SessionClient
from .clock import Clock, ManualClock, SystemClock
from .collection import OrderedCollection
from .config import SyncConfig, load
from .connectivity import ConnectivityMonitor
from .exceptions import (
    AuthRequiredError,
    ConfigError,
    ErrorKind,
    ErrorKindCodes,
    NotFoundError,
    PermanentError,
    SyncError,
    TransientError,
)
from .executor import RemoteCallExecutor
from .logger import new_logger
from .models import (
    NO_FALLBACK,
    BatchCall,
    BatchResult,
    CacheEntry,
    CallOptions,
    ChangeEvent,
    ChangeKind,
    MutationKind,
    MutationOutcome,
    QueuedMutation,
    Session,
)
from .queue import FlushReport, OfflineMutationQueue
from .reconciler import ChangeFeedReconciler, ReconcileUpdate
from .refresh import RefreshCoordinator, RefreshState
from .registry import OperationDescriptor, OperationRegistry
from .retry import RetryConfig, RetryError, with_retry
from .session_store import SessionStore
from .storage import DurableStorage, InMemoryStorage, JsonFileStorage
from .transport import (
    ChangeFeedTransport,
    InMemoryChangeFeedTransport,
    SubscriptionHandle,
    SubscriptionStatus,
)

__all__ = [
    "AuthEndpoint",
    "AuthEndpointError",
    "AuthRequiredError",
    "BatchCall",
    "BatchResult",
    "CacheEntry",
    "CallOptions",
    "ChangeEvent",
    "ChangeFeedReconciler",
    "ChangeFeedTransport",
    "ChangeKind",
    "Clock",
    "ConfigError",
    "ConnectivityMonitor",
    "DurableStorage",
    "ErrorClassifier",
    "ErrorKind",
    "ErrorKindCodes",
    "FlushReport",
    "HttpAuthEndpoint",
    "HttpRemoteBackend",
    "InMemoryAuthEndpoint",
    "InMemoryChangeFeedTransport",
    "InMemoryRemoteBackend",
    "InMemoryStorage",
    "JsonFileStorage",
    "ManualClock",
    "MutationKind",
    "MutationOutcome",
    "NO_FALLBACK",
    "NotFoundError",
    "OfflineMutationQueue",
    "OperationDescriptor",
    "OperationRegistry",
    "OrderedCollection",
    "PermanentError",
    "QueuedMutation",
    "ReconcileUpdate",
    "RefreshCoordinator",
    "RefreshState",
    "RemoteBackend",
    "RemoteCallError",
    "RemoteCallExecutor",
    "ResultCache",
    "RetryConfig",
    "RetryError",
    "Session",
    "SessionClient",
    "SessionStore",
    "SubscriptionHandle",
    "SubscriptionStatus",
    "SyncConfig",
    "SyncError",
    "SystemClock",
    "TransientError",
    "load",
    "new_logger",
    "with_retry",
]
