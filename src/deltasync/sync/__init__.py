"""Incremental delta sync: fetcher, change processing, engine and webhook handling."""

from __future__ import annotations

from .backoff import BackoffExecutor, BackoffPolicy, RetryAttempt
from .changes import CREATED_THRESHOLD, ChangeStream, ChangeStreamProcessor
from .engine import IncrementalSyncEngine, SyncMode, SyncPhase
from .errors import (
    CursorExpiredError,
    DeltaSyncError,
    ErrorClassification,
    ErrorKind,
    ProviderRequestError,
    classify_exception,
    classify_response,
)
from .fetcher import DeltaPageFetcher, DeltaRequest
from .lifecycle import (
    LifecycleEventKind,
    LifecycleResult,
    WebhookLifecycleCoordinator,
)
from .models import (
    ChangeItem,
    ChangeKind,
    DateWindow,
    DeltaPage,
    NormalizedChange,
    ResourceType,
    SubscriptionRecord,
    SyncCursor,
)
from .notifications import (
    ChangeNotification,
    DispatchResult,
    WebhookDispatcher,
    validate_notification,
)
from .rate_limiter import AccountRateLimiter
from .stores import (
    ChangeSink,
    CursorStore,
    FileCursorStore,
    StateCursorStore,
    SubscriptionRenewer,
    SubscriptionStore,
    TokenProvider,
)

__all__ = [
    "CREATED_THRESHOLD",
    "AccountRateLimiter",
    "BackoffExecutor",
    "BackoffPolicy",
    "ChangeItem",
    "ChangeKind",
    "ChangeNotification",
    "ChangeSink",
    "ChangeStream",
    "ChangeStreamProcessor",
    "CursorExpiredError",
    "CursorStore",
    "DateWindow",
    "DeltaPage",
    "DeltaPageFetcher",
    "DeltaRequest",
    "DeltaSyncError",
    "DispatchResult",
    "ErrorClassification",
    "ErrorKind",
    "FileCursorStore",
    "IncrementalSyncEngine",
    "LifecycleEventKind",
    "LifecycleResult",
    "NormalizedChange",
    "ProviderRequestError",
    "ResourceType",
    "RetryAttempt",
    "StateCursorStore",
    "SubscriptionRecord",
    "SubscriptionRenewer",
    "SubscriptionStore",
    "SyncCursor",
    "SyncMode",
    "SyncPhase",
    "TokenProvider",
    "WebhookDispatcher",
    "WebhookLifecycleCoordinator",
    "classify_exception",
    "classify_response",
    "validate_notification",
]
