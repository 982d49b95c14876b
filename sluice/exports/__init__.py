"""Export job lifecycle: submission, deferral, execution, and polling.

Public API
----------
ExportJobManager
    Submits, resumes, runs, and polls export jobs.
ExportJobStore, BackgroundJobStore
    SQLAlchemy-backed stores for export jobs and deferred-export records.
ExportConfig
    Time limits, heartbeat cadence, retry policy, and naming limits.
QueryBackend, ObjectStore
    Ports for the query engine and artifact storage.
SqlAlchemyQueryBackend, FilesystemObjectStore
    Local adapters for the two ports.
run_with_watchdog, Deadline
    Race export work against a deadline while recording heartbeats.

"""

from sluice.exports.artifacts import (
    ObjectStore,
    archive_key,
    raw_result_key,
    spreadsheet_key,
)
from sluice.exports.backend import (
    THROTTLING_CODES,
    QueryBackend,
    QueryState,
    QueryStatus,
)
from sluice.exports.config import ExportConfig
from sluice.exports.errors import (
    BackendQueryFailedError,
    BackendThrottledError,
    BackgroundJobCreationError,
    DeadlineExceededError,
    ExportError,
    InvalidExtractionIdError,
    InvalidJobTransitionError,
    JobNotFoundError,
)
from sluice.exports.filesystem_store import FilesystemObjectStore
from sluice.exports.models import (
    ExportFormat,
    ExportOptions,
    ExtractionId,
    ExtractionJob,
    JobStatus,
    JobView,
    SubmitResult,
)
from sluice.exports.observability import ExportEventLogger, ExportEventType
from sluice.exports.pipeline import ExportPipeline
from sluice.exports.service import ExportJobManager
from sluice.exports.sql_backend import SqlAlchemyQueryBackend
from sluice.exports.storage import (
    BackgroundJobStore,
    ExportJobStore,
    init_export_storage,
)
from sluice.exports.watchdog import Deadline, run_with_watchdog

__all__ = [
    "THROTTLING_CODES",
    "BackendQueryFailedError",
    "BackendThrottledError",
    "BackgroundJobCreationError",
    "BackgroundJobStore",
    "Deadline",
    "DeadlineExceededError",
    "ExportConfig",
    "ExportError",
    "ExportEventLogger",
    "ExportEventType",
    "ExportFormat",
    "ExportJobManager",
    "ExportJobStore",
    "ExportOptions",
    "ExportPipeline",
    "ExtractionId",
    "ExtractionJob",
    "FilesystemObjectStore",
    "InvalidExtractionIdError",
    "InvalidJobTransitionError",
    "JobNotFoundError",
    "JobStatus",
    "JobView",
    "ObjectStore",
    "QueryBackend",
    "QueryState",
    "QueryStatus",
    "SqlAlchemyQueryBackend",
    "SubmitResult",
    "archive_key",
    "init_export_storage",
    "raw_result_key",
    "run_with_watchdog",
    "spreadsheet_key",
]
