"""App Spine core -- errors, models, settings, logging, events, store.

Architecture::

    errors.py      Structured error hierarchy (AppSpineError, RenderError, ...)
    models.py      Application resource (pydantic v2, camelCase on the wire)
    store.py       ApplicationStore protocol + in-memory store with watches
    settings.py    EngineSettings (pydantic-settings, APPSPINE_* env vars)
    logging.py     structlog configuration + LogContext
    events.py      Event sink: memory, logging and async recorders
    hashing.py     Canonical JSON + content fingerprints
    objects.py     Nested-dict merge and managed-field comparison
"""

from appspine.core.errors import (
    AppSpineError,
    ClusterResolutionError,
    CorruptRevisionError,
    DefinitionNotFound,
    DispatchError,
    ErrorCategory,
    ErrorContext,
    InvariantViolation,
    NetworkError,
    RenderError,
    ResourceConflictError,
    RevisionConflict,
    StatusConflictError,
    TemplateError,
    TransientInfraError,
    ValidationError,
)
from appspine.core.events import (
    AsyncEventRecorder,
    Event,
    EventRecorder,
    EventType,
    LoggingEventRecorder,
    MemoryEventRecorder,
    ObjectReference,
)
from appspine.core.logging import LogContext, configure_logging, get_logger
from appspine.core.models import AppID, Application, ApplicationPhase, ApplicationStatus
from appspine.core.settings import EngineSettings, get_settings
from appspine.core.store import ApplicationStore, InMemoryApplicationStore

__all__ = [
    "AppID",
    "AppSpineError",
    "Application",
    "ApplicationPhase",
    "ApplicationStatus",
    "ApplicationStore",
    "AsyncEventRecorder",
    "ClusterResolutionError",
    "CorruptRevisionError",
    "DefinitionNotFound",
    "DispatchError",
    "EngineSettings",
    "ErrorCategory",
    "ErrorContext",
    "Event",
    "EventRecorder",
    "EventType",
    "InMemoryApplicationStore",
    "InvariantViolation",
    "LogContext",
    "LoggingEventRecorder",
    "MemoryEventRecorder",
    "NetworkError",
    "ObjectReference",
    "RenderError",
    "ResourceConflictError",
    "RevisionConflict",
    "StatusConflictError",
    "TemplateError",
    "TransientInfraError",
    "ValidationError",
    "configure_logging",
    "get_logger",
    "get_settings",
]
