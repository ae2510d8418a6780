"""Database enum types for consistent status and type values."""

from enum import Enum


class JobStatus(str, Enum):
    """Status values for background jobs."""

    QUEUED = "queued"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobType(str, Enum):
    """Kinds of deferred work the queue carries."""

    IMPORT_ASSETS = "import_assets"
    EXPORT_ASSETS = "export_assets"
    WEBHOOK_DELIVER = "webhook_deliver"
    PRINT_DISPATCH = "print_dispatch"
    CLOUD_PRINT_SYNC = "cloud_print_sync"


class OutboxStatus(str, Enum):
    """Status values for webhook outbox entries."""

    PENDING = "pending"
    PROCESSING = "processing"
    DELIVERED = "delivered"
    DEAD_LETTER = "dead_letter"


class WebhookEventType(str, Enum):
    """Event types tenants can subscribe to."""

    ASSET_CREATED = "asset.created"
    ASSET_UPDATED = "asset.updated"
    ASSET_DELETED = "asset.deleted"
    PRINT_COMPLETED = "print.completed"
    PRINT_FAILED = "print.failed"
    IMPORT_COMPLETED = "import.completed"
    IMPORT_FAILED = "import.failed"


class AuditSeverity(str, Enum):
    """Severity values for audit log entries."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class AuditAction(str, Enum):
    """Audit actions written by the delivery pipeline."""

    WEBHOOK_SUBSCRIPTION_CREATED = "webhook.subscription_created"
    WEBHOOK_SUBSCRIPTION_UPDATED = "webhook.subscription_updated"
    WEBHOOK_SUBSCRIPTION_DELETED = "webhook.subscription_deleted"
    WEBHOOK_FAILED = "webhook.failed"
    WEBHOOK_RETRY_REQUESTED = "webhook.retry_requested"
