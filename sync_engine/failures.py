"""Failure recording.

Every processor hands its failures here: the error is classified once, the
manual-intervention flag is derived, and a SyncFailure row is written.
MappingFailed and Unknown failures are escalated on the spot since no
retry can fix them.
"""

from pathlib import Path
from typing import Any, Dict, Optional

from core.observability.logging import get_logger
from core.observability.metrics import get_metrics
from sync_engine import db
from sync_engine.errors import (
    NON_RETRYABLE_CATEGORIES,
    classify_failure,
    describe_error,
    next_step_for,
    requires_manual_intervention,
    status_code_of,
)
from sync_engine.models import ErrorCategory, FailureStatus, SyncFailure

logger = get_logger(__name__)


class FailureRecorder:
    """Classifies and persists failures for one database."""

    def __init__(self, db_path: Path):
        self.db_path = db_path

    def record(
        self,
        connection_id: int,
        error: BaseException,
        tag: ErrorCategory,
        context: Dict[str, Any],
        external_order_id: Optional[str] = None,
    ) -> SyncFailure:
        """Record a failed operation.

        Args:
            connection_id: Connection the operation ran for
            error: The exception raised
            tag: Category of the recording processor (fallback classification)
            context: Replay context; must carry "operation"
            external_order_id: Related storefront order, if any

        Returns:
            The stored SyncFailure
        """
        category = classify_failure(error, default=tag)
        message = describe_error(error)
        manual = requires_manual_intervention(category, message)

        context = dict(context)
        status_code = status_code_of(error)
        if status_code:
            context["status_code"] = status_code
        context.setdefault("exception", error.__class__.__name__)

        status = FailureStatus.OPEN
        if category in NON_RETRYABLE_CATEGORIES:
            status = FailureStatus.ESCALATED
            context["next_step"] = next_step_for(category)

        failure = db.insert_failure(
            SyncFailure(
                connection_id=connection_id,
                external_order_id=external_order_id,
                category=category,
                error_type=tag.value,
                message=message,
                context=context,
                status=status,
                requires_manual_intervention=manual,
            ),
            db_path=self.db_path,
        )

        metrics = get_metrics()
        metrics.record_failure(category.value)
        if status == FailureStatus.ESCALATED:
            metrics.record_recovery_escalated(category.value)

        logger.warning(
            f"Recorded {category.value} failure #{failure.id}: {message}",
            extra_fields={
                "operation": context.get("operation"),
                "error_type": tag.value,
                "manual": manual,
            },
        )
        return failure
