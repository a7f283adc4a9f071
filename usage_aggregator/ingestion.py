"""Collector ingestion: validate a batch, persist it and resolve its associations."""

from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from .models import Identity, Metrics, UsageEvent, UsageSource
from .schemas import UsageEventPayload, UsageEventsEnvelope
from .utils import ensure_utc, get_logger


class InvalidPayloadError(ValueError):
    """The ingestion payload failed validation; nothing from the batch was stored."""

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.errors = errors or []


def event_from_payload(payload: UsageEventPayload) -> UsageEvent:
    """Convert a validated payload into a domain event.

    Top-level ``project_slug``/``is_personal`` override the context keys.
    """
    context = dict(payload.context)
    if payload.project_slug is not None and payload.project_slug.strip():
        context["project"] = payload.project_slug
    if payload.is_personal is not None:
        context["is_personal"] = payload.is_personal

    return UsageEvent(
        schema_version=payload.schema_version,
        source=UsageSource(payload.source),
        time_window_start=ensure_utc(payload.time_window_start),
        time_window_end=ensure_utc(payload.time_window_end),
        collected_at=ensure_utc(payload.collected_at),
        metrics=Metrics(**payload.metrics.model_dump()),
        identities=[Identity(i.scheme, i.value, i.authority) for i in payload.identities],
        context=context,
        extra=payload.extra,
    )


class IngestionService:
    """Accept event batches from collectors."""

    def __init__(self, store, synchronizer, aggregator=None):
        """Initialize the ingestion service.

        Args:
            store: Usage store
            synchronizer: AssociationSynchronizer run inline after each batch
            aggregator: DailyAggregator triggered by the last batch (optional)
        """
        self.store = store
        self.synchronizer = synchronizer
        self.aggregator = aggregator
        self.logger = get_logger("ingestion")

    def parse(self, payload: Union[Dict[str, Any], UsageEventsEnvelope]) -> UsageEventsEnvelope:
        if isinstance(payload, UsageEventsEnvelope):
            return payload
        try:
            return UsageEventsEnvelope.model_validate(payload)
        except ValidationError as e:
            self.logger.warning("Rejected invalid usage payload", errors=e.error_count())
            raise InvalidPayloadError(f"Invalid usage payload: {e.error_count()} error(s)", e.errors()) from e

    def ingest(self, payload: Union[Dict[str, Any], UsageEventsEnvelope]) -> Dict[str, Any]:
        """Validate, store and synchronize one batch.

        Returns:
            Dictionary with the number of events stored and a message

        Raises:
            InvalidPayloadError: If any event in the batch is invalid
        """
        envelope = self.parse(payload)
        events = [event_from_payload(item) for item in envelope.events]
        self.logger.info("Received usage events", events=len(events), last_batch=envelope.is_last_batch)

        stored = self.store.insert_events(events)
        self.synchronizer.synchronize(events)

        response = {"received": stored, "message": "Events stored"}
        if not envelope.is_last_batch:
            self.logger.debug("Skipping aggregation until the last batch")
            return response

        dates = sorted({event.summary_date for event in events})
        if self.aggregator is not None and dates:
            self.logger.info("Triggering aggregation for last batch", dates=len(dates))
            try:
                self.aggregator.aggregate_for_dates(dates)
                response["message"] = "Events stored and aggregated"
            except Exception as e:
                self.logger.error("Failed to aggregate after last batch", error=str(e))
                response["message"] = "Events stored; aggregation failed"
        return response
