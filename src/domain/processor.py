from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable
from uuid import uuid4

from src.domain.eca_errors import (
    BatchRejected,
    DeadlineExceeded,
    ECAError,
    InvalidStateTransition,
    RecordProcessingError,
    eca_error_detail,
    failure_detail,
)
from src.domain.flows import EntityKey, Plan
from src.domain.ports import (
    AuditSink,
    EntityStore,
    RelationshipStore,
    TaskScheduler,
    TenantResolver,
    TransactionStore,
)
from src.domain.state_machine import STATE_MACHINE, StateMachine
from src.domain.validation import (
    ValidatedWebhook,
    parse_item,
    resolve_transaction_external_id,
    validate_webhook_payload,
)
from src.models.eca import (
    BusinessTransaction,
    ECAErrorBody,
    ECAResponseAttributes,
    ECAResponseMetadata,
    ECASummary,
    ECAWebhookResponse,
    StateTransition,
)
from src.observability import incr_metric, log_event


PARTIAL_FAILURE_MODES = {"continue", "strict"}


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PartialFailurePolicy:
    mode: str = "continue"
    strict_transaction_types: frozenset[str] = frozenset()

    @classmethod
    def from_settings(cls, mode: str, strict_transaction_types: str | None) -> "PartialFailurePolicy":
        if mode not in PARTIAL_FAILURE_MODES:
            raise ValueError(f"Unsupported partial failure mode: {mode}")
        types = frozenset(
            part.strip().upper() for part in (strict_transaction_types or "").split(",") if part.strip()
        )
        return cls(mode=mode, strict_transaction_types=types)

    def is_strict(self, transaction_type: str) -> bool:
        return self.mode == "strict" or transaction_type in self.strict_transaction_types


class Deadline:
    def __init__(self, timeout_seconds: float | None, *, clock: Callable[[], float] | None = None) -> None:
        self.timeout_seconds = timeout_seconds
        self._clock = clock or time.monotonic
        self._expires_at = self._clock() + timeout_seconds if timeout_seconds else None

    def check(self, stage: str) -> None:
        if self._expires_at is not None and self._clock() >= self._expires_at:
            raise DeadlineExceeded(stage, self.timeout_seconds or 0)


@dataclass
class _Progress:
    entity_ids: list[str] = field(default_factory=list)
    relationship_ids: list[str] = field(default_factory=list)
    records_processed: int = 0
    records_successful: int = 0
    failures: list[RecordProcessingError] = field(default_factory=list)
    transaction_id: str | None = None
    state_transition: StateTransition | None = None

    def touch_entity(self, entity_id: str) -> None:
        if entity_id not in self.entity_ids:
            self.entity_ids.append(entity_id)

    def touch_relationship(self, relationship_id: str) -> None:
        if relationship_id not in self.relationship_ids:
            self.relationship_ids.append(relationship_id)


class ActionProcessor:
    """Runs one webhook invocation end to end and always answers with a response body."""

    def __init__(
        self,
        *,
        tenants: TenantResolver,
        entities: EntityStore,
        relationships: RelationshipStore,
        transactions: TransactionStore,
        audit: AuditSink,
        state_machine: StateMachine = STATE_MACHINE,
        policy: PartialFailurePolicy | None = None,
        default_timeout_seconds: float | None = None,
    ) -> None:
        self._tenants = tenants
        self._entities = entities
        self._relationships = relationships
        self._transactions = transactions
        self._audit = audit
        self._state_machine = state_machine
        self._policy = policy or PartialFailurePolicy()
        self._default_timeout_seconds = default_timeout_seconds

    def process(
        self,
        raw_payload: Any,
        *,
        flow: str | None = None,
        timeout_seconds: float | None = None,
        request_id: str | None = None,
        background: TaskScheduler | None = None,
    ) -> ECAWebhookResponse:
        started = time.monotonic()
        event_uuid = str(uuid4())
        deadline = Deadline(timeout_seconds if timeout_seconds is not None else self._default_timeout_seconds)
        progress = _Progress()

        action = None
        organization_id = None
        if isinstance(raw_payload, dict):
            if isinstance(raw_payload.get("action"), str):
                action = raw_payload["action"]
            if raw_payload.get("organization_id") is not None:
                organization_id = str(raw_payload["organization_id"])

        incr_metric("eca.events.received", action=action or "unknown")
        log_event(
            "eca_event_received",
            request_id=request_id,
            event_uuid=event_uuid,
            action=action,
            flow=flow,
            organization_id=organization_id,
        )

        validated: ValidatedWebhook | None = None
        error: ECAError | None = None
        try:
            validated = validate_webhook_payload(raw_payload, flow=flow)
            self._run(validated, progress, deadline, event_uuid)
        except ECAError as exc:
            error = exc
        except Exception as exc:
            log_event(
                "eca_event_unhandled_error",
                level=logging.ERROR,
                request_id=request_id,
                event_uuid=event_uuid,
                action=action,
                organization_id=organization_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            error = ECAError("Unexpected error while processing webhook")

        response = self._build_response(
            validated=validated,
            action=action,
            organization_id=organization_id,
            progress=progress,
            error=error,
            event_uuid=event_uuid,
            started=started,
        )
        self._record_outcome(response, validated, error, request_id)
        record = self._audit_record(raw_payload, response, validated, flow, request_id)
        if background is not None:
            background.add_task(self._deliver_audit, record)
        else:
            self._deliver_audit(record)
        return response

    def _run(
        self,
        validated: ValidatedWebhook,
        progress: _Progress,
        deadline: Deadline,
        event_uuid: str,
    ) -> None:
        deadline.check("resolve_tenant")
        tenant = self._tenants.resolve(validated.organization_id)
        organization_id = tenant.organization_id
        definition = validated.flow

        header = definition.plan_header(validated.attributes)
        item_plans: list[Plan] = []
        for index, raw_item in enumerate(validated.items):
            try:
                item = parse_item(definition, index, raw_item)
                item_plans.append(definition.plan_item(validated.attributes, item))
            except RecordProcessingError as exc:
                progress.failures.append(exc)
            except ValueError as exc:
                progress.failures.append(RecordProcessingError(index, str(exc)))

        progress.records_processed = len(validated.items) or 1
        if progress.failures:
            if self._policy.is_strict(validated.transaction_type):
                raise BatchRejected(progress.failures, "strict")
            if not item_plans:
                raise BatchRejected(progress.failures, "all_records_failed")

        external_id, existing = self._check_transaction(validated, organization_id, deadline)

        entity_ids: dict[EntityKey, str] = {}
        for plan in (header, *item_plans):
            for ref in plan.entities:
                deadline.check("upsert_entity")
                entity = self._entities.upsert_entity(
                    ref.entity_type, ref.external_id, ref.attributes, organization_id
                )
                entity_ids[ref.key] = entity.id
                progress.touch_entity(entity.id)

        for plan in (header, *item_plans):
            for rel in plan.relationships:
                deadline.check("create_relationship")
                relationship = self._relationships.create_relationship(
                    rel.relationship_type,
                    entity_ids[rel.source],
                    entity_ids[rel.target],
                    rel.attributes,
                    organization_id,
                )
                progress.touch_relationship(relationship.id)

        lines = [plan.line for plan in item_plans if plan.line is not None]
        transaction = self._apply_transaction(
            validated, organization_id, external_id, existing, lines, progress, deadline, event_uuid
        )
        progress.transaction_id = transaction.id
        progress.records_successful = len(item_plans) if validated.items else 1

    def _transaction_attributes(
        self,
        validated: ValidatedWebhook,
        lines: list[dict[str, Any]],
        progress: _Progress,
        event_uuid: str,
    ) -> dict[str, Any]:
        header = validated.attributes.model_dump(mode="json", exclude_none=True, exclude={"items"})
        attributes = {
            **header,
            "entity_ids": list(progress.entity_ids),
            "relationship_ids": list(progress.relationship_ids),
            "last_action": validated.action,
            "last_event_uuid": event_uuid,
        }
        if validated.items:
            attributes["lines"] = lines
        if validated.metadata:
            attributes["source_metadata"] = validated.metadata
        return attributes

    def _check_transaction(
        self,
        validated: ValidatedWebhook,
        organization_id: str,
        deadline: Deadline,
    ) -> tuple[str, BusinessTransaction | None]:
        """Reject an illegal lifecycle move before anything is written for the event."""
        transaction_type = validated.transaction_type
        target = validated.target_state
        external_id = resolve_transaction_external_id(validated)

        deadline.check("find_transaction")
        existing = self._transactions.find_transaction_by_external_id(transaction_type, external_id, organization_id)

        if existing is None:
            initial = self._state_machine.initial_state(transaction_type)
            if target != initial and not self._state_machine.can_transition(
                transaction_type, initial, target, compensating=validated.compensating
            ):
                raise InvalidStateTransition(None, target, transaction_type)
        elif existing.status != target and not self._state_machine.can_transition(
            transaction_type, existing.status, target, compensating=validated.compensating
        ):
            raise InvalidStateTransition(existing.status, target, transaction_type)
        return external_id, existing

    def _apply_transaction(
        self,
        validated: ValidatedWebhook,
        organization_id: str,
        external_id: str,
        existing: BusinessTransaction | None,
        lines: list[dict[str, Any]],
        progress: _Progress,
        deadline: Deadline,
        event_uuid: str,
    ) -> BusinessTransaction:
        transaction_type = validated.transaction_type
        target = validated.target_state
        attributes = self._transaction_attributes(validated, lines, progress, event_uuid)
        history_context = {"action": validated.action, "event_uuid": event_uuid}

        if existing is None:
            initial = self._state_machine.initial_state(transaction_type)
            now = _now().isoformat()
            history = [{"from": None, "to": initial, "transitioned_at": now, **history_context}]
            if target != initial:
                history.append({"from": initial, "to": target, "transitioned_at": now, **history_context})

            deadline.check("create_transaction")
            created = self._transactions.create_transaction(
                transaction_type,
                external_id,
                target,
                {**attributes, "created_by_event": event_uuid, "state_history": history},
                organization_id,
            )
            if created.attributes.get("created_by_event") == event_uuid:
                progress.state_transition = StateTransition(from_state=None, to_state=created.status)
                incr_metric("eca.transactions.created", transaction_type=transaction_type)
                return created
            # Another invocation inserted the same natural key first.
            existing = created

        if existing.status == target:
            incr_metric("eca.transactions.replayed", transaction_type=transaction_type)
            return existing

        deadline.check("transition_transaction")
        transitioned = self._transactions.transition_transaction(
            existing.id,
            target,
            attributes,
            organization_id,
            compensating=validated.compensating,
            context=history_context,
        )
        if transitioned.attributes.get("last_event_uuid") != event_uuid:
            # A concurrent delivery moved the row to the target first.
            incr_metric("eca.transactions.replayed", transaction_type=transaction_type)
            return transitioned
        progress.state_transition = StateTransition(from_state=existing.status, to_state=transitioned.status)
        incr_metric("eca.transactions.transitioned", transaction_type=transaction_type, to=transitioned.status)
        return transitioned

    def _build_response(
        self,
        *,
        validated: ValidatedWebhook | None,
        action: str | None,
        organization_id: str | None,
        progress: _Progress,
        error: ECAError | None,
        event_uuid: str,
        started: float,
    ) -> ECAWebhookResponse:
        if validated is not None:
            action = validated.action
            organization_id = validated.organization_id
        failed_records = [failure_detail(failure) for failure in progress.failures]

        if error is None:
            records_failed = len(progress.failures)
            message = f"Action {action} processed"
            if records_failed:
                message += f" with {records_failed} failed record(s)"
            summary = ECASummary(
                message=message,
                records_processed=progress.records_processed,
                records_successful=progress.records_successful,
                records_failed=records_failed,
            )
            error_body = None
        else:
            processed = max(progress.records_processed, 1)
            summary = ECASummary(
                message=error.message,
                records_processed=processed,
                records_successful=0,
                records_failed=processed,
            )
            error_body = ECAErrorBody(**eca_error_detail(error))

        return ECAWebhookResponse(
            success=error is None,
            action=action,
            transaction_id=progress.transaction_id,
            entity_ids=list(progress.entity_ids),
            relationship_ids=list(progress.relationship_ids),
            state_transition=progress.state_transition if error is None else None,
            attributes=ECAResponseAttributes(
                success=error is None,
                summary=summary,
                transaction_type=validated.transaction_type if validated is not None else None,
                failed_records=failed_records,
            ),
            metadata=ECAResponseMetadata(
                processed_at=_now(),
                processing_time_ms=int((time.monotonic() - started) * 1000),
                organization_id=organization_id,
                action=action,
                event_uuid=event_uuid,
            ),
            error=error_body,
        )

    def _record_outcome(
        self,
        response: ECAWebhookResponse,
        validated: ValidatedWebhook | None,
        error: ECAError | None,
        request_id: str | None,
    ) -> None:
        summary = response.attributes.summary
        if summary.records_failed and error is None:
            incr_metric("eca.records.failed", summary.records_failed, action=response.action)
        if error is None:
            incr_metric("eca.events.processed", action=response.action)
            log_event(
                "eca_event_processed",
                request_id=request_id,
                event_uuid=response.metadata.event_uuid,
                action=response.action,
                organization_id=response.metadata.organization_id,
                transaction_id=response.transaction_id,
                state_transition=response.state_transition,
                records_processed=summary.records_processed,
                records_failed=summary.records_failed,
                processing_time_ms=response.metadata.processing_time_ms,
            )
            return
        incr_metric("eca.events.failed", action=response.action or "unknown", code=error)
        log_event(
            "eca_event_failed",
            level=logging.ERROR if error.http_status >= 500 else logging.WARNING,
            request_id=request_id,
            event_uuid=response.metadata.event_uuid,
            action=response.action,
            organization_id=response.metadata.organization_id,
            transaction_type=validated.transaction_type if validated is not None else None,
            error=error,
        )

    def _audit_record(
        self,
        raw_payload: Any,
        response: ECAWebhookResponse,
        validated: ValidatedWebhook | None,
        flow: str | None,
        request_id: str | None,
    ) -> dict[str, Any]:
        wire = response.to_wire()
        return {
            "event_uuid": response.metadata.event_uuid,
            "request_id": request_id,
            "flow": validated.flow.name if validated is not None else flow,
            "action": response.action,
            "organization_id": response.metadata.organization_id,
            "success": response.success,
            "payload": raw_payload if isinstance(raw_payload, (dict, list)) else {"raw": str(raw_payload)},
            "response": wire,
            "error_message": response.error.message if response.error else None,
            "processing_time_ms": response.metadata.processing_time_ms,
        }

    def _deliver_audit(self, record: dict[str, Any]) -> None:
        try:
            self._audit.emit(record)
        except Exception as exc:
            incr_metric("eca.audit.failed", sink=type(self._audit).__name__)
            log_event(
                "eca_audit_emit_failed",
                level=logging.WARNING,
                request_id=record["request_id"],
                event_uuid=record["event_uuid"],
                error=str(exc),
            )
