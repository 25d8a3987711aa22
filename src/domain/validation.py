from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from src.domain.eca_errors import RecordProcessingError, ValidationError
from src.domain.eca_types import (
    ACTION_TO_TARGET_STATE,
    ACTION_TO_TRANSACTION_TYPE,
    COMPENSATING_ACTIONS,
    FLOW_ACTIONS,
    flow_for_action,
    is_known_action,
)
from src.domain.flows import FLOWS, FlowDefinition
from src.models.eca import ECAWebhookEnvelope


@dataclass(frozen=True)
class ValidatedWebhook:
    action: str
    organization_id: str
    flow: FlowDefinition
    transaction_type: str
    target_state: str
    compensating: bool
    attributes: BaseModel
    raw_attributes: dict[str, Any]
    items: tuple[Any, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)


def _pydantic_errors(exc: PydanticValidationError, prefix: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
    errors = []
    for err in exc.errors():
        path = ".".join(str(part) for part in (*prefix, *err.get("loc", ())))
        errors.append({"field": path or "$", "message": err.get("msg", "invalid"), "type": err.get("type", "value_error")})
    return errors


def validate_webhook_payload(raw: Any, *, flow: str | None = None) -> ValidatedWebhook:
    """Check the envelope and the flow's header schema, collecting every violation.

    Line items are only checked for being a list here; each item is validated
    on its own by ``parse_item`` so one bad line does not fail the request.
    """
    if not isinstance(raw, dict):
        raise ValidationError(
            [{"field": "$", "message": "Payload must be a JSON object", "type": "dict_type"}]
        )

    errors: list[dict[str, Any]] = []
    envelope: ECAWebhookEnvelope | None = None
    try:
        envelope = ECAWebhookEnvelope.model_validate(raw)
    except PydanticValidationError as exc:
        errors.extend(_pydantic_errors(exc))

    if flow is not None and flow not in FLOW_ACTIONS:
        errors.append({"field": "flow", "message": f"Unknown flow '{flow}'", "type": "enum"})

    action = raw.get("action")
    definition: FlowDefinition | None = None
    if isinstance(action, str) and action:
        if not is_known_action(action):
            errors.append({"field": "action", "message": f"Unsupported action '{action}'", "type": "enum"})
        elif flow is not None and flow in FLOW_ACTIONS and action not in FLOW_ACTIONS[flow]:
            errors.append(
                {"field": "action", "message": f"Action '{action}' does not belong to flow '{flow}'", "type": "enum"}
            )
        else:
            definition = FLOWS[flow_for_action(action)]

    parsed_attributes: BaseModel | None = None
    raw_attributes = raw.get("attributes")
    if definition is not None and isinstance(raw_attributes, dict):
        try:
            parsed_attributes = definition.attributes_model.model_validate(raw_attributes)
        except PydanticValidationError as exc:
            errors.extend(_pydantic_errors(exc, ("attributes",)))

    if errors or envelope is None or definition is None or parsed_attributes is None:
        raise ValidationError(errors or [{"field": "$", "message": "Invalid payload", "type": "value_error"}])

    return ValidatedWebhook(
        action=envelope.action,
        organization_id=str(envelope.organization_id),
        flow=definition,
        transaction_type=ACTION_TO_TRANSACTION_TYPE[envelope.action],
        target_state=ACTION_TO_TARGET_STATE[envelope.action],
        compensating=envelope.action in COMPENSATING_ACTIONS,
        attributes=parsed_attributes,
        raw_attributes=raw_attributes,
        items=tuple(getattr(parsed_attributes, "items", None) or ()),
        metadata=envelope.metadata,
    )


def parse_item(definition: FlowDefinition, index: int, raw_item: Any) -> BaseModel:
    try:
        return definition.item_model.model_validate(raw_item)
    except PydanticValidationError as exc:
        errors = _pydantic_errors(exc, ("attributes", "items", index))
        fields = ", ".join(err["field"] for err in errors)
        raise RecordProcessingError(index, f"Invalid line item {index}: {fields}", errors=errors) from exc


def resolve_transaction_external_id(validated: ValidatedWebhook) -> str:
    for key in ("external_id", "event_id"):
        value = validated.raw_attributes.get(key)
        if value not in (None, ""):
            return str(value)
    canonical = json.dumps(
        {
            "action": validated.action,
            "organization_id": validated.organization_id,
            "attributes": validated.raw_attributes,
        },
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return "derived:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()
