from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from src.auth import WebhookCallerContext, require_webhook_caller
from src.config import settings
from src.db import get_supabase
from src.domain.eca_errors import ECAError, eca_error_detail, http_status_for_code
from src.domain.eca_types import ENTITY_TYPES
from src.domain.processor import ActionProcessor, PartialFailurePolicy
from src.domain.state_machine import STATE_MACHINE
from src.models.eca import EntityGraphResponse, ECAWebhookResponse
from src.observability import log_event, metric_breakdown, metric_total, metrics_snapshot
from src.providers.audit.sinks import CompositeAuditSink, HttpAuditSink, SupabaseAuditSink
from src.providers.supabase.stores import (
    SupabaseEntityStore,
    SupabaseRelationshipStore,
    SupabaseTransactionStore,
)
from src.providers.supabase.tenants import SupabaseTenantResolver


router = APIRouter(prefix="/api/eca", tags=["eca"])


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def get_store_client() -> Any:
    return get_supabase()


def build_action_processor(client: Any) -> ActionProcessor:
    audit_sinks: list[Any] = [SupabaseAuditSink(client, table=settings.eca_audit_table)]
    if settings.eca_audit_export_url:
        audit_sinks.append(
            HttpAuditSink(
                settings.eca_audit_export_url,
                bearer_token=settings.eca_audit_export_bearer_token,
                timeout_seconds=settings.eca_audit_export_timeout_seconds,
            )
        )
    return ActionProcessor(
        tenants=SupabaseTenantResolver(client),
        entities=SupabaseEntityStore(client),
        relationships=SupabaseRelationshipStore(client),
        transactions=SupabaseTransactionStore(client, STATE_MACHINE),
        audit=audit_sinks[0] if len(audit_sinks) == 1 else CompositeAuditSink(audit_sinks),
        state_machine=STATE_MACHINE,
        policy=PartialFailurePolicy.from_settings(
            settings.eca_partial_failure_mode,
            settings.eca_strict_transaction_types,
        ),
        default_timeout_seconds=settings.eca_request_timeout_seconds,
    )


def get_action_processor(client: Any = Depends(get_store_client)) -> ActionProcessor:
    return build_action_processor(client)


def _respond(response: ECAWebhookResponse) -> JSONResponse:
    code = response.error.code if response.error else None
    return JSONResponse(status_code=http_status_for_code(code), content=response.to_wire())


async def _ingest(
    request: Request,
    background_tasks: BackgroundTasks,
    processor: ActionProcessor,
    flow: str | None,
) -> JSONResponse:
    body = await request.body()
    try:
        payload: Any = json.loads(body) if body else None
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        log_event(
            "eca_webhook_body_invalid",
            request_id=_request_id(request),
            flow=flow,
            error=str(exc),
        )
        payload = body.decode("utf-8", errors="replace")
    response = await run_in_threadpool(
        processor.process,
        payload,
        flow=flow,
        request_id=_request_id(request),
        background=background_tasks,
    )
    return _respond(response)


@router.post("/webhooks", response_model=ECAWebhookResponse)
async def ingest_eca_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    processor: ActionProcessor = Depends(get_action_processor),
    caller: WebhookCallerContext = Depends(require_webhook_caller),
):
    return await _ingest(request, background_tasks, processor, None)


@router.post("/webhooks/{flow}", response_model=ECAWebhookResponse)
async def ingest_eca_flow_webhook(
    flow: str,
    request: Request,
    background_tasks: BackgroundTasks,
    processor: ActionProcessor = Depends(get_action_processor),
    caller: WebhookCallerContext = Depends(require_webhook_caller),
):
    return await _ingest(request, background_tasks, processor, flow)


@router.get("/state-machine")
async def list_state_machines():
    return {
        "transaction_types": [
            STATE_MACHINE.describe(transaction_type)
            for transaction_type in sorted(STATE_MACHINE.transaction_types)
        ]
    }


@router.get("/state-machine/{transaction_type}")
async def get_state_machine(transaction_type: str):
    description = STATE_MACHINE.describe(transaction_type.upper())
    if description is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown transaction type")
    return description


@router.get("/entities/{entity_type}/{external_id}", response_model=EntityGraphResponse)
def get_entity_graph(
    entity_type: str,
    external_id: str,
    organization_id: str = Query(...),
    client: Any = Depends(get_store_client),
    caller: WebhookCallerContext = Depends(require_webhook_caller),
):
    entity_type = entity_type.upper()
    if entity_type not in ENTITY_TYPES:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown entity type")

    try:
        tenant = SupabaseTenantResolver(client).resolve(organization_id)
        entity = SupabaseEntityStore(client).find_entity_by_external_id(
            entity_type, external_id, tenant.organization_id
        )
        if not entity:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Entity not found")
        relationships = SupabaseRelationshipStore(client)
        outbound = relationships.find_relationships(tenant.organization_id, source_id=entity.id)
        inbound = relationships.find_relationships(tenant.organization_id, target_id=entity.id)
    except ECAError as exc:
        raise HTTPException(status_code=exc.http_status, detail=eca_error_detail(exc)) from exc

    return EntityGraphResponse(entity=entity, outbound=outbound, inbound=inbound)


@router.get("/metrics")
async def get_eca_metrics():
    snapshot = metrics_snapshot()
    return {
        "counters": snapshot,
        "totals": {
            name: metric_total(snapshot, name)
            for name in (
                "eca.events.received",
                "eca.events.processed",
                "eca.events.failed",
                "eca.records.failed",
                "eca.transactions.created",
                "eca.transactions.transitioned",
                "eca.transactions.replayed",
                "eca.audit.failed",
            )
        },
        "failed_by_code": metric_breakdown(snapshot, "eca.events.failed", "code"),
    }
