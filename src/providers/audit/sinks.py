"""Audit sinks for processed webhook invocations.

Every sink swallows its own failures after logging and counting them; the
caller's response never depends on the audit trail being written.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

import httpx

from src.observability import incr_metric, log_event


class SupabaseAuditSink:
    def __init__(self, client: Any, table: str = "webhook_logs") -> None:
        self._client = client
        self._table = table

    def emit(self, record: dict[str, Any]) -> None:
        row = {
            "webhook_flow": record.get("flow"),
            "event_type": record.get("action"),
            "organization_id": record.get("organization_id"),
            "event_uuid": record.get("event_uuid"),
            "request_id": record.get("request_id"),
            "payload": record.get("payload"),
            "status": "success" if record.get("success") else "error",
            "response_data": record.get("response"),
            "error_message": record.get("error_message"),
            "processing_time_ms": record.get("processing_time_ms"),
        }
        try:
            self._client.table(self._table).insert(row).execute()
        except Exception as exc:
            incr_metric("eca.audit.failed", sink="supabase")
            log_event(
                "eca_audit_persist_failed",
                level=logging.WARNING,
                request_id=record.get("request_id"),
                event_uuid=record.get("event_uuid"),
                table=self._table,
                error=str(exc),
            )


class HttpAuditSink:
    def __init__(
        self,
        url: str,
        *,
        bearer_token: str | None = None,
        timeout_seconds: float = 3.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._url = url
        self._bearer_token = bearer_token
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    def emit(self, record: dict[str, Any]) -> None:
        headers = {"Content-Type": "application/json"}
        if self._bearer_token:
            headers["Authorization"] = f"Bearer {self._bearer_token}"
        try:
            with httpx.Client(timeout=self._timeout_seconds, transport=self._transport) as client:
                response = client.post(self._url, headers=headers, json=record)
        except Exception as exc:
            incr_metric("eca.audit.failed", sink="http")
            log_event(
                "eca_audit_export_failed",
                level=logging.WARNING,
                request_id=record.get("request_id"),
                event_uuid=record.get("event_uuid"),
                export_url=self._url,
                error=str(exc),
            )
            return
        if response.status_code >= 400:
            incr_metric("eca.audit.failed", sink="http")
            log_event(
                "eca_audit_export_failed",
                level=logging.WARNING,
                request_id=record.get("request_id"),
                event_uuid=record.get("event_uuid"),
                export_url=self._url,
                status_code=response.status_code,
                response_text=response.text[:200],
            )


class CompositeAuditSink:
    def __init__(self, sinks: Iterable[Any]) -> None:
        self._sinks = list(sinks)

    def emit(self, record: dict[str, Any]) -> None:
        for sink in self._sinks:
            try:
                sink.emit(record)
            except Exception as exc:
                incr_metric("eca.audit.failed", sink=type(sink).__name__)
                log_event(
                    "eca_audit_sink_failed",
                    level=logging.WARNING,
                    request_id=record.get("request_id"),
                    sink=type(sink).__name__,
                    error=str(exc),
                )
