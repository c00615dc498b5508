"""Structured logging configuration for primer."""

import logging
from typing import Any, Dict, Optional

import structlog
from structlog.stdlib import LoggerFactory


def configure_logging(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Configure stdlib logging and structlog for audit events."""

    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
    ]

    if json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        logger_factory=LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def get_audit_logger(component: str) -> structlog.BoundLogger:
    """Get a logger with audit context for a specific component."""
    logger = structlog.get_logger(component)
    return logger.bind(component=component, audit=True)


def log_ingestion_event(
    logger: structlog.BoundLogger,
    source: str,
    document_id: str,
    pages: int,
    chunks_created: int,
    vectors_indexed: int,
    embedding_failures: int,
    fallback_used: bool,
    processing_time_ms: float,
) -> None:
    """Log document ingestion for audit trail."""
    logger.info(
        "document_ingested",
        source=source,
        document_id=document_id,
        pages=pages,
        chunks_created=chunks_created,
        vectors_indexed=vectors_indexed,
        embedding_failures=embedding_failures,
        fallback_used=fallback_used,
        processing_time_ms=processing_time_ms,
        event_type="document_ingestion",
    )


def log_ingestion_failure(
    logger: structlog.BoundLogger,
    source: str,
    stage: str,
    error: str,
    partial: Optional[Dict[str, Any]] = None,
) -> None:
    logger.error(
        "document_failed",
        source=source,
        stage=stage,
        error=error,
        partial=partial or {},
        event_type="document_ingestion",
    )


def log_embedding_stats(
    logger: structlog.BoundLogger,
    document_id: str,
    stats: Dict[str, Any],
) -> None:
    logger.info(
        "embedding_batch_completed",
        document_id=document_id,
        **stats,
        event_type="embedding",
    )


def log_query_event(
    logger: structlog.BoundLogger,
    query: str,
    top_k: int,
    results_count: int,
    execution_time_ms: float,
    filters_applied: Optional[Dict[str, Any]] = None,
) -> None:
    """Log a retrieval query."""
    logger.info(
        "query_executed",
        query=query,
        top_k=top_k,
        results_count=results_count,
        execution_time_ms=execution_time_ms,
        filters_applied=filters_applied or {},
        event_type="query",
    )
