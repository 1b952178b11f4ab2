"""
Agency Desk — Service wiring.

Builds the desk from settings:
1. Configures structured logging
2. Opens the item store (SQLAlchemy) and creates its tables
3. Chooses the ledger client (remote over HTTP if configured, in-memory otherwise)
4. Wires the notification sinks and the queue services

Entry points (the operator API, scripts, tests) call ``build_desk()`` and use
the services on the returned ``Desk``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import structlog

from agency_desk.config import DeskSettings, settings as default_settings
from agency_desk.governance.authorization import AuthorizationTable
from agency_desk.ledger.client import HttpLedgerClient, InMemoryLedger, LedgerClient
from agency_desk.notifications.sink import NotificationSink, Notifier, StructlogSink
from agency_desk.services.assignment import AssignmentService
from agency_desk.services.funds import FundsService
from agency_desk.services.reporting import ReportingService
from agency_desk.services.submission import SubmissionService
from agency_desk.services.validation import ValidationService
from agency_desk.store.base import ItemStore
from agency_desk.store.service import SqlItemStore

logger = logging.getLogger(__name__)


def configure_logging(config: DeskSettings | None = None) -> None:
    """Configure structured logging."""
    config = config or default_settings
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer()
                if config.log_format != "json"
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(config.log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=config.log_level.upper(), format="%(levelname)s %(name)s: %(message)s")


@dataclass
class Desk:
    """The wired services of one desk instance."""

    store: ItemStore
    ledger: LedgerClient
    notifier: Notifier
    authorization: AuthorizationTable
    assignment: AssignmentService
    validation: ValidationService
    submission: SubmissionService
    reporting: ReportingService
    funds: FundsService
    currency_decimals: int = 0

    def close(self) -> None:
        if isinstance(self.ledger, HttpLedgerClient):
            self.ledger.close()
        dispose = getattr(self.store, "dispose", None)
        if dispose is not None:
            dispose()


def build_ledger(config: DeskSettings) -> LedgerClient:
    if config.remote_ledger_enabled:
        logger.info("Using remote ledger at %s", config.ledger_base_url)
        return HttpLedgerClient(
            base_url=config.ledger_base_url,
            api_key=config.ledger_api_key,
            timeout=config.ledger_timeout_seconds,
        )
    logger.warning("No ledger_base_url configured; settlements are kept in memory")
    return InMemoryLedger()


def build_desk(
    config: DeskSettings | None = None,
    store: ItemStore | None = None,
    ledger: LedgerClient | None = None,
    sinks: list[NotificationSink] | None = None,
    authorization: AuthorizationTable | None = None,
) -> Desk:
    """
    Wire a desk. Any collaborator passed in is used as-is.

    Usage:
        desk = build_desk()
        desk.assignment.claim(ref, operator)
    """
    config = config or default_settings
    log = structlog.get_logger()

    if store is None:
        sql_store = SqlItemStore(config.database_url, echo=config.database_echo)
        sql_store.initialize()
        store = sql_store
    ledger = ledger if ledger is not None else build_ledger(config)
    notifier = Notifier(sinks if sinks is not None else [StructlogSink()])
    authorization = authorization or AuthorizationTable()

    desk = Desk(
        store=store,
        ledger=ledger,
        notifier=notifier,
        authorization=authorization,
        assignment=AssignmentService(store, authorization, notifier),
        validation=ValidationService(store, ledger, authorization, notifier),
        submission=SubmissionService(store, ledger, notifier, config.currency_decimals),
        reporting=ReportingService(store),
        funds=FundsService(store, ledger, authorization, notifier),
        currency_decimals=config.currency_decimals,
    )
    log.info(
        "agency_desk.ready",
        store=type(store).__name__,
        ledger=type(ledger).__name__,
        currency=config.currency_code,
        currency_decimals=config.currency_decimals,
    )
    return desk
