"""Shared FastAPI dependencies resolving services wired by the lifespan."""

from __future__ import annotations

from fastapi import Request

from photoflow.credits.billing import BillingEventHandler
from photoflow.credits.ledger import CreditLedger
from photoflow.jobs.orchestrator import WorkflowOrchestrator
from photoflow.notifications.progress import ProgressNotifier


def get_orchestrator(request: Request) -> WorkflowOrchestrator:
  return request.app.state.orchestrator


def get_ledger(request: Request) -> CreditLedger:
  return request.app.state.ledger


def get_billing_handler(request: Request) -> BillingEventHandler:
  return request.app.state.billing


def get_notifier(request: Request) -> ProgressNotifier:
  return request.app.state.notifier
