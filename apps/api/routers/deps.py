"""Accessors for the store-backed services created in the app lifespan."""

from fastapi import Request

from services.credits import CreditService
from services.guest_credits import GuestBalanceStore
from services.payments import PaymentService
from services.plans import PlanCatalog


def get_credit_service(request: Request) -> CreditService:
    return request.app.state.credit_service


def get_guest_store(request: Request) -> GuestBalanceStore:
    return request.app.state.guest_store


def get_plan_catalog(request: Request) -> PlanCatalog:
    return request.app.state.plan_catalog


def get_payment_service(request: Request) -> PaymentService:
    return request.app.state.payment_service
