"""
FastAPI dependencies for the provider-backed services.
Tests swap these out through app.dependency_overrides.
"""
from fastapi import Depends

from leadcall.config import get_settings
from leadcall.services.contact import ContactService
from leadcall.services.dispatch import DispatchGateway, RetellDispatchGateway


def get_dispatch_gateway() -> DispatchGateway:
    return RetellDispatchGateway.from_settings(get_settings())


def get_contact_service(
    gateway: DispatchGateway = Depends(get_dispatch_gateway),
) -> ContactService:
    return ContactService.from_settings(gateway, get_settings())
