"""Adapters for integrating external payment providers."""

from .base import PaymentProvider, ProviderPayment
from .coingate import CoinGateProvider
from .sandbox import SandboxProvider

__all__ = ["PaymentProvider", "ProviderPayment", "CoinGateProvider", "SandboxProvider"]
