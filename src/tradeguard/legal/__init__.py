"""Admin arbitration of disputes and escalated validations."""

from tradeguard.legal.arbitration import AdminArbitration

__all__ = ["AdminArbitration"]
