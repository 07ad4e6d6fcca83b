"""Dispatch services."""

from courier_dispatch.services.availability import (
    DriverAvailabilityController,
    claim_driver,
    count_available_drivers,
    release_driver,
)
from courier_dispatch.services.device import (
    PermissionProvider,
    PositionSource,
    PushedPositionSource,
    ReportedPermissions,
)
from courier_dispatch.services.earnings import DriverStatsService, EarningsSummary
from courier_dispatch.services.eligibility import Ineligibility, should_notify
from courier_dispatch.services.lifecycle import DeliveryLifecycle
from courier_dispatch.services.pricing import DRIVER_SHARE, PricingRulesProvider, driver_share
from courier_dispatch.services.request_manager import DeliveryRequestManager, RequestPrompt
from courier_dispatch.services.scheduling import ScheduledDeliveryActivator
from courier_dispatch.services.tracking import LocationTrackingSession

__all__ = [
    "DriverAvailabilityController",
    "claim_driver",
    "release_driver",
    "count_available_drivers",
    "PermissionProvider",
    "PositionSource",
    "PushedPositionSource",
    "ReportedPermissions",
    "DriverStatsService",
    "EarningsSummary",
    "Ineligibility",
    "should_notify",
    "DeliveryLifecycle",
    "DRIVER_SHARE",
    "PricingRulesProvider",
    "driver_share",
    "DeliveryRequestManager",
    "RequestPrompt",
    "ScheduledDeliveryActivator",
    "LocationTrackingSession",
]
