"""Tests for the lifecycle transition table."""

import pytest

from courier_dispatch.models.request import DeliveryRequest
from courier_dispatch.state.workflow import LifecycleStage, LifecycleTransitions, lifecycle_stage


def test_transition_table() -> None:
    assert LifecycleTransitions.can_transition(LifecycleStage.SEARCHING, LifecycleStage.ACCEPTED)
    assert LifecycleTransitions.can_transition(LifecycleStage.SCHEDULED, LifecycleStage.SEARCHING)
    assert not LifecycleTransitions.can_transition(LifecycleStage.ACCEPTED, LifecycleStage.IN_TRANSIT)
    assert not LifecycleTransitions.can_transition(LifecycleStage.DELIVERED, LifecycleStage.CANCELLED)
    assert LifecycleTransitions.is_terminal(LifecycleStage.CANCELLED)
    assert not LifecycleTransitions.is_terminal(LifecycleStage.IN_TRANSIT)


@pytest.mark.parametrize("stage", [s for s in LifecycleStage if not LifecycleTransitions.is_terminal(s)])
def test_every_open_stage_can_be_cancelled(stage: LifecycleStage) -> None:
    assert LifecycleTransitions.can_transition(stage, LifecycleStage.CANCELLED)


@pytest.mark.parametrize(
    "status,delivery_status,stage",
    [
        ("scheduled", None, LifecycleStage.SCHEDULED),
        ("searching", None, LifecycleStage.SEARCHING),
        ("accepted", "accepted", LifecycleStage.ACCEPTED),
        ("accepted", "collecting", LifecycleStage.COLLECTING),
        ("accepted", "in_transit", LifecycleStage.IN_TRANSIT),
        ("completed", "delivered", LifecycleStage.DELIVERED),
        ("cancelled", "collecting", LifecycleStage.CANCELLED),
    ],
)
def test_lifecycle_stage(status: str, delivery_status: str | None, stage: LifecycleStage) -> None:
    request = DeliveryRequest.model_validate(
        {
            "id": "ride-1",
            "status": status,
            "deliveryStatus": delivery_status,
            "selectedCourier": "courier-1",
            "rideDetails": {"vehicleType": "Bike"},
        }
    )

    assert lifecycle_stage(request) == stage
