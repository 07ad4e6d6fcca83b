"""Delivery lifecycle state machine."""

from enum import Enum

from courier_dispatch.models.request import DeliveryRequest, DeliveryStatus, RequestStatus


class LifecycleStage(str, Enum):
    """Combined position of a request across status and deliveryStatus."""

    SCHEDULED = "scheduled"
    SEARCHING = "searching"
    ACCEPTED = "accepted"
    COLLECTING = "collecting"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class LifecycleTransitions:
    """Valid lifecycle transitions."""

    TRANSITIONS = {
        LifecycleStage.SCHEDULED: [
            LifecycleStage.SEARCHING,
            LifecycleStage.CANCELLED,
        ],
        LifecycleStage.SEARCHING: [
            LifecycleStage.ACCEPTED,
            LifecycleStage.CANCELLED,
        ],
        LifecycleStage.ACCEPTED: [
            LifecycleStage.COLLECTING,
            LifecycleStage.CANCELLED,
        ],
        LifecycleStage.COLLECTING: [
            LifecycleStage.IN_TRANSIT,
            LifecycleStage.CANCELLED,
        ],
        LifecycleStage.IN_TRANSIT: [
            LifecycleStage.DELIVERED,
            LifecycleStage.CANCELLED,
        ],
        LifecycleStage.DELIVERED: [],
        LifecycleStage.CANCELLED: [],
    }

    @classmethod
    def can_transition(cls, from_state: LifecycleStage, to_state: LifecycleStage) -> bool:
        """Check if a state transition is valid."""
        return to_state in cls.TRANSITIONS.get(from_state, [])

    @classmethod
    def is_terminal(cls, state: LifecycleStage) -> bool:
        return not cls.TRANSITIONS.get(state)


_DELIVERY_STAGES = {
    DeliveryStatus.ACCEPTED: LifecycleStage.ACCEPTED,
    DeliveryStatus.COLLECTING: LifecycleStage.COLLECTING,
    DeliveryStatus.IN_TRANSIT: LifecycleStage.IN_TRANSIT,
    DeliveryStatus.DELIVERED: LifecycleStage.DELIVERED,
}


def lifecycle_stage(request: DeliveryRequest) -> LifecycleStage:
    """Position of a request in the lifecycle."""
    if request.status == RequestStatus.SCHEDULED:
        return LifecycleStage.SCHEDULED
    if request.status == RequestStatus.SEARCHING:
        return LifecycleStage.SEARCHING
    if request.status == RequestStatus.CANCELLED:
        return LifecycleStage.CANCELLED
    if request.status == RequestStatus.COMPLETED:
        return LifecycleStage.DELIVERED
    return _DELIVERY_STAGES.get(request.delivery_status, LifecycleStage.ACCEPTED)
