from ridesync.dispatch.driver import DriverDispatchCoordinator, PendingOffer, ProvisionalAcceptance
from ridesync.dispatch.passenger import PassengerDispatchCoordinator, PassengerPhase

__all__ = [
    "DriverDispatchCoordinator",
    "PassengerDispatchCoordinator",
    "PassengerPhase",
    "PendingOffer",
    "ProvisionalAcceptance",
]
