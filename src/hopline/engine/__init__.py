from hopline.engine.dispatcher import DispatchReport, TurnDispatcher
from hopline.engine.machine import HopOutcome, StepStateMachine, check_transition
from hopline.engine.scheduler import APSchedulerHopScheduler, HopScheduler, WorkQueueScheduler

__all__ = [
    "APSchedulerHopScheduler",
    "DispatchReport",
    "HopOutcome",
    "HopScheduler",
    "StepStateMachine",
    "TurnDispatcher",
    "WorkQueueScheduler",
    "check_transition",
]
