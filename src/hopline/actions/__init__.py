from hopline.actions.builtin import register_builtin_actions
from hopline.actions.catalog import ActionCatalog, ActionImplementation, ActionOutcome, WorkflowRunner
from hopline.actions.dispatcher import ActionDispatcher, DispatchResult, PreparedCall

__all__ = [
    "ActionCatalog",
    "ActionDispatcher",
    "ActionImplementation",
    "ActionOutcome",
    "DispatchResult",
    "PreparedCall",
    "WorkflowRunner",
    "register_builtin_actions",
]
