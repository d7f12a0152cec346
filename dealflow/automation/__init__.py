from dealflow.automation.effects import EffectSkipped, SideEffect, run_effects
from dealflow.automation.service import StageTransitionAutomator
from dealflow.automation.transitions import (
    LifecycleFlags,
    Override,
    StageContext,
    Transition,
    TransitionKind,
    resolve_transition,
)

__all__ = [
    "EffectSkipped",
    "LifecycleFlags",
    "Override",
    "SideEffect",
    "StageContext",
    "StageTransitionAutomator",
    "Transition",
    "TransitionKind",
    "resolve_transition",
    "run_effects",
]
