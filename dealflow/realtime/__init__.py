from dealflow.realtime.channel import InProcessPushChannel, PushChannel, Subscription
from dealflow.realtime.reconciler import PushReconciler

__all__ = [
    "InProcessPushChannel",
    "PushChannel",
    "PushReconciler",
    "Subscription",
]
