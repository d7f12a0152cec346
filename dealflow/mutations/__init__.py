from dealflow.mutations.pipeline import MutationContext, MutationKind, MutationPipeline, MutationStatus

__all__ = [
    "MutationContext",
    "MutationKind",
    "MutationPipeline",
    "MutationStatus",
]
