from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass

from dealflow.metrics import observe_side_effect_failure


logger = logging.getLogger("dealflow.automation")


@dataclass(frozen=True)
class SideEffect:
    name: str
    run: Callable[[], Awaitable[None]]


class EffectSkipped(Exception):
    """Raised by an effect whose configuration does not allow it to run."""

    def __init__(self, effect: str, reason: str) -> None:
        self.effect = effect
        self.reason = reason
        super().__init__(f"{effect} skipped: {reason}")


async def run_effects(effects: Sequence[SideEffect], *, item_id: str) -> list[str]:
    """Run effects in order; a failing effect is logged and does not stop the rest.

    Returns the names of the effects that failed.
    """
    failed: list[str] = []
    for effect in effects:
        try:
            await effect.run()
        except EffectSkipped as skipped:
            logger.info(
                "automation.effect_skipped",
                extra={"effect": effect.name, "item_id": item_id, "reason": skipped.reason},
            )
        except Exception as exc:
            failed.append(effect.name)
            observe_side_effect_failure(effect.name)
            logger.exception(
                "automation.effect_failed",
                extra={"effect": effect.name, "item_id": item_id, "error": str(exc)},
            )
        else:
            logger.info("automation.effect_done", extra={"effect": effect.name, "item_id": item_id})
    return failed
