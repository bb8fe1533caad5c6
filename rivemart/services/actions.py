from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from ..utils.logger import logger


@dataclass
class ActionResult:
    name: str
    ok: bool
    detail: str = ""


async def run_best_effort(name: str, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> ActionResult:
    """Await ``func`` and report the outcome instead of raising.

    A return value of ``False`` or ``None`` means the action was skipped
    (usually not configured). Exceptions are logged and folded into a failed result.
    """
    try:
        outcome = await func(*args, **kwargs)
    except Exception as exc:
        logger.exception(f"Best-effort action {name} failed: {exc}")
        return ActionResult(name=name, ok=False, detail=str(exc) or exc.__class__.__name__)

    if outcome is False or outcome is None:
        logger.info(f"Best-effort action {name} skipped.")
        return ActionResult(name=name, ok=False, detail="skipped")

    logger.info(f"Best-effort action {name} completed.")
    return ActionResult(name=name, ok=True, detail="" if outcome is True else str(outcome))
