"""
Small saga runner for multi-document workflows (enrollment, course creation).

Steps run in order. When one fails, the compensations of the steps that
already completed run in reverse order, the partial state is logged, and a
``WorkflowError`` naming the failed step is raised.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from errors import AppError, WorkflowError

logger = logging.getLogger(__name__)


@dataclass
class Step:
    name: str
    action: Callable[[Dict[str, Any]], Any]
    compensate: Optional[Callable[[Dict[str, Any]], Any]] = None


@dataclass
class Saga:
    name: str
    steps: List[Step] = field(default_factory=list)

    def step(self, name: str, action, compensate=None) -> "Saga":
        self.steps.append(Step(name, action, compensate))
        return self

    def run(self, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Run every step; each action receives the shared context dict and its return value is stored under the step name."""
        ctx: Dict[str, Any] = dict(context or {})
        done: List[Step] = []
        for step in self.steps:
            try:
                ctx[step.name] = step.action(ctx)
            except AppError:
                self._unwind(done, ctx, step.name)
                raise
            except Exception as e:
                logger.error("Saga %s failed at step %s: %s", self.name, step.name, e)
                self._unwind(done, ctx, step.name)
                raise WorkflowError(
                    f"{self.name} could not be completed", step.name, [s.name for s in done]
                ) from e
            done.append(step)
        return ctx

    def _unwind(self, done: List[Step], ctx: Dict[str, Any], failed: str) -> None:
        for step in reversed(done):
            if step.compensate is None:
                continue
            try:
                step.compensate(ctx)
            except Exception:
                # nothing more can be done here; leave a trace for manual repair
                logger.exception("Saga %s: compensation for %s failed after %s failed", self.name, step.name, failed)
        if done:
            logger.warning(
                "Saga %s rolled back steps %s after %s failed",
                self.name, [s.name for s in done], failed,
            )
