# Copyright 2026 UCP Authors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Ordered steps with compensations, used to run checkout completion."""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class SagaStep:
    name: str
    action: Callable[[], Awaitable[Any]]
    compensate: Optional[Callable[[], Awaitable[Any]]] = None


class SagaFailed(Exception):
    """A step raised. ``cause`` is the original exception."""

    def __init__(self, step: str, cause: BaseException, completed: List[str]):
        super().__init__(f"Saga step '{step}' failed: {cause}")
        self.step = step
        self.cause = cause
        self.completed = completed


class Saga:
    """
    Runs steps in order, recording each step's result.

    Compensation is not automatic: the caller decides, from the failed step
    and the cause, whether to compensate or to leave the work for
    reconciliation.
    """

    def __init__(self, name: str, steps: List[SagaStep]):
        self.name = name
        self.steps = steps
        self.results: Dict[str, Any] = {}
        self._completed: List[SagaStep] = []

    async def run(self) -> Dict[str, Any]:
        for step in self.steps:
            try:
                self.results[step.name] = await step.action()
            except Exception as e:
                logger.warning(f"Saga {self.name}: step '{step.name}' failed: {e}")
                raise SagaFailed(step.name, e, [s.name for s in self._completed]) from e
            self._completed.append(step)
            logger.debug(f"Saga {self.name}: step '{step.name}' done")
        return self.results

    async def compensate(self) -> None:
        """Undo completed steps in reverse order. Errors are logged and the rest still run."""
        for step in reversed(self._completed):
            if step.compensate is None:
                continue
            try:
                await step.compensate()
                logger.info(f"Saga {self.name}: compensated '{step.name}'")
            except Exception:
                logger.exception(f"Saga {self.name}: compensation for '{step.name}' failed")
        self._completed = []
