"""
Fetch and download conditions.

User supplied predicates that gate whether a discovered URL is queued and
whether a response body is downloaded.
"""

import inspect
import logging
from typing import Any, Callable, List, Tuple, Union


class ConditionNotFoundError(LookupError):
    """Raised when removing a condition that is not registered."""


class ConditionError(Exception):
    """Wraps an exception raised by a condition while it was evaluated."""

    def __init__(self, condition_id: int, error: BaseException):
        super().__init__(f"Condition {condition_id} failed: {error}")
        self.condition_id = condition_id
        self.error = error


class ConditionRegistry:
    """
    Ordered list of predicates with stable numeric ids.

    A condition returns a bool or an awaitable resolving to one. Evaluation
    follows registration order and stops at the first rejection.
    """

    def __init__(self, kind: str = "fetch"):
        self.kind = kind
        self.logger = logging.getLogger(__name__)
        self._conditions: List[Tuple[int, Callable]] = []
        self._next_id = 0

    def __len__(self) -> int:
        return len(self._conditions)

    def __contains__(self, condition: Union[int, Callable]) -> bool:
        return any(self._matches(entry, condition) for entry in self._conditions)

    @staticmethod
    def _matches(entry: Tuple[int, Callable], key: Union[int, Callable]) -> bool:
        condition_id, condition = entry
        if isinstance(key, int) and not isinstance(key, bool):
            return condition_id == key
        return condition is key

    def add(self, condition: Callable) -> int:
        """Register a condition and return its id."""
        if not callable(condition):
            raise TypeError(f"{self.kind.capitalize()} condition must be callable")

        condition_id = self._next_id
        self._next_id += 1
        self._conditions.append((condition_id, condition))
        self.logger.debug(f"Added {self.kind} condition {condition_id}")
        return condition_id

    def remove(self, key: Union[int, Callable]) -> bool:
        """
        Remove a condition by id or by reference.

        Raises:
            ConditionNotFoundError: Nothing registered under that id/reference
        """
        for index, entry in enumerate(self._conditions):
            if self._matches(entry, key):
                del self._conditions[index]
                self.logger.debug(f"Removed {self.kind} condition {entry[0]}")
                return True
        raise ConditionNotFoundError(f"Unable to find {self.kind} condition: {key!r}")

    async def evaluate(self, *args: Any) -> bool:
        """
        Run the conditions against the arguments.

        Returns:
            False as soon as one condition rejects, True if all allow

        Raises:
            ConditionError: A condition raised; remaining conditions are skipped
        """
        # Snapshot so conditions can add/remove conditions while running
        for condition_id, condition in list(self._conditions):
            try:
                result = condition(*args)
                if inspect.isawaitable(result):
                    result = await result
            except Exception as e:
                raise ConditionError(condition_id, e) from e

            if not result:
                return False
        return True
