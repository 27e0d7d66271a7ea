"""
Per-(environment, product group) mutual exclusion for deployment passes.
"""
import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Set, Tuple

from ..errors import DeploymentInProgress

logger = logging.getLogger(__name__)


class ExclusionRegistry:
    """
    Hands out one exclusion scope per (environment, product group) pair.
    A second request for a held scope fails immediately instead of waiting,
    so only the pairs currently held are tracked.
    """

    def __init__(self):
        self._held: Set[Tuple[str, str]] = set()
        self._guard = threading.Lock()

    @contextmanager
    def acquire(self, environment_id: str, product_group_id: str) -> Iterator[None]:
        """
        Holds the scope for the duration of the with-block.

        :raises DeploymentInProgress: If another pass holds the scope.
        """
        key = self._key(environment_id, product_group_id)
        with self._guard:
            if key in self._held:
                logger.warning(
                    "Rejected request for %s in %s: a pass is already in progress",
                    product_group_id, environment_id,
                )
                raise DeploymentInProgress(environment_id, product_group_id)
            self._held.add(key)
        try:
            yield
        finally:
            with self._guard:
                self._held.discard(key)

    def is_held(self, environment_id: str, product_group_id: str) -> bool:
        with self._guard:
            return self._key(environment_id, product_group_id) in self._held

    def held_scopes(self) -> int:
        with self._guard:
            return len(self._held)

    @staticmethod
    def _key(environment_id: str, product_group_id: str) -> Tuple[str, str]:
        return environment_id, product_group_id.lower()
