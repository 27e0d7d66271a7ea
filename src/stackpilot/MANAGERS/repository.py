"""
Storage of product deployment aggregates.
"""
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from ..errors import ProductNotFound
from ..MODELS.product_deployment import ProductDeployment


class ProductDeploymentRepository(ABC):
    """
    Persistence contract for ProductDeployment aggregates.
    """

    @abstractmethod
    def add(self, deployment: ProductDeployment):
        pass

    @abstractmethod
    def update(self, deployment: ProductDeployment):
        pass

    @abstractmethod
    def get(self, deployment_id: str) -> ProductDeployment:
        """
        :raises ProductNotFound: If no deployment has that id.
        """

    @abstractmethod
    def get_active(self, environment_id: str, product_group_id: str) -> Optional[ProductDeployment]:
        """
        The most recent deployment of a product group in an environment that
        has been neither removed nor superseded, or None.
        """

    @abstractmethod
    def list(self, environment_id: Optional[str] = None) -> List[ProductDeployment]:
        pass


class InMemoryProductDeploymentRepository(ProductDeploymentRepository):
    """
    Keeps deployments in a dict. Stored aggregates are copies, so callers
    only change stored state through update().
    """

    def __init__(self):
        self._deployments: Dict[str, ProductDeployment] = {}
        self._lock = threading.Lock()

    def add(self, deployment: ProductDeployment):
        with self._lock:
            if deployment.id in self._deployments:
                raise ValueError(f"Product deployment {deployment.id} already exists")
            self._deployments[deployment.id] = deployment.model_copy(deep=True)

    def update(self, deployment: ProductDeployment):
        with self._lock:
            if deployment.id not in self._deployments:
                raise ProductNotFound(f"Product deployment {deployment.id} not found")
            self._deployments[deployment.id] = deployment.model_copy(deep=True)

    def get(self, deployment_id: str) -> ProductDeployment:
        with self._lock:
            deployment = self._deployments.get(deployment_id)
            if deployment is None:
                raise ProductNotFound(f"Product deployment {deployment_id} not found")
            return deployment.model_copy(deep=True)

    def get_active(self, environment_id: str, product_group_id: str) -> Optional[ProductDeployment]:
        with self._lock:
            candidates = [
                d for d in self._deployments.values()
                if d.environment_id == environment_id
                and d.product_group_id.lower() == product_group_id.lower()
                and not d.is_removed
                and not d.is_superseded
            ]
            if not candidates:
                return None
            return max(candidates, key=lambda d: d.created_at).model_copy(deep=True)

    def list(self, environment_id: Optional[str] = None) -> List[ProductDeployment]:
        with self._lock:
            deployments = [
                d.model_copy(deep=True) for d in self._deployments.values()
                if environment_id is None or d.environment_id == environment_id
            ]
        return sorted(deployments, key=lambda d: d.created_at)
