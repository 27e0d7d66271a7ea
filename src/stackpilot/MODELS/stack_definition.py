"""
Models for a parsed stack manifest.
"""
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from .service_definition import ServiceSpec
from .variable_definition import VariableDefinition


class NetworkSpec(BaseModel):
    """
    A network declared at the top level of a manifest.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    driver: Optional[str] = None
    external: bool = False
    labels: Dict[str, str] = {}


class VolumeSpec(BaseModel):
    """
    A named volume declared at the top level of a manifest.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    driver: Optional[str] = None
    external: bool = False
    labels: Dict[str, str] = {}


class StackMetadata(BaseModel):
    """
    Descriptive metadata of a stack and the product it belongs to.
    """
    model_config = ConfigDict(frozen=True)

    name: Optional[str] = None
    description: Optional[str] = None
    product_name: Optional[str] = None
    product_version: Optional[str] = None
    category: Optional[str] = None


class StackDefinition(BaseModel):
    """
    Complete, immutable definition of a stack.
    Equivalent to a parsed compose-style manifest, placeholders unresolved.
    """
    model_config = ConfigDict(frozen=True)

    metadata: StackMetadata = StackMetadata()
    services: List[ServiceSpec]
    variables: List[VariableDefinition] = []
    networks: List[NetworkSpec] = []
    volumes: List[VolumeSpec] = []
    text: str = ""

    @property
    def name(self) -> Optional[str]:
        return self.metadata.name

    @property
    def service_names(self) -> List[str]:
        return [s.name for s in self.services]

    @property
    def variable_names(self) -> List[str]:
        return [v.name for v in self.variables]

    def get_service(self, name: str) -> Optional[ServiceSpec]:
        for service in self.services:
            if service.name == name:
                return service
        return None

    def default_values(self) -> Dict[str, str]:
        """
        Default value of every variable that declares one.
        """
        return {v.name: v.default for v in self.variables if v.default is not None}
