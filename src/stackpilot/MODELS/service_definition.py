"""
Models for services declared in a stack manifest, including ports and mounts.

Values are kept as written in the manifest, placeholders included; they are
resolved when a deployment plan is built.
"""
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from ..UTILS.string_interpolation import VariableResolver


class PortMapping(BaseModel):
    """
    Defines a mapping between a host port and a container port.
    """
    model_config = ConfigDict(frozen=True)

    container: str
    host: Optional[str] = None
    host_ip: Optional[str] = None
    protocol: str = "tcp"

    def texts(self) -> List[str]:
        return [v for v in (self.host_ip, self.host, self.container) if v]


class VolumeMount(BaseModel):
    """
    Defines a mapping between a named volume or host path and a service path.
    """
    model_config = ConfigDict(frozen=True)

    source: str
    target: str
    read_only: bool = False

    @property
    def is_named_volume(self) -> bool:
        """
        Named volumes are plain identifiers; bind mounts are paths.
        """
        return not (
            self.source.startswith(('/', '.', '~', '$'))
            or '/' in self.source
            or '\\' in self.source
        )


class ServiceSpec(BaseModel):
    """
    The definition of a single service, as declared in a stack manifest.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    image: str = ""
    build: Optional[str] = None

    # Execution
    command: List[str] = []
    entrypoint: List[str] = []
    working_dir: Optional[str] = None
    user: Optional[str] = None

    # Environment
    environment: Dict[str, str] = {}

    # Networking
    ports: List[PortMapping] = []
    networks: List[str] = []
    hostname: Optional[str] = None

    # Storage
    volumes: List[VolumeMount] = []

    # Lifecycle
    restart: str = "no"
    depends_on: List[str] = []

    # Metadata
    labels: Dict[str, str] = {}

    def text_fields(self) -> List[str]:
        """
        Every textual field of the service that may hold placeholders.
        """
        texts = [self.image]
        if self.build:
            texts.append(self.build)
        texts.extend(self.command)
        texts.extend(self.entrypoint)
        for value in (self.working_dir, self.user, self.hostname):
            if value:
                texts.append(value)
        texts.extend(self.environment.values())
        for port in self.ports:
            texts.extend(port.texts())
        texts.extend(self.networks)
        for mount in self.volumes:
            texts.extend([mount.source, mount.target])
        texts.append(self.restart)
        texts.extend(self.labels.values())
        return texts

    @property
    def variable_references(self) -> List[str]:
        """
        Names of the variables this service refers to, in first-seen order.
        """
        names: List[str] = []
        for text in self.text_fields():
            for name in VariableResolver.references(text):
                if name not in names:
                    names.append(name)
        return names
