"""
Stack catalog and manifest source contracts, with in-memory and file-based
implementations.
"""
import functools
import logging
import os
import re
from abc import ABC, abstractmethod
from typing import Dict, List, Mapping, Optional

from ..errors import ProductNotFound, StackNotFound
from ..MODELS.stack_definition import StackDefinition
from ..MODELS.upgrade_info import CatalogProduct
from ..MODELS.variable_definition import VariableDefinition
from ..PARSERS.manifest_parser import ManifestParser
from ..UTILS.version_compare import compare_versions

logger = logging.getLogger(__name__)

MANIFEST_FILENAMES = ("stack.yml", "stack.yaml", "docker-compose.yml", "docker-compose.yaml")


class StackCatalog(ABC):
    """
    Read-only view of the published product versions and their stacks.
    """

    @abstractmethod
    def get_latest_version(self, product_group_id: str) -> CatalogProduct:
        """
        The highest published version of a product group.

        :raises ProductNotFound: If the group has no published version.
        """

    @abstractmethod
    def get_version(self, product_group_id: str, version: str) -> CatalogProduct:
        """
        A specific published version of a product group.

        :raises ProductNotFound: If that version is not published.
        """

    @abstractmethod
    def get_variables(self, stack_id: str) -> List[VariableDefinition]:
        """
        The variables a catalog stack declares.

        :raises StackNotFound: If the stack is unknown.
        """

    def get_stack_name(self, stack_id: str) -> str:
        """
        Display name of a catalog stack. Defaults to the last segment of its id.
        """
        return re.split(r"[:/]", stack_id.rstrip(":/"))[-1] or stack_id


class ManifestSource(ABC):
    """
    Supplies the raw manifest text of a stack. May perform I/O.
    """

    @abstractmethod
    def fetch(self, stack_id: str) -> str:
        """
        :raises StackNotFound: If no manifest exists for the stack.
        """


class FileManifestSource(ManifestSource):
    """
    Reads manifests from a directory: <root>/<stack_id>.yml or
    <root>/<stack_id>/stack.yml (or docker-compose.yml).
    """

    def __init__(self, root: str):
        """
        Initializes the source.

        :param root: Directory holding the manifests.
        """
        self.root = os.path.abspath(root)

    def fetch(self, stack_id: str) -> str:
        path = self.resolve_path(stack_id)
        if path is None:
            raise StackNotFound(f"No manifest found for stack '{stack_id}' in {self.root}")
        with open(path, 'r') as f:
            return f.read()

    def resolve_path(self, stack_id: str) -> Optional[str]:
        """
        Finds the manifest file of a stack, or None.
        """
        relative = stack_id.replace(':', os.sep)
        base = os.path.abspath(os.path.join(self.root, relative))
        if os.path.commonpath([self.root, base]) != self.root:
            raise StackNotFound(f"Stack id '{stack_id}' points outside the manifest directory")

        candidates = [base + ".yml", base + ".yaml"]
        candidates.extend(os.path.join(base, name) for name in MANIFEST_FILENAMES)
        for candidate in candidates:
            if os.path.isfile(candidate):
                return candidate
        return None


class InMemoryStackCatalog(StackCatalog, ManifestSource):
    """
    Catalog holding published product versions and their manifests in memory.
    Manifests are parsed when a version is published, so broken manifests
    never reach the catalog.
    """

    def __init__(self, parser: Optional[ManifestParser] = None):
        self.parser = parser or ManifestParser()
        self._products: Dict[str, Dict[str, CatalogProduct]] = {}
        self._manifests: Dict[str, str] = {}
        self._definitions: Dict[str, StackDefinition] = {}

    def register(self, product_group_id: str, version: str, stacks: Mapping[str, str],
                 product_id: Optional[str] = None, product_name: Optional[str] = None) -> CatalogProduct:
        """
        Publishes a product version.

        :param product_group_id: Identity shared by all versions of the product.
        :param version: The product version.
        :param stacks: Manifest text by stack id, in deployment order.
        :param product_id: Identity of this version; defaults to "<group>:<version>".
        :param product_name: Display name of the product.
        :return: The published catalog entry.
        """
        if not stacks:
            raise ValueError("A product version needs at least one stack")
        for stack_id, text in stacks.items():
            self._definitions[stack_id] = self.parser.parse(text)
            self._manifests[stack_id] = text

        product = CatalogProduct(
            product_group_id=product_group_id,
            version=version,
            product_id=product_id or f"{product_group_id}:{version}",
            product_name=product_name or product_group_id,
            stack_ids=list(stacks.keys()),
        )
        self._products.setdefault(product_group_id.lower(), {})[version] = product
        logger.info("Published %s %s with %d stacks", product_group_id, version, len(stacks))
        return product

    def versions(self, product_group_id: str) -> List[CatalogProduct]:
        """
        All published versions of a group, oldest first.
        """
        products = list(self._products.get(product_group_id.lower(), {}).values())
        return sorted(products, key=functools.cmp_to_key(lambda a, b: compare_versions(a.version, b.version)))

    def get_latest_version(self, product_group_id: str) -> CatalogProduct:
        versions = self.versions(product_group_id)
        if not versions:
            raise ProductNotFound(f"Product '{product_group_id}' not found in catalog")
        return versions[-1]

    def get_version(self, product_group_id: str, version: str) -> CatalogProduct:
        product = self._products.get(product_group_id.lower(), {}).get(version)
        if product is None:
            raise ProductNotFound(f"Product '{product_group_id}' version {version} not found in catalog")
        return product

    def get_variables(self, stack_id: str) -> List[VariableDefinition]:
        return list(self.get_definition(stack_id).variables)

    def get_stack_name(self, stack_id: str) -> str:
        return self.get_definition(stack_id).name or super().get_stack_name(stack_id)

    def get_definition(self, stack_id: str) -> StackDefinition:
        definition = self._definitions.get(stack_id)
        if definition is None:
            raise StackNotFound(f"Stack '{stack_id}' not found in catalog")
        return definition

    def fetch(self, stack_id: str) -> str:
        text = self._manifests.get(stack_id)
        if text is None:
            raise StackNotFound(f"Stack '{stack_id}' not found in catalog")
        return text
