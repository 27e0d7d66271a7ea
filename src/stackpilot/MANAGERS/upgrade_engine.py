"""
Upgrade availability checks and variable merging for product upgrades.
"""
import logging
from typing import Dict, Iterable, List, Mapping, Optional

from ..errors import ProductNotFound, StackNotFound
from ..MODELS.product_deployment import ProductDeployment, ProductDeploymentStatus
from ..MODELS.upgrade_info import CatalogProduct, UpgradeInfo
from ..UTILS.version_compare import is_newer
from .catalog import StackCatalog

logger = logging.getLogger(__name__)


class UpgradeEngine:
    """
    Compares a deployed product against the catalog and prepares the
    variable map of an upgrade pass.
    """

    def check_upgrade(self, deployment: ProductDeployment, catalog: StackCatalog) -> UpgradeInfo:
        """
        Checks whether a newer version of the deployed product exists.

        Variable and stack changes are computed by name only; a variable whose
        default changed but whose name did not is neither new nor removed.

        :param deployment: The deployed product.
        :param catalog: The stack catalog.
        :return: The upgrade information.
        """
        current_version = deployment.product_version
        try:
            latest = catalog.get_latest_version(deployment.product_group_id)
        except ProductNotFound:
            logger.warning("Product group %s not found in catalog", deployment.product_group_id)
            return UpgradeInfo(
                current_version=current_version,
                reason="product not found in catalog",
                message=f"Product '{deployment.product_group_id}' is no longer in the catalog.",
            )

        info = UpgradeInfo(
            current_version=current_version,
            latest_version=latest.version,
            latest_product_id=latest.product_id,
            latest_stack_ids=list(latest.stack_ids),
            upgrade_available=is_newer(latest.version, current_version),
        )

        if info.upgrade_available:
            current_names = self.current_variable_names(deployment, catalog)
            target_names = self.target_variable_names(latest, catalog)
            info.new_variables = [n for n in target_names if n not in current_names]
            info.removed_variables = [n for n in current_names if n not in target_names]

            current_stacks = [s.display_name for s in deployment.stacks_in_deploy_order() if not s.is_retired]
            target_stacks = [catalog.get_stack_name(stack_id) for stack_id in latest.stack_ids]
            current_lower = {s.lower() for s in current_stacks}
            target_lower = {s.lower() for s in target_stacks}
            info.new_stacks = [s for s in target_stacks if s.lower() not in current_lower]
            info.removed_stacks = [s for s in current_stacks if s.lower() not in target_lower]

        status = deployment.status
        if not info.upgrade_available:
            info.reason = "no newer version available"
            info.message = f"Version {current_version} is the latest available version."
        elif status != ProductDeploymentStatus.RUNNING:
            info.reason = f"deployment is not running (status: {status.value})"
            info.message = f"Upgrade to {latest.version} is available but the deployment must be Running."
        else:
            info.can_upgrade = True
            info.message = f"Upgrade available from {current_version} to {latest.version}."
        return info

    def current_variable_names(self, deployment: ProductDeployment, catalog: StackCatalog) -> List[str]:
        """
        Variable names declared by the deployed version. Falls back to the
        recorded values for stacks the catalog no longer knows.
        """
        names: List[str] = []
        for stack in deployment.stacks_in_deploy_order():
            if stack.is_retired:
                continue
            try:
                declared = [v.name for v in catalog.get_variables(stack.stack_id)]
            except StackNotFound:
                logger.warning("Stack %s not found in catalog; using recorded variables", stack.stack_id)
                declared = list(deployment.shared_variables) + list(stack.variables)
            _extend_unique(names, declared)
        return names

    def target_variable_names(self, product: CatalogProduct, catalog: StackCatalog) -> List[str]:
        names: List[str] = []
        for stack_id in product.stack_ids:
            _extend_unique(names, (v.name for v in catalog.get_variables(stack_id)))
        return names

    @staticmethod
    def merge_variables(existing: Mapping[str, str], supplied: Optional[Mapping[str, str]],
                        declared: Iterable[str]) -> Dict[str, str]:
        """
        Builds the variable map of an upgrade pass.

        A value supplied by the caller wins; otherwise a name present in both
        versions keeps its existing value. Names the target version no longer
        declares are dropped, and new names without a supplied value are left
        to their manifest default.

        :param existing: Values used by the current deployment.
        :param supplied: Values passed with the upgrade request.
        :param declared: Variable names declared by the target version.
        :return: The merged values.
        """
        supplied = supplied or {}
        merged: Dict[str, str] = {}
        for name in declared:
            if name in supplied and supplied[name] is not None:
                merged[name] = supplied[name]
            elif name in existing:
                merged[name] = existing[name]
        return merged


def _extend_unique(names: List[str], more: Iterable[str]):
    for name in more:
        if name not in names:
            names.append(name)
