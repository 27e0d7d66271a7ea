"""
Models describing upgrade availability for a product deployment.
"""
from typing import List, Optional

from pydantic import BaseModel


class CatalogProduct(BaseModel):
    """
    One version of a product as published in the stack catalog.
    """
    product_group_id: str
    version: str
    product_id: str
    product_name: Optional[str] = None
    stack_ids: List[str] = []


class UpgradeInfo(BaseModel):
    """
    Result of comparing a deployed product against the catalog.
    """
    current_version: str
    latest_version: Optional[str] = None
    latest_product_id: Optional[str] = None
    latest_stack_ids: List[str] = []
    upgrade_available: bool = False
    new_variables: List[str] = []
    removed_variables: List[str] = []
    new_stacks: List[str] = []
    removed_stacks: List[str] = []
    can_upgrade: bool = False
    reason: Optional[str] = None
    message: Optional[str] = None
