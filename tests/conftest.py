"""
Shared manifests and fixtures.
"""
import pytest

from stackpilot.config import OrchestratorSettings
from stackpilot.MANAGERS.catalog import InMemoryStackCatalog
from stackpilot.MANAGERS.product_orchestrator import ProductDeploymentOrchestrator
from stackpilot.MANAGERS.runtime_adapter import InMemoryRuntimeAdapter

DATABASE_MANIFEST = """
metadata:
  name: database
  productName: Shop
  productVersion: "1.0.0"
services:
  db:
    image: postgres:${PG_VERSION:-16}
    environment:
      POSTGRES_PASSWORD: ${DB_PASSWORD}
    volumes:
      - db_data:/var/lib/postgresql/data
volumes:
  db_data: {}
"""

API_MANIFEST = """
metadata:
  name: api
  productVersion: "1.0.0"
services:
  api:
    image: shop/api:${API_VERSION:-1.0}
    environment:
      - DB_PASSWORD
      - LOG_LEVEL=${LOG_LEVEL:-info}
    ports:
      - "${API_PORT:-8080}:8080"
    depends_on:
      - worker
  worker:
    image: shop/worker:${API_VERSION:-1.0}
"""

WEB_MANIFEST = """
metadata:
  name: web
  productVersion: "1.0.0"
services:
  web:
    image: nginx:1.25
    ports:
      - "80:80"
"""

SHOP_STACKS = {
    "shop:1.0.0:database": DATABASE_MANIFEST,
    "shop:1.0.0:api": API_MANIFEST,
    "shop:1.0.0:web": WEB_MANIFEST,
}


@pytest.fixture
def settings():
    return OrchestratorSettings(retry_backoff_seconds=0)


@pytest.fixture
def adapter():
    return InMemoryRuntimeAdapter()


@pytest.fixture
def catalog():
    catalog = InMemoryStackCatalog()
    catalog.register("shop", "1.0.0", SHOP_STACKS, product_name="Shop")
    return catalog


@pytest.fixture
def orchestrator(adapter, catalog, settings):
    return ProductDeploymentOrchestrator(adapter, catalog, catalog, settings=settings)
