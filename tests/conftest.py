"""Pytest configuration: every test gets a fresh in-memory document store."""

import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
sys.path.insert(0, os.path.abspath(os.path.dirname(__file__)))

from memory_store import MemoryStore  # noqa: E402
from schemas import Address, Product  # noqa: E402


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def address():
    return Address(street="1 Main St", city="Springfield", state="IL", country="US", zip_code="62701")


@pytest.fixture
def add_product(store):
    """Create a product through the repository path (server timestamps included)."""
    from repository import Repository

    repo = Repository(store)
    counter = {"n": 0}

    def _add(name="Widget", price=10.0, stock=5, **extra):
        counter["n"] += 1
        product = Product(name=name, price=price, stock=stock, sku=extra.pop("sku", f"SKU-{counter['n']}"), **extra)
        return repo.add("product", product)

    return _add