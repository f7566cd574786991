import pytest
from _pytest.config.argparsing import Parser

from entity_tracker import ChangeTracker, MappingModel, build
from entity_tracker.storages.memory import InMemoryStore
from entity_tracker.tests.school import ENTITIES


def pytest_addoption(parser: Parser) -> None:
    parser.addoption("--sqlalchemy-url", action="store", default="sqlite://")


@pytest.fixture()
def model() -> MappingModel:
    return build(*ENTITIES)


@pytest.fixture()
def store(model: MappingModel) -> InMemoryStore:
    return InMemoryStore(model)


@pytest.fixture()
def tracker(model: MappingModel, store: InMemoryStore) -> ChangeTracker:
    return ChangeTracker(model, executor=store, loader=store)
