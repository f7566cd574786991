from typing import Generator

import pytest
from _pytest.fixtures import SubRequest
from sqlalchemy import event
from sqlalchemy.engine import Engine, create_engine

from entity_tracker import ChangeTracker, MappingModel
from entity_tracker.storages.sqlalchemy import SqlAlchemyStore


@pytest.fixture()
def engine(request: SubRequest) -> Engine:
    connection_url = request.config.getoption("--sqlalchemy-url")
    engine = create_engine(connection_url)
    if engine.dialect.name == "sqlite":

        @event.listens_for(engine, "connect")
        def enable_foreign_keys(dbapi_connection, _connection_record) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


@pytest.fixture()
def sa_store(engine: Engine, model: MappingModel) -> Generator[SqlAlchemyStore, None, None]:
    store = SqlAlchemyStore(engine, model)
    store.drop_all()
    store.create_all()
    yield store
    store.drop_all()


@pytest.fixture()
def sa_tracker(model: MappingModel, sa_store: SqlAlchemyStore) -> ChangeTracker:
    return ChangeTracker(model, executor=sa_store, loader=sa_store)
