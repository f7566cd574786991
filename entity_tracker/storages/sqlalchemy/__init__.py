import logging
import typing

from sqlalchemy import MetaData, and_, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql import ClauseElement

from entity_tracker.commit import CommitOutcome, DmlIntent, DmlKind, is_conflict, resolve_pending
from entity_tracker.errors import ExecutionError, OptimisticConcurrencyError
from entity_tracker.identity_map import IdentityKey
from entity_tracker.interfaces import CommandExecutor, Loader, Row
from entity_tracker.mapping import EntityType, MappingModel
from entity_tracker.storages.sqlalchemy.schema import build_metadata

logger = logging.getLogger(__name__)


class SqlAlchemyStore(Loader, CommandExecutor):
    def __init__(self, engine: Engine, model: MappingModel, metadata: typing.Optional[MetaData] = None) -> None:
        self._engine = engine
        self._model = model
        self.metadata = metadata if metadata is not None else build_metadata(model)

    def create_all(self) -> None:
        self.metadata.create_all(self._engine)

    def drop_all(self) -> None:
        self.metadata.drop_all(self._engine)

    def load_by_key(self, key: IdentityKey) -> typing.Optional[Row]:
        entity_type = self._model.entity_type(key.cls)
        table = self.metadata.tables[entity_type.table]
        criteria = zip(entity_type.key_columns, key.values)
        query = select(table).where(and_(*(table.c[column] == value for column, value in criteria)))
        with self._engine.connect() as connection:
            row = connection.execute(query).mappings().first()
        return dict(row) if row is not None else None

    def load_by_predicate(
        self, entity_type: EntityType, predicate: typing.Union[typing.Mapping[str, typing.Any], ClauseElement]
    ) -> typing.List[Row]:
        table = self.metadata.tables[entity_type.table]
        query = select(table)
        if isinstance(predicate, ClauseElement):
            query = query.where(predicate)
        elif predicate:
            query = query.where(and_(*(table.c[column] == value for column, value in predicate.items())))
        with self._engine.connect() as connection:
            return [dict(row) for row in connection.execute(query).mappings()]

    def execute_batch(self, intents: typing.Sequence[DmlIntent]) -> typing.List[CommitOutcome]:
        outcomes: typing.List[CommitOutcome] = []
        current: typing.Optional[DmlIntent] = None
        try:
            with self._engine.begin() as connection:
                for current in intents:
                    outcome = self._execute(connection, current, outcomes)
                    if is_conflict(current, outcome.rows_affected):
                        raise OptimisticConcurrencyError(intents=[current])
                    outcomes.append(outcome)
        except SQLAlchemyError as error:
            logger.warning("Batch rolled back: %s", error)
            raise ExecutionError(str(error), current) from error
        logger.debug("Applied batch of %d intent(s)", len(intents))
        return outcomes

    def _execute(
        self, connection: Connection, intent: DmlIntent, outcomes: typing.Sequence[CommitOutcome]
    ) -> CommitOutcome:
        table = self.metadata.tables[intent.table]
        values = resolve_pending(intent.column_values, outcomes)

        if intent.kind is DmlKind.INSERT:
            result = connection.execute(table.insert().values(values))
            generated_key = None
            if intent.generated_column:
                generated_key = values.get(intent.generated_column)
                if generated_key is None:
                    generated_key = result.inserted_primary_key[
                        [column.name for column in table.primary_key.columns].index(intent.generated_column)
                    ]
            return CommitOutcome(generated_key=generated_key, rows_affected=result.rowcount)

        key = resolve_pending(intent.identity_key, outcomes)
        key_where = and_(*(table.c[column] == value for column, value in key.items()))
        predicate = intent.concurrency_predicate or {}
        where = and_(key_where, *(table.c[column] == value for column, value in predicate.items()))
        if intent.kind is DmlKind.UPDATE:
            result = connection.execute(table.update().where(where).values(values))
            return CommitOutcome(rows_affected=result.rowcount)

        result = connection.execute(table.delete().where(where))
        if not result.rowcount and intent.concurrency_predicate:
            # the row is still there, under another token
            if connection.execute(select(*table.primary_key.columns).where(key_where)).first() is not None:
                raise OptimisticConcurrencyError(intents=[intent])
        return CommitOutcome(rows_affected=result.rowcount)
