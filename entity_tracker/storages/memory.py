import copy
import logging
import typing

from entity_tracker.commit import CommitOutcome, DmlIntent, DmlKind, is_conflict, resolve_pending
from entity_tracker.errors import ExecutionError, OptimisticConcurrencyError
from entity_tracker.identity_map import IdentityKey
from entity_tracker.interfaces import CommandExecutor, Loader, Predicate, Row
from entity_tracker.mapping import EntityType, MappingModel

logger = logging.getLogger(__name__)

Table = typing.Dict[typing.Tuple[typing.Any, ...], Row]


class InMemoryStore(Loader, CommandExecutor):
    """Dict-backed store enforcing primary and foreign keys.

    Every batch runs against a copy of the tables which replaces them only if
    all intents succeed.
    """

    def __init__(self, model: MappingModel) -> None:
        self._model = model
        self._by_table: typing.Dict[str, EntityType] = {entity_type.table: entity_type for entity_type in model}
        self._tables: typing.Dict[str, Table] = {table: {} for table in self._by_table}
        self._sequences: typing.Dict[str, int] = {table: 0 for table in self._by_table}
        self.batches: typing.List[typing.List[DmlIntent]] = []

    def rows(self, table: str) -> typing.List[Row]:
        return [dict(row) for row in self._tables[table].values()]

    def seed(self, table: str, rows: typing.Iterable[Row]) -> None:
        entity_type = self._by_table[table]
        for row in rows:
            full_row = {column: row.get(column) for column in entity_type.columns}
            self._tables[table][self._row_key(entity_type, full_row)] = full_row
            self._bump_sequence(entity_type, full_row, self._sequences)

    def load_by_key(self, key: IdentityKey) -> typing.Optional[Row]:
        entity_type = self._model.entity_type(key.cls)
        row = self._tables[entity_type.table].get(key.values)
        return dict(row) if row is not None else None

    def load_by_predicate(self, entity_type: EntityType, predicate: Predicate) -> typing.List[Row]:
        return [
            dict(row)
            for row in self._tables[entity_type.table].values()
            if all(row.get(column) == value for column, value in predicate.items())
        ]

    def execute_batch(self, intents: typing.Sequence[DmlIntent]) -> typing.List[CommitOutcome]:
        tables = copy.deepcopy(self._tables)
        sequences = dict(self._sequences)
        outcomes: typing.List[CommitOutcome] = []
        for intent in intents:
            outcome = self._execute(intent, tables, sequences, outcomes)
            if is_conflict(intent, outcome.rows_affected):
                raise OptimisticConcurrencyError(intents=[intent])
            outcomes.append(outcome)

        self._tables = tables
        self._sequences = sequences
        self.batches.append(list(intents))
        logger.debug("Applied batch of %d intent(s)", len(intents))
        return outcomes

    def _execute(
        self,
        intent: DmlIntent,
        tables: typing.Dict[str, Table],
        sequences: typing.Dict[str, int],
        outcomes: typing.List[CommitOutcome],
    ) -> CommitOutcome:
        try:
            entity_type = self._by_table[intent.table]
        except KeyError:
            raise ExecutionError(f"Unknown table {intent.table!r}", intent) from None
        table = tables[intent.table]
        values = resolve_pending(intent.column_values, outcomes)

        if intent.kind is DmlKind.INSERT:
            row = {column: values.get(column) for column in entity_type.columns}
            generated_key = None
            if intent.generated_column:
                if row[intent.generated_column] is None:
                    sequences[intent.table] += 1
                    row[intent.generated_column] = sequences[intent.table]
                generated_key = row[intent.generated_column]
            self._bump_sequence(entity_type, row, sequences)
            row_key = self._row_key(entity_type, row)
            if row_key in table:
                raise ExecutionError(f"Duplicate key {row_key} in {intent.table}", intent)
            self._check_references(entity_type, row, tables, intent)
            table[row_key] = row
            return CommitOutcome(generated_key=generated_key, rows_affected=1)

        key = resolve_pending(intent.identity_key, outcomes)
        row_key = tuple(key[column] for column in entity_type.key_columns)
        row = table.get(row_key)
        if row is None:
            return CommitOutcome(rows_affected=0)
        predicate = intent.concurrency_predicate or {}
        if any(row.get(column) != value for column, value in predicate.items()):
            if intent.kind is DmlKind.DELETE:
                # the row is still there, under another token
                raise OptimisticConcurrencyError(intents=[intent])
            return CommitOutcome(rows_affected=0)

        if intent.kind is DmlKind.UPDATE:
            row.update(values)
            self._check_references(entity_type, row, tables, intent)
        else:
            self._check_not_referenced(entity_type, row, tables, intent)
            del table[row_key]
        return CommitOutcome(rows_affected=1)

    def _row_key(self, entity_type: EntityType, row: Row) -> typing.Tuple[typing.Any, ...]:
        return tuple(row[column] for column in entity_type.key_columns)

    def _bump_sequence(self, entity_type: EntityType, row: Row, sequences: typing.Dict[str, int]) -> None:
        for column in entity_type.generated_columns:
            if isinstance(row.get(column), int):
                sequences[entity_type.table] = max(sequences[entity_type.table], row[column])

    def _check_references(
        self, entity_type: EntityType, row: Row, tables: typing.Dict[str, Table], intent: DmlIntent
    ) -> None:
        for foreign_key in self._model.foreign_keys(entity_type.cls):
            value = row.get(entity_type.get_property(foreign_key.name).column)
            if value is None:
                continue
            principal = self._model.entity_type(foreign_key.principal)
            if (value,) not in tables[principal.table]:
                raise ExecutionError(
                    f"{intent.table}.{foreign_key.name} = {value!r} references a missing {principal.name}", intent
                )

    def _check_not_referenced(
        self, entity_type: EntityType, row: Row, tables: typing.Dict[str, Table], intent: DmlIntent
    ) -> None:
        row_key = self._row_key(entity_type, row)
        for dependent in self._model:
            for foreign_key in self._model.foreign_keys(dependent.cls):
                if foreign_key.principal is not entity_type.cls:
                    continue
                column = dependent.get_property(foreign_key.name).column
                if any((other.get(column),) == row_key for other in tables[dependent.table].values()):
                    raise ExecutionError(f"{entity_type.name} {row_key} is still referenced by {dependent.name}", intent)
