import abc
import typing

from entity_tracker.commit import CommitOutcome, DmlIntent
from entity_tracker.identity_map import IdentityKey
from entity_tracker.mapping import EntityType

Row = typing.Dict[str, typing.Any]
Predicate = typing.Mapping[str, typing.Any]


class Loader(abc.ABC):
    """Reads rows, keyed by column name, for the tracker to materialize."""

    @abc.abstractmethod
    def load_by_key(self, key: IdentityKey) -> typing.Optional[Row]:
        pass

    @abc.abstractmethod
    def load_by_predicate(self, entity_type: EntityType, predicate: Predicate) -> typing.Sequence[Row]:
        pass


class CommandExecutor(abc.ABC):
    """Runs a whole batch of intents in one all-or-nothing transaction.

    Implementations return one outcome per intent, in order, or raise
    ``ExecutionError`` (or ``OptimisticConcurrencyError``) after rolling back.

    Conflicts must be detected inside the transaction: an UPDATE touching no
    rows, or a tokenized DELETE whose row is still present under another token,
    raises ``OptimisticConcurrencyError`` before anything is committed. A
    DELETE of a row that is already gone is not a conflict. Returned outcomes
    that show an UPDATE touching no rows break this contract; the tracker
    answers them with ``ExecutionError`` since the batch may already be applied.
    """

    @abc.abstractmethod
    def execute_batch(self, intents: typing.Sequence[DmlIntent]) -> typing.List[CommitOutcome]:
        pass
