import logging
import typing

import attr
from sqlalchemy import create_engine

from entity_tracker import ChangeTracker, ConcurrencyToken, Entity, EntityState, Identity, Repository, build
from entity_tracker.storages.sqlalchemy import SqlAlchemyStore


class Plan(Entity):
    id: Identity[int] = 0
    discount: float = 0.0


class Subscriber(Entity):
    __shadow__ = {"created_by": str}

    id: Identity[int] = 0
    name: str = ""
    version: ConcurrencyToken[int] = 0
    plan: typing.Optional[Plan] = None
    notes: typing.List["Note"] = attr.Factory(list)

    def subscribe(self, plan: Plan) -> None:
        if not self.plan:
            self.plan = plan
            self.version += 1


class Note(Entity):
    id: Identity[int] = 0
    text: str = ""


class SubscriberRepo(Repository[Subscriber, int]):
    pass


logging.basicConfig(level=logging.DEBUG)

model = build(Plan, Subscriber, Note)
engine = create_engine("sqlite://", echo=True)
store = SqlAlchemyStore(engine, model)
store.create_all()

with ChangeTracker(model, executor=store, loader=store) as tracker:
    subscriber = Subscriber(name="Seba", notes=[Note(text="first contact")])
    subscriber.subscribe(Plan(discount=0.1))
    SubscriberRepo(tracker).add(subscriber).unwrap()
    tracker.entry(subscriber).set("created_by", "example")
    tracker.commit().unwrap()

with ChangeTracker(model, executor=store, loader=store) as tracker:
    repo = SubscriberRepo(tracker)
    got_subscriber = repo.get(subscriber.id)
    assert got_subscriber.name == subscriber.name, f"\n{got_subscriber}\n{subscriber}"

    got_subscriber.name = "Sebastian"
    assert tracker.entry(got_subscriber).modified_properties == {"name"}
    tracker.commit().unwrap()
    assert tracker.entry(got_subscriber).state is EntityState.UNCHANGED

store.drop_all()
