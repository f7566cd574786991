import typing

from sqlalchemy import Column, ForeignKey, MetaData, Table

from entity_tracker.mapping import EntityType, MappingModel
from entity_tracker.storages.sqlalchemy import native_type_to_column


def _columns(model: MappingModel, entity_type: EntityType) -> typing.List[Column]:
    foreign_keys = {foreign_key.name: foreign_key for foreign_key in model.foreign_keys(entity_type.cls)}
    columns = []
    for prop in entity_type.properties:
        args: typing.List[typing.Any] = [prop.column, native_type_to_column.convert(prop.type)]
        foreign_key = foreign_keys.get(prop.name)
        if foreign_key is not None:
            principal = model.entity_type(foreign_key.principal)
            args.append(ForeignKey(f"{principal.table}.{principal.key_columns[0]}"))
        nullable = not prop.is_key and prop.nullable
        columns.append(
            Column(*args, primary_key=prop.is_key, autoincrement=prop.generated or "auto", nullable=nullable)
        )
    return columns


def build_metadata(model: MappingModel, metadata: typing.Optional[MetaData] = None) -> MetaData:
    metadata = metadata if metadata is not None else MetaData()
    for entity_type in model:
        Table(entity_type.table, metadata, *_columns(model, entity_type))
    return metadata
