import decimal
import typing
import uuid
from datetime import date, datetime

from sqlalchemy import Boolean, Date, DateTime, Float, Integer, LargeBinary, Numeric, String, Uuid


mapping = {
    int: Integer,
    str: String(255),
    bool: Boolean,
    uuid.UUID: Uuid,
    float: Float,
    decimal.Decimal: Numeric,
    datetime: DateTime,
    date: Date,
    bytes: LargeBinary,
}


def convert(arg: typing.Type) -> typing.Any:
    try:
        return mapping[arg]
    except KeyError:
        raise TypeError(f"Unsupported type - {arg}")
