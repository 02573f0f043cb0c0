import enum

from sqlalchemy import inspect
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


class SerializerMixin:
    """``to_dict`` for API payloads: camelCase keys, hidden columns dropped."""

    __hidden__ = ()

    def to_dict(self):
        data = {}
        for column in inspect(type(self)).columns:
            if column.key in self.__hidden__:
                continue
            value = getattr(self, column.key)
            if isinstance(value, enum.Enum):
                value = value.value
            data[_camel(column.key)] = value
        return data
