# clinic_billing/db/base.py
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """All billing / clinical tables inherit from this."""
    pass


def value_enum(enum_cls, length: int = 32) -> SAEnum:
    """Store str-enums by their value ("Pending Payment"), not their name."""
    return SAEnum(
        enum_cls,
        values_callable=lambda e: [m.value for m in e],
        native_enum=False,
        validate_strings=True,
        length=length,
    )
