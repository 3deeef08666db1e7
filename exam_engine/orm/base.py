"""
exam_engine/orm/base.py
Declarative base shared by all ORM models
"""
import enum
from typing import Type

from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def enum_column_type(enum_cls: Type[enum.Enum]) -> SQLEnum:
    """
    Store enum *values* ("in_progress"), not member names, so raw SQL
    (partial indexes, check constraints) can compare against them.
    """
    return SQLEnum(
        enum_cls,
        values_callable=lambda members: [member.value for member in members],
        native_enum=False,
        validate_strings=True,
        length=32,
    )
