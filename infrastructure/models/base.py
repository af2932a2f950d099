"""
ORM 声明基类，Alembic 迁移使用 Base.metadata
"""
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass
