"""ORM 声明基类；alembic 迁移与 create_tables 共用 Base.metadata"""
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass
