# db/base.py
# -*- coding: utf-8 -*-
"""
Declarative Base shared by every model in db/models.

BigIntPK: BIGINT on MySQL, INTEGER on SQLite (SQLite only autoincrements
"INTEGER PRIMARY KEY").
"""

from sqlalchemy import BigInteger, Integer
from sqlalchemy.orm import declarative_base

Base = declarative_base()

BigIntPK = BigInteger().with_variant(Integer, "sqlite")
