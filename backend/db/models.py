from sqlalchemy import (
    Column, Integer, Text, Boolean, ForeignKey, Index, LargeBinary,
    Table, UniqueConstraint, CheckConstraint, text,
)
from sqlalchemy.orm import relationship
from db.database import Base


class Item(Base):
    __tablename__ = "tbl_items"

    id = Column(Integer, primary_key=True)
    created_date = Column(Integer, nullable=False)  # epoch seconds
    updated_date = Column(Integer, nullable=False)  # epoch seconds
    type = Column(Text, nullable=False)  # event | progress_task | deadline_task
    active = Column(Boolean, nullable=False, default=True)
    category = Column(Text)
    name = Column(Text, nullable=False)
    description = Column("desc", Text)
    sched_blob = Column(LargeBinary, nullable=False)  # versioned JSON schedule
    only_occ_end = Column(Integer)  # one-off items: end of the sole occurrence, epoch seconds

    occurrences = relationship("Occurrence", back_populates="item", order_by="Occurrence.start_date")

    __table_args__ = (
        Index("idx_items_created_date", "created_date"),
    )


class Occurrence(Base):
    __tablename__ = "tbl_occs"

    id = Column(Integer, primary_key=True)
    item_id = Column(Integer, ForeignKey("tbl_items.id", name="fk_occs_items"), nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    start_date = Column(Integer, nullable=False)  # epoch seconds
    end_date = Column(Integer, nullable=False)  # epoch seconds
    task_completion_progress = Column(Integer, nullable=False, default=0)
    completed_date = Column(Integer, nullable=True)  # epoch seconds

    item = relationship("Item", back_populates="occurrences")

    __table_args__ = (
        Index("idx_occs_start_date", "start_date"),
        Index("idx_occs_end_date", "end_date"),
        Index("idx_occs_item_start", "item_id", "start_date"),
    )


# Config rows have no surrogate key: the scope tuple is the identity, with
# exactly one of the five columns set. `id_all` holds CONFIG_ID_ALL for the
# global scope.
CONFIG_ID_ALL = 0

config_entries = Table(
    "tbl_configs",
    Base.metadata,
    Column("id_all", Integer),
    Column("id_type", Text),
    Column("id_category", Text),
    Column("id_item", Integer, ForeignKey("tbl_items.id", name="fk_configs_items")),
    Column("id_occ", Integer, ForeignKey("tbl_occs.id", name="fk_configs_occs")),
    Column("config_blob", LargeBinary, nullable=False),  # versioned JSON config
    UniqueConstraint(
        "id_all", "id_type", "id_category", "id_item", "id_occ",
        name="idx_configs_id",
        sqlite_on_conflict="REPLACE",
    ),
    CheckConstraint(
        "(id_all IS NOT NULL) + (id_type IS NOT NULL) + (id_category IS NOT NULL)"
        " + (id_item IS NOT NULL) + (id_occ IS NOT NULL) = 1",
        name="ck_configs_single_scope",
    ),
    Index("idx_configs_id_all", "id_all", unique=True, sqlite_where=text("id_all IS NOT NULL")),
    Index("idx_configs_id_type", "id_type", unique=True, sqlite_where=text("id_type IS NOT NULL")),
    Index("idx_configs_id_category", "id_category", unique=True, sqlite_where=text("id_category IS NOT NULL")),
    Index("idx_configs_id_item", "id_item", unique=True, sqlite_where=text("id_item IS NOT NULL")),
    Index("idx_configs_id_occ", "id_occ", unique=True, sqlite_where=text("id_occ IS NOT NULL")),
)
