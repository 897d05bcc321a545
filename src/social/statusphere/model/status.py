"""Status records written to, or ingested from, the network."""

from datetime import datetime
from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.sqlite import insert

from social.statusphere.model.base import Base, str512, tzdatetime

STATUS_COLLECTION = "xyz.statusphere.status"


class Status(Base):
    __tablename__ = "statuses"

    uri: Mapped[str] = mapped_column(String(1024), primary_key=True)
    did: Mapped[str512]
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[tzdatetime]
    indexed_at: Mapped[tzdatetime]

    __table_args__ = (Index("idx_statuses_created_at", "created_at"),)


def insert_status_stmt(
    uri: str, did: str, status: str, created_at: datetime, indexed_at: datetime
):
    """Insert a status, ignoring records that were already stored.

    A status written by this application is stored optimistically and then seen
    again on the firehose; the second copy is dropped.
    """
    return (
        insert(Status)
        .values(
            [
                {
                    "uri": uri,
                    "did": did,
                    "status": status,
                    "created_at": created_at,
                    "indexed_at": indexed_at,
                }
            ]
        )
        .on_conflict_do_nothing(index_elements=["uri"])
    )
