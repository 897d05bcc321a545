"""AT Protocol handle resolution data models.

Caches the handle and PDS location of every DID the application has seen so
the home page can render handles without resolving them on every request.
"""

from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.sqlite import insert

from social.statusphere.model.base import Base, str512


class Handle(Base):
    """AT Protocol DID to handle mapping with PDS location."""

    __tablename__ = "handles"

    did: Mapped[str] = mapped_column(String(512), primary_key=True)
    handle: Mapped[str512]
    pds: Mapped[str512]

    __table_args__ = (Index("idx_handles_handle", "handle"),)


def upsert_handle_stmt(did: str, handle: str, pds: str):
    """Update handle and PDS for an existing DID or insert a new record."""
    return (
        insert(Handle)
        .values([{"did": did, "handle": handle, "pds": pds}])
        .on_conflict_do_update(
            index_elements=["did"],
            set_={
                "handle": handle,
                "pds": pds,
            },
        )
    )
