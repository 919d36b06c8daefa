"""Per-prefix, per-year document counters."""
from __future__ import annotations

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from buildbooks.database import Base


class DocumentCounter(Base):
    """Last number issued for ``<prefix>-<year>``.

    Incremented with a single UPDATE so concurrent issuers queue on the row
    lock and each receives a distinct value.
    """
    __tablename__ = "document_counters"

    prefix: Mapped[str] = mapped_column(String(10), primary_key=True)
    year: Mapped[int] = mapped_column(Integer, primary_key=True)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<DocumentCounter {self.prefix}-{self.year} last={self.last_value}>"
