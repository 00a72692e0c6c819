from __future__ import annotations

from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    TypeDecorator,
)
from sqlalchemy.orm import relationship

from db import Base
from utils.time_utils import utcnow_sa_default


class ExactDecimal(TypeDecorator):
    """Decimal column that round-trips without binary floating point.

    PostgreSQL stores an unconstrained NUMERIC. Other backends (SQLite keeps
    NUMERIC as REAL) store the plain decimal string instead.
    """

    impl = String
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(Numeric(asdecimal=True))
        return dialect.type_descriptor(String(64))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
        if dialect.name == "postgresql":
            return value
        return format(value, "f")

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, Decimal):
            return value
        return Decimal(str(value))


class Filing(Base):
    """One 13F holdings report.

    `accession_number` is the business key (canonical dashed form, e.g.
    0001067983-25-000002); at most one row per accession number.
    """

    __tablename__ = "filings"

    id = Column(Integer, primary_key=True, autoincrement=True)

    cik = Column(String(10), nullable=False, index=True)
    company_name = Column(String(500), nullable=True)
    filing_type = Column(String(20), nullable=True)
    filing_date = Column(Date, nullable=True)
    # CONFORMED PERIOD OF REPORT (quarter end the holdings refer to).
    report_period = Column(Date, nullable=True, index=True)

    accession_number = Column(String(25), nullable=False, unique=True, index=True)

    # Submission file name from <SEC-DOCUMENT>, e.g. 0001067983-25-000002.txt
    form_file = Column(String(200), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow_sa_default)
    updated_at = Column(
        DateTime, nullable=False, default=utcnow_sa_default, onupdate=utcnow_sa_default
    )

    holdings = relationship(
        "Holding",
        back_populates="filing",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Holding.id",
    )


class Holding(Base):
    __tablename__ = "holdings"

    id = Column(Integer, primary_key=True, autoincrement=True)

    filing_id = Column(
        Integer,
        ForeignKey("filings.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Every business field is nullable: a missing/unparsable sub-element is
    # stored as NULL rather than rejected.
    name_of_issuer = Column(String(500), nullable=True)
    title_of_class = Column(String(200), nullable=True)
    cusip = Column(String(12), nullable=True, index=True)
    value = Column(ExactDecimal(), nullable=True)
    shares = Column(BigInteger, nullable=True)

    filing = relationship("Filing", back_populates="holdings")
