from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    JSON,
    ForeignKey,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class User(Base):
    __tablename__ = "users"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    surname = Column(String, nullable=False)
    phone = Column(String, nullable=False)
    id_number = Column(String, nullable=False)
    email = Column(String, nullable=True)

    # name|surname|phone|id_number, normalized
    unique_key = Column(String, nullable=False, unique=True)
    created_at = Column(Float, nullable=False)


class Payment(Base):
    __tablename__ = "payments"
    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False,
                     index=True)

    # pending | issuing | paid | integrity_failed
    status = Column(String, nullable=False, default="pending", index=True)
    numtickets = Column(Integer, nullable=False)
    amount = Column(Integer, nullable=False)  # XOF
    provider = Column(String, nullable=False)

    payment_token = Column(String, nullable=False, unique=True)
    # assigned by the gateway once the invoice exists
    invoice_token = Column(String, nullable=True, unique=True)

    tickets = Column(JSON, nullable=False, default=list)
    # codes minted by an issuance that came up short
    unreconciled_tickets = Column(JSON, nullable=True)
    integrity_error = Column(String, nullable=True)

    created_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)

    user = relationship(User, lazy="joined")
