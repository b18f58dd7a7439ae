from sqlalchemy import Column, String, Numeric, DateTime, Enum, Boolean, UniqueConstraint
from datetime import datetime
import enum

from course_payments.database import Base


class PaymentStatus(enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, index=True)  # order id sent to the gateway
    user_id = Column(String(36), index=True, nullable=False)
    course_id = Column(String(36), index=True, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(Enum(PaymentStatus, name="payment_status"), default=PaymentStatus.PENDING, nullable=False)
    method = Column(String(32), default="payhere", nullable=False)
    gateway_payment_id = Column(String(64), nullable=True)
    gateway_status_code = Column(String(8), nullable=True)
    gateway_status_message = Column(String(255), nullable=True)
    gateway_method = Column(String(32), nullable=True)
    access_granted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class Purchase(Base):
    __tablename__ = "purchases"
    __table_args__ = (UniqueConstraint("user_id", "course_id", name="uq_purchases_user_course"),)

    id = Column(String(36), primary_key=True, index=True)
    user_id = Column(String(36), nullable=False)
    course_id = Column(String(36), nullable=False)
    payment_id = Column(String(36), nullable=True)
    access_granted = Column(Boolean, default=False, nullable=False)
    purchase_date = Column(DateTime, default=datetime.utcnow, nullable=False)


# Owned by the catalog and identity services; mapped here for reads only.

class Course(Base):
    __tablename__ = "courses"

    id = Column(String(36), primary_key=True)
    title = Column(String(200), nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    status = Column(String(20), default="draft", nullable=False)


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True)
    email = Column(String(255), nullable=False)
    name = Column(String(255), nullable=True)
