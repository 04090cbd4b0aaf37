from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Float,
    ForeignKey,
    Integer,
    String,
)


Base = declarative_base()

# Payment.status
PAYMENT_PENDING = "pending"
PAYMENT_SUCCESS = "success"
PAYMENT_FAILED = "failed"

# Payment.fulfillment_status
FULFILLMENT_PENDING = "pending"
FULFILLMENT_DONE = "fulfilled"
FULFILLMENT_FAILED = "failed"

# Order.status
ORDER_PENDING = "pending"
ORDER_PAID = "paid"
ORDER_FAILED = "failed"
ORDER_CANCELLED = "cancelled"

# Subscription.status
SUB_PENDING = "pending"
SUB_ACTIVE = "active"
SUB_EXPIRED = "expired"


# ----------------------------
# ORM models
# ----------------------------
class User(Base):
    __tablename__ = "users"
    # id as issued by the auth platform
    id = Column(String, primary_key=True)
    email = Column(String, nullable=True)
    # user | vip | admin
    role = Column(String, nullable=False, default="user")
    is_vip = Column(Boolean, nullable=False, default=False)
    vip_expires = Column(Float, nullable=True)
    created_at = Column(Float, nullable=True)


class Product(Base):
    __tablename__ = "products"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    price = Column(Integer, nullable=False, default=0)  # KSh
    image_url = Column(String, nullable=True)


class Event(Base):
    __tablename__ = "events"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    price = Column(Integer, nullable=True)
    ticket_price = Column(Integer, nullable=True)
    image_url = Column(String, nullable=True)
    starts_at = Column(Float, nullable=True)

    @property
    def unit_price(self) -> int:
        return int(self.ticket_price or self.price or 0)


class Order(Base):
    __tablename__ = "orders"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)

    # pending | paid | failed | cancelled
    status = Column(String, nullable=False, default=ORDER_PENDING)

    # shipping method, address snapshot, total_price, qr_object_path
    meta = Column("metadata", JSON, nullable=True)

    qr_image_url = Column(String, nullable=True)
    qr_code = Column(String, nullable=True)
    source = Column(String, nullable=False, default="web")
    created_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)


class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"),
                      nullable=False, index=True)
    product_id = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Integer, nullable=False)


class Payment(Base):
    __tablename__ = "payments"
    id = Column(String, primary_key=True)

    # the gateway's CheckoutRequestID; never rewritten
    checkout_request_id = Column(String, nullable=False, unique=True)
    # CheckoutRequestID until success, then the receipt number
    provider_transaction_id = Column(String, nullable=True, unique=True)

    provider = Column(String, nullable=False, default="mpesa")
    amount = Column(Integer, nullable=False)
    phone_number = Column(String, nullable=False)

    # pending | success | failed
    status = Column(String, nullable=False, default=PAYMENT_PENDING)
    result_desc = Column(String, nullable=True)

    order_id = Column(Integer, nullable=True, index=True)
    intent = Column(JSON, nullable=True)
    raw_payload = Column(JSON, nullable=True)

    # pending | fulfilled | failed
    fulfillment_status = Column(String, nullable=False,
                                default=FULFILLMENT_PENDING)
    fulfillment_error = Column(String, nullable=True)

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=True)
    paid_at = Column(Float, nullable=True)


class Ticket(Base):
    __tablename__ = "tickets"
    id = Column(Integer, primary_key=True, autoincrement=True)
    ticket_uid = Column(String, nullable=False, unique=True)
    event_id = Column(Integer, nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    payment_id = Column(String, nullable=True, index=True)
    price = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="valid")
    is_used = Column(Boolean, nullable=False, default=False)
    qr_object_path = Column(String, nullable=True)
    purchased_at = Column(Float, nullable=False)


class Subscription(Base):
    __tablename__ = "subscriptions"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    plan = Column(String, nullable=False, default="vip_monthly")
    price = Column(Integer, nullable=False)
    interval_days = Column(Integer, nullable=False, default=30)

    # pending | active | expired
    status = Column(String, nullable=False, default=SUB_PENDING)
    start_date = Column(Float, nullable=True)
    end_date = Column(Float, nullable=True)
    last_payment_id = Column(String, nullable=True)
    auto_renew = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=False)
