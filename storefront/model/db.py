from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
)


Base = declarative_base()


# ----------------------------
# ORM models owned by collaborators. The core only reads them.
# ----------------------------
class Product(Base):
    __tablename__ = "products"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    price = Column(Integer, nullable=False)  # cents
    stock = Column(Integer, nullable=False, default=0)


class Customer(Base):
    __tablename__ = "customers"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)


class CheckoutSession(Base):
    __tablename__ = "checkout_sessions"
    session_id = Column(String, primary_key=True)
    external_reference = Column(String, nullable=False)
    created_at = Column(Float, nullable=False)


class CartItem(Base):
    __tablename__ = "cart_items"
    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String, nullable=False, index=True)
    product_id = Column(String, nullable=False)
    variation = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
