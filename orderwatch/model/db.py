from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    ForeignKey,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class Customer(Base):
    __tablename__ = "customers"
    id = Column(String, primary_key=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    full_name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)


class Product(Base):
    __tablename__ = "products"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=True)
    price = Column(Float, nullable=False, default=0)


class ReadyCocktail(Base):
    __tablename__ = "ready_cocktails"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=True)
    price = Column(Float, nullable=False, default=0)


class CocktailMaison(Base):
    # DIY cocktail kits
    __tablename__ = "cocktails_maison"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=True)
    base_price = Column(Float, nullable=False, default=0)


class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    order_number = Column(String, nullable=True)
    customer_id = Column(String, ForeignKey("customers.id"), nullable=True)

    # denormalized at checkout; may be empty for guest orders
    customer_first_name = Column(String, nullable=True)
    customer_last_name = Column(String, nullable=True)
    customer_email = Column(String, nullable=True)

    # new | confirmed | ...
    status = Column(String, nullable=False, default="new")
    total_amount = Column(Float, nullable=False, default=0)  # XAF
    created_at = Column(Float, nullable=False, index=True)
    confirmed_at = Column(Float, nullable=True)


class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      index=True)

    # at most one of these is expected to be set
    product_id = Column(String, ForeignKey("products.id"), nullable=True)
    ready_cocktail_id = Column(String, ForeignKey("ready_cocktails.id"),
                               nullable=True)
    cocktail_maison_id = Column(String, ForeignKey("cocktails_maison.id"),
                                nullable=True)

    # product | ready_cocktail | cocktail_maison
    product_type = Column(String, nullable=True)
    product_name = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Float, nullable=False, default=0)


class Notification(Base):
    __tablename__ = "notifications"
    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String, nullable=False)
    message = Column(String, nullable=False)
    # order | stock | payment | delivery | system | other
    type = Column(String, nullable=False, default="other")
    # low | medium | high
    priority = Column(String, nullable=False, default="medium")
    link = Column(String, nullable=True)
    order_id = Column(String, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=False, index=True)
