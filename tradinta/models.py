# tradinta/models.py
from enum import Enum
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    DateTime,
    ForeignKey,
    UniqueConstraint,
    Enum as SAEnum,
)
from sqlalchemy.orm import relationship

# Use a single, shared Base for all models
from tradinta.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


def as_utc(value):
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UserRole(str, Enum):
    BUYER = "buyer"
    MANUFACTURER = "manufacturer"
    PARTNER = "partner"
    ADMIN = "admin"


class ProductStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class ForgingEventStatus(str, Enum):
    PROPOSED = "proposed"
    ACTIVE = "active"
    FINISHED = "finished"
    DECLINED = "declined"


class OrderStatus(str, Enum):
    PENDING_PAYMENT = "Pending Payment"
    PAID = "Paid"
    CANCELLED = "Cancelled"


class User(Base):
    __tablename__ = 'User'
    userID = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(255), unique=True, nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    display_name = Column(String(255))
    photo_url = Column(String(512))
    role = Column(String(50), default=UserRole.BUYER.value, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    products = relationship("Product", back_populates="seller")
    pledges = relationship("Pledge", back_populates="buyer")

    @property
    def name(self) -> str:
        return self.display_name or self.username

    @property
    def is_admin(self) -> bool:
        return (self.role or '').lower() == UserRole.ADMIN.value

    @property
    def is_partner(self) -> bool:
        return (self.role or '').lower() == UserRole.PARTNER.value


class Product(Base):
    __tablename__ = 'Product'
    productID = Column(Integer, primary_key=True, autoincrement=True)
    sellerID = Column(Integer, ForeignKey('User.userID'), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(String)
    image_url = Column(String(512))
    # Base B2B price; forging discounts are applied on top of it
    price = Column(Numeric(10, 2), nullable=False)
    status = Column(
        SAEnum(ProductStatus, name="product_status", native_enum=False, validate_strings=True, values_callable=_enum_values),
        default=ProductStatus.DRAFT,
        nullable=False,
    )
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    seller = relationship("User", back_populates="products")

    @property
    def is_published(self) -> bool:
        return ProductStatus(self.status) == ProductStatus.PUBLISHED

    def get_discounted_unit_price(self, discount_percent: float) -> float:
        return round(float(self.price) * (1 - float(discount_percent) / 100), 2)


class ForgingEvent(Base):
    __tablename__ = 'ForgingEvent'

    forgingEventID = Column(Integer, primary_key=True, autoincrement=True)
    productID = Column(Integer, ForeignKey('Product.productID'), nullable=False)
    product_name = Column(String(255), nullable=False)
    product_image_url = Column(String(512), default='')
    sellerID = Column(Integer, ForeignKey('User.userID'), nullable=False)
    seller_name = Column(String(255), nullable=False)
    partnerID = Column(Integer, ForeignKey('User.userID'))
    partner_name = Column(String(255))
    partner_avatar_url = Column(String(512), default='')
    commission_rate = Column(Numeric(5, 2), nullable=False, default=0)
    current_buyer_count = Column(Integer, nullable=False, default=0)
    status = Column(
        SAEnum(ForgingEventStatus, name="forging_event_status", native_enum=False, validate_strings=True, values_callable=_enum_values),
        default=ForgingEventStatus.PROPOSED,
        nullable=False,
    )
    start_time = Column(DateTime)
    end_time = Column(DateTime, nullable=False)
    final_discount_tier = Column(Numeric(5, 2))
    created_at = Column(DateTime, default=utcnow)
    responded_at = Column(DateTime)
    finished_at = Column(DateTime)

    product = relationship("Product")
    seller = relationship("User", foreign_keys=[sellerID])
    partner = relationship("User", foreign_keys=[partnerID])
    tiers = relationship(
        "ForgingEventTier",
        back_populates="forging_event",
        order_by="ForgingEventTier.buyer_count",
        cascade="all, delete-orphan",
    )
    pledges = relationship("Pledge", back_populates="forging_event", cascade="all, delete-orphan")

    _VALID_TRANSITIONS = {
        ForgingEventStatus.PROPOSED: {ForgingEventStatus.ACTIVE, ForgingEventStatus.DECLINED},
        ForgingEventStatus.ACTIVE: {ForgingEventStatus.FINISHED},
    }

    def can_transition(self, new_status: ForgingEventStatus) -> bool:
        allowed = self._VALID_TRANSITIONS.get(ForgingEventStatus(self.status), set())
        return new_status in allowed

    def transition_to(self, new_status: ForgingEventStatus) -> None:
        if not self.can_transition(new_status):
            raise ValueError(f"Invalid forging event transition from {self.status} to {new_status}")
        self.status = new_status

    def has_ended(self, now: datetime) -> bool:
        return as_utc(now) >= as_utc(self.end_time)

    def is_open_for_pledges(self, now: datetime) -> bool:
        return ForgingEventStatus(self.status) == ForgingEventStatus.ACTIVE and not self.has_ended(now)

    def tier_pairs(self):
        """Tiers as plain (buyer_count, discount_percentage) tuples."""
        return [(tier.buyer_count, float(tier.discount_percentage)) for tier in self.tiers]


class ForgingEventTier(Base):
    __tablename__ = 'ForgingEventTier'
    __table_args__ = (
        UniqueConstraint('forgingEventID', 'buyer_count', name='uq_forging_tier_buyer_count'),
    )

    tierID = Column(Integer, primary_key=True, autoincrement=True)
    forgingEventID = Column(Integer, ForeignKey('ForgingEvent.forgingEventID', ondelete="CASCADE"), nullable=False)
    buyer_count = Column(Integer, nullable=False)
    discount_percentage = Column(Numeric(5, 2), nullable=False)

    forging_event = relationship("ForgingEvent", back_populates="tiers")


class Pledge(Base):
    __tablename__ = 'Pledge'
    __table_args__ = (
        UniqueConstraint('buyerID', 'forgingEventID', name='uq_pledge_buyer_event'),
    )

    pledgeID = Column(Integer, primary_key=True, autoincrement=True)
    forgingEventID = Column(Integer, ForeignKey('ForgingEvent.forgingEventID', ondelete="CASCADE"), nullable=False)
    buyerID = Column(Integer, ForeignKey('User.userID'), nullable=False)
    pledged_at = Column(DateTime, default=utcnow, nullable=False)

    forging_event = relationship("ForgingEvent", back_populates="pledges")
    buyer = relationship("User", back_populates="pledges")


class Order(Base):
    __tablename__ = 'Order'

    orderID = Column(Integer, primary_key=True, autoincrement=True)
    buyerID = Column(Integer, ForeignKey('User.userID'), nullable=False)
    sellerID = Column(Integer, ForeignKey('User.userID'), nullable=False)
    productID = Column(Integer, ForeignKey('Product.productID'), nullable=False)
    forgingEventID = Column(Integer, ForeignKey('ForgingEvent.forgingEventID'))
    product_name = Column(String(255), nullable=False)
    seller_name = Column(String(255))
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(10, 2), nullable=False)
    discount_percentage = Column(Numeric(5, 2), nullable=False, default=0)
    total_amount = Column(Numeric(10, 2), nullable=False)
    partnerID = Column(Integer, ForeignKey('User.userID'))
    partner_commission = Column(Numeric(10, 2), nullable=False, default=0)
    status = Column(
        SAEnum(OrderStatus, name="order_status", native_enum=False, validate_strings=True, values_callable=_enum_values),
        default=OrderStatus.PENDING_PAYMENT,
        nullable=False,
    )
    # Deterministic per (event, buyer) for pledge checkouts; NULL for instant purchases
    idempotency_key = Column(String(120), unique=True)
    order_date = Column(DateTime, default=utcnow, nullable=False)

    forging_event = relationship("ForgingEvent")
    product = relationship("Product")
