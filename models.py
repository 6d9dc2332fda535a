from datetime import datetime
from enum import Enum
from typing import List, Optional

from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash
from extensions import db
from units import gwei_to_eth


class Role(str, Enum):
    NGO = "NGO"
    DONOR = "Donor"
    VOLUNTEER = "Volunteer"


class PackageStatus(str, Enum):
    ACTIVE = "Active"
    FUNDED = "Funded"
    IN_DELIVERY = "InDelivery"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


class DeliveryStatus(str, Enum):
    PLEDGED = "Pledged"
    PICKED_UP = "PickedUp"
    IN_TRANSIT = "InTransit"
    DELIVERED = "Delivered"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


class DonationStatus(str, Enum):
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    FAILED = "Failed"


ITEM_TYPES = ["Food", "Medicine", "Clothing", "Other"]
UNITS = ["kg", "pieces", "boxes", "bottles", "packets", "other"]
URGENCY_LEVELS = ["Low", "Medium", "High", "Critical"]
CURRENCIES = ["ETH", "MATIC", "USD"]
PROOF_TYPES = ["OTP", "GPS", "Photo", "Signature", "Other"]
TRANSPORT_METHODS = ["Car", "Motorcycle", "Bicycle", "Walking", "Public Transport", "Other"]

PACKAGE_TERMINAL = (PackageStatus.DELIVERED.value, PackageStatus.CANCELLED.value)
DELIVERY_RELEASED = (DeliveryStatus.FAILED.value, DeliveryStatus.CANCELLED.value)
DELIVERY_TERMINAL = DELIVERY_RELEASED + (DeliveryStatus.DELIVERED.value,)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False)
    wallet_address = db.Column(db.String(42), nullable=True)
    organization_name = db.Column(db.String(200), nullable=True)
    is_verified = db.Column(db.Boolean, nullable=False, default=False)
    phone = db.Column(db.String(30), nullable=True)
    description = db.Column(db.String(500), nullable=True)
    # street, city, state, country, zip_code
    address = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    # Relationships
    aid_packages = db.relationship("AidPackage", back_populates="ngo", lazy=True)
    deliveries = db.relationship("Delivery", back_populates="volunteer", lazy=True)
    donations = db.relationship("Donation", back_populates="donor", lazy=True)

    def __repr__(self) -> str:  # pragma: no cover
        return f"<User {self.email} ({self.role})>"

    # Password helpers
    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    @property
    def role_enum(self) -> Role:
        return Role(self.role)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "wallet_address": self.wallet_address,
            "organization_name": self.organization_name,
            "is_verified": self.is_verified,
            "phone": self.phone,
            "description": self.description,
            "address": dict(self.address or {}),
        }


class AidPackage(db.Model):
    __tablename__ = "aid_packages"

    id = db.Column(db.Integer, primary_key=True)
    ledger_id = db.Column(db.BigInteger, unique=True, nullable=True)
    ngo_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.String(1000), nullable=False)
    item_type = db.Column(db.String(20), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    unit = db.Column(db.String(20), nullable=False)

    # Money in gwei
    funding_goal = db.Column(db.BigInteger, nullable=False)
    current_funding = db.Column(db.BigInteger, nullable=False, default=0)

    status = db.Column(
        db.String(20), nullable=False, default=PackageStatus.ACTIVE.value, index=True
    )
    is_funded = db.Column(db.Boolean, nullable=False, default=False)
    is_delivered = db.Column(db.Boolean, nullable=False, default=False)

    urgency_level = db.Column(db.String(20), nullable=False, default="Medium", index=True)
    expected_delivery_date = db.Column(db.DateTime, nullable=False)
    beneficiary_count = db.Column(db.Integer, nullable=False)
    tags = db.Column(db.JSON, nullable=False, default=list)

    address = db.Column(db.String(300), nullable=False)
    city = db.Column(db.String(120), nullable=False, index=True)
    state = db.Column(db.String(120), nullable=True)
    country = db.Column(db.String(120), nullable=False)
    zip_code = db.Column(db.String(20), nullable=True)

    creation_tx_hash = db.Column(db.String(66), nullable=True)
    delivery_tx_hash = db.Column(db.String(66), nullable=True)

    view_count = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    ngo = db.relationship("User", back_populates="aid_packages")
    deliveries = db.relationship("Delivery", back_populates="aid_package", lazy=True)
    donations = db.relationship(
        "Donation", back_populates="aid_package", lazy=True, order_by="Donation.id"
    )

    def __repr__(self) -> str:  # pragma: no cover
        return f"<AidPackage {self.id} {self.status}>"

    @property
    def is_terminal(self) -> bool:
        return self.status in PACKAGE_TERMINAL

    @property
    def funding_tx_hashes(self) -> List[str]:
        return [
            d.transaction_hash
            for d in self.donations
            if d.status == DonationStatus.CONFIRMED.value
        ]

    @property
    def funding_percentage(self) -> int:
        if not self.funding_goal:
            return 0
        return round(self.current_funding * 100 / self.funding_goal)

    @property
    def days_remaining(self) -> int:
        delta = self.expected_delivery_date - datetime.utcnow()
        # ceil of the remaining days, matching a calendar countdown
        return -((-int(delta.total_seconds())) // 86400)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ledger_id": self.ledger_id,
            "ngo_id": self.ngo_id,
            "title": self.title,
            "description": self.description,
            "item_type": self.item_type,
            "quantity": self.quantity,
            "unit": self.unit,
            "funding_goal": gwei_to_eth(self.funding_goal),
            "current_funding": gwei_to_eth(self.current_funding),
            "funding_percentage": self.funding_percentage,
            "status": self.status,
            "is_funded": self.is_funded,
            "is_delivered": self.is_delivered,
            "urgency_level": self.urgency_level,
            "expected_delivery_date": _iso(self.expected_delivery_date),
            "days_remaining": self.days_remaining,
            "beneficiary_count": self.beneficiary_count,
            "tags": list(self.tags or []),
            "delivery_location": {
                "address": self.address,
                "city": self.city,
                "state": self.state,
                "country": self.country,
                "zip_code": self.zip_code,
            },
            "creation_tx_hash": self.creation_tx_hash,
            "funding_tx_hashes": self.funding_tx_hashes,
            "delivery_tx_hash": self.delivery_tx_hash,
            "view_count": self.view_count,
            "created_at": _iso(self.created_at),
        }


class Delivery(db.Model):
    __tablename__ = "deliveries"
    __table_args__ = (
        # At most one delivery per package that has not failed or been cancelled
        db.Index(
            "uq_deliveries_open_package",
            "aid_package_id",
            unique=True,
            sqlite_where=db.text("status NOT IN ('Failed', 'Cancelled')"),
            postgresql_where=db.text("status NOT IN ('Failed', 'Cancelled')"),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    ledger_id = db.Column(db.BigInteger, unique=True, nullable=True)
    aid_package_id = db.Column(db.Integer, db.ForeignKey("aid_packages.id"), nullable=False, index=True)
    volunteer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    volunteer_address = db.Column(db.String(42), nullable=True)

    status = db.Column(
        db.String(20), nullable=False, default=DeliveryStatus.PLEDGED.value, index=True
    )
    pledged_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    picked_up_at = db.Column(db.DateTime, nullable=True)
    in_transit_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)
    failed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)

    delivery_proof = db.Column(db.String(500), nullable=True)
    proof_type = db.Column(db.String(20), nullable=True)
    is_verified = db.Column(db.Boolean, nullable=False, default=False)

    # One-time verification code: only the hash is kept
    verification_code_hash = db.Column(db.String(255), nullable=True)
    verification_issued_at = db.Column(db.DateTime, nullable=True)
    verification_attempts = db.Column(db.Integer, nullable=False, default=0)

    transport_method = db.Column(db.String(30), nullable=False, default="Other")
    estimated_delivery_time = db.Column(db.DateTime, nullable=True)
    volunteer_notes = db.Column(db.String(500), nullable=True)
    failure_reason = db.Column(db.String(500), nullable=True)

    pledge_tx_hash = db.Column(db.String(66), nullable=True)
    confirmation_tx_hash = db.Column(db.String(66), nullable=True)

    # Relationships
    aid_package = db.relationship("AidPackage", back_populates="deliveries")
    volunteer = db.relationship("User", back_populates="deliveries")
    status_updates = db.relationship(
        "DeliveryStatusUpdate",
        back_populates="delivery",
        lazy=True,
        order_by="DeliveryStatusUpdate.id",
    )

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Delivery {self.id} package={self.aid_package_id} {self.status}>"

    @property
    def is_terminal(self) -> bool:
        return self.status in DELIVERY_TERMINAL

    @property
    def delivery_duration_hours(self) -> Optional[int]:
        if not self.delivered_at or not self.pledged_at:
            return None
        return round((self.delivered_at - self.pledged_at).total_seconds() / 3600)

    @property
    def is_overdue(self) -> bool:
        if self.is_terminal or not self.estimated_delivery_time:
            return False
        return datetime.utcnow() > self.estimated_delivery_time

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ledger_id": self.ledger_id,
            "aid_package_id": self.aid_package_id,
            "volunteer_id": self.volunteer_id,
            "volunteer_address": self.volunteer_address,
            "status": self.status,
            "pledged_at": _iso(self.pledged_at),
            "picked_up_at": _iso(self.picked_up_at),
            "in_transit_at": _iso(self.in_transit_at),
            "delivered_at": _iso(self.delivered_at),
            "failed_at": _iso(self.failed_at),
            "cancelled_at": _iso(self.cancelled_at),
            "delivery_proof": self.delivery_proof,
            "proof_type": self.proof_type,
            "is_verified": self.is_verified,
            "verification_pending": self.verification_code_hash is not None,
            "transport_method": self.transport_method,
            "estimated_delivery_time": _iso(self.estimated_delivery_time),
            "is_overdue": self.is_overdue,
            "delivery_duration_hours": self.delivery_duration_hours,
            "volunteer_notes": self.volunteer_notes,
            "failure_reason": self.failure_reason,
            "pledge_tx_hash": self.pledge_tx_hash,
            "status_updates": [u.to_dict() for u in self.status_updates],
            "confirmation_tx_hash": self.confirmation_tx_hash,
        }


class DeliveryStatusUpdate(db.Model):
    __tablename__ = "delivery_status_updates"

    id = db.Column(db.Integer, primary_key=True)
    delivery_id = db.Column(db.Integer, db.ForeignKey("deliveries.id"), nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False)
    tx_hash = db.Column(db.String(66), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    delivery = db.relationship("Delivery", back_populates="status_updates")

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "tx_hash": self.tx_hash,
            "timestamp": _iso(self.created_at),
        }


class Donation(db.Model):
    __tablename__ = "donations"

    id = db.Column(db.Integer, primary_key=True)
    ledger_id = db.Column(db.BigInteger, unique=True, nullable=True)
    donor_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    aid_package_id = db.Column(db.Integer, db.ForeignKey("aid_packages.id"), nullable=False, index=True)

    amount = db.Column(db.BigInteger, nullable=False)  # gwei
    currency = db.Column(db.String(10), nullable=False, default="ETH")
    donor_address = db.Column(db.String(42), nullable=False)
    message = db.Column(db.String(500), nullable=True)

    transaction_hash = db.Column(db.String(66), unique=True, nullable=False)
    block_number = db.Column(db.BigInteger, nullable=True)
    status = db.Column(db.String(20), nullable=False, default=DonationStatus.PENDING.value, index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    # Relationships
    donor = db.relationship("User", back_populates="donations")
    aid_package = db.relationship("AidPackage", back_populates="donations")

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Donation {self.id} {self.amount} gwei to {self.aid_package_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ledger_id": self.ledger_id,
            "donor_id": self.donor_id,
            "aid_package_id": self.aid_package_id,
            "amount": gwei_to_eth(self.amount),
            "currency": self.currency,
            "donor_address": self.donor_address,
            "message": self.message,
            "transaction_hash": self.transaction_hash,
            "block_number": self.block_number,
            "status": self.status,
            "created_at": _iso(self.created_at),
        }
