"""Delivery lifecycle for one volunteer fulfilling one funded aid package.

    Pledged -> PickedUp -> InTransit -> Delivered
    any non-terminal state -> Failed | Cancelled

Local state is committed first; the ledger call that follows is best effort
and only adds a transaction hash when it succeeds.
"""
import logging
import secrets
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from werkzeug.security import check_password_hash, generate_password_hash

from aid_packages import AidPackageLedger, require_role
from chain_mirror import ChainMirror, LedgerReceipt
from errors import (
    AlreadyConfirmedError,
    AuthorizationError,
    InvalidStateError,
    LedgerCallError,
    NotFoundError,
    ValidationError,
)
from extensions import db
from models import (
    DELIVERY_RELEASED,
    PROOF_TYPES,
    AidPackage,
    Delivery,
    DeliveryStatus,
    DeliveryStatusUpdate,
    PackageStatus,
    Role,
    User,
)

logger = logging.getLogger(__name__)

# target status -> (required current status, timestamp column)
FORWARD_STEPS = {
    DeliveryStatus.PICKED_UP: (DeliveryStatus.PLEDGED, "picked_up_at"),
    DeliveryStatus.IN_TRANSIT: (DeliveryStatus.PICKED_UP, "in_transit_at"),
}
OPEN_STATUSES = (
    DeliveryStatus.PLEDGED.value,
    DeliveryStatus.PICKED_UP.value,
    DeliveryStatus.IN_TRANSIT.value,
)


def generate_verification_code() -> str:
    return str(100000 + secrets.randbelow(900000))


def infer_proof_type(proof: str) -> str:
    prefix = proof.split(":", 1)[0].strip().lower() if ":" in proof else ""
    for kind in PROOF_TYPES:
        if kind.lower() == prefix:
            return kind
    return "Other"


class DeliveryTracker:
    def __init__(self, mirror: ChainMirror, packages: AidPackageLedger,
                 otp_ttl_seconds: int = 900, otp_max_attempts: int = 5):
        self.mirror = mirror
        self.packages = packages
        self.otp_ttl_seconds = otp_ttl_seconds
        self.otp_max_attempts = otp_max_attempts

    # ------------------
    # Queries
    # ------------------
    def active_for_package(self, package_id: int) -> Optional[Delivery]:
        """The delivery that has not failed or been cancelled, if any."""
        return Delivery.query.filter(
            Delivery.aid_package_id == package_id,
            Delivery.status.notin_(DELIVERY_RELEASED),
        ).one_or_none()

    def available_packages(self) -> List[AidPackage]:
        taken = (
            db.session.query(Delivery.id)
            .filter(
                Delivery.aid_package_id == AidPackage.id,
                Delivery.status.notin_(DELIVERY_RELEASED),
            )
            .exists()
        )
        return (
            AidPackage.query.filter(AidPackage.status == PackageStatus.FUNDED.value, ~taken)
            .order_by(AidPackage.created_at.desc(), AidPackage.id.desc())
            .all()
        )

    def for_volunteer(self, volunteer_id: int) -> List[Delivery]:
        return (
            Delivery.query.filter_by(volunteer_id=volunteer_id)
            .order_by(Delivery.pledged_at.desc(), Delivery.id.desc())
            .all()
        )

    def volunteer_stats(self, volunteer_id: int) -> Dict[str, int]:
        rows = (
            db.session.query(Delivery.status, func.count(Delivery.id))
            .filter(Delivery.volunteer_id == volunteer_id)
            .group_by(Delivery.status)
            .all()
        )
        stats = {s.value: 0 for s in DeliveryStatus}
        for status, count in rows:
            stats[status] = count
        stats["total"] = sum(count for _, count in rows)
        return stats

    # ------------------
    # Transitions
    # ------------------
    def pledge(self, volunteer: User, package_id: int, volunteer_address: Optional[str] = None,
               transport_method: Optional[str] = None,
               estimated_delivery_time: Optional[datetime] = None,
               notes: Optional[str] = None) -> Tuple[Delivery, Optional[str]]:
        require_role(volunteer, Role.VOLUNTEER)
        package = self.packages.get(package_id)
        if package.status != PackageStatus.FUNDED.value:
            raise InvalidStateError(
                "Aid package must be funded before delivery can be pledged",
                current_status=package.status,
            )
        if self.active_for_package(package.id) is not None:
            raise InvalidStateError("Delivery already pledged for this package", current_status=package.status)

        delivery = Delivery(
            aid_package_id=package.id,
            volunteer_id=volunteer.id,
            volunteer_address=volunteer_address or volunteer.wallet_address,
            status=DeliveryStatus.PLEDGED.value,
            pledged_at=datetime.utcnow(),
            transport_method=transport_method or "Other",
            estimated_delivery_time=estimated_delivery_time,
            volunteer_notes=notes or None,
        )
        try:
            db.session.add(delivery)
            self.packages.begin_delivery(package)
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise InvalidStateError("Delivery already pledged for this package")
        except InvalidStateError:
            db.session.rollback()
            raise
        logger.info("Volunteer %s pledged delivery %s for package %s", volunteer.id, delivery.id, package.id)

        receipt = self._mirror("pledge", delivery, self.mirror.pledge, package.ledger_id)
        if receipt is None:
            return delivery, None
        delivery.pledge_tx_hash = receipt.tx_hash
        delivery.ledger_id = receipt.ledger_id
        db.session.commit()
        return delivery, receipt.tx_hash

    def advance(self, volunteer: User, package_id: int, target: str) -> Tuple[Delivery, Optional[str]]:
        try:
            target_status = DeliveryStatus(target)
        except ValueError:
            raise ValidationError.for_field("status", f"Unknown delivery status {target!r}")
        if target_status not in FORWARD_STEPS:
            raise ValidationError.for_field("status", "Status can only be set to PickedUp or InTransit")

        delivery = self._assigned(volunteer, package_id)
        if delivery.status == target_status.value:
            # Repeated request for the current status keeps the first timestamp
            return delivery, None
        required, stamp = FORWARD_STEPS[target_status]
        if delivery.status != required.value:
            raise InvalidStateError(
                f"Cannot move delivery from {delivery.status} to {target_status.value}",
                current_status=delivery.status,
            )

        now = datetime.utcnow()
        update = self._move(delivery, (required.value,), target_status, **{stamp: now})
        db.session.commit()
        logger.info("Delivery %s is now %s", delivery.id, target_status.value)

        receipt = self._mirror(
            "updateStatus", delivery, self.mirror.update_status,
            delivery.aid_package.ledger_id, target_status.value,
        )
        return delivery, self._record_tx(update, receipt)

    def issue_verification_code(self, user: User, package_id: int) -> Tuple[Delivery, str]:
        """Generate a one-time code the volunteer must present at confirmation."""
        if user is None or not getattr(user, "is_authenticated", False):
            raise AuthorizationError("Authentication required")
        package = self.packages.get(package_id)
        delivery = self.active_for_package(package.id)
        if delivery is None:
            raise NotFoundError("Delivery not found for this package", details={"aid_package_id": package_id})

        role = user.role_enum
        if role is Role.NGO:
            allowed = package.ngo_id == user.id
        elif role is Role.VOLUNTEER:
            allowed = delivery.volunteer_id == user.id
        elif role is Role.DONOR:
            allowed = False
        if not allowed:
            raise AuthorizationError("Not authorized to issue a code for this delivery")
        if delivery.status != DeliveryStatus.IN_TRANSIT.value:
            raise InvalidStateError("Verification codes are issued for deliveries in transit",
                                    current_status=delivery.status)

        code = generate_verification_code()
        delivery.verification_code_hash = generate_password_hash(code)
        delivery.verification_issued_at = datetime.utcnow()
        delivery.verification_attempts = 0
        db.session.commit()
        return delivery, code

    def confirm(self, volunteer: User, package_id: int, proof: str, otp: Optional[str] = None,
                proof_type: Optional[str] = None) -> Tuple[Delivery, Optional[str]]:
        delivery = self._assigned(volunteer, package_id)
        if delivery.status == DeliveryStatus.DELIVERED.value:
            raise AlreadyConfirmedError("Delivery already confirmed", current_status=delivery.status)
        if delivery.status != DeliveryStatus.IN_TRANSIT.value:
            raise InvalidStateError("Only deliveries in transit can be confirmed", current_status=delivery.status)
        proof = (proof or "").strip()
        if not proof:
            raise ValidationError.for_field("proof", "Delivery proof is required")
        verified = False
        if delivery.verification_code_hash:
            self._check_code(delivery, otp)
            verified = True

        package = delivery.aid_package
        now = datetime.utcnow()
        try:
            update = self._move(
                delivery,
                (DeliveryStatus.IN_TRANSIT.value,),
                DeliveryStatus.DELIVERED,
                delivered_at=now,
                delivery_proof=proof,
                proof_type=proof_type or infer_proof_type(proof),
                is_verified=verified,
                verification_code_hash=None,
            )
            self.packages.mark_delivered(package)
            db.session.commit()
        except InvalidStateError:
            db.session.rollback()
            raise
        logger.info("Delivery %s confirmed, package %s delivered", delivery.id, package.id)

        receipt = self._mirror("confirm", delivery, self.mirror.confirm, package.ledger_id, proof)
        if receipt is None:
            return delivery, None
        update.tx_hash = receipt.tx_hash
        delivery.confirmation_tx_hash = receipt.tx_hash
        package.delivery_tx_hash = receipt.tx_hash
        db.session.commit()
        return delivery, receipt.tx_hash

    def fail(self, volunteer: User, package_id: int, reason: str) -> Tuple[Delivery, Optional[str]]:
        delivery = self._assigned(volunteer, package_id)
        return self._release(delivery, DeliveryStatus.FAILED, failed_at=datetime.utcnow(),
                             failure_reason=reason)

    def cancel(self, user: User, package_id: int) -> Tuple[Delivery, Optional[str]]:
        if user is None or not getattr(user, "is_authenticated", False):
            raise AuthorizationError("Authentication required")
        package = self.packages.get(package_id)
        delivery = self.active_for_package(package.id)
        if delivery is None:
            raise NotFoundError("Delivery not found for this package", details={"aid_package_id": package_id})
        role = user.role_enum
        if role is Role.NGO:
            allowed = package.ngo_id == user.id
        elif role is Role.VOLUNTEER:
            allowed = delivery.volunteer_id == user.id
        elif role is Role.DONOR:
            allowed = False
        if not allowed:
            raise AuthorizationError("Not authorized to cancel this delivery")
        return self._release(delivery, DeliveryStatus.CANCELLED, cancelled_at=datetime.utcnow())

    # ------------------
    # Internals
    # ------------------
    def _assigned(self, volunteer: User, package_id: int) -> Delivery:
        require_role(volunteer, Role.VOLUNTEER)
        package = self.packages.get(package_id)
        delivery = self.active_for_package(package.id)
        if delivery is None:
            raise NotFoundError("Delivery not found for this package", details={"aid_package_id": package_id})
        if delivery.volunteer_id != volunteer.id:
            raise AuthorizationError("Delivery is not assigned to you")
        return delivery

    def _release(self, delivery: Delivery, target: DeliveryStatus, **values) -> Tuple[Delivery, Optional[str]]:
        if delivery.is_terminal:
            raise InvalidStateError(
                f"Cannot mark a {delivery.status} delivery as {target.value}", current_status=delivery.status
            )
        package = delivery.aid_package
        try:
            update = self._move(delivery, OPEN_STATUSES, target, **values)
            self.packages.release_delivery(package)
            db.session.commit()
        except InvalidStateError:
            db.session.rollback()
            raise
        logger.info("Delivery %s %s; package %s is open for pledges again", delivery.id, target.value, package.id)

        receipt = self._mirror(
            "updateStatus", delivery, self.mirror.update_status, package.ledger_id, target.value
        )
        return delivery, self._record_tx(update, receipt)

    def _move(self, delivery: Delivery, expected: Tuple[str, ...], target: DeliveryStatus,
              **values) -> DeliveryStatusUpdate:
        """Compare-and-set the delivery status; stages a status update row."""
        changes = {Delivery.status: target.value}
        for name, value in values.items():
            changes[getattr(Delivery, name)] = value
        changed = Delivery.query.filter(
            Delivery.id == delivery.id, Delivery.status.in_(expected)
        ).update(changes, synchronize_session=False)
        if changed != 1:
            db.session.rollback()
            db.session.refresh(delivery)
            raise InvalidStateError("Delivery changed concurrently", current_status=delivery.status)
        db.session.expire(delivery)
        update = DeliveryStatusUpdate(delivery_id=delivery.id, status=target.value)
        db.session.add(update)
        return update

    def _check_code(self, delivery: Delivery, otp: Optional[str]) -> None:
        if not otp:
            raise ValidationError.for_field("otp", "Verification code is required")
        if self.otp_max_attempts and delivery.verification_attempts >= self.otp_max_attempts:
            raise ValidationError.for_field("otp", "Too many failed attempts; request a new code")
        if self.otp_ttl_seconds and delivery.verification_issued_at is not None:
            expires = delivery.verification_issued_at + timedelta(seconds=self.otp_ttl_seconds)
            if datetime.utcnow() > expires:
                raise ValidationError.for_field("otp", "Verification code expired; request a new code")
        if not check_password_hash(delivery.verification_code_hash, str(otp).strip()):
            Delivery.query.filter_by(id=delivery.id).update(
                {Delivery.verification_attempts: Delivery.verification_attempts + 1},
                synchronize_session=False,
            )
            db.session.commit()
            raise ValidationError.for_field("otp", "Invalid verification code")

    def _record_tx(self, update: DeliveryStatusUpdate, receipt: Optional[LedgerReceipt]) -> Optional[str]:
        if receipt is None:
            return None
        update.tx_hash = receipt.tx_hash
        db.session.commit()
        return receipt.tx_hash

    @staticmethod
    def _mirror(operation: str, delivery: Delivery, call, *args) -> Optional[LedgerReceipt]:
        try:
            return call(*args)
        except LedgerCallError as e:
            logger.warning("Delivery %s: %s not mirrored to ledger: %s", delivery.id, operation, e.reason)
            return None
